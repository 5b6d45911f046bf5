import json
from unittest.mock import Mock

import pytest
import requests

from scraper_worker.db import AssetKind, JobKind, JobStatus, MediaKind, SegmentKind
from scraper_worker.errors import FetchError, IngestionError, StructuralError, TotalBatchFailure, TransientFetchError
from scraper_worker.ingestion.fetcher import HtmlUnitFetcher, UnitPayloads
from scraper_worker.pipeline.jobs import ScrapeSegmentParams
from scraper_worker.pipeline.segment import SegmentIngestor
from scraper_worker.utils.retry import RetryPolicy
from tests.fakes import FakeFetcher, no_sleep


JPEG = b"\xff\xd8\xff\xe0" + b"\x01" * 500
PAGE_URL = "https://novels.example.com/w/chapter-5"
IMAGES = [
    "https://cdn.example.com/w/5/1.jpg",
    "https://cdn.example.com/w/5/2.jpg",
    "https://cdn.example.com/w/5/3.jpg",
]


@pytest.fixture()
def novel_segment(ledger):
    work_id = ledger.upsert_work("The Novel")
    edition_id = ledger.upsert_edition(work_id, MediaKind.NOVEL, "novels")
    segment_id = ledger.upsert_segment(
        edition_id, SegmentKind.CHAPTER, 5, title="Chapter 5", canonical_url=PAGE_URL
    )
    return work_id, edition_id, segment_id


def _ingestor(ledger, storage, uploader, fetcher, sleeps=None):
    return SegmentIngestor(
        ledger,
        storage,
        fetcher,
        uploader,
        rate_limit_seconds=0.5,
        sleep=sleeps.append if sleeps is not None else (lambda _: None),
    )


def _html_fetcher(pages):
    """HtmlUnitFetcher over a Mock session; ``pages`` maps URLs to a body or an exception."""
    session = Mock()
    attempts = []

    def get(url, headers=None, timeout=None):
        attempts.append(url)
        body = pages[url]
        if isinstance(body, Exception):
            raise body
        response = Mock()
        response.status_code = 200
        response.text = body if isinstance(body, str) else ""
        response.content = body if isinstance(body, bytes) else body.encode("utf-8")
        return response

    session.get.side_effect = get
    fetcher = HtmlUnitFetcher(
        user_agent="TestBot/1.0",
        policy=RetryPolicy(max_attempts=3, base_delay=0.0, retry_on=(TransientFetchError,)),
        session=session,
        sleep=no_sleep,
    )
    return fetcher, attempts


def test_partial_image_failure_still_succeeds(ledger, storage, uploader, novel_segment) -> None:
    work_id, edition_id, segment_id = novel_segment
    page = '<div class="reading-content">' + "".join(
        f'<img class="wp-manga-chapter-img" src="{url}">' for url in IMAGES
    ) + "</div>"
    fetcher, attempts = _html_fetcher(
        {
            PAGE_URL: page,
            IMAGES[0]: JPEG,
            IMAGES[1]: requests.Timeout("read timed out"),
            IMAGES[2]: JPEG,
        }
    )
    sleeps = []

    result = _ingestor(ledger, storage, uploader, fetcher, sleeps).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
    )

    prefix = f"raw/novel/{work_id}/{edition_id}/chapter-5"
    assert storage.exists(f"{prefix}/page-001.jpg")
    assert not storage.exists(f"{prefix}/page-002.jpg")
    assert storage.exists(f"{prefix}/page-003.jpg")
    assert ledger.count_segment_assets(segment_id) == 2
    assert ledger.get_asset_by_key(f"{prefix}/page-001.jpg").asset_kind == AssetKind.RAW_IMAGE

    job = ledger.get_job(result.job_id)
    assert job.status == JobStatus.SUCCESS
    assert job.kind == JobKind.SCRAPE_SEGMENT.value
    assert job.segment_id == segment_id
    assert job.attempt == 1
    assert job.output["imageCount"] == 3
    assert job.output["successCount"] == 2
    assert job.output["failedCount"] == 1
    assert job.error is None

    # One pause between consecutive images, none before the first
    assert sleeps == [0.5, 0.5]
    # The timed-out image used its whole retry budget
    assert attempts.count(IMAGES[1]) == 3
    assert attempts.count(IMAGES[0]) == 1
    assert attempts.count(IMAGES[2]) == 1


def test_missing_image_counts_as_failed_item(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    fetcher = FakeFetcher(
        payloads=UnitPayloads(images=list(IMAGES)),
        blobs={IMAGES[0]: JPEG, IMAGES[2]: JPEG},
    )

    result = _ingestor(ledger, storage, uploader, fetcher).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
    )

    output = ledger.get_job(result.job_id).output
    assert output["successCount"] == 2
    assert output["failedCount"] == 1
    assert fetcher.downloads == IMAGES


def test_manifest_is_stored(ledger, storage, uploader, novel_segment) -> None:
    work_id, edition_id, segment_id = novel_segment
    fetcher = FakeFetcher(payloads=UnitPayloads(images=list(IMAGES), texts=["Hello"]))

    result = _ingestor(ledger, storage, uploader, fetcher).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga")
    )

    assert result.manifest_key == f"raw/novel/{work_id}/{edition_id}/chapter-5/assets.json"
    manifest = json.loads(storage.get(result.manifest_key))
    assert manifest["segmentId"] == segment_id
    assert manifest["url"] == PAGE_URL
    assert manifest["images"] == IMAGES
    assert manifest["texts"] == ["Hello"]


def test_without_download_only_the_manifest_is_written(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    fetcher = FakeFetcher(payloads=UnitPayloads(images=list(IMAGES)), blobs={url: JPEG for url in IMAGES})

    result = _ingestor(ledger, storage, uploader, fetcher).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=False)
    )

    assert fetcher.downloads == []
    assert storage.list() == [result.manifest_key]
    assert ledger.count_segment_assets(segment_id) == 0
    output = ledger.get_job(result.job_id).output
    assert output["download"] is False
    assert output["imageCount"] == 3
    assert output["successCount"] == 0


def test_all_images_failing_fails_the_job(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    fetcher = FakeFetcher(payloads=UnitPayloads(images=list(IMAGES)))

    with pytest.raises(TotalBatchFailure) as excinfo:
        _ingestor(ledger, storage, uploader, fetcher).ingest(
            ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
        )

    job = ledger.get_job(excinfo.value.job_id)
    assert job.status == JobStatus.FAILED
    assert job.output is None
    assert "None of the 3 images" in job.error
    assert job.segment_id == segment_id
    assert len(fetcher.downloads) == 3


def test_subtitle_and_text_groups(ledger, storage, uploader, novel_segment) -> None:
    work_id, edition_id, segment_id = novel_segment
    subtitle_url = "https://cdn.example.com/w/5/en.vtt"
    fetcher = FakeFetcher(
        payloads=UnitPayloads(
            images=[IMAGES[0]],
            subtitles=[subtitle_url, "https://cdn.example.com/w/5/missing.srt"],
            texts=["First paragraph.", "Second paragraph."],
        ),
        blobs={IMAGES[0]: JPEG, subtitle_url: b"WEBVTT\n\n00:00.000 --> 00:01.000\nHi"},
    )

    result = _ingestor(ledger, storage, uploader, fetcher).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
    )

    prefix = f"raw/novel/{work_id}/{edition_id}/chapter-5"
    assert storage.get(f"{prefix}/text-02.txt") == b"Second paragraph."
    assert ledger.get_asset_by_key(f"{prefix}/sub-01.vtt").content_type == "text/vtt"
    assert ledger.get_asset_by_key(f"{prefix}/text-01.txt").asset_kind == AssetKind.CLEANED_TEXT

    output = ledger.get_job(result.job_id).output
    assert output["groups"]["subtitle"] == {"expected": 2, "succeeded": 1, "failed": 1}
    assert output["groups"]["text"] == {"expected": 2, "succeeded": 2, "failed": 0}
    assert output["successCount"] == 4
    assert output["failedCount"] == 1


def test_subtitle_failure_alone_does_not_fail_the_job(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    fetcher = FakeFetcher(payloads=UnitPayloads(subtitles=["https://cdn.example.com/w/5/en.vtt"]))

    result = _ingestor(ledger, storage, uploader, fetcher).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
    )

    assert ledger.get_job(result.job_id).status == JobStatus.SUCCESS
    assert result.failed_count == 1


def test_empty_page_succeeds(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment

    result = _ingestor(ledger, storage, uploader, FakeFetcher()).ingest(
        ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
    )

    output = ledger.get_job(result.job_id).output
    assert output["imageCount"] == 0
    assert output["successCount"] == 0
    assert ledger.get_job(result.job_id).status == JobStatus.SUCCESS


def test_unknown_segment_is_structural(ledger, storage, uploader) -> None:
    with pytest.raises(StructuralError, match="Segment or edition not found") as excinfo:
        _ingestor(ledger, storage, uploader, FakeFetcher()).ingest(
            ScrapeSegmentParams(url=PAGE_URL, segment_id="missing", template="wp-manga", download=True)
        )

    job = ledger.get_job(excinfo.value.job_id)
    assert job.status == JobStatus.FAILED
    assert job.segment_id is None
    assert storage.list() == []


def test_unknown_template_is_structural(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment

    with pytest.raises(StructuralError) as excinfo:
        _ingestor(ledger, storage, uploader, FakeFetcher()).ingest(
            ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="nope", download=True)
        )

    assert "not found" in ledger.get_job(excinfo.value.job_id).error


def test_unreadable_page_fails_the_job(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    fetcher = FakeFetcher(page_error=FetchError("HTTP 403 for page", url=PAGE_URL, status_code=403))

    with pytest.raises(IngestionError) as excinfo:
        _ingestor(ledger, storage, uploader, fetcher).ingest(
            ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga", download=True)
        )

    job = ledger.get_job(excinfo.value.job_id)
    assert job.status == JobStatus.FAILED
    assert "HTTP 403" in job.error


def test_runner_claimed_job_is_reused(ledger, storage, uploader, novel_segment) -> None:
    _, _, segment_id = novel_segment
    params = ScrapeSegmentParams(url=PAGE_URL, segment_id=segment_id, template="wp-manga")
    job_id = ledger.create_job(params.kind, job_input=params.to_input())
    ledger.claim_job(job_id)

    result = _ingestor(ledger, storage, uploader, FakeFetcher()).ingest(params, job_id=job_id)

    assert result.job_id == job_id
    assert ledger.get_job(job_id).status == JobStatus.SUCCESS
    assert ledger.get_queued_jobs() == []

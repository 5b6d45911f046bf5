from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from scraper_worker.db import (
    AssetKind,
    AssetRole,
    Job,
    JobKind,
    JobStatus,
    MediaKind,
    SegmentKind,
    UploadSource,
    check_database_connection,
    session_scope,
)
from scraper_worker.errors import LedgerError


def test_upsert_work_is_idempotent(ledger) -> None:
    first = ledger.upsert_work("Omniscient Reader")
    assert ledger.upsert_work("  Omniscient Reader ") == first
    assert ledger.upsert_work("Another Work") != first


def test_upsert_work_requires_title(ledger) -> None:
    with pytest.raises(ValueError):
        ledger.upsert_work("   ")


def test_upsert_edition_unique_per_provider_and_media(ledger) -> None:
    work_id = ledger.upsert_work("Work")
    manhwa = ledger.upsert_edition(work_id, MediaKind.MANHWA, "asura")

    assert ledger.upsert_edition(work_id, "manhwa", "asura") == manhwa
    assert ledger.upsert_edition(work_id, MediaKind.NOVEL, "asura") != manhwa
    assert ledger.upsert_edition(work_id, MediaKind.MANHWA, "flame") != manhwa
    assert len(ledger.list_editions(work_id)) == 3


def test_upsert_edition_updates_canonical_url(ledger) -> None:
    work_id = ledger.upsert_work("Work")
    edition_id = ledger.upsert_edition(work_id, MediaKind.NOVEL, "site")
    ledger.upsert_edition(work_id, MediaKind.NOVEL, "site", canonical_url="https://site/w/")

    edition = ledger.get_edition(edition_id)
    assert edition.canonical_url == "https://site/w/"
    assert edition.media == MediaKind.NOVEL


def test_upsert_segment_corrects_title_without_duplicating(ledger, edition) -> None:
    _, edition_id, segment_id = edition

    again = ledger.upsert_segment(edition_id, SegmentKind.CHAPTER, 5.0, title="Chapter 5: Arise")
    assert again == segment_id

    segment = ledger.get_segment(segment_id)
    assert segment.title == "Chapter 5: Arise"
    # A missing URL keeps the stored one
    assert segment.canonical_url == "https://example.com/manga/solo-leveling/chapter-5/"
    assert len(ledger.list_segments(edition_id)) == 1


def test_segments_listed_by_number(ledger, edition) -> None:
    _, edition_id, _ = edition
    ledger.upsert_segment(edition_id, SegmentKind.CHAPTER, 12.5)
    ledger.upsert_segment(edition_id, SegmentKind.CHAPTER, 1)

    assert [s.number for s in ledger.list_segments(edition_id)] == [1.0, 5.0, 12.5]
    assert ledger.find_segment(edition_id, SegmentKind.CHAPTER, 12.5) is not None
    assert ledger.find_segment(edition_id, SegmentKind.EPISODE, 12.5) is None


def test_get_segment_carries_edition_context(ledger, edition) -> None:
    work_id, edition_id, segment_id = edition
    segment = ledger.get_segment(segment_id)

    assert segment.work_id == work_id
    assert segment.edition_id == edition_id
    assert segment.media == MediaKind.MANHWA
    assert segment.segment_kind == SegmentKind.CHAPTER
    assert ledger.get_segment("missing") is None


def test_register_asset_reuses_existing_key(ledger) -> None:
    key = "raw/manhwa/W/E/chapter-1/page-001.jpg"
    asset_id = ledger.register_asset(key, AssetKind.RAW_IMAGE, byte_length=10, sha256="a" * 64)

    assert ledger.register_asset(key, AssetKind.RAW_IMAGE, byte_length=99, sha256="b" * 64) == asset_id
    asset = ledger.get_asset_by_key(key)
    assert asset.byte_length == 10
    assert asset.upload_source == UploadSource.PIPELINE


def test_attach_asset_is_idempotent(ledger, edition) -> None:
    _, _, segment_id = edition
    asset_id = ledger.register_asset("raw/k/page-001.jpg", AssetKind.RAW_IMAGE)

    assert ledger.attach_asset(segment_id, asset_id, AssetRole.PAGE) is True
    assert ledger.attach_asset(segment_id, asset_id, AssetRole.PAGE) is False
    assert ledger.count_segment_assets(segment_id) == 1
    assert ledger.segment_has_assets(segment_id)


def test_list_asset_keys_by_prefix(ledger) -> None:
    ledger.register_asset("raw/novel/W/E/chapter-1/text-01.txt", AssetKind.CLEANED_TEXT)
    ledger.register_asset("raw/novel/W/E2/chapter-1/text-01.txt", AssetKind.CLEANED_TEXT)

    assert ledger.list_asset_keys("raw/novel/W/E/") == {"raw/novel/W/E/chapter-1/text-01.txt"}
    assert len(ledger.list_asset_keys()) == 2


def test_missing_content_types(ledger) -> None:
    bare = ledger.register_asset("raw/a.jpg", AssetKind.RAW_IMAGE)
    ledger.register_asset("raw/b.jpg", AssetKind.RAW_IMAGE, content_type="image/jpeg")

    missing = ledger.list_assets_missing_content_type()
    assert [a.id for a in missing] == [bare]

    ledger.update_asset_content_type(bare, "image/jpeg")
    assert ledger.list_assets_missing_content_type() == []


# ---------------------------------------------------------------------- #
# Jobs
# ---------------------------------------------------------------------- #


def test_job_lifecycle(ledger) -> None:
    job_id = ledger.create_job(JobKind.SCRAPE_SEGMENT, job_input={"url": "u"})
    job = ledger.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.kind == "scrape:segment"
    assert job.attempt == 0

    assert ledger.claim_job(job_id) is True
    job = ledger.get_job(job_id)
    assert job.status == JobStatus.RUNNING
    assert job.attempt == 1
    assert job.started_at is not None

    ledger.finish_job(job_id, JobStatus.SUCCESS, output={"successCount": 2}, error="ignored")
    job = ledger.get_job(job_id)
    assert job.status == JobStatus.SUCCESS
    assert job.output == {"successCount": 2}
    assert job.error is None
    assert job.finished_at is not None


def test_failed_job_keeps_no_output(ledger) -> None:
    job_id = ledger.create_job(JobKind.SCRAPE_WORK)
    ledger.claim_job(job_id)
    ledger.finish_job(job_id, JobStatus.FAILED, output={"partial": 1}, error="boom")

    job = ledger.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.output is None
    assert job.error == "boom"


def test_finish_job_requires_terminal_status(ledger) -> None:
    job_id = ledger.create_job(JobKind.SCRAPE_WORK)
    with pytest.raises(ValueError):
        ledger.finish_job(job_id, JobStatus.RUNNING)


def test_claim_is_compare_and_swap(ledger) -> None:
    job_id = ledger.create_job(JobKind.SCRAPE_SEGMENT)

    assert ledger.claim_job(job_id) is True
    assert ledger.claim_job(job_id) is False
    assert ledger.get_job(job_id).attempt == 1


def test_queued_jobs_are_fifo(ledger) -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ids = [ledger.create_job(JobKind.SCRAPE_SEGMENT) for _ in range(3)]
    # Newest id gets the oldest timestamp
    with session_scope(ledger.session_factory) as session:
        for offset, job_id in enumerate(reversed(ids)):
            session.execute(
                update(Job).where(Job.id == job_id).values(created_at=base + timedelta(seconds=offset))
            )

    queued = ledger.get_queued_jobs(limit=10)
    assert [job.id for job in queued] == list(reversed(ids))
    assert [job.id for job in ledger.get_queued_jobs()] == [ids[-1]]

    ledger.claim_job(ids[-1])
    assert [job.id for job in ledger.get_queued_jobs()] == [ids[1]]


def test_job_with_unknown_kind_still_loads(ledger) -> None:
    job_id = ledger.create_job(JobKind.SCRAPE_WORK)
    with session_scope(ledger.session_factory) as session:
        session.execute(update(Job).where(Job.id == job_id).values(job_type="scrape:legacy"))

    assert ledger.get_job(job_id).kind == "scrape:legacy"


def test_check_database_connection(ledger) -> None:
    assert check_database_connection(ledger.session_factory) is True


def test_missing_tables_raise_ledger_error() -> None:
    from scraper_worker.db import MetadataLedger, create_db_engine, create_session_factory

    engine = create_db_engine("sqlite://")
    ledger = MetadataLedger(create_session_factory(engine))
    with pytest.raises(LedgerError, match="does not exist"):
        ledger.get_job("x")

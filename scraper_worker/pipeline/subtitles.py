"""
Subtitle driver.

Downloads one subtitle file per episode segment of an edition from the
OpenSubtitles API and stores it through the AssetUploader (raw_subtitle,
``subtitle`` role). Season and episode come from the ``SxxEyy`` code in the
segment title; segments without one are skipped, and so are segments that
already hold a subtitle asset. A search that finds nothing is retried once
with the segment ordinal as the episode number.

The run is tracked by one Job. Per-segment failures are recorded in its
output and the driver moves on; a spent download quota ends the run early.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from scraper_worker.db.ledger import MetadataLedger, SegmentRecord
from scraper_worker.db.models import AssetKind, AssetRole, JobStatus
from scraper_worker.errors import DownloadQuotaError, FetchError, StructuralError, SubtitleNotFoundError, TotalBatchFailure
from scraper_worker.ingestion.opensubtitles import OpenSubtitlesClient, SubtitleDownload
from scraper_worker.logger import log_function
from scraper_worker.storage.keys import asset_filename, build_storage_key
from .jobs import FetchSubtitlesParams, fail_job, start_job
from .uploader import AssetUploader


logger = logging.getLogger("scraper_worker.subtitles")

EPISODE_CODE_RE = re.compile(r"S(\d+)\s*E(\d+)", re.IGNORECASE)


def parse_episode_code(title: Optional[str]) -> Optional[Tuple[int, int]]:
    """``(season, episode)`` from a title such as "S01E03 - Arrival", else None."""
    if not title:
        return None
    match = EPISODE_CODE_RE.search(title)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


@dataclass
class SubtitleRunResult:
    job_id: str
    edition_id: str
    total: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    quota_exhausted: bool = False
    remaining_downloads: Optional[int] = None
    stored_keys: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_output(self) -> Dict[str, Any]:
        return {
            "editionId": self.edition_id,
            "total": self.total,
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "quotaExhausted": self.quota_exhausted,
            "remainingDownloads": self.remaining_downloads,
            "storedKeys": list(self.stored_keys),
            "failures": list(self.failures),
        }


class SubtitleDownloader:
    def __init__(
        self,
        ledger: MetadataLedger,
        client: OpenSubtitlesClient,
        uploader: AssetUploader,
        segment_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.client = client
        self.uploader = uploader
        self.segment_delay = segment_delay
        self.sleep = sleep

    @log_function(logger_name="scraper_worker.subtitles", log_args=True, log_execution_time=True)
    def run(self, params: FetchSubtitlesParams, job_id: Optional[str] = None) -> SubtitleRunResult:
        """
        Fetch the missing subtitles of an edition.

        Args:
            params: Edition, series name, languages and optional segment limit
            job_id: Job already claimed by the runner; a new Job is created when None

        Returns:
            SubtitleRunResult, also stored as the Job output

        Raises:
            StructuralError: Unknown edition (Job failed)
            TotalBatchFailure: Every attempted segment failed (Job failed)
        """
        job_id = start_job(self.ledger, params, job_id)
        result = SubtitleRunResult(job_id=job_id, edition_id=params.edition_id)

        try:
            edition = self.ledger.get_edition(params.edition_id)
            if edition is None:
                raise StructuralError(f"Edition not found: {params.edition_id}")

            segments = self.ledger.list_segments(edition.id)
            result.total = len(segments)
            pending = []
            for segment in segments:
                if self.ledger.segment_has_assets(segment.id, role=AssetRole.SUBTITLE):
                    result.skipped += 1
                else:
                    pending.append(segment)
            if params.limit is not None:
                pending = pending[: params.limit]
            logger.info(
                f"Edition {edition.id}: {result.total} segments, {result.skipped} already "
                f"have subtitles, {len(pending)} to process"
            )

            for index, segment in enumerate(pending):
                if self.client.remaining_downloads is not None and self.client.remaining_downloads <= 0:
                    logger.warning(f"Download quota spent, stopping before segment {segment.id}")
                    result.quota_exhausted = True
                    break
                if index > 0:
                    self.sleep(self.segment_delay)
                try:
                    self._process_segment(segment, params, result)
                except DownloadQuotaError as e:
                    logger.warning(f"{e}; stopping the run")
                    result.quota_exhausted = True
                    self._record_failure(result, segment, str(e))
                    break

            result.remaining_downloads = self.client.remaining_downloads
            attempted = result.succeeded + result.failed
            if attempted and result.succeeded == 0 and not result.quota_exhausted:
                raise TotalBatchFailure(
                    f"None of the {attempted} subtitle downloads of edition {edition.id} succeeded"
                )

        except Exception as e:
            logger.error(f"Subtitle run failed for edition {params.edition_id}: {e}")
            raise fail_job(self.ledger, job_id, e, edition_id=params.edition_id) from e

        self.ledger.finish_job(
            job_id,
            JobStatus.SUCCESS,
            output=result.to_output(),
            work_id=edition.work_id,
            edition_id=edition.id,
        )
        logger.info(
            f"Subtitle run finished for edition {edition.id}: {result.succeeded} stored, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    def _process_segment(
        self, segment: SegmentRecord, params: FetchSubtitlesParams, result: SubtitleRunResult
    ) -> None:
        code = parse_episode_code(segment.title)
        if code is None:
            logger.warning(f"Segment {segment.id} title {segment.title!r} has no SxxEyy code, skipping")
            result.skipped += 1
            return
        season, episode = code

        try:
            download = self._fetch(params, season, episode, segment)
        except DownloadQuotaError:
            raise
        except FetchError as e:
            logger.error(f"No subtitle for segment {segment.id} (S{season:02d}E{episode:02d}): {e}")
            self._record_failure(result, segment, str(e))
            return

        key = build_storage_key(
            segment.media.value,
            segment.work_id,
            segment.edition_id,
            asset_filename("subtitle", 0, download.file_name),
            segment_kind=segment.segment_kind.value,
            ordinal=segment.number,
        )
        upload = self.uploader.upload(
            download.data,
            key,
            AssetKind.RAW_SUBTITLE,
            segment.id,
            AssetRole.SUBTITLE,
            filename=download.file_name,
        )
        if not upload.ok:
            self._record_failure(result, segment, upload.error or "upload failed")
            return
        result.succeeded += 1
        result.stored_keys.append(key)

    def _fetch(
        self, params: FetchSubtitlesParams, season: int, episode: int, segment: SegmentRecord
    ) -> SubtitleDownload:
        try:
            return self.client.fetch_best(params.series_name, season, episode, params.languages)
        except SubtitleNotFoundError:
            fallback = int(segment.number)
            if fallback == episode:
                raise
            logger.info(
                f"No match for S{season:02d}E{episode:02d}, retrying with episode {fallback}"
            )
            return self.client.fetch_best(params.series_name, season, fallback, params.languages)

    @staticmethod
    def _record_failure(result: SubtitleRunResult, segment: SegmentRecord, error: str) -> None:
        result.failed += 1
        result.failures.append(
            {"segmentId": segment.id, "number": segment.number, "title": segment.title, "error": error}
        )

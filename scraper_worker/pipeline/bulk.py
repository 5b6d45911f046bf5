"""
Bulk segment driver.

Ingests every segment of an edition that does not hold any asset yet.
Segments that already have at least one attached asset are skipped, which
is what keeps a rerun from scraping already-ingested segments again. A
failing segment is recorded and the driver moves on to the next one.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from scraper_worker.db.ledger import MetadataLedger
from scraper_worker.errors import IngestionError, StructuralError
from scraper_worker.logger import log_function
from .jobs import ScrapeSegmentParams
from .segment import SegmentIngestor


logger = logging.getLogger("scraper_worker.bulk")


def resolve_edition(
    ledger: MetadataLedger, edition_id: Optional[str] = None, work_id: Optional[str] = None
) -> str:
    """Return ``edition_id``, or the single edition of ``work_id``."""
    if edition_id:
        if ledger.get_edition(edition_id) is None:
            raise StructuralError(f"Edition not found: {edition_id}")
        return edition_id
    if not work_id:
        raise StructuralError("Either an edition id or a work id is required")

    editions = ledger.list_editions(work_id)
    if not editions:
        raise StructuralError(f"No edition found for work {work_id}")
    if len(editions) > 1:
        raise StructuralError(
            f"Work {work_id} has {len(editions)} editions; pass an edition id instead"
        )
    return editions[0].id


@dataclass
class BulkResult:
    edition_id: str
    total: int = 0
    skipped: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "editionId": self.edition_id,
            "total": self.total,
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class BulkSegmentScraper:
    def __init__(
        self,
        ledger: MetadataLedger,
        ingestor: SegmentIngestor,
        segment_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.ingestor = ingestor
        self.segment_delay = segment_delay
        self.sleep = sleep

    def resolve_edition(self, edition_id: Optional[str] = None, work_id: Optional[str] = None) -> str:
        return resolve_edition(self.ledger, edition_id, work_id)

    @log_function(logger_name="scraper_worker.bulk", log_args=True, log_execution_time=True)
    def run(
        self,
        template: str,
        edition_id: Optional[str] = None,
        work_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> BulkResult:
        """
        Ingest (with download) the pending segments of an edition, in ordinal order.

        Args:
            template: Template name used for every segment page
            edition_id: Edition to process
            work_id: Work whose single edition is processed (when no edition id)
            limit: Maximum number of segments to ingest in this run

        Returns:
            BulkResult with per-run counts and the failures
        """
        edition_id = self.resolve_edition(edition_id, work_id)
        segments = self.ledger.list_segments(edition_id)
        result = BulkResult(edition_id=edition_id, total=len(segments))
        logger.info(f"Edition {edition_id} has {len(segments)} segments")

        pending = []
        for segment in segments:
            if self.ledger.segment_has_assets(segment.id):
                result.skipped += 1
            else:
                pending.append(segment)
        if limit is not None:
            pending = pending[:limit]
        logger.info(f"{result.skipped} segments already ingested, {len(pending)} to process")

        for index, segment in enumerate(pending):
            if index > 0:
                self.sleep(self.segment_delay)

            label = f"[{index + 1}/{len(pending)}] {segment.segment_kind.value} {segment.number:g}"
            if not segment.canonical_url:
                logger.error(f"{label}: segment {segment.id} has no URL")
                result.failed += 1
                result.failures.append(
                    {"segmentId": segment.id, "number": segment.number, "error": "Segment has no URL"}
                )
                continue

            logger.info(f"{label}: {segment.canonical_url}")
            try:
                self.ingestor.ingest(
                    ScrapeSegmentParams(
                        url=segment.canonical_url,
                        segment_id=segment.id,
                        template=template,
                        download=True,
                    )
                )
            except IngestionError as e:
                logger.error(f"{label} failed: {e}")
                result.failed += 1
                result.failures.append(
                    {
                        "segmentId": segment.id,
                        "number": segment.number,
                        "url": segment.canonical_url,
                        "jobId": e.job_id,
                        "error": str(e),
                    }
                )
                continue
            result.succeeded += 1

        logger.info(
            f"Bulk run finished for edition {edition_id}: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

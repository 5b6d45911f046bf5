"""
Work-list discovery (``scrape:work`` jobs).

Reads a work page, records the Work, its Edition and one Segment per
discovered unit, and stores the segments.json manifest next to the
edition's segment directories.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from scraper_worker.db.ledger import MetadataLedger
from scraper_worker.db.models import JobStatus, SegmentKind
from scraper_worker.ingestion.fetcher import BaseUnitFetcher, UnitRef
from scraper_worker.ingestion.templates import load_template
from scraper_worker.logger import log_function
from scraper_worker.storage.base import BaseStorage
from scraper_worker.storage.keys import WORK_MANIFEST_FILENAME, build_storage_key
from scraper_worker.utils.retry import RetryPolicy, retry_call
from .jobs import ScrapeWorkParams, fail_job, start_job


logger = logging.getLogger("scraper_worker.pipeline")


@dataclass
class WorkDiscoveryResult:
    job_id: str
    work_id: str
    edition_id: str
    manifest_key: str
    segment_ids: List[str] = field(default_factory=list)
    units: List[UnitRef] = field(default_factory=list)

    @property
    def segment_count(self) -> int:
        return len(self.segment_ids)

    def to_output(self) -> Dict[str, Any]:
        return {
            "workId": self.work_id,
            "editionId": self.edition_id,
            "segmentCount": self.segment_count,
            "manifestKey": self.manifest_key,
        }


class WorkDiscoverer:
    def __init__(
        self,
        ledger: MetadataLedger,
        storage: BaseStorage,
        fetcher: BaseUnitFetcher,
        store_policy: Optional[RetryPolicy] = None,
        templates_dir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.storage = storage
        self.fetcher = fetcher
        self.store_policy = store_policy or RetryPolicy(max_attempts=5, base_delay=2.0)
        self.templates_dir = templates_dir
        self.sleep = sleep

    @log_function(logger_name="scraper_worker.pipeline", log_args=True, log_execution_time=True)
    def discover(self, params: ScrapeWorkParams, job_id: Optional[str] = None) -> WorkDiscoveryResult:
        """
        Discover the segments of a work page and record them.

        Args:
            params: Work page URL, media kind, provider, template and work title
            job_id: Job already claimed by the runner; a new Job is created if None

        Returns:
            WorkDiscoveryResult (the Job is ``success``)

        Raises:
            IngestionError: The Job has been marked ``failed``
        """
        job_id = start_job(self.ledger, params, job_id)
        logger.info(
            f"Discovering work {params.title!r} ({params.media.value}, {params.provider}) "
            f"from {params.url} (job={job_id})"
        )

        refs = {}
        try:
            template = load_template(params.template, self.templates_dir)

            work_id = self.ledger.upsert_work(params.title)
            refs["work_id"] = work_id
            edition_id = self.ledger.upsert_edition(
                work_id, params.media, params.provider, canonical_url=params.url
            )
            refs["edition_id"] = edition_id

            unit_list = self.fetcher.discover_units(params.url, template)
            segment_kind = SegmentKind.for_media(params.media)
            segment_ids = []
            for unit in unit_list.units:
                segment_id = self.ledger.upsert_segment(
                    edition_id, segment_kind, unit.ordinal, title=unit.title, canonical_url=unit.url
                )
                # Units sharing an ordinal collapse into one segment
                if segment_id not in segment_ids:
                    segment_ids.append(segment_id)

            manifest_key = build_storage_key(
                params.media.value, work_id, edition_id, WORK_MANIFEST_FILENAME
            )
            manifest = {
                "workId": work_id,
                "editionId": edition_id,
                "url": params.url,
                "media": params.media.value,
                "provider": params.provider,
                "scrapedAt": datetime.now(timezone.utc).isoformat(),
                "metadata": unit_list.metadata,
                "segments": [unit.to_dict() for unit in unit_list.units],
            }
            retry_call(
                self.storage.put,
                manifest_key,
                json.dumps(manifest, indent=2, ensure_ascii=False),
                "application/json",
                policy=self.store_policy,
                operation="put_manifest",
                sleep=self.sleep,
            )

        except Exception as e:
            logger.error(f"Work discovery failed for {params.url}: {e}")
            raise fail_job(self.ledger, job_id, e, **refs) from e

        result = WorkDiscoveryResult(
            job_id=job_id,
            work_id=work_id,
            edition_id=edition_id,
            manifest_key=manifest_key,
            segment_ids=segment_ids,
            units=list(unit_list.units),
        )
        self.ledger.finish_job(
            job_id,
            JobStatus.SUCCESS,
            output=result.to_output(),
            work_id=work_id,
            edition_id=edition_id,
        )
        logger.info(f"Discovered {result.segment_count} segments for edition {edition_id}")
        return result

"""
Segment Ingestion Orchestrator.

Drives the ingestion of one segment and records the outcome on its Job:

1. Start the Job (or take over the one claimed by the runner)
2. Read the segment page and collect its payload groups
3. Store the assets.json manifest, whether or not assets are downloaded
4. With download enabled, fetch and store every image, subtitle and text
   block in that order, one item at a time, pausing between images

Partial failure inside a group is reported through the output counts and
leaves the Job successful. The Job fails on structural problems (unknown
segment, bad template, unreadable page) and when images were expected but
none of them could be stored.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from scraper_worker.db.ledger import MetadataLedger, SegmentRecord
from scraper_worker.db.models import AssetKind, AssetRole, JobStatus
from scraper_worker.errors import FetchError, StructuralError, TotalBatchFailure
from scraper_worker.ingestion.fetcher import BaseUnitFetcher, UnitPayloads
from scraper_worker.ingestion.templates import load_template
from scraper_worker.logger import log_function
from scraper_worker.storage.base import BaseStorage
from scraper_worker.storage.keys import (
    SEGMENT_MANIFEST_FILENAME,
    asset_filename,
    build_storage_key,
)
from scraper_worker.utils.retry import retry_call
from .jobs import ScrapeSegmentParams, fail_job, start_job
from .uploader import AssetUploader


logger = logging.getLogger("scraper_worker.pipeline")

# Processing order of the payload groups: (group, asset kind, role)
PAYLOAD_GROUPS = (
    ("image", AssetKind.RAW_IMAGE, AssetRole.PAGE),
    ("subtitle", AssetKind.RAW_SUBTITLE, AssetRole.SUBTITLE),
    ("text", AssetKind.CLEANED_TEXT, AssetRole.TEXT),
)


@dataclass
class GroupCounts:
    expected: int = 0
    succeeded: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"expected": self.expected, "succeeded": self.succeeded, "failed": self.failed}


@dataclass
class SegmentIngestionResult:
    job_id: str
    segment_id: str
    manifest_key: str
    download: bool
    groups: Dict[str, GroupCounts] = field(default_factory=dict)
    stored_keys: List[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(g.succeeded for g in self.groups.values())

    @property
    def failed_count(self) -> int:
        return sum(g.failed for g in self.groups.values())

    def to_output(self) -> Dict[str, Any]:
        """Job output payload."""
        return {
            "segmentId": self.segment_id,
            "download": self.download,
            "manifestKey": self.manifest_key,
            "imageCount": self.groups["image"].expected,
            "subtitleCount": self.groups["subtitle"].expected,
            "textCount": self.groups["text"].expected,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "groups": {name: counts.to_dict() for name, counts in self.groups.items()},
        }


class SegmentIngestor:
    """
    Ingest the payloads of one segment.

    Args:
        ledger: Metadata ledger
        storage: Content store (manifests are written directly)
        fetcher: Unit Fetcher for the segment page and payload bytes
        uploader: Asset Uploader for the store/register/attach step
        rate_limit_seconds: Pause between two images
        templates_dir: Template directory override
        sleep: Sleep function, injectable for tests
    """

    def __init__(
        self,
        ledger: MetadataLedger,
        storage: BaseStorage,
        fetcher: BaseUnitFetcher,
        uploader: AssetUploader,
        rate_limit_seconds: float = 0.5,
        templates_dir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.storage = storage
        self.fetcher = fetcher
        self.uploader = uploader
        self.rate_limit_seconds = rate_limit_seconds
        self.templates_dir = templates_dir
        self.sleep = sleep

    @log_function(logger_name="scraper_worker.pipeline", log_args=True, log_execution_time=True)
    def ingest(
        self, params: ScrapeSegmentParams, job_id: Optional[str] = None
    ) -> SegmentIngestionResult:
        """
        Run the ingestion and record it on a Job.

        Args:
            params: Segment id, page URL, template name and download flag
            job_id: Job already claimed by the runner; a new Job is created if None

        Returns:
            SegmentIngestionResult (the Job is ``success``)

        Raises:
            IngestionError: The Job has been marked ``failed``
        """
        job_id = start_job(self.ledger, params, job_id)
        logger.info(
            f"Ingesting segment {params.segment_id} from {params.url} "
            f"(template={params.template}, download={params.download}, job={job_id})"
        )

        segment_ref = None
        try:
            segment = self.ledger.get_segment(params.segment_id)
            if segment is None:
                raise StructuralError(f"Segment or edition not found: {params.segment_id}")
            segment_ref = segment.id

            template = load_template(params.template, self.templates_dir)
            payloads = self.fetcher.fetch_unit_payloads(params.url, template)

            result = SegmentIngestionResult(
                job_id=job_id,
                segment_id=segment.id,
                manifest_key=self._store_manifest(segment, params, payloads),
                download=params.download,
                groups={
                    "image": GroupCounts(expected=len(payloads.images)),
                    "subtitle": GroupCounts(expected=len(payloads.subtitles)),
                    "text": GroupCounts(expected=len(payloads.texts)),
                },
            )

            if params.download:
                self._ingest_groups(segment, payloads, result)

                images = result.groups["image"]
                if images.expected > 0 and images.succeeded == 0:
                    raise TotalBatchFailure(
                        f"None of the {images.expected} images of segment {segment.id} "
                        f"could be ingested"
                    )
                if payloads.total == 0:
                    logger.warning(f"No payloads found on {params.url}")

        except Exception as e:
            logger.error(f"Segment ingestion failed for {params.segment_id}: {e}")
            raise fail_job(self.ledger, job_id, e, segment_id=segment_ref) from e

        self.ledger.finish_job(
            job_id, JobStatus.SUCCESS, output=result.to_output(), segment_id=segment.id
        )
        logger.info(
            f"Segment {segment.id} ingested: {result.success_count} stored, "
            f"{result.failed_count} failed"
        )
        return result

    def _store_manifest(
        self, segment: SegmentRecord, params: ScrapeSegmentParams, payloads: UnitPayloads
    ) -> str:
        key = build_storage_key(
            segment.media.value,
            segment.work_id,
            segment.edition_id,
            SEGMENT_MANIFEST_FILENAME,
            segment_kind=segment.segment_kind.value,
            ordinal=segment.number,
        )
        manifest = {
            "segmentId": segment.id,
            "url": params.url,
            "scrapedAt": datetime.now(timezone.utc).isoformat(),
            "images": payloads.images,
            "subtitles": payloads.subtitles,
            "texts": payloads.texts,
        }
        retry_call(
            self.storage.put,
            key,
            json.dumps(manifest, indent=2, ensure_ascii=False),
            "application/json",
            policy=self.uploader.policy,
            operation="put_manifest",
            sleep=self.sleep,
        )
        logger.info(f"Stored manifest {key}")
        return key

    def _ingest_groups(
        self, segment: SegmentRecord, payloads: UnitPayloads, result: SegmentIngestionResult
    ) -> None:
        items_by_group = {
            "image": payloads.images,
            "subtitle": payloads.subtitles,
            "text": payloads.texts,
        }

        for group, asset_kind, role in PAYLOAD_GROUPS:
            items = items_by_group[group]
            counts = result.groups[group]

            for index, item in enumerate(items):
                if group == "image" and index > 0:
                    self.sleep(self.rate_limit_seconds)

                key = self._asset_key(segment, group, index, item)
                if group == "text":
                    data = item
                else:
                    logger.info(f"Downloading {group} {index + 1}/{len(items)}: {item}")
                    try:
                        data = self.fetcher.fetch_bytes(item)
                    except FetchError as e:
                        logger.error(f"Could not fetch {group} {index + 1} ({item}): {e}")
                        counts.failed += 1
                        continue

                upload = self.uploader.upload(data, key, asset_kind, segment.id, role)
                if upload.ok:
                    counts.succeeded += 1
                    result.stored_keys.append(key)
                else:
                    counts.failed += 1

    @staticmethod
    def _asset_key(segment: SegmentRecord, group: str, index: int, item: str) -> str:
        source_url = None if group == "text" else item
        return build_storage_key(
            segment.media.value,
            segment.work_id,
            segment.edition_id,
            asset_filename(group, index, source_url),
            segment_kind=segment.segment_kind.value,
            ordinal=segment.number,
        )

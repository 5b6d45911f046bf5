"""
Ingestion pipeline.

- jobs.py: typed job payloads and Job lifecycle helpers
- uploader.py: AssetUploader (store + register + attach, retried as one unit)
- segment.py: SegmentIngestor, ingestion of one segment
- work.py: WorkDiscoverer, segment-list discovery of a work page
- bulk.py: BulkSegmentScraper, ingestion of every pending segment of an edition
- subtitles.py: SubtitleDownloader, OpenSubtitles downloads for the episodes of an edition
- runner.py: JobRunner, polling and dispatch of queued Jobs
"""

from .jobs import (
    ScrapeWorkParams,
    ScrapeSegmentParams,
    FetchSubtitlesParams,
    parse_job_input,
    enqueue_job,
)
from .uploader import AssetUploader, UploadResult
from .segment import SegmentIngestor, SegmentIngestionResult
from .work import WorkDiscoverer, WorkDiscoveryResult
from .bulk import BulkSegmentScraper, BulkResult, resolve_edition
from .subtitles import SubtitleDownloader, SubtitleRunResult
from .runner import JobRunner

__all__ = [
    "ScrapeWorkParams",
    "ScrapeSegmentParams",
    "FetchSubtitlesParams",
    "parse_job_input",
    "enqueue_job",
    "AssetUploader",
    "UploadResult",
    "SegmentIngestor",
    "SegmentIngestionResult",
    "WorkDiscoverer",
    "WorkDiscoveryResult",
    "BulkSegmentScraper",
    "BulkResult",
    "resolve_edition",
    "SubtitleDownloader",
    "SubtitleRunResult",
    "JobRunner",
]

"""
Typed job payloads.

Each JobKind has one parameter dataclass. Job input JSON is validated into
that dataclass at the boundary (parse_job_input) so handlers never see an
open dictionary; to_input() produces the stored JSON, tagged with
``scriptType``.

Stored shapes:
    scrape:work    {"scriptType", "url", "media", "provider", "template", "title"}
    scrape:segment {"scriptType", "url", "segmentId", "template", "download"}
    subtitles:edition {"scriptType", "editionId", "seriesName", "languages", "limit"}
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from scraper_worker.db.models import JobKind, JobStatus, MediaKind
from scraper_worker.errors import IngestionError, JobInputError, StructuralError, TemplateError


@dataclass(frozen=True)
class ScrapeWorkParams:
    url: str
    media: MediaKind
    provider: str
    template: str
    title: str

    kind = JobKind.SCRAPE_WORK

    def to_input(self) -> Dict[str, Any]:
        return {
            "scriptType": self.kind.value,
            "url": self.url,
            "media": MediaKind(self.media).value,
            "provider": self.provider,
            "template": self.template,
            "title": self.title,
        }


@dataclass(frozen=True)
class ScrapeSegmentParams:
    url: str
    segment_id: str
    template: str
    download: bool = False

    kind = JobKind.SCRAPE_SEGMENT

    def to_input(self) -> Dict[str, Any]:
        return {
            "scriptType": self.kind.value,
            "url": self.url,
            "segmentId": self.segment_id,
            "template": self.template,
            "download": self.download,
        }


@dataclass(frozen=True)
class FetchSubtitlesParams:
    edition_id: str
    series_name: str
    languages: str = "en"
    limit: Optional[int] = None

    kind = JobKind.FETCH_SUBTITLES

    def to_input(self) -> Dict[str, Any]:
        return {
            "scriptType": self.kind.value,
            "editionId": self.edition_id,
            "seriesName": self.series_name,
            "languages": self.languages,
            "limit": self.limit,
        }


JobParams = Union[ScrapeWorkParams, ScrapeSegmentParams, FetchSubtitlesParams]


def _required_str(data: Dict[str, Any], key: str, kind: JobKind) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise JobInputError(f"{kind.value} input requires a non-empty string {key!r}")
    return value.strip()


def parse_job_input(kind: Union[JobKind, str], data: Any) -> JobParams:
    """
    Validate a stored job input against its job kind.

    Args:
        kind: Job kind of the row
        data: Decoded input JSON

    Returns:
        ScrapeWorkParams or ScrapeSegmentParams

    Raises:
        JobInputError: Unknown kind, mismatching scriptType or invalid fields
    """
    try:
        kind = JobKind(kind)
    except ValueError as e:
        raise JobInputError(f"Unknown job kind: {kind!r}") from e

    if not isinstance(data, dict):
        raise JobInputError(f"{kind.value} input must be an object, got {type(data).__name__}")

    script_type = data.get("scriptType")
    if script_type is not None and script_type != kind.value:
        raise JobInputError(
            f"Input scriptType {script_type!r} does not match job kind {kind.value!r}"
        )

    if kind == JobKind.SCRAPE_WORK:
        media = data.get("media")
        try:
            media = MediaKind(media)
        except ValueError as e:
            raise JobInputError(
                f"Invalid media {media!r}; must be one of: "
                + ", ".join(m.value for m in MediaKind)
            ) from e
        return ScrapeWorkParams(
            url=_required_str(data, "url", kind),
            media=media,
            provider=_required_str(data, "provider", kind),
            template=_required_str(data, "template", kind),
            title=_required_str(data, "title", kind),
        )

    if kind == JobKind.FETCH_SUBTITLES:
        limit = data.get("limit")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise JobInputError(f"{kind.value} input 'limit' must be a positive integer")
        languages = data.get("languages") or "en"
        if not isinstance(languages, str):
            raise JobInputError(f"{kind.value} input 'languages' must be a string")
        return FetchSubtitlesParams(
            edition_id=_required_str(data, "editionId", kind),
            series_name=_required_str(data, "seriesName", kind),
            languages=languages.strip() or "en",
            limit=limit,
        )

    download = data.get("download", False)
    if not isinstance(download, bool):
        raise JobInputError(f"{kind.value} input 'download' must be a boolean")
    return ScrapeSegmentParams(
        url=_required_str(data, "url", kind),
        segment_id=_required_str(data, "segmentId", kind),
        template=_required_str(data, "template", kind),
        download=download,
    )


def start_job(ledger, params: JobParams, job_id: Optional[str] = None) -> str:
    """
    Return the id of the running Job for ``params``.

    A job id handed over by the runner has already been claimed; without one
    a new Job is created and moved to ``running``.
    """
    if job_id is not None:
        return job_id
    job_id = ledger.create_job(params.kind, job_input=params.to_input())
    ledger.claim_job(job_id)
    return job_id


def fail_job(ledger, job_id: str, error: BaseException, **refs) -> IngestionError:
    """Mark a Job failed and return the IngestionError to raise for it."""
    message = str(error) or type(error).__name__
    ledger.finish_job(job_id, JobStatus.FAILED, error=message, **refs)
    if isinstance(error, IngestionError):
        error.job_id = job_id
        return error
    if isinstance(error, (TemplateError, JobInputError)):
        return StructuralError(message, job_id=job_id)
    return IngestionError(message, job_id=job_id)


def enqueue_job(ledger, params: JobParams) -> str:
    """Queue a Job for the runner instead of running it inline."""
    return ledger.create_job(params.kind, job_input=params.to_input())

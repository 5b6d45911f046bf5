"""
Exception hierarchy for the scraper worker.

Component-local failures (one fetch, one upload) are raised as the narrow
types below and retried where they happen. Only exhaustion of a local retry
budget travels upward, where the orchestrators decide the Job disposition
and raise an IngestionError after recording the failure on the Job row.
"""


class WorkerError(RuntimeError):
    """Base error for every failure raised by the worker."""


class ConfigError(WorkerError):
    """Raised when configuration is missing or invalid."""


class TemplateError(WorkerError):
    """Raised when an extraction template is unknown or malformed."""


class FetchError(WorkerError):
    """Raised when a remote fetch fails for good (HTTP 4xx, exhausted retries)."""

    def __init__(self, message: str, url: str = "", status_code: int = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientFetchError(FetchError):
    """Timeout, connection error, HTTP 5xx or 429. Worth retrying."""


class PayloadTooSmallError(TransientFetchError):
    """Response body is below the minimum-size heuristic."""


class SubtitleNotFoundError(FetchError):
    """The subtitle search returned no usable file."""


class DownloadQuotaError(FetchError):
    """The subtitle provider refused a download because the quota is spent."""


class StorageError(WorkerError):
    """Raised when a content-store call fails."""


class LedgerError(WorkerError):
    """Raised when a metadata-ledger call fails."""


class JobInputError(WorkerError):
    """Raised when a job input payload does not match its job kind."""


class IngestionError(WorkerError):
    """Job-level failure, raised after the Job row has been marked failed."""

    def __init__(self, message: str, job_id: str = None):
        super().__init__(message)
        self.job_id = job_id


class StructuralError(IngestionError):
    """Missing segment/edition, malformed input or zero expected items."""


class TotalBatchFailure(IngestionError):
    """No item of an expected group could be ingested."""

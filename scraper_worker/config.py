"""
Configuration settings for the scraper worker.

This module defines the WorkerConfig dataclass holding every tunable of the
worker: ledger URL, content-store credentials, HTTP behaviour and the retry
and rate-limit budgets. Values come from the process environment, optionally
seeded from a ``.env`` file.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from scraper_worker.errors import ConfigError


STORAGE_BACKENDS = ("cloud", "local")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (compatible; ChapterBridgeBot/1.0; +http://example.com/bot)"
)

DEFAULT_OPENSUBTITLES_URL = "https://api.opensubtitles.com/api/v1"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass
class WorkerConfig:
    """Configuration for the scraper worker"""

    # Metadata ledger
    database_url: Optional[str] = None

    # Content store
    storage_backend: str = "cloud"
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket: Optional[str] = None
    local_storage_dir: str = "data/storage"

    # Remote fetching
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 60.0
    rate_limit_ms: int = 500
    min_asset_bytes: int = 100

    # Retry budgets (delay = base * 2^attempt, capped at max_backoff)
    fetch_max_attempts: int = 3
    fetch_base_delay: float = 1.0
    upload_max_attempts: int = 5
    upload_base_delay: float = 2.0
    max_backoff: float = 32.0

    # Job runner / bulk driver
    poll_interval: float = 5.0
    bulk_segment_delay: float = 3.0

    # Subtitle acquisition (OpenSubtitles REST API)
    opensubtitles_api_key: Optional[str] = None
    opensubtitles_base_url: str = DEFAULT_OPENSUBTITLES_URL
    subtitle_languages: str = "en"
    subtitle_segment_delay: float = 1.0

    # Misc
    log_dir: str = "logs"
    templates_dir: Optional[str] = None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "WorkerConfig":
        """Build a configuration from environment variables.

        Args:
            dotenv: If True, load a ``.env`` file first (existing variables win).

        Returns:
            WorkerConfig populated from the environment.

        Raises:
            ConfigError: If a numeric variable cannot be parsed.
        """
        if dotenv:
            load_dotenv()

        try:
            return cls(
                database_url=os.getenv("DATABASE_URL"),
                storage_backend=os.getenv("STORAGE_BACKEND", "cloud").strip().lower(),
                r2_endpoint=os.getenv("R2_ENDPOINT"),
                r2_access_key_id=os.getenv("R2_ACCESS_KEY_ID"),
                r2_secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY"),
                r2_bucket=os.getenv("R2_BUCKET"),
                local_storage_dir=os.getenv("LOCAL_STORAGE_DIR", "data/storage"),
                user_agent=os.getenv("USER_AGENT") or DEFAULT_USER_AGENT,
                request_timeout=_env_float("REQUEST_TIMEOUT", 60.0),
                rate_limit_ms=_env_int("RATE_LIMIT_MS", 500),
                min_asset_bytes=_env_int("MIN_ASSET_BYTES", 100),
                fetch_max_attempts=_env_int("FETCH_MAX_ATTEMPTS", 3),
                fetch_base_delay=_env_float("FETCH_BASE_DELAY", 1.0),
                upload_max_attempts=_env_int("UPLOAD_MAX_ATTEMPTS", 5),
                upload_base_delay=_env_float("UPLOAD_BASE_DELAY", 2.0),
                max_backoff=_env_float("MAX_BACKOFF", 32.0),
                poll_interval=_env_float("POLL_INTERVAL", 5.0),
                bulk_segment_delay=_env_float("BULK_SEGMENT_DELAY", 3.0),
                opensubtitles_api_key=os.getenv("OPENSUBTITLES_API_KEY") or None,
                opensubtitles_base_url=os.getenv("OPENSUBTITLES_BASE_URL") or DEFAULT_OPENSUBTITLES_URL,
                subtitle_languages=os.getenv("SUBTITLE_LANGUAGES") or "en",
                subtitle_segment_delay=_env_float("SUBTITLE_SEGMENT_DELAY", 1.0),
                log_dir=os.getenv("LOG_DIR", "logs"),
                templates_dir=os.getenv("TEMPLATES_DIR") or None,
            )
        except ValueError as e:
            raise ConfigError(f"Invalid numeric configuration value: {e}") from e

    @property
    def rate_limit_seconds(self) -> float:
        return self.rate_limit_ms / 1000.0

    def validate(self) -> List[str]:
        """
        Validate configuration and return any error messages.

        Returns:
            List of problems; empty when the configuration is usable.
        """
        errors = []

        if not self.database_url:
            errors.append("DATABASE_URL is required")

        if self.storage_backend not in STORAGE_BACKENDS:
            errors.append(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, "
                f"got: {self.storage_backend!r}"
            )
        elif self.storage_backend == "cloud":
            for name, value in (
                ("R2_ENDPOINT", self.r2_endpoint),
                ("R2_ACCESS_KEY_ID", self.r2_access_key_id),
                ("R2_SECRET_ACCESS_KEY", self.r2_secret_access_key),
                ("R2_BUCKET", self.r2_bucket),
            ):
                if not value:
                    errors.append(f"{name} is required for cloud storage")

        if self.fetch_max_attempts < 1:
            errors.append("FETCH_MAX_ATTEMPTS must be at least 1")
        if self.upload_max_attempts < 1:
            errors.append("UPLOAD_MAX_ATTEMPTS must be at least 1")
        if self.request_timeout <= 0:
            errors.append("REQUEST_TIMEOUT must be positive")
        if self.rate_limit_ms < 0:
            errors.append("RATE_LIMIT_MS cannot be negative")
        if self.poll_interval <= 0:
            errors.append("POLL_INTERVAL must be positive")

        return errors

    def validate_subtitles(self) -> List[str]:
        """Extra checks for the subtitle commands."""
        errors = []
        if not self.opensubtitles_api_key:
            errors.append("OPENSUBTITLES_API_KEY is required for subtitle downloads")
        if self.subtitle_segment_delay < 0:
            errors.append("SUBTITLE_SEGMENT_DELAY cannot be negative")
        return errors

"""
OpenSubtitles REST client.

Subtitles for episode segments come from the OpenSubtitles API rather than
from a scraped page: a search by series name, season and episode returns
candidate files ranked by download count, and a download call exchanges a
file id for a short-lived link to the subtitle bytes. Downloads count
against a daily quota reported by the API.

Every HTTP step goes through the retry executor with the same transient /
permanent classification as the Unit Fetcher.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from scraper_worker.errors import (
    ConfigError,
    DownloadQuotaError,
    FetchError,
    SubtitleNotFoundError,
    TransientFetchError,
)
from scraper_worker.utils.retry import RetryPolicy, retry_call
from .fetcher import classified_request


logger = logging.getLogger("scraper_worker.opensubtitles")

CLIENT_USER_AGENT = "ScraperWorker v0.1.0"
SEARCH_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 60.0

# HTTP status the download endpoint answers once the quota is spent
QUOTA_STATUS = 406


@dataclass(frozen=True)
class SubtitleFile:
    """One downloadable file of a search result."""

    file_id: int
    file_name: str
    language: str = ""
    download_count: int = 0
    from_trusted: bool = False


@dataclass(frozen=True)
class SubtitleDownload:
    file_name: str
    data: bytes
    remaining: Optional[int] = None


def _parse_results(payload: Dict[str, Any]) -> List[SubtitleFile]:
    files = []
    for result in payload.get("data") or []:
        attributes = result.get("attributes") or {}
        for entry in attributes.get("files") or []:
            if entry.get("file_id") is None:
                continue
            files.append(
                SubtitleFile(
                    file_id=int(entry["file_id"]),
                    file_name=entry.get("file_name") or f"{entry['file_id']}.srt",
                    language=attributes.get("language") or "",
                    download_count=int(attributes.get("download_count") or 0),
                    from_trusted=bool(attributes.get("from_trusted")),
                )
            )
    # Stable sort keeps the API order for equal counts
    return sorted(files, key=lambda f: f.download_count, reverse=True)


class OpenSubtitlesClient:
    """Search and download subtitles through the OpenSubtitles API.

    Args:
        api_key: OpenSubtitles API key (required)
        base_url: API root, e.g. https://api.opensubtitles.com/api/v1
        policy: Retry policy for every HTTP step (retries transient errors only)
        session: requests.Session to use (a new one by default)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.opensubtitles.com/api/v1",
        policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ConfigError("OPENSUBTITLES_API_KEY is required")
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy(retry_on=(TransientFetchError,))
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Api-Key": api_key,
                "Accept": "application/json",
                "User-Agent": CLIENT_USER_AGENT,
            }
        )
        self.sleep = sleep
        self.remaining_downloads: Optional[int] = None

    @classmethod
    def from_config(cls, cfg, session: Optional[requests.Session] = None) -> "OpenSubtitlesClient":
        return cls(
            api_key=cfg.opensubtitles_api_key,
            base_url=cfg.opensubtitles_base_url,
            policy=RetryPolicy(
                max_attempts=cfg.fetch_max_attempts,
                base_delay=cfg.fetch_base_delay,
                max_delay=cfg.max_backoff,
                retry_on=(TransientFetchError,),
            ),
            session=session,
        )

    def _json(self, response: requests.Response, url: str) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}", url=url) from e

    def _search_once(self, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/subtitles"
        response = classified_request(
            lambda: self.session.get(url, params=params, timeout=SEARCH_TIMEOUT), url
        )
        return self._json(response, url)

    def search(
        self,
        query: str,
        season: Optional[int] = None,
        episode: Optional[int] = None,
        languages: str = "en",
    ) -> List[SubtitleFile]:
        """
        Subtitle files matching a series episode, most downloaded first.

        Args:
            query: Series name
            season: Season number (omitted from the query when None)
            episode: Episode number (omitted from the query when None)
            languages: Comma-separated language codes

        Returns:
            Candidate files; empty when nothing matches
        """
        params: Dict[str, Any] = {
            "query": query,
            "languages": languages,
            "order_by": "download_count",
            "order_direction": "desc",
        }
        if season is not None:
            params["season_number"] = season
        if episode is not None:
            params["episode_number"] = episode

        payload = retry_call(
            self._search_once, params, policy=self.policy, operation="subtitle_search", sleep=self.sleep
        )
        files = _parse_results(payload)
        logger.info(f"Found {len(files)} subtitle files for {query} S{season}E{episode} ({languages})")
        return files

    def _request_link(self, file_id: int) -> Dict[str, Any]:
        url = f"{self.base_url}/download"
        try:
            response = classified_request(
                lambda: self.session.post(url, json={"file_id": file_id}, timeout=SEARCH_TIMEOUT), url
            )
        except FetchError as e:
            if e.status_code == QUOTA_STATUS:
                raise DownloadQuotaError(
                    f"Download quota exhausted (file {file_id})", url=url, status_code=e.status_code
                ) from e
            raise
        payload = self._json(response, url)
        if not payload.get("link"):
            raise FetchError(f"No download link returned for file {file_id}", url=url)
        return payload

    def _download_link(self, link: str) -> bytes:
        return classified_request(
            lambda: self.session.get(link, timeout=DOWNLOAD_TIMEOUT), link
        ).content

    def download(self, file: SubtitleFile) -> SubtitleDownload:
        """Exchange a file id for its link and fetch the subtitle bytes."""
        payload = retry_call(
            self._request_link, file.file_id, policy=self.policy, operation="subtitle_link", sleep=self.sleep
        )
        data = retry_call(
            self._download_link, payload["link"], policy=self.policy, operation="subtitle_download", sleep=self.sleep
        )

        remaining = payload.get("remaining")
        if remaining is not None:
            self.remaining_downloads = int(remaining)
        logger.info(
            f"Downloaded {payload.get('file_name') or file.file_name} ({len(data)} bytes, "
            f"{self.remaining_downloads} downloads remaining)"
        )
        return SubtitleDownload(
            file_name=payload.get("file_name") or file.file_name,
            data=data,
            remaining=self.remaining_downloads,
        )

    def fetch_best(
        self,
        query: str,
        season: Optional[int],
        episode: Optional[int],
        languages: str = "en",
    ) -> SubtitleDownload:
        """Download the most downloaded match; raises SubtitleNotFoundError when none exists."""
        files = self.search(query, season=season, episode=episode, languages=languages)
        if not files:
            raise SubtitleNotFoundError(f"No subtitles found for {query} S{season}E{episode}")
        return self.download(files[0])

"""Test doubles shared by the pipeline tests."""

from typing import Dict, List, Optional, Union

from scraper_worker.errors import FetchError, SubtitleNotFoundError
from scraper_worker.ingestion.fetcher import BaseUnitFetcher, UnitList, UnitPayloads
from scraper_worker.ingestion.opensubtitles import SubtitleDownload


def no_sleep(_seconds: float) -> None:
    pass


class FakeFetcher(BaseUnitFetcher):
    """In-memory Unit Fetcher.

    ``blobs`` maps URLs to bytes, or to an exception instance raised on
    every download of that URL. Unknown URLs answer HTTP 404.
    """

    def __init__(
        self,
        units: Optional[UnitList] = None,
        payloads: Optional[UnitPayloads] = None,
        blobs: Optional[Dict[str, Union[bytes, Exception]]] = None,
        page_error: Optional[Exception] = None,
    ):
        self.units = units or UnitList()
        self.payloads = payloads or UnitPayloads()
        self.blobs = blobs or {}
        self.page_error = page_error
        self.downloads: List[str] = []
        self.pages: List[str] = []

    def discover_units(self, source_url, template):
        self.pages.append(source_url)
        if self.page_error:
            raise self.page_error
        return self.units

    def fetch_unit_payloads(self, unit_url, template):
        self.pages.append(unit_url)
        if self.page_error:
            raise self.page_error
        return self.payloads

    def fetch_bytes(self, url):
        self.downloads.append(url)
        blob = self.blobs.get(url)
        if blob is None:
            raise FetchError(f"HTTP 404 for {url}", url=url, status_code=404)
        if isinstance(blob, Exception):
            raise blob
        return blob


class FakeSubtitleClient:
    """Stands in for OpenSubtitlesClient.

    ``files`` maps ``(season, episode)`` to the bytes returned for that
    episode, or to an exception instance raised for it. Unknown episodes
    raise SubtitleNotFoundError.
    """

    def __init__(self, files=None, remaining=None):
        self.files = files or {}
        self.remaining_downloads = remaining
        self.calls = []

    def fetch_best(self, query, season, episode, languages="en"):
        self.calls.append((query, season, episode, languages))
        entry = self.files.get((season, episode))
        if entry is None:
            raise SubtitleNotFoundError(f"No subtitles found for {query} S{season}E{episode}")
        if isinstance(entry, Exception):
            raise entry
        if self.remaining_downloads is not None:
            self.remaining_downloads -= 1
        return SubtitleDownload(
            file_name=f"{query}.S{season:02d}E{episode:02d}.srt",
            data=entry,
            remaining=self.remaining_downloads,
        )

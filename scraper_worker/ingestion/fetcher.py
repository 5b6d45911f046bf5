"""
Unit Fetcher: reads work pages and segment pages from the provider site.

The fetcher is the boundary to the remote source. It turns a work page into
an ordered list of units (chapters/episodes) and a segment page into its
payload groups (image URLs, subtitle URLs, text blocks), and downloads raw
payload bytes. Every request goes through the retry executor; transient
failures (timeouts, connection errors, HTTP 429/5xx, undersized bodies) are
retried, other HTTP errors fail immediately. Total failure is reported as a
FetchError, never as partial data.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from scraper_worker.errors import FetchError, PayloadTooSmallError, TransientFetchError
from scraper_worker.utils.retry import RetryPolicy, retry_call
from .templates import TemplateConfig


logger = logging.getLogger("scraper_worker.fetcher")

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
ASSET_ACCEPT = "image/webp,image/*,*/*;q=0.8"

# Selectors used by the wp-manga extractor when the template leaves them out
WP_MANGA_CHAPTERS = ".wp-manga-chapter a"
WP_MANGA_IMAGES = "img.wp-manga-chapter-img, .reading-content img"

# OpenSubtitles series pages: one panel per season, one entry per episode
OPENSUBTITLES_SEASONS = "#accordion-list > li.panel"
OPENSUBTITLES_SEASON_LABEL = ".box-sub-season-link"
OPENSUBTITLES_EPISODES = ".list-subtitles-inside > li.box-sub"
OPENSUBTITLES_EPISODE_CODE = ".label-default"
OPENSUBTITLES_EPISODE_LINK = ".box-sub-headline a"
OPENSUBTITLES_DOWNLOADS = "a.download-link"

IMAGE_SOURCE_ATTRIBUTES = ("src", "data-src", "data-lazy-src", "data-cfsrc")

CHAPTER_TEXT_RE = re.compile(r"chapter\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
CHAPTER_HREF_RE = re.compile(r"chapter[_-]?(\d+(?:\.\d+)?)", re.IGNORECASE)
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
SEASON_RE = re.compile(r"Season\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class UnitRef:
    """One discovered unit of a work page."""

    ordinal: float
    title: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {"ordinal": self.ordinal, "title": self.title, "url": self.url}


@dataclass
class UnitList:
    units: List[UnitRef] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UnitPayloads:
    """Payload groups of one segment page, in page order."""

    images: List[str] = field(default_factory=list)
    subtitles: List[str] = field(default_factory=list)
    texts: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.images) + len(self.subtitles) + len(self.texts)


class BaseUnitFetcher(ABC):
    """Interface of the remote-source collaborator."""

    @abstractmethod
    def discover_units(self, source_url: str, template: TemplateConfig) -> UnitList:
        """Ordered units of a work page; raises FetchError on total failure."""

    @abstractmethod
    def fetch_unit_payloads(self, unit_url: str, template: TemplateConfig) -> UnitPayloads:
        """Payload groups of a segment page; raises FetchError on total failure."""

    @abstractmethod
    def fetch_bytes(self, url: str) -> bytes:
        """Raw bytes of one payload; raises FetchError on total failure."""


def _parse_number(text: Optional[str], pattern: "re.Pattern") -> Optional[float]:
    if not text:
        return None
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1) if match.groups() else match.group(0)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _first_number(pattern: "re.Pattern", *texts: Optional[str]) -> Optional[float]:
    for text in texts:
        number = _parse_number(text, pattern)
        if number is not None:
            return number
    return None


def classified_request(send: Callable[[], requests.Response], url: str) -> requests.Response:
    """
    Perform one HTTP attempt and map its failure onto the fetch error types.

    Timeouts, connection errors, HTTP 429 and 5xx raise TransientFetchError;
    any other 4xx raises FetchError.
    """
    try:
        response = send()
    except (requests.Timeout, requests.ConnectionError) as e:
        raise TransientFetchError(f"{type(e).__name__} fetching {url}: {e}", url=url) from e
    except requests.RequestException as e:
        raise FetchError(f"Request for {url} failed: {e}", url=url) from e

    status = response.status_code
    if status == 429 or status >= 500:
        raise TransientFetchError(f"HTTP {status} for {url}", url=url, status_code=status)
    if status >= 400:
        raise FetchError(f"HTTP {status} for {url}", url=url, status_code=status)
    return response


class HtmlUnitFetcher(BaseUnitFetcher):
    """requests + BeautifulSoup implementation of the Unit Fetcher.

    Args:
        user_agent: User-Agent header sent with every request
        timeout: Absolute per-request timeout in seconds
        policy: Retry policy for pages and downloads (retries transient errors only)
        min_asset_bytes: Downloads shorter than this are treated as failed attempts
        session: requests.Session to use (a new one by default)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        user_agent: str,
        timeout: float = 60.0,
        policy: Optional[RetryPolicy] = None,
        min_asset_bytes: int = 0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.policy = policy or RetryPolicy(retry_on=(TransientFetchError,))
        self.min_asset_bytes = min_asset_bytes
        self.session = session or requests.Session()
        self.sleep = sleep

    @classmethod
    def from_config(cls, cfg, session: Optional[requests.Session] = None) -> "HtmlUnitFetcher":
        return cls(
            user_agent=cfg.user_agent,
            timeout=cfg.request_timeout,
            policy=RetryPolicy(
                max_attempts=cfg.fetch_max_attempts,
                base_delay=cfg.fetch_base_delay,
                max_delay=cfg.max_backoff,
                retry_on=(TransientFetchError,),
            ),
            min_asset_bytes=cfg.min_asset_bytes,
            session=session,
        )

    # ------------------------------------------------------------------ #
    # HTTP
    # ------------------------------------------------------------------ #

    def _headers(self, url: str, accept: str) -> Dict[str, str]:
        parsed = urlparse(url)
        return {
            "User-Agent": self.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": f"{parsed.scheme}://{parsed.netloc}/",
        }

    def _get(self, url: str, accept: str) -> requests.Response:
        """Single GET attempt with status-code classification."""
        return classified_request(
            lambda: self.session.get(url, headers=self._headers(url, accept), timeout=self.timeout),
            url,
        )

    def _fetch_page(self, url: str) -> BeautifulSoup:
        response = retry_call(
            self._get, url, HTML_ACCEPT, policy=self.policy, operation="fetch_page", sleep=self.sleep
        )
        return BeautifulSoup(response.text, "html.parser")

    def _download(self, url: str) -> bytes:
        data = self._get(url, ASSET_ACCEPT).content
        if len(data) < self.min_asset_bytes:
            raise PayloadTooSmallError(
                f"Payload from {url} is {len(data)} bytes (minimum {self.min_asset_bytes})",
                url=url,
            )
        return data

    def fetch_bytes(self, url: str) -> bytes:
        return retry_call(
            self._download, url, policy=self.policy, operation="fetch_bytes", sleep=self.sleep
        )

    # ------------------------------------------------------------------ #
    # Work page
    # ------------------------------------------------------------------ #

    def discover_units(self, source_url: str, template: TemplateConfig) -> UnitList:
        logger.info(f"Discovering units of {source_url} with template {template.name!r}")
        soup = self._fetch_page(source_url)

        if template.extractor == "opensubtitles":
            return self._discover_episodes(soup, source_url)

        default = WP_MANGA_CHAPTERS if template.extractor == "wp-manga" else None
        selector = template.selector("chapters", default)
        if not selector:
            logger.warning(f"Template {template.name!r} defines no chapters selector")
            return UnitList()

        number_regex = template.pattern("chapterNumberRegex")
        number_selector = template.selector("chapterNumber")
        title_selector = template.selector("chapterTitle")

        units = []
        seen = set()
        for index, element in enumerate(soup.select(selector)):
            href = element.get("href")
            if not href:
                continue
            url = urljoin(source_url, href.strip())
            if url in seen:
                continue
            seen.add(url)

            title = element.get_text(" ", strip=True)
            if title_selector:
                title_element = element.select_one(title_selector)
                if title_element:
                    title = title_element.get_text(" ", strip=True)

            ordinal = None
            if number_regex:
                ordinal = _first_number(number_regex, title, href)
            if ordinal is None and number_selector:
                number_element = element.select_one(number_selector)
                if number_element:
                    ordinal = _parse_number(number_element.get_text(strip=True), NUMBER_RE)
            if ordinal is None:
                ordinal = _first_number(CHAPTER_TEXT_RE, title)
                if ordinal is None:
                    ordinal = _first_number(CHAPTER_HREF_RE, href)
            if ordinal is None:
                ordinal = float(index + 1)

            units.append(UnitRef(ordinal=ordinal, title=title or f"Chapter {ordinal:g}", url=url))

        units.sort(key=lambda unit: unit.ordinal)

        metadata = {}
        if soup.title and soup.title.string:
            metadata["pageTitle"] = soup.title.string.strip()

        logger.info(f"Discovered {len(units)} units on {source_url}")
        return UnitList(units=units, metadata=metadata)

    def _discover_episodes(self, soup: BeautifulSoup, source_url: str) -> UnitList:
        """
        Episodes of an OpenSubtitles series page.

        Episodes are numbered sequentially across seasons and titled with
        their ``SxxEyy`` code; ``metadata["seasons"]`` maps each episode URL
        to its season number.
        """
        units = []
        seasons = {}
        for panel in soup.select(OPENSUBTITLES_SEASONS):
            label = panel.select_one(OPENSUBTITLES_SEASON_LABEL)
            match = SEASON_RE.search(label.get_text(" ", strip=True)) if label else None
            if not match:
                logger.warning(f"Season panel without a season number on {source_url}")
                continue
            season = int(match.group(1))

            for episode in panel.select(OPENSUBTITLES_EPISODES):
                code = episode.select_one(OPENSUBTITLES_EPISODE_CODE)
                link = episode.select_one(OPENSUBTITLES_EPISODE_LINK)
                href = link.get("href") if link else None
                code_text = code.get_text(strip=True) if code else ""
                if not href or not code_text:
                    continue
                url = urljoin(source_url, href.strip())
                if url in seasons:
                    continue
                seasons[url] = season
                units.append(UnitRef(ordinal=float(len(units) + 1), title=code_text, url=url))

        metadata: Dict[str, Any] = {"seasons": seasons}
        heading = soup.find("h1")
        if heading and heading.get_text(strip=True):
            metadata["pageTitle"] = heading.get_text(" ", strip=True)

        logger.info(f"Discovered {len(units)} episodes in {len(set(seasons.values()))} seasons on {source_url}")
        return UnitList(units=units, metadata=metadata)

    # ------------------------------------------------------------------ #
    # Segment page
    # ------------------------------------------------------------------ #

    def fetch_unit_payloads(self, unit_url: str, template: TemplateConfig) -> UnitPayloads:
        logger.info(f"Reading payloads of {unit_url} with template {template.name!r}")
        soup = self._fetch_page(unit_url)
        payloads = UnitPayloads()

        default = WP_MANGA_IMAGES if template.extractor == "wp-manga" else None
        image_selector = template.selector("image", default)
        url_filter = template.pattern("imageUrlPattern")
        if image_selector:
            for element in soup.select(image_selector):
                src = self._image_source(element)
                if not src:
                    continue
                url = urljoin(unit_url, src)
                if url_filter and not url_filter.search(url):
                    continue
                payloads.images.append(url)

        default = OPENSUBTITLES_DOWNLOADS if template.extractor == "opensubtitles" else None
        subtitle_selector = template.selector("subtitle", default)
        if subtitle_selector:
            for element in soup.select(subtitle_selector):
                src = (element.get("src") or element.get("href") or "").strip()
                if src:
                    payloads.subtitles.append(urljoin(unit_url, src))

        text_selector = template.selector("textContainer") or template.selector("text")
        if text_selector:
            for element in soup.select(text_selector):
                text = element.get_text().strip()
                if text:
                    payloads.texts.append(text)

        logger.info(
            f"Found {len(payloads.images)} images, {len(payloads.subtitles)} subtitles "
            f"and {len(payloads.texts)} text blocks on {unit_url}"
        )
        return payloads

    @staticmethod
    def _image_source(element) -> Optional[str]:
        """First usable source of an <img>, honouring lazy-loading attributes."""
        for attribute in IMAGE_SOURCE_ATTRIBUTES:
            value = (element.get(attribute) or "").strip()
            if value and not value.startswith("data:"):
                return value
        return None

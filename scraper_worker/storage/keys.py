"""
Storage key grammar.

Every raw payload lives under

    raw/<media>/<workId>/<editionId>/<segmentKind>-<ordinal>/<filename>

and edition-level manifests drop the segment directory:

    raw/<media>/<workId>/<editionId>/segments.json

Filenames inside a segment directory follow the group conventions
``page-001.jpg`` (images), ``sub-01.vtt`` (subtitles) and ``text-01.txt``
(text blocks); the per-segment manifest is ``assets.json``.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from pathlib import PurePosixPath
from typing import Optional, Union
from urllib.parse import urlparse

from scraper_worker.db.models import AssetKind, AssetRole


RAW_PREFIX = "raw"
WORK_MANIFEST_FILENAME = "segments.json"
SEGMENT_MANIFEST_FILENAME = "assets.json"
MANIFEST_FILENAMES = {WORK_MANIFEST_FILENAME, SEGMENT_MANIFEST_FILENAME}

KEY_PATTERN = re.compile(
    r"^raw/(?P<media>[^/]+)/(?P<work_id>[^/]+)/(?P<edition_id>[^/]+)/"
    r"(?P<segment_kind>chapter|episode)-(?P<ordinal>\d+(?:\.\d+)?)/(?P<filename>[^/]+)$"
)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}
SUBTITLE_EXTENSIONS = {".srt", ".vtt", ".ass", ".ssa", ".sub"}
HTML_EXTENSIONS = {".html", ".htm"}

# Default extension per payload group when the source URL has none
DEFAULT_EXTENSIONS = {"image": ".webp", "subtitle": ".vtt", "text": ".txt"}


@dataclass(frozen=True)
class ParsedKey:
    media: str
    work_id: str
    edition_id: str
    segment_kind: str
    ordinal: float
    filename: str
    key: str


def format_ordinal(ordinal: Union[int, float, Decimal, str]) -> str:
    """Render an ordinal for a key: ``5`` for 5 or 5.0, ``5.5`` for 5.5."""
    value = Decimal(str(ordinal))
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def segment_directory(segment_kind: str, ordinal) -> str:
    return f"{segment_kind}-{format_ordinal(ordinal)}"


def build_storage_key(
    media: str,
    work_id: str,
    edition_id: str,
    filename: str,
    segment_kind: Optional[str] = None,
    ordinal=None,
) -> str:
    """
    Build a storage key.

    Args:
        media: Media kind of the edition (novel, manhwa, anime).
        work_id: Work id.
        edition_id: Edition id.
        filename: Final path component.
        segment_kind: chapter/episode; omit for edition-level files.
        ordinal: Segment ordinal; required with segment_kind.

    Returns:
        The storage key.
    """
    base = f"{RAW_PREFIX}/{media}/{work_id}/{edition_id}"
    if segment_kind is None:
        return f"{base}/{filename}"
    if ordinal is None:
        raise ValueError("An ordinal is required for a segment-level key")
    return f"{base}/{segment_directory(segment_kind, ordinal)}/{filename}"


def parse_storage_key(key: str) -> Optional[ParsedKey]:
    """Parse a segment-level key; returns None for keys outside the grammar."""
    match = KEY_PATTERN.match(key)
    if not match:
        return None
    return ParsedKey(
        media=match.group("media"),
        work_id=match.group("work_id"),
        edition_id=match.group("edition_id"),
        segment_kind=match.group("segment_kind"),
        ordinal=float(match.group("ordinal")),
        filename=match.group("filename"),
        key=key,
    )


def _url_extension(url: str) -> str:
    try:
        path = urlparse(url).path
    except ValueError:
        return ""
    return PurePosixPath(path).suffix.lower()


def asset_filename(group: str, index: int, source_url: Optional[str] = None) -> str:
    """
    Filename for the ``index``-th (0-based) item of a payload group.

    Args:
        group: "image", "subtitle" or "text".
        index: Position of the item within its group.
        source_url: Remote URL, used to keep the original extension.

    Returns:
        ``page-###<ext>``, ``sub-##<ext>`` or ``text-##.txt``.
    """
    number = index + 1
    if group == "text":
        return f"text-{number:02d}.txt"

    ext = (_url_extension(source_url) if source_url else "") or DEFAULT_EXTENSIONS[group]
    if group == "image":
        return f"page-{number:03d}{ext}"
    if group == "subtitle":
        return f"sub-{number:02d}{ext}"
    raise ValueError(f"Unknown payload group: {group!r}")


def classify_filename(filename: str) -> tuple[AssetKind, AssetRole]:
    """Asset kind and segment role implied by a stored filename."""
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return AssetKind.RAW_IMAGE, AssetRole.PAGE
    if suffix in SUBTITLE_EXTENSIONS:
        return AssetKind.RAW_SUBTITLE, AssetRole.SUBTITLE
    if suffix in HTML_EXTENSIONS:
        return AssetKind.RAW_HTML, AssetRole.CONTENT
    if suffix == ".txt":
        return AssetKind.CLEANED_TEXT, AssetRole.TEXT
    return AssetKind.OTHER, AssetRole.CONTENT

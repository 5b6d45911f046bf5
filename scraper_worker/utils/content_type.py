"""
Content-type detection for uploaded payloads.

Magic bytes win over the filename extension; an unknown extension falls back
to ``application/octet-stream``.
"""

from pathlib import PurePosixPath
from typing import Optional


DEFAULT_CONTENT_TYPE = "application/octet-stream"

# (prefix, content type), checked in order
MAGIC_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG", "image/png"),
    (b"RIFF", "image/webp"),
    (b"GIF8", "image/gif"),
)

EXTENSION_CONTENT_TYPES = {
    ".srt": "text/plain",
    ".vtt": "text/vtt",
    ".ass": "text/x-ssa",
    ".ssa": "text/x-ssa",
    ".json": "application/json",
    ".txt": "text/plain",
    ".html": "text/plain",
}


def sniff_content_type(data: Optional[bytes]) -> Optional[str]:
    """Return the image content type announced by the payload's magic bytes."""
    if not data:
        return None
    for signature, content_type in MAGIC_SIGNATURES:
        if data.startswith(signature):
            return content_type
    return None


def content_type_from_filename(filename: str) -> str:
    """Map a filename (or storage key) extension to a content type."""
    suffix = PurePosixPath(filename).suffix.lower()
    return EXTENSION_CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


def detect_content_type(data: Optional[bytes], filename: str) -> str:
    """
    Determine the content type of a payload.

    Args:
        data: Payload bytes (may be empty when only the name is known).
        filename: Filename or storage key carrying the extension.

    Returns:
        The sniffed image type, else the extension mapping, else
        application/octet-stream.
    """
    return sniff_content_type(data) or content_type_from_filename(filename)


# Without the bytes, image types can only come from the extension
NAME_ONLY_CONTENT_TYPES = {
    **EXTENSION_CONTENT_TYPES,
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".html": "text/html",
    ".htm": "text/html",
    ".sub": "text/plain",
}


def guess_content_type_from_key(key: str) -> str:
    """Content type of a stored object known only by its key (backfills)."""
    suffix = PurePosixPath(key).suffix.lower()
    return NAME_ONLY_CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)

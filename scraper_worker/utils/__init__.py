"""Shared helpers: fingerprinting, retry executor, content-type detection."""

from .hash import digest
from .retry import RetryPolicy, retry_call
from .content_type import (
    DEFAULT_CONTENT_TYPE,
    detect_content_type,
    sniff_content_type,
    content_type_from_filename,
    guess_content_type_from_key,
)

__all__ = [
    "digest",
    "RetryPolicy",
    "retry_call",
    "DEFAULT_CONTENT_TYPE",
    "detect_content_type",
    "sniff_content_type",
    "content_type_from_filename",
    "guess_content_type_from_key",
]

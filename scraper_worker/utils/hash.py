"""Content fingerprinting for stored payloads."""

import hashlib
from typing import Union


def digest(data: Union[bytes, bytearray, memoryview, str]) -> tuple[str, int]:
    """
    Compute the SHA-256 hex digest and byte length of a payload.

    Text is encoded as UTF-8 before hashing, so a text block and its encoded
    bytes fingerprint identically.

    Args:
        data: Payload bytes (or text).

    Returns:
        Tuple of (hex digest, byte length).

    Raises:
        TypeError: If data is not bytes-like or str.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    elif isinstance(data, (bytearray, memoryview)):
        data = bytes(data)
    elif not isinstance(data, bytes):
        raise TypeError(f"digest() expects bytes or str, got {type(data).__name__}")

    return hashlib.sha256(data).hexdigest(), len(data)

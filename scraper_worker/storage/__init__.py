"""
Storage module for the content store.

Provides the abstract content-store interface, an S3-compatible cloud
implementation (Cloudflare R2) and a local-filesystem implementation, plus
the storage key grammar shared by every writer.
"""

from .base import BaseStorage
from .cloud import CloudStorage
from .local import LocalStorage
from .keys import (
    build_storage_key,
    parse_storage_key,
    asset_filename,
    classify_filename,
    format_ordinal,
    ParsedKey,
    RAW_PREFIX,
    WORK_MANIFEST_FILENAME,
    SEGMENT_MANIFEST_FILENAME,
    MANIFEST_FILENAMES,
)

__all__ = [
    "BaseStorage",
    "CloudStorage",
    "LocalStorage",
    "create_storage",
    "build_storage_key",
    "parse_storage_key",
    "asset_filename",
    "classify_filename",
    "format_ordinal",
    "ParsedKey",
    "RAW_PREFIX",
    "WORK_MANIFEST_FILENAME",
    "SEGMENT_MANIFEST_FILENAME",
    "MANIFEST_FILENAMES",
]


def create_storage(cfg) -> BaseStorage:
    """Instantiate the content store selected by ``cfg.storage_backend``."""
    if cfg.storage_backend == "local":
        return LocalStorage(cfg.local_storage_dir)
    return CloudStorage.from_config(cfg)

"""
Database package for the metadata ledger.

Structure:
- models.py: SQLAlchemy ORM models (Work, Edition, Segment, Asset, SegmentAsset, Job) and enums
- database.py: Engine creation, session factory and session_scope() context manager
- ledger.py: MetadataLedger, the operations the pipeline performs on the ledger

All models inherit from a common Base declarative class and follow consistent
naming conventions (singular class names, plural table names).
"""

from .models import (
    Base,
    Work,
    Edition,
    Segment,
    Asset,
    SegmentAsset,
    Job,
    MediaKind,
    SegmentKind,
    AssetKind,
    AssetRole,
    UploadSource,
    JobKind,
    JobStatus,
)
from .database import (
    create_db_engine,
    create_session_factory,
    session_scope,
    check_database_connection,
    init_database,
)
from .ledger import (
    MetadataLedger,
    EditionRecord,
    SegmentRecord,
    AssetRecord,
    JobRecord,
)

__all__ = [
    # Models
    "Base",
    "Work",
    "Edition",
    "Segment",
    "Asset",
    "SegmentAsset",
    "Job",
    "MediaKind",
    "SegmentKind",
    "AssetKind",
    "AssetRole",
    "UploadSource",
    "JobKind",
    "JobStatus",
    # Database utilities
    "create_db_engine",
    "create_session_factory",
    "session_scope",
    "check_database_connection",
    "init_database",
    # Ledger
    "MetadataLedger",
    "EditionRecord",
    "SegmentRecord",
    "AssetRecord",
    "JobRecord",
]

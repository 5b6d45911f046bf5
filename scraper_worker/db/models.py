"""
SQLAlchemy ORM models for the metadata ledger.

This module defines the ledger schema using SQLAlchemy's declarative base.
All models inherit from Base and use consistent naming conventions
(singular class names, plural table names).

Models:
    Work: A titled creative property (novel/manhwa/anime series)
    Edition: One provider's rendition of a Work for one media kind
    Segment: One chapter/episode of an Edition
    Asset: One stored payload in the content store
    SegmentAsset: Junction linking a Segment to an Asset with a role
    Job: Append-only audit row for one ingestion attempt

Enums:
    MediaKind, SegmentKind, AssetKind, AssetRole, UploadSource, JobKind, JobStatus
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum

import uuid_utils as uuid
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def new_id() -> str:
    """Time-ordered identifier (UUID7) used as primary key for every table."""
    return str(uuid.uuid7())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, **kwargs) -> Enum:
    # Store enum values ("raw_image"), not member names, in a portable VARCHAR
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
        **kwargs,
    )


class MediaKind(str, PyEnum):
    NOVEL = "novel"
    MANHWA = "manhwa"
    ANIME = "anime"


class SegmentKind(str, PyEnum):
    CHAPTER = "chapter"
    EPISODE = "episode"

    @classmethod
    def for_media(cls, media: MediaKind) -> "SegmentKind":
        """Anime editions are split into episodes, everything else into chapters."""
        return cls.EPISODE if MediaKind(media) == MediaKind.ANIME else cls.CHAPTER


class AssetKind(str, PyEnum):
    RAW_IMAGE = "raw_image"
    RAW_SUBTITLE = "raw_subtitle"
    RAW_HTML = "raw_html"
    OCR_JSON = "ocr_json"
    CLEANED_TEXT = "cleaned_text"
    CLEANED_JSON = "cleaned_json"
    OTHER = "other"


class AssetRole(str, PyEnum):
    PAGE = "page"
    SUBTITLE = "subtitle"
    TEXT = "text"
    CONTENT = "content"


class UploadSource(str, PyEnum):
    PIPELINE = "pipeline"
    MANUAL = "manual"
    IMPORT = "import"


class JobKind(str, PyEnum):
    """
    Enum of job kinds understood by the job runner.

    SCRAPE_WORK: discover the segment list of a work page
    SCRAPE_SEGMENT: ingest the payloads of one segment
    FETCH_SUBTITLES: download subtitles for the episodes of an edition
    """

    SCRAPE_WORK = "scrape:work"
    SCRAPE_SEGMENT = "scrape:segment"
    FETCH_SUBTITLES = "subtitles:edition"


class JobStatus(str, PyEnum):
    """
    Job lifecycle: QUEUED -> RUNNING -> SUCCESS | FAILED.

    Entering RUNNING increments the attempt counter and stamps started_at;
    entering a terminal state stamps finished_at.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCESS, JobStatus.FAILED)


class CreatedAtMixin:
    """
    Mixin adding a creation timestamp.

    The value is set client-side (microsecond resolution) so that rows
    created in quick succession still order correctly; the server default
    covers rows inserted by hand.
    """

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class Work(Base, CreatedAtMixin):
    __tablename__ = "works"

    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String, nullable=False, unique=True)

    editions = relationship("Edition", back_populates="work")

    def __repr__(self):
        return f"<Work(id={self.id}, title='{self.title}')>"


class Edition(Base, CreatedAtMixin):
    """
    One provider's version of a Work for one media kind.

    Created lazily the first time a work page is discovered; unique per
    (work, provider, media kind).
    """

    __tablename__ = "editions"
    __table_args__ = (
        UniqueConstraint("work_id", "provider", "media_type", name="uq_editions_work_provider_media"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    work_id = Column(
        String(36), ForeignKey("works.id", ondelete="CASCADE"), nullable=False, index=True
    )
    media_type = Column(_enum_column(MediaKind), nullable=False)
    provider = Column(String, nullable=False)
    canonical_url = Column(String, nullable=True)
    is_official = Column(Boolean, nullable=False, default=False)

    work = relationship("Work", back_populates="editions")
    segments = relationship("Segment", back_populates="edition")

    def __repr__(self):
        return (
            f"<Edition(id={self.id}, work_id={self.work_id}, media={self.media_type.value}, "
            f"provider='{self.provider}')>"
        )


class Segment(Base, CreatedAtMixin):
    """
    One chapter/episode of an Edition.

    (edition, segment kind, ordinal) is unique; re-discovery corrects the
    title and URL of the existing row instead of adding a second one.
    Ordinals may be fractional (e.g. 12.5 for a sub-chapter).
    """

    __tablename__ = "segments"
    __table_args__ = (
        UniqueConstraint("edition_id", "segment_type", "number", name="uq_segments_edition_type_number"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    edition_id = Column(
        String(36), ForeignKey("editions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    segment_type = Column(_enum_column(SegmentKind), nullable=False)
    number = Column(Numeric(12, 3, asdecimal=False), nullable=False)
    title = Column(String, nullable=True)
    canonical_url = Column(String, nullable=True)

    edition = relationship("Edition", back_populates="segments")
    asset_links = relationship("SegmentAsset", back_populates="segment")

    def __repr__(self):
        return (
            f"<Segment(id={self.id}, edition_id={self.edition_id}, "
            f"{self.segment_type.value}={self.number})>"
        )


class Asset(Base, CreatedAtMixin):
    """
    One payload stored in the content store.

    storage_key is unique. sha256 is indexed for de-duplication lookups
    but deliberately not unique: the same bytes may live under two keys.
    """

    __tablename__ = "assets"

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String, nullable=False, default="cloudflare_r2")
    bucket = Column(String, nullable=True)
    storage_key = Column(String, nullable=False, unique=True)
    asset_type = Column(_enum_column(AssetKind), nullable=False, index=True)
    content_type = Column(String, nullable=True)
    bytes = Column(BigInteger, nullable=True)
    sha256 = Column(String(64), nullable=True, index=True)
    upload_source = Column(
        _enum_column(UploadSource), nullable=False, default=UploadSource.MANUAL
    )

    def __repr__(self):
        return f"<Asset(id={self.id}, key='{self.storage_key}', type={self.asset_type.value})>"


class SegmentAsset(Base, CreatedAtMixin):
    """Junction row; (segment, asset) is the primary key."""

    __tablename__ = "segment_assets"

    segment_id = Column(
        String(36), ForeignKey("segments.id", ondelete="CASCADE"), primary_key=True
    )
    asset_id = Column(
        String(36), ForeignKey("assets.id", ondelete="CASCADE"), primary_key=True
    )
    role = Column(String(16), nullable=True)

    segment = relationship("Segment", back_populates="asset_links")
    asset = relationship("Asset")


class Job(Base, CreatedAtMixin):
    """
    One tracked attempt at an ingestion operation.

    Attributes:
        job_type: JobKind value selecting the handler
        status: JobStatus lifecycle position
        source_id/work_id/edition_id/segment_id: Optional context references
        input: Job parameters (JSON, shape depends on job_type)
        output: Result counts on success (JSON), NULL on failure
        attempt: Number of times the job entered RUNNING
        error: Error text of a failed attempt
        started_at/finished_at: Transition timestamps

    Jobs are never deleted; the table is the audit log of work attempts.
    """

    __tablename__ = "pipeline_jobs"
    __table_args__ = (Index("idx_pipeline_jobs_status_created", "status", "created_at"),)

    id = Column(String(36), primary_key=True, default=new_id)
    # Plain string so that rows of an unknown kind can still be loaded and failed
    job_type = Column(String(32), nullable=False, index=True)
    status = Column(
        _enum_column(JobStatus),
        nullable=False,
        default=JobStatus.QUEUED,
        server_default=JobStatus.QUEUED.value,
    )
    source_id = Column(String(36), nullable=True)
    work_id = Column(String(36), ForeignKey("works.id", ondelete="SET NULL"), nullable=True)
    edition_id = Column(
        String(36), ForeignKey("editions.id", ondelete="SET NULL"), nullable=True
    )
    segment_id = Column(
        String(36), ForeignKey("segments.id", ondelete="SET NULL"), nullable=True
    )
    input = Column(JSON, nullable=False, default=dict)
    output = Column(JSON, nullable=True)
    attempt = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<Job(id={self.id}, type={self.job_type}, status={self.status.value}, "
            f"attempt={self.attempt})>"
        )

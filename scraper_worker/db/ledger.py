"""
Metadata ledger operations.

MetadataLedger wraps a session factory and exposes the relational operations
the pipeline needs: idempotent upserts of the Work -> Edition -> Segment
hierarchy, insert-or-fetch of Assets by storage key, idempotent
Segment/Asset attachment and the Job lifecycle.

Unique-key races are closed with the database's own conflict handling
(``INSERT ... ON CONFLICT``) rather than a read-then-write sequence. Results
are returned as plain dataclasses so callers never hold detached ORM rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, insert as sa_insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .models import (
    Asset,
    AssetKind,
    AssetRole,
    Edition,
    Job,
    JobKind,
    JobStatus,
    MediaKind,
    Segment,
    SegmentAsset,
    SegmentKind,
    UploadSource,
    Work,
    new_id,
    utcnow,
)


logger = logging.getLogger("scraper_worker.ledger")

DEFAULT_ASSET_PROVIDER = "cloudflare_r2"


@dataclass(frozen=True)
class EditionRecord:
    id: str
    work_id: str
    media: MediaKind
    provider: str
    canonical_url: Optional[str]
    is_official: bool


@dataclass(frozen=True)
class SegmentRecord:
    """A Segment joined with the Edition context needed to build storage keys."""

    id: str
    edition_id: str
    work_id: str
    media: MediaKind
    segment_kind: SegmentKind
    number: float
    title: Optional[str]
    canonical_url: Optional[str]


@dataclass(frozen=True)
class AssetRecord:
    id: str
    storage_key: str
    asset_kind: AssetKind
    content_type: Optional[str]
    byte_length: Optional[int]
    sha256: Optional[str]
    upload_source: UploadSource


@dataclass
class JobRecord:
    id: str
    kind: str
    status: JobStatus
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    attempt: int = 0
    error: Optional[str] = None
    source_id: Optional[str] = None
    work_id: Optional[str] = None
    edition_id: Optional[str] = None
    segment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def _dialect_insert(session: Session):
    """Return the dialect's insert() supporting ON CONFLICT, or None."""
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert

        return insert
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert

        return insert
    return None


def _insert_ignore(session: Session, model, values: dict, conflict_columns: List[str]) -> bool:
    """
    Insert a row unless it collides on ``conflict_columns``.

    Returns:
        bool: True if a row was inserted, False if it already existed
    """
    insert = _dialect_insert(session)
    if insert is not None:
        stmt = insert(model).values(**values).on_conflict_do_nothing(
            index_elements=conflict_columns
        )
        return session.execute(stmt).rowcount > 0

    try:
        with session.begin_nested():
            session.execute(sa_insert(model).values(**values))
        return True
    except IntegrityError:
        return False


def _segment_record(segment: Segment, edition: Edition) -> SegmentRecord:
    return SegmentRecord(
        id=segment.id,
        edition_id=edition.id,
        work_id=edition.work_id,
        media=edition.media_type,
        segment_kind=segment.segment_type,
        number=float(segment.number),
        title=segment.title,
        canonical_url=segment.canonical_url,
    )


def _edition_record(edition: Edition) -> EditionRecord:
    return EditionRecord(
        id=edition.id,
        work_id=edition.work_id,
        media=edition.media_type,
        provider=edition.provider,
        canonical_url=edition.canonical_url,
        is_official=bool(edition.is_official),
    )


def _asset_record(asset: Asset) -> AssetRecord:
    return AssetRecord(
        id=asset.id,
        storage_key=asset.storage_key,
        asset_kind=asset.asset_type,
        content_type=asset.content_type,
        byte_length=asset.bytes,
        sha256=asset.sha256,
        upload_source=asset.upload_source,
    )


def _job_record(job: Job) -> JobRecord:
    return JobRecord(
        id=job.id,
        kind=job.job_type,
        status=job.status,
        input=dict(job.input or {}),
        output=dict(job.output) if job.output is not None else None,
        attempt=job.attempt or 0,
        error=job.error,
        source_id=job.source_id,
        work_id=job.work_id,
        edition_id=job.edition_id,
        segment_id=job.segment_id,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


class MetadataLedger:
    """Relational operations over the metadata ledger.

    Each method runs in its own session (session-per-operation) and raises
    LedgerError when the database call fails.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def session(self):
        return session_scope(self.session_factory)

    # ------------------------------------------------------------------ #
    # Work / Edition / Segment
    # ------------------------------------------------------------------ #

    def upsert_work(self, title: str) -> str:
        """Return the id of the Work titled ``title``, creating it if needed."""
        if not title or not title.strip():
            raise ValueError("A work title is required")
        title = title.strip()

        with self.session() as session:
            created = _insert_ignore(
                session, Work, {"id": new_id(), "title": title}, ["title"]
            )
            work_id = session.execute(
                select(Work.id).where(Work.title == title)
            ).scalar_one()

        if created:
            logger.info(f"Created work {work_id} ({title!r})")
        return work_id

    def upsert_edition(
        self,
        work_id: str,
        media: MediaKind,
        provider: str,
        canonical_url: Optional[str] = None,
        is_official: bool = False,
    ) -> str:
        """Return the id of the (work, provider, media) Edition, creating it if needed."""
        media = MediaKind(media)
        with self.session() as session:
            created = _insert_ignore(
                session,
                Edition,
                {
                    "id": new_id(),
                    "work_id": work_id,
                    "media_type": media,
                    "provider": provider,
                    "canonical_url": canonical_url,
                    "is_official": is_official,
                },
                ["work_id", "provider", "media_type"],
            )
            edition = session.execute(
                select(Edition).where(
                    Edition.work_id == work_id,
                    Edition.provider == provider,
                    Edition.media_type == media,
                )
            ).scalar_one()
            if not created and canonical_url and edition.canonical_url != canonical_url:
                edition.canonical_url = canonical_url
            edition_id = edition.id

        if created:
            logger.info(f"Created {media.value} edition {edition_id} of work {work_id} ({provider})")
        return edition_id

    def upsert_segment(
        self,
        edition_id: str,
        segment_kind: SegmentKind,
        number: float,
        title: Optional[str] = None,
        canonical_url: Optional[str] = None,
    ) -> str:
        """
        Insert a Segment or correct the title/URL of the existing one.

        (edition, segment kind, number) identifies the row; a rerun never
        adds a second row for the same key. A None title or URL keeps the
        stored value.

        Returns:
            str: Segment id
        """
        segment_kind = SegmentKind(segment_kind)
        number = float(number)
        key_columns = ["edition_id", "segment_type", "number"]
        values = {
            "id": new_id(),
            "edition_id": edition_id,
            "segment_type": segment_kind,
            "number": number,
            "title": title,
            "canonical_url": canonical_url,
        }

        with self.session() as session:
            insert = _dialect_insert(session)
            if insert is not None:
                stmt = insert(Segment).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=key_columns,
                    set_={
                        "title": func.coalesce(stmt.excluded.title, Segment.title),
                        "canonical_url": func.coalesce(
                            stmt.excluded.canonical_url, Segment.canonical_url
                        ),
                    },
                )
                session.execute(stmt)
            elif not _insert_ignore(session, Segment, values, key_columns):
                changes = {}
                if title is not None:
                    changes["title"] = title
                if canonical_url is not None:
                    changes["canonical_url"] = canonical_url
                if changes:
                    session.execute(
                        update(Segment)
                        .where(
                            Segment.edition_id == edition_id,
                            Segment.segment_type == segment_kind,
                            Segment.number == number,
                        )
                        .values(**changes)
                    )

            return session.execute(
                select(Segment.id).where(
                    Segment.edition_id == edition_id,
                    Segment.segment_type == segment_kind,
                    Segment.number == number,
                )
            ).scalar_one()

    def get_edition(self, edition_id: str) -> Optional[EditionRecord]:
        with self.session() as session:
            edition = session.get(Edition, edition_id)
            return _edition_record(edition) if edition else None

    def list_editions(self, work_id: str) -> List[EditionRecord]:
        with self.session() as session:
            editions = session.execute(
                select(Edition).where(Edition.work_id == work_id).order_by(Edition.created_at)
            ).scalars()
            return [_edition_record(e) for e in editions]

    def get_segment(self, segment_id: str) -> Optional[SegmentRecord]:
        """Return the Segment with its Edition context, or None if either is missing."""
        with self.session() as session:
            row = session.execute(
                select(Segment, Edition)
                .join(Edition, Segment.edition_id == Edition.id)
                .where(Segment.id == segment_id)
            ).first()
            if row is None:
                return None
            return _segment_record(row[0], row[1])

    def find_segment(
        self, edition_id: str, segment_kind: SegmentKind, number: float
    ) -> Optional[SegmentRecord]:
        with self.session() as session:
            row = session.execute(
                select(Segment, Edition)
                .join(Edition, Segment.edition_id == Edition.id)
                .where(
                    Segment.edition_id == edition_id,
                    Segment.segment_type == SegmentKind(segment_kind),
                    Segment.number == float(number),
                )
            ).first()
            return _segment_record(row[0], row[1]) if row else None

    def list_segments(self, edition_id: str) -> List[SegmentRecord]:
        """All Segments of an Edition ordered by number."""
        with self.session() as session:
            rows = session.execute(
                select(Segment, Edition)
                .join(Edition, Segment.edition_id == Edition.id)
                .where(Segment.edition_id == edition_id)
                .order_by(Segment.number.asc())
            ).all()
            return [_segment_record(segment, edition) for segment, edition in rows]

    def segment_has_assets(self, segment_id: str, role: Optional[AssetRole] = None) -> bool:
        return self.count_segment_assets(segment_id, role=role) > 0

    def count_segment_assets(self, segment_id: str, role: Optional[AssetRole] = None) -> int:
        """Attached assets of a Segment, optionally only those with ``role``."""
        query = (
            select(func.count())
            .select_from(SegmentAsset)
            .where(SegmentAsset.segment_id == segment_id)
        )
        if role is not None:
            query = query.where(SegmentAsset.role == AssetRole(role).value)
        with self.session() as session:
            return session.execute(query).scalar_one()

    # ------------------------------------------------------------------ #
    # Assets
    # ------------------------------------------------------------------ #

    def register_asset(
        self,
        storage_key: str,
        asset_kind: AssetKind,
        byte_length: Optional[int] = None,
        sha256: Optional[str] = None,
        content_type: Optional[str] = None,
        upload_source: UploadSource = UploadSource.PIPELINE,
        bucket: Optional[str] = None,
        provider: str = DEFAULT_ASSET_PROVIDER,
    ) -> str:
        """
        Insert an Asset row for ``storage_key`` or reuse the existing one.

        A duplicate key is "already present", not an error: the existing
        row is returned unchanged.

        Returns:
            str: Asset id
        """
        with self.session() as session:
            created = _insert_ignore(
                session,
                Asset,
                {
                    "id": new_id(),
                    "storage_key": storage_key,
                    "asset_type": AssetKind(asset_kind),
                    "bytes": byte_length,
                    "sha256": sha256,
                    "content_type": content_type,
                    "upload_source": UploadSource(upload_source),
                    "bucket": bucket,
                    "provider": provider,
                },
                ["storage_key"],
            )
            asset_id = session.execute(
                select(Asset.id).where(Asset.storage_key == storage_key)
            ).scalar_one()

        if created:
            logger.debug(f"Registered asset {asset_id} for {storage_key}")
        else:
            logger.debug(f"Reusing asset {asset_id} for {storage_key}")
        return asset_id

    def get_asset_by_key(self, storage_key: str) -> Optional[AssetRecord]:
        with self.session() as session:
            asset = session.execute(
                select(Asset).where(Asset.storage_key == storage_key)
            ).scalar_one_or_none()
            return _asset_record(asset) if asset else None

    def list_asset_keys(self, prefix: str = "") -> set:
        with self.session() as session:
            stmt = select(Asset.storage_key)
            if prefix:
                stmt = stmt.where(Asset.storage_key.startswith(prefix, autoescape=True))
            return set(session.execute(stmt).scalars())

    def attach_asset(self, segment_id: str, asset_id: str, role: AssetRole) -> bool:
        """
        Link an Asset to a Segment.

        Returns:
            bool: True if a link was created, False if it already existed
        """
        with self.session() as session:
            return _insert_ignore(
                session,
                SegmentAsset,
                {
                    "segment_id": segment_id,
                    "asset_id": asset_id,
                    "role": AssetRole(role).value,
                },
                ["segment_id", "asset_id"],
            )

    def list_assets_missing_content_type(self, limit: Optional[int] = None) -> List[AssetRecord]:
        with self.session() as session:
            stmt = (
                select(Asset)
                .where((Asset.content_type.is_(None)) | (Asset.content_type == ""))
                .order_by(Asset.created_at)
            )
            if limit:
                stmt = stmt.limit(limit)
            return [_asset_record(a) for a in session.execute(stmt).scalars()]

    def update_asset_content_type(self, asset_id: str, content_type: str) -> None:
        with self.session() as session:
            session.execute(
                update(Asset).where(Asset.id == asset_id).values(content_type=content_type)
            )

    # ------------------------------------------------------------------ #
    # Jobs
    # ------------------------------------------------------------------ #

    def create_job(
        self,
        kind: JobKind,
        job_input: Optional[Dict[str, Any]] = None,
        source_id: Optional[str] = None,
        work_id: Optional[str] = None,
        edition_id: Optional[str] = None,
        segment_id: Optional[str] = None,
    ) -> str:
        """Create a Job in ``queued`` and return its id."""
        job = Job(
            id=new_id(),
            job_type=JobKind(kind).value,
            status=JobStatus.QUEUED,
            input=job_input or {},
            source_id=source_id,
            work_id=work_id,
            edition_id=edition_id,
            segment_id=segment_id,
            attempt=0,
            created_at=utcnow(),
        )
        with self.session() as session:
            session.add(job)
            job_id = job.id

        logger.info(f"Queued job {job_id} ({job.job_type})")
        return job_id

    def claim_job(self, job_id: str) -> bool:
        """
        Move a Job from ``queued`` to ``running``.

        The transition is a single conditional UPDATE, so of several
        processes claiming the same Job exactly one succeeds.

        Returns:
            bool: True if this call claimed the Job
        """
        with self.session() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.QUEUED)
                .values(
                    status=JobStatus.RUNNING,
                    attempt=Job.attempt + 1,
                    started_at=utcnow(),
                    error=None,
                )
            )
            claimed = result.rowcount == 1

        if claimed:
            logger.info(f"Job {job_id} is running")
        else:
            logger.info(f"Job {job_id} was not queued, skipping claim")
        return claimed

    def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        work_id: Optional[str] = None,
        edition_id: Optional[str] = None,
        segment_id: Optional[str] = None,
    ) -> None:
        """Record the terminal state of a Job; references given here are stored too."""
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal job status")

        values: Dict[str, Any] = {
            "status": status,
            "output": output if status == JobStatus.SUCCESS else None,
            "error": error if status == JobStatus.FAILED else None,
            "finished_at": utcnow(),
        }
        if work_id is not None:
            values["work_id"] = work_id
        if edition_id is not None:
            values["edition_id"] = edition_id
        if segment_id is not None:
            values["segment_id"] = segment_id

        with self.session() as session:
            session.execute(update(Job).where(Job.id == job_id).values(**values))

        if status == JobStatus.FAILED:
            logger.warning(f"Job {job_id} failed: {error}")
        else:
            logger.info(f"Job {job_id} succeeded: {output}")

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        with self.session() as session:
            job = session.get(Job, job_id)
            return _job_record(job) if job else None

    def get_queued_jobs(self, limit: int = 1) -> List[JobRecord]:
        """Oldest queued Jobs first (FIFO, no priority)."""
        with self.session() as session:
            jobs = session.execute(
                select(Job)
                .where(Job.status == JobStatus.QUEUED)
                .order_by(Job.created_at.asc(), Job.id.asc())
                .limit(limit)
            ).scalars()
            return [_job_record(job) for job in jobs]

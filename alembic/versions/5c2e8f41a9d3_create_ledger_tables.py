"""create ledger tables

Revision ID: 5c2e8f41a9d3
Revises:
Create Date: 2026-10-18 09:12:37.418203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c2e8f41a9d3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def upgrade() -> None:
    """
    Create the metadata ledger: works, editions, segments, assets, the
    segment/asset junction and the pipeline_jobs audit table.

    Enum columns are stored as VARCHAR(32) holding the enum values.
    """
    op.create_table(
        "works",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("title"),
    )

    op.create_table(
        "editions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("work_id", sa.String(length=36), nullable=False),
        sa.Column("media_type", sa.String(length=32), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("canonical_url", sa.String(), nullable=True),
        sa.Column("is_official", sa.Boolean(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["work_id"], ["works.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "work_id", "provider", "media_type", name="uq_editions_work_provider_media"
        ),
    )
    op.create_index("ix_editions_work_id", "editions", ["work_id"])

    op.create_table(
        "segments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("edition_id", sa.String(length=36), nullable=False),
        sa.Column("segment_type", sa.String(length=32), nullable=False),
        sa.Column("number", sa.Numeric(precision=12, scale=3), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("canonical_url", sa.String(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["edition_id"], ["editions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "edition_id", "segment_type", "number", name="uq_segments_edition_type_number"
        ),
    )
    op.create_index("ix_segments_edition_id", "segments", ["edition_id"])

    op.create_table(
        "assets",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("bucket", sa.String(), nullable=True),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("asset_type", sa.String(length=32), nullable=False),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("bytes", sa.BigInteger(), nullable=True),
        sa.Column("sha256", sa.String(length=64), nullable=True),
        sa.Column("upload_source", sa.String(length=32), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("storage_key"),
    )
    op.create_index("ix_assets_asset_type", "assets", ["asset_type"])
    op.create_index("ix_assets_sha256", "assets", ["sha256"])

    op.create_table(
        "segment_assets",
        sa.Column("segment_id", sa.String(length=36), nullable=False),
        sa.Column("asset_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["segment_id"], ["segments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("segment_id", "asset_id"),
    )

    op.create_table(
        "pipeline_jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), server_default="queued", nullable=False),
        sa.Column("source_id", sa.String(length=36), nullable=True),
        sa.Column("work_id", sa.String(length=36), nullable=True),
        sa.Column("edition_id", sa.String(length=36), nullable=True),
        sa.Column("segment_id", sa.String(length=36), nullable=True),
        sa.Column("input", sa.JSON(), nullable=False),
        sa.Column("output", sa.JSON(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["edition_id"], ["editions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["segment_id"], ["segments.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["work_id"], ["works.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_jobs_job_type", "pipeline_jobs", ["job_type"])
    op.create_index(
        "idx_pipeline_jobs_status_created", "pipeline_jobs", ["status", "created_at"]
    )


def downgrade() -> None:
    """Drop every ledger table."""
    op.drop_index("idx_pipeline_jobs_status_created", table_name="pipeline_jobs")
    op.drop_index("ix_pipeline_jobs_job_type", table_name="pipeline_jobs")
    op.drop_table("pipeline_jobs")
    op.drop_table("segment_assets")
    op.drop_index("ix_assets_sha256", table_name="assets")
    op.drop_index("ix_assets_asset_type", table_name="assets")
    op.drop_table("assets")
    op.drop_index("ix_segments_edition_id", table_name="segments")
    op.drop_table("segments")
    op.drop_index("ix_editions_work_id", table_name="editions")
    op.drop_table("editions")
    op.drop_table("works")

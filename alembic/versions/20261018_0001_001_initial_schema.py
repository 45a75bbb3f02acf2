"""001 initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

Creates storage backends, recipe videos, transcode jobs, renditions, storage
objects and migration jobs. The partial unique index on transcode_jobs allows
at most one queued or running job per recipe video.
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

videostate = sa.Enum("pending", "transcoding", "ready", "failed", name="videostate")
jobstate = sa.Enum("queued", "running", "succeeded", "failed", "abandoned", name="jobstate")
objectkind = sa.Enum("manifest", "segment", "source", name="objectkind")
migrationstate = sa.Enum("running", "completed", "completed_with_errors", name="migrationstate")


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "storage_backends",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("endpoint_url", sa.String(255), nullable=True),
        sa.Column("region", sa.String(64), nullable=True),
        sa.Column("bucket", sa.String(255), nullable=False),
        sa.Column("addressing_style", sa.String(16), nullable=False, server_default="path"),
        sa.Column("public_base_url", sa.String(255), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("access_key_id_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("secret_access_key_encrypted", sa.LargeBinary(), nullable=True),
        sa.Column("signing_key_encrypted", sa.LargeBinary(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_storage_backends_name"),
    )
    op.create_index("ix_storage_backends_name", "storage_backends", ["name"])

    op.create_table(
        "recipe_videos",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipe_id", sa.String(64), nullable=False),
        sa.Column("ordinal", sa.Integer(), nullable=False),
        sa.Column("state", videostate, nullable=False),
        sa.Column("master_key", sa.String(1024), nullable=True),
        sa.Column("current_job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("recipe_id", "ordinal", name="uq_recipe_videos_recipe_ordinal"),
    )
    op.create_index("ix_recipe_videos_recipe_id", "recipe_videos", ["recipe_id"])
    op.create_index("ix_recipe_videos_state", "recipe_videos", ["state"])

    op.create_table(
        "transcode_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipe_video_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_key", sa.String(1024), nullable=False),
        sa.Column("ladder", sa.JSON(), nullable=False),
        sa.Column("state", jobstate, nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error_kind", sa.String(32), nullable=True),
        sa.Column("error_log", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("claim_token", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("worker_id", sa.String(100), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("progress", sa.JSON(), nullable=True),
        sa.Column("outputs", sa.JSON(), nullable=True),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transcode_jobs_recipe_video_id", "transcode_jobs", ["recipe_video_id"])
    op.create_index("ix_transcode_jobs_state", "transcode_jobs", ["state"])
    op.create_index("ix_transcode_jobs_state_available_at", "transcode_jobs", ["state", "available_at"])
    op.create_index(
        "uq_transcode_jobs_active_video",
        "transcode_jobs",
        ["recipe_video_id"],
        unique=True,
        postgresql_where=sa.text("state IN ('queued', 'running')"),
    )

    op.create_table(
        "renditions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipe_video_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("label", sa.String(32), nullable=False),
        sa.Column("bitrate_kbps", sa.Integer(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("manifest_key", sa.String(1024), nullable=False),
        sa.Column("segment_keys", sa.JSON(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("byte_size", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_renditions_recipe_video_id", "renditions", ["recipe_video_id"])
    op.create_index("ix_renditions_job_id", "renditions", ["job_id"])
    op.create_index("ix_renditions_video_job", "renditions", ["recipe_video_id", "job_id"])

    op.create_table(
        "storage_objects",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("key", sa.String(1024), nullable=False),
        sa.Column("authoritative_backend", sa.String(64), nullable=False),
        sa.Column("kind", objectkind, nullable=False),
        sa.Column("content_type", sa.String(100), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False),
        sa.Column("etag", sa.String(255), nullable=True),
        sa.Column("checksum", sa.String(64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_storage_objects_key", "storage_objects", ["key"], unique=True)
    op.create_index("ix_storage_objects_authoritative_backend", "storage_objects", ["authoritative_backend"])

    op.create_table(
        "migration_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_backend", sa.String(64), nullable=False),
        sa.Column("dest_backend", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(1024), nullable=False),
        sa.Column("delete_source", sa.Boolean(), nullable=False),
        sa.Column("state", migrationstate, nullable=False),
        sa.Column("copied", sa.Integer(), nullable=False),
        sa.Column("skipped", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table("migration_jobs")
    op.drop_index("ix_storage_objects_authoritative_backend", table_name="storage_objects")
    op.drop_index("ix_storage_objects_key", table_name="storage_objects")
    op.drop_table("storage_objects")
    op.drop_index("ix_renditions_video_job", table_name="renditions")
    op.drop_index("ix_renditions_job_id", table_name="renditions")
    op.drop_index("ix_renditions_recipe_video_id", table_name="renditions")
    op.drop_table("renditions")
    op.drop_index("uq_transcode_jobs_active_video", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_state_available_at", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_state", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_recipe_video_id", table_name="transcode_jobs")
    op.drop_table("transcode_jobs")
    op.drop_index("ix_recipe_videos_state", table_name="recipe_videos")
    op.drop_index("ix_recipe_videos_recipe_id", table_name="recipe_videos")
    op.drop_table("recipe_videos")
    op.drop_index("ix_storage_backends_name", table_name="storage_backends")
    op.drop_table("storage_backends")

    bind = op.get_bind()
    for enum_type in (migrationstate, objectkind, jobstate, videostate):
        enum_type.drop(bind, checkfirst=True)

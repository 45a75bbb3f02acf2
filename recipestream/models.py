"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the ingest, transcode and
delivery core. All models use the Mapped[type] annotation pattern required by
SQLAlchemy 2.0.

Encrypted Fields Pattern:
    Storage backend credentials and URL signing keys are stored encrypted using
    Fernet symmetric encryption. Encrypted columns follow the naming convention
    `{field}_encrypted` and use LargeBinary type since Fernet outputs bytes.

    NEVER expose encrypted fields in __repr__ or log statements.

Concurrency Pattern:
    TranscodeJob and StorageObject carry an integer `version` column. Claims and
    authoritative-backend flips are compare-and-swap UPDATEs guarded on that
    column; TranscodeJob additionally registers it as the mapper's
    version_id_col so ORM flushes of a stale row raise StaleDataError.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from recipestream.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase) rather than enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class VideoState(enum.Enum):
    """Lifecycle of a recipe video.

    Flow:
        pending -> transcoding -> ready
        pending/transcoding -> failed (no rendition set was ever published)
        failed -> pending (a new master is submitted)

    A ready video stays ready while it is re-transcoded and when a
    re-transcode fails; the previous rendition set keeps serving.
    """

    PENDING = "pending"
    TRANSCODING = "transcoding"
    READY = "ready"
    FAILED = "failed"


class JobState(enum.Enum):
    """Transcode job state machine.

    Flow:
        queued -> running -> succeeded
        running -> failed -> queued        (retry while attempts remain)
        failed -> abandoned                (attempts exhausted)
        running -> abandoned               (fatal input or storage error)
        queued -> failed                   (cancelled before a worker claimed it)

    Terminal States:
        succeeded, abandoned. A failed job whose last error kind is
        "cancelled" is never requeued.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


ACTIVE_JOB_STATES = [JobState.QUEUED, JobState.RUNNING]


class ObjectKind(enum.Enum):
    """Delivery class of a stored object. Drives cache and access policy."""

    MANIFEST = "manifest"
    SEGMENT = "segment"
    SOURCE = "source"


class MigrationState(enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class StorageBackend(Base):
    """A configured S3-compatible storage provider.

    The `name` is the identifier recorded on StorageObject.authoritative_backend
    and the only thing used to select a backend at runtime.

    Attributes:
        id: Internal UUID primary key.
        name: Unique backend identifier (e.g., "s3-eu", "minio-local").
        endpoint_url: S3 endpoint URL, None for AWS default endpoints.
        region: Region name passed to the client.
        bucket: Bucket holding every object of this backend.
        addressing_style: "path" or "virtual" bucket addressing.
        public_base_url: CDN base URL placed in signed URLs, if any.
        is_primary: New writes go to the single primary backend.
        is_active: Inactive backends are not loaded into the registry.
        access_key_id_encrypted: Fernet-encrypted access key id.
        secret_access_key_encrypted: Fernet-encrypted secret access key.
        signing_key_encrypted: Fernet-encrypted HMAC key for signed URLs.
    """

    __tablename__ = "storage_backends"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    endpoint_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    addressing_style: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="path",
        server_default="path",
    )
    public_base_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Use BackendRegistry / register_backend script for encrypt/decrypt
    access_key_id_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    secret_access_key_encrypted: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    signing_key_encrypted: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<StorageBackend(name={self.name!r}, bucket={self.bucket!r}, "
            f"primary={self.is_primary}, active={self.is_active})>"
        )


class RecipeVideo(Base):
    """A video attached to a recipe, identified by (recipe_id, ordinal).

    The `current_job_id` column is the "current rendition set" pointer: the
    renditions whose job_id equals it are the ones served to clients. It is
    only ever swapped inside the transaction that records a succeeded job.

    Attributes:
        id: Internal UUID primary key.
        recipe_id: Recipe identifier owned by the external recipe catalog.
        ordinal: Position of this video within the recipe.
        state: VideoState (indexed).
        master_key: Storage key of the most recently uploaded master file.
        current_job_id: Job whose renditions are currently published.
        last_error: Most recent terminal job failure, for status display.
    """

    __tablename__ = "recipe_videos"

    VALID_TRANSITIONS = {
        VideoState.PENDING: [VideoState.TRANSCODING, VideoState.READY, VideoState.FAILED],
        VideoState.TRANSCODING: [VideoState.READY, VideoState.FAILED],
        VideoState.READY: [VideoState.READY],
        VideoState.FAILED: [VideoState.PENDING, VideoState.TRANSCODING, VideoState.READY],
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    recipe_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ordinal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[VideoState] = mapped_column(
        _enum_column(VideoState, "videostate"),
        nullable=False,
        default=VideoState.PENDING,
        index=True,
    )
    master_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    # No foreign key: jobs reference videos, and the pointer is swapped in place
    current_job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("recipe_id", "ordinal", name="uq_recipe_videos_recipe_ordinal"),)

    @validates("state")
    def validate_state_change(self, key: str, value: VideoState) -> VideoState:
        """Reject state changes not listed in VALID_TRANSITIONS.

        Validation is skipped on creation (state is None).

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if self.state is None:
            return value

        if value not in self.VALID_TRANSITIONS.get(self.state, []):
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.state.value} -> {value.value}",
                from_status=self.state,
                to_status=value,
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<RecipeVideo(id={self.id!s:.8}, recipe_id={self.recipe_id!r}, "
            f"ordinal={self.ordinal}, state={self.state.value!r})>"
        )


class TranscodeJob(Base):
    """One attempt-tracked conversion of a master file into an HLS ladder.

    Jobs are retained after completion for audit and retry history.

    Attributes:
        id: Internal UUID primary key.
        recipe_video_id: Video this job encodes.
        source_key: Storage key of the master file to encode.
        ladder: Ordered list of {"width", "height", "bitrate_kbps"} rungs.
        state: JobState (indexed).
        attempt_count: Attempts started so far (incremented on claim).
        max_attempts: Attempts allowed before the job is abandoned.
        last_error_kind: Error class of the most recent failure.
        error_log: Append-only error history.
        version: Compare-and-swap counter bumped on every write.
        claim_token: Fencing token of the worker holding the current attempt.
        worker_id: Identifier of the worker holding the current attempt.
        cancel_requested: Set by a cancel request, observed by the worker.
        progress: {"renditions_completed", "segments_uploaded", "bytes_uploaded"}.
        outputs: Rendition descriptions written when the job succeeds.
        available_at: Queued jobs are not claimable before this time.
        heartbeat_at: Last progress write by the running worker.

    Indexes:
        - uq_transcode_jobs_active_video: partial unique index allowing one
          queued-or-running job per video
        - ix_transcode_jobs_state_available_at: claim candidate scan
    """

    __tablename__ = "transcode_jobs"

    VALID_TRANSITIONS = {
        JobState.QUEUED: [JobState.RUNNING, JobState.FAILED],
        JobState.RUNNING: [JobState.SUCCEEDED, JobState.FAILED, JobState.ABANDONED],
        JobState.FAILED: [JobState.QUEUED, JobState.ABANDONED],
        JobState.SUCCEEDED: [],  # Terminal state
        JobState.ABANDONED: [],  # Terminal state
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    recipe_video_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    source_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    ladder: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)

    state: Mapped[JobState] = mapped_column(
        _enum_column(JobState, "jobstate"),
        nullable=False,
        default=JobState.QUEUED,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_log: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claim_token: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    progress: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    outputs: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        Index(
            "uq_transcode_jobs_active_video",
            "recipe_video_id",
            unique=True,
            postgresql_where=text("state IN ('queued', 'running')"),
            sqlite_where=text("state IN ('queued', 'running')"),
        ),
        Index("ix_transcode_jobs_state_available_at", "state", "available_at"),
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("state")
    def validate_state_change(self, key: str, value: JobState) -> JobState:
        """Reject state changes not listed in VALID_TRANSITIONS.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed.
        """
        if self.state is None:
            return value

        if value not in self.VALID_TRANSITIONS.get(self.state, []):
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.state.value} -> {value.value}",
                from_status=self.state,
                to_status=value,
            )
        return value

    def append_error(self, kind: str, message: str) -> None:
        """Record a failure in last_error_kind and the append-only error log."""
        self.last_error_kind = kind
        entry = f"[{utcnow().isoformat()}] attempt={self.attempt_count} {kind}: {message}"
        self.error_log = f"{self.error_log}\n{entry}" if self.error_log else entry

    def __repr__(self) -> str:
        return (
            f"<TranscodeJob(id={self.id!s:.8}, video={self.recipe_video_id!s:.8}, "
            f"state={self.state.value!r}, attempt={self.attempt_count}/{self.max_attempts})>"
        )


class Rendition(Base):
    """One rung of a published (or publishable) HLS ladder.

    Renditions are immutable. A new transcode produces a new set under its
    own job_id; publishing is the pointer swap on RecipeVideo.current_job_id.
    """

    __tablename__ = "renditions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    recipe_video_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(32), nullable=False)
    bitrate_kbps: Mapped[int] = mapped_column(Integer, nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    manifest_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    segment_keys: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    byte_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (Index("ix_renditions_video_job", "recipe_video_id", "job_id"),)

    def __repr__(self) -> str:
        return f"<Rendition(label={self.label!r}, job={self.job_id!s:.8}, segments={len(self.segment_keys)})>"


class StorageObject(Base):
    """Logical object record. Bytes live on `authoritative_backend`.

    Attributes:
        key: Unique logical key, identical on every backend.
        authoritative_backend: Name of the backend reads are served from.
        kind: ObjectKind deciding cache and signed URL policy.
        content_type: MIME type sent on upload.
        size_bytes: Verified size after the last write.
        etag: Backend ETag after the last write.
        checksum: MD5 hex digest computed locally before upload.
        version: Compare-and-swap counter for authoritative-backend flips.
    """

    __tablename__ = "storage_objects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    key: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False, index=True)
    authoritative_backend: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    kind: Mapped[ObjectKind] = mapped_column(_enum_column(ObjectKind, "objectkind"), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<StorageObject(key={self.key!r}, backend={self.authoritative_backend!r}, "
            f"kind={self.kind.value!r}, size={self.size_bytes})>"
        )


class MigrationJob(Base):
    """Resumable handle for moving objects between backends.

    Counters accumulate across resumes; `copied + skipped` objects have had
    their authoritative backend flipped to `dest_backend`.
    """

    __tablename__ = "migration_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    source_backend: Mapped[str] = mapped_column(String(64), nullable=False)
    dest_backend: Mapped[str] = mapped_column(String(64), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    delete_source: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    state: Mapped[MigrationState] = mapped_column(
        _enum_column(MigrationState, "migrationstate"),
        nullable=False,
        default=MigrationState.RUNNING,
    )
    copied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<MigrationJob(id={self.id!s:.8}, {self.source_backend!r}->{self.dest_backend!r}, "
            f"prefix={self.key_prefix!r}, state={self.state.value!r})>"
        )

"""Pydantic schemas for transcode job cancellation and storage migrations."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from recipestream.models import JobState, MigrationState


class CancelResponse(BaseModel):
    job_id: UUID
    state: JobState = Field(..., description="Job state after the request (running jobs stop at their next heartbeat)")


class MigrationCreate(BaseModel):
    """Schema for POST /api/v1/migrations."""

    source_backend: str = Field(..., min_length=1, max_length=64, examples=["s3-legacy"])
    dest_backend: str = Field(..., min_length=1, max_length=64, examples=["minio-eu"])
    key_prefix: str = Field(default="", max_length=1024, examples=["videos/"])
    delete_source: bool = Field(default=False, description="Delete the source copy after each commit")


class MigrationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    source_backend: str
    dest_backend: str
    key_prefix: str
    delete_source: bool
    state: MigrationState
    copied: int
    skipped: int
    failed: int
    last_error: str | None = None
    created_at: datetime | None = None
    finished_at: datetime | None = None

"""Pydantic schemas for recipe video upload, status and playback.

Schema Naming Convention:
    - *Request: request bodies
    - *Response: API responses (built from service dataclasses via from_attributes)

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from recipestream.models import JobState, VideoState


class SubmitResponse(BaseModel):
    """Returned by POST /api/v1/videos (202 Accepted)."""

    model_config = ConfigDict(from_attributes=True)

    video_id: UUID
    job_id: UUID
    state: VideoState = Field(..., description="Video state after submission (pending for new videos)")
    master_key: str


class VideoStatusResponse(BaseModel):
    """Externally visible state of a recipe video.

    manifest_key is only set when state is "ready".
    """

    model_config = ConfigDict(from_attributes=True)

    video_id: UUID
    recipe_id: str
    ordinal: int
    state: VideoState
    manifest_key: str | None = None
    job_id: UUID | None = None
    job_state: JobState | None = None
    attempt_count: int = 0
    progress: dict[str, Any] | None = None
    last_error_kind: str | None = None
    last_error: str | None = None
    uploaded_at: datetime | None = None


class PlaybackRequest(BaseModel):
    segment_offset: int = Field(default=0, ge=0, description="Index of the first segment of the window")


class AccessDescriptorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    url: str
    key: str
    kind: str
    expires_at: int = Field(..., description="Epoch seconds; the URL is rejected at or after this time")
    cache_control: str


class RenditionAccessResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    bitrate_kbps: int
    width: int
    height: int
    manifest: AccessDescriptorResponse
    segments: list[AccessDescriptorResponse]
    segment_offset: int
    total_segments: int
    next_offset: int | None = Field(
        default=None, description="Offset of the next segment window, or null after the last one"
    )


class PlaybackResponse(BaseModel):
    """Signed URLs for the master playlist plus one segment window per rendition."""

    model_config = ConfigDict(from_attributes=True)

    video_id: UUID
    expires_at: int
    master: AccessDescriptorResponse
    renditions: list[RenditionAccessResponse]

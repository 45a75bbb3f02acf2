"""Recipe video routes.

- POST /api/v1/videos                       upload a master, queue a transcode
- GET  /api/v1/videos/{video_id}            status (manifest key once ready)
- POST /api/v1/videos/{video_id}/playback   signed URLs for an authorized principal

Pattern:
- Upload is spooled to the workspace (never held in memory), stored through
  the object store adapter, and the request returns 202 immediately. The
  encode runs in the worker processes.
- Playback asks the external authorization service first; a denial and an
  unknown video produce the same 404 response.
"""

import asyncio
import json
import shutil
import uuid
from pathlib import Path
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, UploadFile, status

from recipestream.clients.authorization import AuthorizationClient
from recipestream.routes.deps import get_authorization_client, get_coordinator
from recipestream.schemas.video import (
    PlaybackRequest,
    PlaybackResponse,
    SubmitResponse,
    VideoStatusResponse,
)
from recipestream.services.ingest import IngestCoordinator, MasterUpload, validate_ladder
from recipestream.utils.filesystem import get_upload_dir

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/videos", tags=["videos"])

_SPOOL_CHUNK = 8 * 1024 * 1024


def _spool(upload: UploadFile, destination: Path) -> None:
    with open(destination, "wb") as handle:
        shutil.copyfileobj(upload.file, handle, _SPOOL_CHUNK)


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def upload_video(
    recipe_id: str = Form(..., min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$"),
    ordinal: int = Form(..., ge=0),
    ladder: str | None = Form(None, description="JSON list of {width, height, bitrate_kbps}"),
    file: UploadFile = File(...),
    coordinator: IngestCoordinator = Depends(get_coordinator),
) -> SubmitResponse:
    """Accept a master file and queue it for transcoding.

    Returns:
        202 Accepted: Master stored, job queued
        409 Conflict: A job is already queued or running for this video
        422 Unprocessable Entity: Invalid form fields or ladder
    """
    try:
        rungs = validate_ladder(json.loads(ladder) if ladder else None)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    spool_path = get_upload_dir() / uuid.uuid4().hex
    try:
        await asyncio.to_thread(_spool, file, spool_path)
        result = await coordinator.submit(
            MasterUpload(
                recipe_id=recipe_id,
                ordinal=ordinal,
                path=str(spool_path),
                content_type=file.content_type or "application/octet-stream",
                filename=file.filename,
                ladder=rungs,
            )
        )
    finally:
        spool_path.unlink(missing_ok=True)

    return SubmitResponse.model_validate(result)


@router.get("/{video_id}", response_model=VideoStatusResponse)
async def get_video_status(
    video_id: UUID,
    coordinator: IngestCoordinator = Depends(get_coordinator),
) -> VideoStatusResponse:
    return VideoStatusResponse.model_validate(await coordinator.status(video_id))


@router.post("/{video_id}/playback", response_model=PlaybackResponse)
async def request_playback(
    video_id: UUID,
    request: Request,
    body: PlaybackRequest | None = None,
    bind_ip: bool = False,
    principal: str = Header(..., alias="X-Principal-Id", min_length=1, max_length=128),
    coordinator: IngestCoordinator = Depends(get_coordinator),
    authorization: AuthorizationClient = Depends(get_authorization_client),
) -> PlaybackResponse:
    """Issue signed URLs for the current rendition set.

    Args:
        bind_ip: Bind every URL to the caller's address.

    Returns:
        200 OK: Master manifest, rendition manifests and one segment window
        404 Not Found: Unknown or unplayable video, or access denied
    """
    decision = await authorization.decide(principal, f"videos/{video_id}")
    client_ip = request.client.host if bind_ip and request.client else None

    access = await coordinator.playback_access(
        video_id,
        principal,
        decision,
        client_ip=client_ip,
        segment_offset=body.segment_offset if body else 0,
    )
    return PlaybackResponse.model_validate(access)

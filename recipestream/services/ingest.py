"""Ingest Coordinator.

Owns the RecipeVideo lifecycle: accepts master uploads, creates transcode
jobs, publishes rendition sets when jobs succeed, reports status, and turns
an authorization decision into the signed URLs a player needs.

Publishing Invariant:
    The current rendition set (RecipeVideo.current_job_id) is swapped, and
    the Rendition rows created, inside the same transaction that records the
    job as succeeded. A failed or abandoned job never touches renditions.

Ordering Invariant:
    At most one queued-or-running job exists per video. submit() checks this
    before uploading anything, and the partial unique index on
    transcode_jobs backs the check against concurrent submissions.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from recipestream.clients.authorization import AuthorizationDecision
from recipestream.config import get_playback_segment_window, get_transcode_max_attempts
from recipestream.database import require_session_factory
from recipestream.exceptions import Conflict, Denied, NotFound, StorageError
from recipestream.models import (
    ACTIVE_JOB_STATES,
    JobState,
    ObjectKind,
    RecipeVideo,
    Rendition,
    StorageObject,
    TranscodeJob,
    VideoState,
    utcnow,
)
from recipestream.services.encoder import Rung
from recipestream.services.signed_url import AccessDescriptor, SignedUrlIssuer
from recipestream.storage.adapter import ObjectStoreAdapter

log = structlog.get_logger(__name__)

DEFAULT_LADDER = [
    Rung(width=1920, height=1080, bitrate_kbps=5000),
    Rung(width=1280, height=720, bitrate_kbps=2800),
    Rung(width=854, height=480, bitrate_kbps=1400),
    Rung(width=640, height=360, bitrate_kbps=800),
]

_CANCEL_RETRIES = 3


@dataclass
class MasterUpload:
    """A master file received from a client, spooled to local disk."""

    recipe_id: str
    ordinal: int
    path: str
    content_type: str = "video/mp4"
    filename: str | None = None
    ladder: list[Rung] | None = None


@dataclass
class SubmitResult:
    video_id: UUID
    job_id: UUID
    state: VideoState
    master_key: str


@dataclass
class VideoStatus:
    video_id: UUID
    recipe_id: str
    ordinal: int
    state: VideoState
    manifest_key: str | None
    job_id: UUID | None = None
    job_state: JobState | None = None
    attempt_count: int = 0
    progress: dict[str, Any] | None = None
    last_error_kind: str | None = None
    last_error: str | None = None
    uploaded_at: datetime | None = None


@dataclass
class RenditionAccess:
    label: str
    bitrate_kbps: int
    width: int
    height: int
    manifest: AccessDescriptor
    segments: list[AccessDescriptor]
    segment_offset: int
    total_segments: int
    next_offset: int | None


@dataclass
class PlaybackAccess:
    """Signed URLs for the master playlist and one window of segments per rendition."""

    video_id: UUID
    master: AccessDescriptor
    renditions: list[RenditionAccess] = field(default_factory=list)

    @property
    def expires_at(self) -> int:
        """Earliest expiry across every descriptor in the set."""
        expiries = [self.master.expires_at]
        for rendition in self.renditions:
            expiries.append(rendition.manifest.expires_at)
            expiries.extend(segment.expires_at for segment in rendition.segments)
        return min(expiries)


def validate_ladder(raw: list[dict[str, Any]] | None) -> list[Rung]:
    """Parse and validate a requested ladder.

    Raises:
        ValueError: If a rung is malformed, non-positive, or two rungs share a height.
    """
    if not raw:
        return list(DEFAULT_LADDER)
    rungs: list[Rung] = []
    for entry in raw:
        try:
            rung = Rung.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid ladder rung: {entry!r}") from e
        if rung.width <= 0 or rung.height <= 0 or rung.bitrate_kbps <= 0:
            raise ValueError(f"Ladder values must be positive: {entry!r}")
        rungs.append(rung)
    labels = [rung.label for rung in rungs]
    if len(set(labels)) != len(labels):
        raise ValueError("Ladder rungs must have distinct heights")
    return rungs


def master_key_for(recipe_id: str, ordinal: int, filename: str | None) -> str:
    suffix = os.path.splitext(filename or "")[1].lower() or ".mp4"
    if not suffix[1:].isalnum():
        suffix = ".mp4"
    return f"masters/{recipe_id}/{ordinal}/{uuid.uuid4().hex}{suffix}"


class IngestCoordinator:
    """Coordinates uploads, transcode jobs, publishing and playback access.

    Args:
        adapter: Object store adapter.
        issuer: Signed URL issuer (required for playback_access).
        session_factory: Session factory (defaults to the application factory).
        max_attempts: Attempts per job (default: TRANSCODE_MAX_ATTEMPTS).
        segment_window: Segments per rendition per playback call
            (default: PLAYBACK_SEGMENT_WINDOW).
    """

    def __init__(
        self,
        adapter: ObjectStoreAdapter,
        issuer: SignedUrlIssuer | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        max_attempts: int | None = None,
        segment_window: int | None = None,
    ) -> None:
        self.adapter = adapter
        self.issuer = issuer
        self._session_factory = session_factory
        self.max_attempts = max_attempts or get_transcode_max_attempts()
        self.segment_window = segment_window or get_playback_segment_window()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return require_session_factory(self._session_factory)

    async def _find_video(self, db: AsyncSession, recipe_id: str, ordinal: int) -> RecipeVideo | None:
        result = await db.execute(
            select(RecipeVideo).where(RecipeVideo.recipe_id == recipe_id, RecipeVideo.ordinal == ordinal)
        )
        return result.scalar_one_or_none()

    async def _active_job(self, db: AsyncSession, video_id: UUID) -> TranscodeJob | None:
        result = await db.execute(
            select(TranscodeJob).where(
                TranscodeJob.recipe_video_id == video_id,
                TranscodeJob.state.in_(ACTIVE_JOB_STATES),
            )
        )
        return result.scalars().first()

    async def submit(self, master: MasterUpload) -> SubmitResult:
        """Store a master upload and queue a transcode job for it.

        Flow:
            1. Reject with Conflict if the video already has an active job
               (before any upload)
            2. Upload the master through the object store adapter
            3. Create or update the RecipeVideo and create the queued job

        Raises:
            Conflict: If a queued or running job exists for (recipe_id, ordinal).
            ValueError: If the ladder is invalid.
            StorageError: If the master cannot be stored.
        """
        ladder = master.ladder or list(DEFAULT_LADDER)

        async with self.session_factory() as db:
            video = await self._find_video(db, master.recipe_id, master.ordinal)
            if video is not None:
                active = await self._active_job(db, video.id)
                if active is not None:
                    log.info(
                        "submit_conflict",
                        recipe_id=master.recipe_id,
                        ordinal=master.ordinal,
                        job_id=str(active.id),
                    )
                    raise Conflict(
                        "a transcode job is already active for this video",
                        recipe_video_id=video.id,
                        job_id=active.id,
                    )

        master_key = master_key_for(master.recipe_id, master.ordinal, master.filename)
        await self.adapter.put_file(master_key, master.path, master.content_type, ObjectKind.SOURCE)

        try:
            async with self.session_factory() as db, db.begin():
                video = await self._find_video(db, master.recipe_id, master.ordinal)
                if video is None:
                    video = RecipeVideo(
                        recipe_id=master.recipe_id,
                        ordinal=master.ordinal,
                        state=VideoState.PENDING,
                    )
                    db.add(video)
                    await db.flush()
                else:
                    active = await self._active_job(db, video.id)
                    if active is not None:
                        raise Conflict(
                            "a transcode job is already active for this video",
                            recipe_video_id=video.id,
                            job_id=active.id,
                        )
                    if video.state is VideoState.FAILED:
                        video.state = VideoState.PENDING

                video.master_key = master_key
                video.uploaded_at = utcnow()

                job = TranscodeJob(
                    recipe_video_id=video.id,
                    source_key=master_key,
                    ladder=[rung.to_dict() for rung in ladder],
                    state=JobState.QUEUED,
                    attempt_count=0,
                    max_attempts=self.max_attempts,
                    progress={"renditions_completed": 0, "segments_uploaded": 0, "bytes_uploaded": 0},
                )
                db.add(job)
                await db.flush()
                result = SubmitResult(
                    video_id=video.id,
                    job_id=job.id,
                    state=video.state,
                    master_key=master_key,
                )
        except (Conflict, IntegrityError) as e:
            await self._discard_master(master_key)
            if isinstance(e, Conflict):
                raise
            raise Conflict("a transcode job is already active for this video") from e

        log.info(
            "video_submitted",
            recipe_id=master.recipe_id,
            ordinal=master.ordinal,
            video_id=str(result.video_id),
            job_id=str(result.job_id),
            rungs=[rung.label for rung in ladder],
        )
        return result

    async def _discard_master(self, master_key: str) -> None:
        try:
            await self.adapter.delete(master_key)
        except (NotFound, StorageError) as e:
            log.warning("master_cleanup_failed", key=master_key, error=str(e))

    async def on_job_claimed(self, video_id: UUID, db: AsyncSession) -> None:
        """Mark a video as transcoding when a worker claims its job.

        Runs inside the claim transaction. A ready video stays ready.
        """
        video = await db.get(RecipeVideo, video_id)
        if video is None:
            log.error("claimed_job_video_missing", recipe_video_id=str(video_id))
            return
        if video.state in (VideoState.PENDING, VideoState.FAILED):
            video.state = VideoState.TRANSCODING

    async def on_job_completed(self, job_id: UUID, db: AsyncSession) -> None:
        """Apply a terminal job outcome to its video, in the caller's transaction.

        succeeded: create every Rendition from job.outputs, swap the current
            rendition set pointer and mark the video ready.
        failed/abandoned: leave renditions untouched; the video becomes failed
            only if it has never had a published rendition set.
        """
        job = await db.get(TranscodeJob, job_id)
        if job is None:
            raise NotFound(f"Transcode job not found: {job_id}")
        video = await db.get(RecipeVideo, job.recipe_video_id)
        if video is None:
            raise NotFound(f"Recipe video not found: {job.recipe_video_id}")

        if job.state is JobState.SUCCEEDED:
            outputs = job.outputs or {}
            for entry in outputs.get("renditions", []):
                db.add(
                    Rendition(
                        recipe_video_id=video.id,
                        job_id=job.id,
                        label=entry["label"],
                        bitrate_kbps=entry["bitrate_kbps"],
                        width=entry["width"],
                        height=entry["height"],
                        manifest_key=entry["manifest_key"],
                        segment_keys=list(entry["segment_keys"]),
                        duration_seconds=entry.get("duration_seconds"),
                        byte_size=entry.get("byte_size", 0),
                    )
                )
            previous = video.current_job_id
            video.current_job_id = job.id
            video.state = VideoState.READY
            video.last_error = None
            log.info(
                "rendition_set_published",
                recipe_video_id=str(video.id),
                job_id=str(job.id),
                previous_job_id=str(previous) if previous else None,
                renditions=len(outputs.get("renditions", [])),
            )
            return

        if job.state in (JobState.FAILED, JobState.ABANDONED):
            video.last_error = f"{job.last_error_kind or 'unknown'}: job {job.id} {job.state.value}"
            if video.current_job_id is None and video.state is not VideoState.FAILED:
                video.state = VideoState.FAILED
            log.warning(
                "video_job_failed",
                recipe_video_id=str(video.id),
                job_id=str(job.id),
                job_state=job.state.value,
                error_kind=job.last_error_kind,
                kept_current_set=video.current_job_id is not None,
            )
            return

        log.error("job_completion_not_terminal", job_id=str(job.id), job_state=job.state.value)

    async def status(self, video_id: UUID) -> VideoStatus:
        """Return the externally visible state of a video.

        Raises:
            NotFound: If the video does not exist.
        """
        async with self.session_factory() as db:
            video = await db.get(RecipeVideo, video_id)
            if video is None:
                raise NotFound(f"Recipe video not found: {video_id}")

            result = await db.execute(
                select(TranscodeJob)
                .where(TranscodeJob.recipe_video_id == video_id)
                .order_by(TranscodeJob.created_at.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()

            manifest_key = None
            if video.current_job_id is not None:
                current = await db.get(TranscodeJob, video.current_job_id)
                if current is not None and current.outputs:
                    manifest_key = current.outputs.get("master_manifest_key")

        return VideoStatus(
            video_id=video.id,
            recipe_id=video.recipe_id,
            ordinal=video.ordinal,
            state=video.state,
            manifest_key=manifest_key if video.state is VideoState.READY else None,
            job_id=latest.id if latest else None,
            job_state=latest.state if latest else None,
            attempt_count=latest.attempt_count if latest else 0,
            progress=latest.progress if latest else None,
            last_error_kind=latest.last_error_kind if latest else None,
            last_error=video.last_error,
            uploaded_at=video.uploaded_at,
        )

    async def playback_access(
        self,
        video_id: UUID,
        principal: str,
        decision: AuthorizationDecision,
        client_ip: str | None = None,
        segment_offset: int = 0,
        now: float | None = None,
    ) -> PlaybackAccess:
        """Issue signed URLs for the current rendition set of a ready video.

        The authorization decision is checked before any lookup so that a
        denied principal learns nothing about the video.

        Args:
            segment_offset: Index of the first segment of the window; later
                windows are fetched by calling again as URLs expire.

        Raises:
            Denied: If the decision does not allow the principal.
            NotFound: If the video does not exist or has no published set.
        """
        if not decision.allows(principal):
            raise Denied("authorization decision does not allow access", principal=principal)
        if self.issuer is None:
            raise RuntimeError("IngestCoordinator has no SignedUrlIssuer configured")
        if segment_offset < 0:
            raise ValueError("segment_offset must be >= 0")

        async with self.session_factory() as db:
            video = await db.get(RecipeVideo, video_id)
            if video is None or video.current_job_id is None or video.state is not VideoState.READY:
                raise NotFound(f"No playable renditions for video: {video_id}")

            current = await db.get(TranscodeJob, video.current_job_id)
            master_key = (current.outputs or {}).get("master_manifest_key") if current else None
            if not master_key:
                raise NotFound(f"No master manifest for video: {video_id}")

            result = await db.execute(
                select(Rendition)
                .where(
                    Rendition.recipe_video_id == video.id,
                    Rendition.job_id == video.current_job_id,
                )
                .order_by(Rendition.bitrate_kbps.desc())
            )
            renditions = list(result.scalars().all())

            windows = {
                r.id: r.segment_keys[segment_offset:segment_offset + self.segment_window]
                for r in renditions
            }
            keys = {master_key}
            for rendition in renditions:
                keys.add(rendition.manifest_key)
                keys.update(windows[rendition.id])

            objects_result = await db.execute(select(StorageObject).where(StorageObject.key.in_(keys)))
            objects = {obj.key: obj for obj in objects_result.scalars().all()}

        def issue(key: str) -> AccessDescriptor:
            obj = objects.get(key)
            if obj is None:
                raise NotFound(f"Object not found: {key}", key=key)
            return self.issuer.issue(obj, principal, decision, client_ip=client_ip, now=now)

        access = PlaybackAccess(video_id=video.id, master=issue(master_key))
        for rendition in renditions:
            window = windows[rendition.id]
            end = segment_offset + len(window)
            access.renditions.append(
                RenditionAccess(
                    label=rendition.label,
                    bitrate_kbps=rendition.bitrate_kbps,
                    width=rendition.width,
                    height=rendition.height,
                    manifest=issue(rendition.manifest_key),
                    segments=[issue(key) for key in window],
                    segment_offset=segment_offset,
                    total_segments=len(rendition.segment_keys),
                    next_offset=end if end < len(rendition.segment_keys) else None,
                )
            )

        log.info(
            "playback_access_issued",
            recipe_video_id=str(video_id),
            principal=principal,
            segment_offset=segment_offset,
            renditions=len(access.renditions),
        )
        return access

    async def cancel(self, job_id: UUID) -> JobState:
        """Request cancellation of a transcode job.

        A queued job fails immediately; a running job is flagged and the
        worker terminates the encoder at its next heartbeat. Terminal jobs
        are left as they are.

        Returns:
            The job state after the request.

        Raises:
            NotFound: If the job does not exist.
        """
        for _ in range(_CANCEL_RETRIES):
            try:
                async with self.session_factory() as db, db.begin():
                    job = await db.get(TranscodeJob, job_id)
                    if job is None:
                        raise NotFound(f"Transcode job not found: {job_id}")

                    if job.state is JobState.QUEUED:
                        job.cancel_requested = True
                        job.append_error("cancelled", "cancelled before a worker claimed it")
                        job.state = JobState.FAILED
                        job.finished_at = utcnow()
                        await db.flush()
                        await self.on_job_completed(job.id, db)
                    elif job.state is JobState.RUNNING:
                        job.cancel_requested = True
                    state = job.state
                log.info("job_cancel_requested", job_id=str(job_id), job_state=state.value)
                return state
            except StaleDataError:
                # Claimed or updated concurrently; re-read and apply to the new state
                log.debug("job_cancel_retry", job_id=str(job_id))
        raise Conflict("job changed concurrently; retry the cancellation", job_id=job_id)

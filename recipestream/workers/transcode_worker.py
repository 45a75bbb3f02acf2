"""Transcode Worker.

Claims queued TranscodeJobs and turns a master file into an HLS ladder.

Transaction Pattern:
    1. Claim (short transaction, compare-and-swap on state + version)
    2. Close database connection
    3. Download master, probe, encode every rung while uploading segments
       (minutes to hours, outside any transaction)
    4. Heartbeat transactions write progress and observe cancellation
    5. Reopen database connection and record the outcome, publishing the
       rendition set through the IngestCoordinator in the same transaction

Claiming:
    UPDATE transcode_jobs SET state='running', version=version+1, ...
    WHERE id=:id AND state='queued' AND version=:v

    rowcount 0 means another worker won the race; the next candidate is
    tried. No row locks are taken, so contention never blocks.

Fencing:
    Every write made by the worker after the claim is guarded on the
    claim_token it generated. If the stale-claim reaper requeued the job in
    the meantime, the guard fails and the attempt stops without touching the
    job again.

Storage Layout:
    videos/{video_id}/renditions/{job_id}/a{attempt}/master.m3u8
    videos/{video_id}/renditions/{job_id}/a{attempt}/{label}/index.m3u8
    videos/{video_id}/renditions/{job_id}/a{attempt}/{label}/seg_00000.ts

    Keys are unique per attempt, so a retried attempt never overwrites
    objects of an earlier one and partial outputs can be discarded by key.

Error Handling:
    - JobCancelled → running -> failed (kind "cancelled"), never requeued
    - FatalEncoderError, PermanentError, QuotaExceeded, NotFound
      → running -> abandoned immediately
    - asyncio.TimeoutError, EncoderError, TransientError, anything else
      → running -> failed -> queued with backoff while attempts remain,
        otherwise failed -> abandoned
"""

import asyncio
import contextlib
import functools
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from recipestream.config import (
    get_encoder_timeout,
    get_retry_backoff_base,
    get_retry_backoff_max,
    get_stale_job_seconds,
    get_worker_id,
)
from recipestream.database import require_session_factory
from recipestream.exceptions import (
    EncoderError,
    FatalEncoderError,
    JobCancelled,
    NotFound,
    PermanentError,
    QuotaExceeded,
    StorageError,
    TransientError,
)
from recipestream.models import JobState, ObjectKind, TranscodeJob, utcnow
from recipestream.services.encoder import FFmpegEncoder, Rung, build_master_playlist
from recipestream.services.ingest import IngestCoordinator
from recipestream.storage.adapter import ObjectStoreAdapter
from recipestream.utils.alerts import send_alert
from recipestream.utils.filesystem import get_rendition_dir, get_source_dir, remove_attempt_workspace

log = structlog.get_logger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp2t"
MASTER_PLAYLIST_NAME = "master.m3u8"

_CLAIM_CANDIDATES = 10
_OUTCOME_RETRIES = 3
_STALE_BATCH = 50


class ClaimLost(Exception):
    """The job was reclaimed by someone else while this attempt was running."""


@dataclass
class ClaimedJob:
    """Snapshot of a job taken inside the claim transaction."""

    job_id: UUID
    video_id: UUID
    source_key: str
    ladder: list[Rung]
    attempt: int
    claim_token: UUID


@dataclass
class _Attempt:
    claimed: ClaimedJob
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    claim_lost: bool = False
    uploaded_keys: list[str] = field(default_factory=list)
    progress: dict[str, int] = field(
        default_factory=lambda: {"renditions_completed": 0, "segments_uploaded": 0, "bytes_uploaded": 0}
    )

    @property
    def key_prefix(self) -> str:
        c = self.claimed
        return f"videos/{c.video_id}/renditions/{c.job_id}/a{c.attempt}"


def backoff_delay(attempt: int, base: int, cap: int) -> int:
    """Seconds to wait before retrying after `attempt` failed attempts."""
    return min(base * 2 ** max(attempt - 1, 0), cap)


class TranscodeWorker:
    """Claims and executes transcode jobs.

    Args:
        adapter: Object store adapter used for the master and all outputs.
        coordinator: Ingest coordinator notified of claims and outcomes.
        encoder: Encoder (default: FFmpegEncoder()).
        session_factory: Session factory (defaults to the application factory).
        worker_id: Identifier recorded on claimed jobs (default: WORKER_ID).
        encoder_timeout: Hard wall-clock limit per job in seconds.
        heartbeat_interval: Seconds between background heartbeats.
        stale_after: Heartbeat age in seconds after which a running job is recovered.
    """

    def __init__(
        self,
        adapter: ObjectStoreAdapter,
        coordinator: IngestCoordinator,
        encoder: FFmpegEncoder | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        worker_id: str | None = None,
        encoder_timeout: float | None = None,
        heartbeat_interval: float = 15.0,
        stale_after: int | None = None,
        backoff_base: int | None = None,
        backoff_max: int | None = None,
    ) -> None:
        self.adapter = adapter
        self.coordinator = coordinator
        self.encoder = encoder or FFmpegEncoder()
        self._session_factory = session_factory
        self.worker_id = worker_id or get_worker_id()
        self.encoder_timeout = encoder_timeout or get_encoder_timeout()
        self.heartbeat_interval = heartbeat_interval
        self.stale_after = stale_after or get_stale_job_seconds()
        self.backoff_base = get_retry_backoff_base() if backoff_base is None else backoff_base
        self.backoff_max = get_retry_backoff_max() if backoff_max is None else backoff_max

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return require_session_factory(self._session_factory)

    async def run_once(self) -> bool:
        """Claim and process at most one job. Returns False when nothing was claimable."""
        claimed = await self.claim_next_job()
        if claimed is None:
            return False
        await self.process(claimed)
        return True

    async def claim_next_job(self) -> ClaimedJob | None:
        """Atomically claim the oldest available queued job.

        Returns:
            ClaimedJob, or None if no queued job is available (or every
            candidate was claimed by another worker first).
        """
        now = utcnow()
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                select(TranscodeJob.id, TranscodeJob.version)
                .where(TranscodeJob.state == JobState.QUEUED, TranscodeJob.available_at <= now)
                .order_by(TranscodeJob.available_at, TranscodeJob.created_at)
                .limit(_CLAIM_CANDIDATES)
            )
            candidates = result.all()

            for job_id, version in candidates:
                token = uuid.uuid4()
                claim = await db.execute(
                    update(TranscodeJob)
                    .where(
                        TranscodeJob.id == job_id,
                        TranscodeJob.state == JobState.QUEUED,
                        TranscodeJob.version == version,
                    )
                    .values(
                        state=JobState.RUNNING,
                        version=TranscodeJob.version + 1,
                        claim_token=token,
                        worker_id=self.worker_id,
                        attempt_count=TranscodeJob.attempt_count + 1,
                        started_at=now,
                        heartbeat_at=now,
                        progress={"renditions_completed": 0, "segments_uploaded": 0, "bytes_uploaded": 0},
                    )
                    .execution_options(synchronize_session=False)
                )
                if claim.rowcount != 1:
                    log.debug("job_claim_conflict", job_id=str(job_id), worker_id=self.worker_id)
                    continue

                row = (
                    await db.execute(
                        select(
                            TranscodeJob.recipe_video_id,
                            TranscodeJob.source_key,
                            TranscodeJob.ladder,
                            TranscodeJob.attempt_count,
                        ).where(TranscodeJob.id == job_id)
                    )
                ).one()
                await self.coordinator.on_job_claimed(row.recipe_video_id, db)

                claimed = ClaimedJob(
                    job_id=job_id,
                    video_id=row.recipe_video_id,
                    source_key=row.source_key,
                    ladder=[Rung.from_dict(entry) for entry in row.ladder],
                    attempt=row.attempt_count,
                    claim_token=token,
                )
                log.info(
                    "job_claimed",
                    job_id=str(job_id),
                    recipe_video_id=str(claimed.video_id),
                    attempt=claimed.attempt,
                    worker_id=self.worker_id,
                )
                return claimed
        return None

    async def process(self, claimed: ClaimedJob) -> JobState | None:
        """Execute a claimed job and record its outcome.

        Never raises for job failures; they are recorded on the job.

        Returns:
            The job's resulting state, or None if the claim was lost.
        """
        attempt = _Attempt(claimed=claimed)
        bound = log.bind(job_id=str(claimed.job_id), attempt=claimed.attempt)
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(attempt))

        try:
            outputs = await asyncio.wait_for(self._execute(attempt), timeout=self.encoder_timeout)
            heartbeat_task.cancel()
            await self._complete(attempt, outputs)
            bound.info("job_succeeded", renditions=len(outputs["renditions"]))
            return JobState.SUCCEEDED

        except (ClaimLost, JobCancelled) as e:
            if attempt.claim_lost or isinstance(e, ClaimLost):
                bound.warning("job_claim_lost", worker_id=self.worker_id)
                await self._discard_outputs(attempt)
                return None
            bound.info("job_cancelled")
            return await self._record_failure(attempt, JobCancelled.kind, str(e) or "cancelled", retryable=False)

        except (FatalEncoderError, PermanentError, QuotaExceeded, NotFound) as e:
            kind = getattr(e, "kind", "not_found")
            bound.error("job_fatal_error", error_kind=kind, error=str(e))
            return await self._record_failure(attempt, kind, str(e), retryable=False, abandon=True)

        except asyncio.TimeoutError:
            bound.error("job_timeout", timeout_seconds=self.encoder_timeout)
            return await self._record_failure(
                attempt, "timeout", f"exceeded {self.encoder_timeout}s wall-clock limit", retryable=True
            )

        except (EncoderError, TransientError) as e:
            bound.warning("job_attempt_failed", error_kind=e.kind, error=str(e))
            return await self._record_failure(attempt, e.kind, str(e), retryable=True)

        except Exception as e:
            bound.error("job_unexpected_error", error=str(e), exc_info=True)
            return await self._record_failure(attempt, "unexpected", f"{type(e).__name__}: {e}", retryable=True)

        finally:
            if not heartbeat_task.done():
                heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task
            remove_attempt_workspace(str(claimed.job_id), claimed.attempt)

    async def _execute(self, attempt: _Attempt) -> dict[str, Any]:
        claimed = attempt.claimed
        job_dir = str(claimed.job_id)

        source_path = get_source_dir(job_dir, claimed.attempt) / f"master{PurePosixPath(claimed.source_key).suffix}"
        await self.adapter.download(claimed.source_key, str(source_path))
        info = await self.encoder.probe(source_path)
        log.info(
            "master_probed",
            job_id=job_dir,
            duration_seconds=info.duration_seconds,
            width=info.width,
            height=info.height,
            codec=info.video_codec,
        )

        renditions: list[dict[str, Any]] = []
        for rung in claimed.ladder:
            if attempt.cancel_event.is_set():
                raise JobCancelled("cancellation requested")

            prefix = f"{attempt.key_prefix}/{rung.label}"
            uploaded: dict[str, int] = {}
            result = await self.encoder.encode_rung(
                source_path,
                rung,
                get_rendition_dir(job_dir, claimed.attempt, rung.label),
                functools.partial(self._upload_segment, attempt, prefix, uploaded),
                cancel_event=attempt.cancel_event,
            )

            missing = [name for name in result.segment_names if name not in uploaded]
            if missing:
                raise EncoderError(f"playlist for {rung.label} references unknown segments: {missing[:3]}")

            manifest_key = f"{prefix}/{result.playlist_path.name}"
            await self._put_output(
                attempt, manifest_key, result.playlist_path.read_bytes(), ObjectKind.MANIFEST
            )

            renditions.append(
                {
                    "label": rung.label,
                    "width": rung.width,
                    "height": rung.height,
                    "bitrate_kbps": rung.bitrate_kbps,
                    "manifest_key": manifest_key,
                    "segment_keys": [f"{prefix}/{name}" for name in result.segment_names],
                    "duration_seconds": result.duration_seconds,
                    "byte_size": sum(uploaded[name] for name in result.segment_names),
                }
            )
            attempt.progress["renditions_completed"] += 1
            await self._heartbeat(attempt)

        if attempt.cancel_event.is_set():
            raise JobCancelled("cancellation requested")

        master_key = f"{attempt.key_prefix}/{MASTER_PLAYLIST_NAME}"
        await self._put_output(
            attempt, master_key, build_master_playlist(renditions).encode(), ObjectKind.MANIFEST
        )
        return {"master_manifest_key": master_key, "renditions": renditions}

    async def _upload_segment(self, attempt: _Attempt, prefix: str, uploaded: dict[str, int], path: Path) -> None:
        key = f"{prefix}/{path.name}"
        attempt.uploaded_keys.append(key)
        record = await self.adapter.put_file(key, str(path), SEGMENT_CONTENT_TYPE, ObjectKind.SEGMENT)
        uploaded[path.name] = record.size_bytes
        attempt.progress["segments_uploaded"] += 1
        attempt.progress["bytes_uploaded"] += record.size_bytes
        path.unlink(missing_ok=True)

    async def _put_output(self, attempt: _Attempt, key: str, body: bytes, kind: ObjectKind) -> None:
        attempt.uploaded_keys.append(key)
        await self.adapter.put(key, body, MANIFEST_CONTENT_TYPE, kind)

    async def _heartbeat(self, attempt: _Attempt) -> None:
        """Persist progress and observe cancellation.

        Raises:
            ClaimLost: If the job no longer carries this attempt's claim token.
            JobCancelled: If cancellation was requested.
        """
        claimed = attempt.claimed
        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(TranscodeJob)
                .where(
                    TranscodeJob.id == claimed.job_id,
                    TranscodeJob.claim_token == claimed.claim_token,
                    TranscodeJob.state == JobState.RUNNING,
                )
                .values(
                    progress=dict(attempt.progress),
                    heartbeat_at=utcnow(),
                    version=TranscodeJob.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                attempt.claim_lost = True
                attempt.cancel_event.set()
                raise ClaimLost(f"job {claimed.job_id} is no longer held by this attempt")

            cancel_requested = (
                await db.execute(select(TranscodeJob.cancel_requested).where(TranscodeJob.id == claimed.job_id))
            ).scalar_one()

        if cancel_requested:
            attempt.cancel_event.set()
            raise JobCancelled("cancellation requested")

    async def _heartbeat_loop(self, attempt: _Attempt) -> None:
        while not attempt.cancel_event.is_set():
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._heartbeat(attempt)
            except (ClaimLost, JobCancelled):
                # cancel_event is set; the encoder stops at its next poll
                return
            except SQLAlchemyError as e:
                log.warning("heartbeat_failed", job_id=str(attempt.claimed.job_id), error=str(e))

    async def _complete(self, attempt: _Attempt, outputs: dict[str, Any]) -> None:
        """Record success and publish the rendition set in one transaction.

        Raises:
            ClaimLost: If the job was reclaimed while encoding.
            JobCancelled: If cancellation was requested before publishing.
        """
        claimed = attempt.claimed
        for remaining in range(_OUTCOME_RETRIES, 0, -1):
            try:
                async with self.session_factory() as db, db.begin():
                    job = await db.get(TranscodeJob, claimed.job_id)
                    if job is None or job.claim_token != claimed.claim_token or job.state is not JobState.RUNNING:
                        attempt.claim_lost = True
                        raise ClaimLost(f"job {claimed.job_id} is no longer held by this attempt")
                    if job.cancel_requested:
                        raise JobCancelled("cancellation requested")

                    job.state = JobState.SUCCEEDED
                    job.outputs = outputs
                    job.progress = dict(attempt.progress)
                    job.finished_at = utcnow()
                    await db.flush()
                    await self.coordinator.on_job_completed(job.id, db)
                return
            except StaleDataError:
                if remaining == 1:
                    raise
                log.debug("job_complete_retry", job_id=str(claimed.job_id))

    async def _record_failure(
        self,
        attempt: _Attempt,
        kind: str,
        message: str,
        retryable: bool,
        abandon: bool = False,
    ) -> JobState | None:
        """Record a failed attempt, requeueing it with backoff when allowed.

        Partial outputs of the attempt are deleted after the outcome is stored.
        """
        claimed = attempt.claimed
        final_state: JobState | None = None
        job_snapshot: dict[str, Any] = {}

        for remaining in range(_OUTCOME_RETRIES, 0, -1):
            try:
                async with self.session_factory() as db, db.begin():
                    job = await db.get(TranscodeJob, claimed.job_id)
                    if job is None or job.claim_token != claimed.claim_token or job.state is not JobState.RUNNING:
                        log.warning("job_claim_lost", job_id=str(claimed.job_id), error_kind=kind)
                        break

                    job.append_error(kind, message)
                    job.progress = dict(attempt.progress)
                    if abandon:
                        job.state = JobState.ABANDONED
                    else:
                        job.state = JobState.FAILED
                        if retryable and not job.cancel_requested and job.attempt_count < job.max_attempts:
                            delay = backoff_delay(job.attempt_count, self.backoff_base, self.backoff_max)
                            job.state = JobState.QUEUED
                            job.available_at = utcnow() + timedelta(seconds=delay)
                            job.claim_token = None
                            job.worker_id = None
                            log.info(
                                "job_requeued",
                                job_id=str(job.id),
                                attempt=job.attempt_count,
                                max_attempts=job.max_attempts,
                                retry_in_seconds=delay,
                            )
                        elif retryable and not job.cancel_requested:
                            job.state = JobState.ABANDONED
                        elif job.cancel_requested and kind != JobCancelled.kind:
                            job.append_error(JobCancelled.kind, "cancellation requested")

                    if job.state is not JobState.QUEUED:
                        job.finished_at = utcnow()
                    await db.flush()
                    if job.state in (JobState.FAILED, JobState.ABANDONED):
                        await self.coordinator.on_job_completed(job.id, db)

                    final_state = job.state
                    job_snapshot = {
                        "job_id": str(job.id),
                        "recipe_video_id": str(job.recipe_video_id),
                        "attempts": f"{job.attempt_count}/{job.max_attempts}",
                        "error_kind": job.last_error_kind,
                    }
                break
            except StaleDataError:
                if remaining == 1:
                    raise
                log.debug("job_failure_retry", job_id=str(claimed.job_id))

        await self._discard_outputs(attempt)

        if final_state is JobState.ABANDONED:
            log.error("job_abandoned", **job_snapshot)
            await send_alert("ERROR", "Transcode job abandoned", details={**job_snapshot, "error": message[:500]})
        return final_state

    async def _discard_outputs(self, attempt: _Attempt) -> None:
        """Best-effort removal of everything this attempt uploaded."""
        for key in attempt.uploaded_keys:
            try:
                await self.adapter.discard(key)
            except (NotFound, StorageError) as e:
                log.warning("partial_output_cleanup_failed", key=key, error=str(e))
        if attempt.uploaded_keys:
            log.info(
                "partial_outputs_discarded",
                job_id=str(attempt.claimed.job_id),
                objects=len(attempt.uploaded_keys),
            )
        attempt.uploaded_keys.clear()

    async def recover_stale_jobs(self) -> int:
        """Fail running jobs whose worker stopped heartbeating.

        Each is requeued while attempts remain, otherwise abandoned; a job
        with a pending cancellation ends failed as cancelled.

        Returns:
            Number of jobs recovered.
        """
        cutoff = utcnow() - timedelta(seconds=self.stale_after)
        abandoned: list[dict[str, str]] = []

        try:
            async with self.session_factory() as db, db.begin():
                result = await db.execute(
                    select(TranscodeJob)
                    .where(TranscodeJob.state == JobState.RUNNING, TranscodeJob.heartbeat_at < cutoff)
                    .order_by(TranscodeJob.heartbeat_at)
                    .limit(_STALE_BATCH)
                )
                jobs = list(result.scalars().all())
                if not jobs:
                    return 0

                for job in jobs:
                    job.append_error("stale", f"no heartbeat from worker {job.worker_id}")
                    job.state = JobState.FAILED
                    if job.cancel_requested:
                        job.append_error(JobCancelled.kind, "cancellation requested")
                        job.finished_at = utcnow()
                    elif job.attempt_count < job.max_attempts:
                        job.state = JobState.QUEUED
                        job.available_at = utcnow()
                        job.claim_token = None
                        job.worker_id = None
                    else:
                        job.state = JobState.ABANDONED
                        job.finished_at = utcnow()
                        abandoned.append({"job_id": str(job.id), "recipe_video_id": str(job.recipe_video_id)})
                await db.flush()

                for job in jobs:
                    if job.state in (JobState.FAILED, JobState.ABANDONED):
                        await self.coordinator.on_job_completed(job.id, db)
                recovered = len(jobs)
        except StaleDataError:
            # A worker heartbeated in between; its job is not stale after all
            log.info("stale_job_recovery_conflict")
            return 0

        log.warning("stale_jobs_recovered", count=recovered, abandoned=len(abandoned))
        for details in abandoned:
            await send_alert("ERROR", "Transcode job abandoned", details={**details, "error_kind": "stale"})
        return recovered

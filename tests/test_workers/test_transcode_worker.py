"""
Tests for TranscodeWorker claim, execution and outcome recording.

A fake encoder writes small segment files and streams them through the real
upload callback; storage is the in-memory adapter and the database is SQLite.
The background heartbeat is effectively disabled (interval 3600s) so the
single SQLite connection is never used concurrently; heartbeats still run
after every completed rung.
"""

import asyncio
import uuid
from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select, update

from recipestream.exceptions import EncoderError, FatalEncoderError, JobCancelled, TransientError
from recipestream.models import JobState, RecipeVideo, Rendition, TranscodeJob, VideoState, utcnow
from recipestream.services.encoder import MediaInfo, Rung, RungResult
from recipestream.services.ingest import MasterUpload
from recipestream.workers.transcode_worker import TranscodeWorker, backoff_delay
from tests.support.factories import (
    DEFAULT_TEST_LADDER,
    create_job,
    create_published_video,
    create_video,
    write_master_file,
)

LADDER = [Rung.from_dict(entry) for entry in DEFAULT_TEST_LADDER]


class FakeEncoder:
    """Encoder double producing `segments` segments per rung.

    Args:
        failures: Exceptions to raise, keyed by rung label (or "probe"); each
            is raised once.
        during_encode: Awaited after the first segment of every rung.
    """

    def __init__(self, segments: int = 2, failures=None, during_encode=None):
        self.segments = segments
        self.failures = dict(failures or {})
        self.during_encode = during_encode
        self.encoded: list[str] = []

    async def probe(self, source):
        assert source.exists()
        if "probe" in self.failures:
            raise self.failures.pop("probe")
        return MediaInfo(duration_seconds=12.0, width=1920, height=1080, video_codec="h264")

    async def encode_rung(self, source, rung, output_dir, on_segment, cancel_event=None):
        self.encoded.append(rung.label)
        names = []
        for index in range(self.segments):
            name = f"seg_{index:05d}.ts"
            path = output_dir / name
            path.write_bytes(f"{rung.label}-{index}".encode())
            await on_segment(path)
            names.append(name)
            if index == 0 and self.during_encode is not None:
                await self.during_encode(rung)
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled("cancellation requested")
        error = self.failures.pop(rung.label, None)
        if error is not None:
            raise error
        playlist = output_dir / "index.m3u8"
        lines = ["#EXTM3U"]
        for name in names:
            lines += ["#EXTINF:6.000,", name]
        lines.append("#EXT-X-ENDLIST")
        playlist.write_text("\n".join(lines) + "\n")
        return RungResult(rung=rung, playlist_path=playlist, segment_names=names, duration_seconds=6.0 * len(names))


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def worker(adapter, coordinator, encoder, test_session_factory) -> TranscodeWorker:
    return TranscodeWorker(
        adapter,
        coordinator,
        encoder=encoder,
        session_factory=test_session_factory,
        worker_id="worker-test",
        encoder_timeout=30,
        heartbeat_interval=3600,
        stale_after=300,
        backoff_base=0,
        backoff_max=0,
    )


@pytest.fixture
def mock_alert(mocker):
    return mocker.patch("recipestream.workers.transcode_worker.send_alert", new=AsyncMock())


async def _submit(coordinator, tmp_path, recipe_id: str = "recipe_pasta", ordinal: int = 0):
    path = write_master_file(tmp_path, name=f"{recipe_id}-{ordinal}-{uuid.uuid4().hex[:6]}.mp4")
    return await coordinator.submit(
        MasterUpload(recipe_id=recipe_id, ordinal=ordinal, path=str(path), ladder=list(LADDER))
    )


async def _job(session_factory, job_id) -> TranscodeJob:
    async with session_factory() as db:
        return await db.get(TranscodeJob, job_id)


async def _video(session_factory, video_id) -> RecipeVideo:
    async with session_factory() as db:
        return await db.get(RecipeVideo, video_id)


def _rendition_keys(backend) -> list[str]:
    return [key for key in backend.objects if key.startswith("videos/")]


class TestBackoff:
    @pytest.mark.parametrize(("attempt", "expected"), [(1, 30), (2, 60), (3, 120), (10, 900)])
    def test_exponential_with_cap(self, attempt, expected):
        assert backoff_delay(attempt, 30, 900) == expected


class TestClaim:
    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, worker):
        assert await worker.claim_next_job() is None
        assert await worker.run_once() is False

    @pytest.mark.asyncio
    async def test_claim_marks_job_running(self, worker, coordinator, test_session_factory, tmp_path):
        submitted = await _submit(coordinator, tmp_path)

        claimed = await worker.claim_next_job()

        assert claimed.job_id == submitted.job_id
        assert claimed.attempt == 1
        assert claimed.ladder == LADDER
        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.RUNNING
        assert job.claim_token == claimed.claim_token
        assert job.worker_id == "worker-test"
        assert job.version == 2
        assert job.heartbeat_at is not None
        assert (await _video(test_session_factory, submitted.video_id)).state is VideoState.TRANSCODING

    @pytest.mark.asyncio
    async def test_claimed_job_is_not_claimed_twice(self, worker, coordinator, tmp_path):
        await _submit(coordinator, tmp_path)

        assert await worker.claim_next_job() is not None
        assert await worker.claim_next_job() is None

    @pytest.mark.asyncio
    async def test_future_jobs_are_not_claimable(self, worker, coordinator, test_session_factory, tmp_path):
        first = await _submit(coordinator, tmp_path, ordinal=0)
        later = await _submit(coordinator, tmp_path, ordinal=1)
        async with test_session_factory() as db, db.begin():
            await db.execute(
                update(TranscodeJob)
                .where(TranscodeJob.id == first.job_id)
                .values(available_at=utcnow() + timedelta(hours=1))
            )

        claimed = await worker.claim_next_job()

        assert claimed.job_id == later.job_id
        assert await worker.claim_next_job() is None


class TestProcessSuccess:
    @pytest.mark.asyncio
    async def test_publishes_rendition_set(
        self, worker, coordinator, primary_backend, test_session_factory, workspace_root, tmp_path
    ):
        submitted = await _submit(coordinator, tmp_path)

        assert await worker.run_once() is True

        job = await _job(test_session_factory, submitted.job_id)
        video = await _video(test_session_factory, submitted.video_id)
        prefix = f"videos/{submitted.video_id}/renditions/{submitted.job_id}/a1"

        assert job.state is JobState.SUCCEEDED
        assert job.finished_at is not None
        assert job.progress == {"renditions_completed": 2, "segments_uploaded": 4, "bytes_uploaded": 24}
        assert job.outputs["master_manifest_key"] == f"{prefix}/master.m3u8"
        assert video.state is VideoState.READY
        assert video.current_job_id == submitted.job_id

        assert sorted(_rendition_keys(primary_backend)) == sorted(
            [
                f"{prefix}/master.m3u8",
                f"{prefix}/720p/index.m3u8",
                f"{prefix}/720p/seg_00000.ts",
                f"{prefix}/720p/seg_00001.ts",
                f"{prefix}/360p/index.m3u8",
                f"{prefix}/360p/seg_00000.ts",
                f"{prefix}/360p/seg_00001.ts",
            ]
        )
        master = primary_backend.objects[f"{prefix}/master.m3u8"]
        assert master.cache_control == "public, max-age=300"
        assert "720p/index.m3u8" in master.data.decode()
        assert primary_backend.objects[f"{prefix}/720p/seg_00001.ts"].data == b"720p-1"

        async with test_session_factory() as db:
            renditions = (
                await db.execute(select(Rendition).where(Rendition.job_id == submitted.job_id))
            ).scalars().all()
        assert {r.label: r.segment_keys for r in renditions}["360p"] == [
            f"{prefix}/360p/seg_00000.ts",
            f"{prefix}/360p/seg_00001.ts",
        ]
        assert not (workspace_root / "jobs" / str(submitted.job_id) / "a1").exists()


class TestProcessFailures:
    @pytest.mark.asyncio
    async def test_encoder_error_requeues_and_discards_partial_outputs(
        self, worker, coordinator, encoder, primary_backend, test_session_factory, tmp_path
    ):
        encoder.failures["360p"] = EncoderError("Conversion failed!", exit_code=1)
        submitted = await _submit(coordinator, tmp_path)

        await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.QUEUED
        assert job.attempt_count == 1
        assert job.last_error_kind == "encoder"
        assert job.claim_token is None
        assert "attempt=1 encoder: Conversion failed!" in job.error_log
        assert _rendition_keys(primary_backend) == []
        assert (await _video(test_session_factory, submitted.video_id)).state is VideoState.TRANSCODING

    @pytest.mark.asyncio
    async def test_retry_uses_new_attempt_prefix(
        self, worker, coordinator, encoder, primary_backend, test_session_factory, tmp_path
    ):
        encoder.failures["360p"] = TransientError("slow down", backend="primary")
        submitted = await _submit(coordinator, tmp_path)

        await worker.run_once()
        await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.SUCCEEDED
        assert job.attempt_count == 2
        assert job.outputs["master_manifest_key"].endswith("/a2/master.m3u8")
        assert all("/a2/" in key for key in _rendition_keys(primary_backend))

    @pytest.mark.asyncio
    async def test_fatal_error_abandons_and_alerts(
        self, worker, coordinator, encoder, test_session_factory, mock_alert, tmp_path
    ):
        encoder.failures["probe"] = FatalEncoderError("input contains no video stream")
        submitted = await _submit(coordinator, tmp_path)

        await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.ABANDONED
        assert job.last_error_kind == "fatal_encoder"
        assert job.attempt_count == 1
        assert (await _video(test_session_factory, submitted.video_id)).state is VideoState.FAILED
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args.args[:2] == ("ERROR", "Transcode job abandoned")
        assert mock_alert.call_args.kwargs["details"]["job_id"] == str(submitted.job_id)

    @pytest.mark.asyncio
    async def test_process_returns_abandoned_for_corrupt_master(
        self, worker, coordinator, encoder, mock_alert, tmp_path, mocker
    ):
        mock_log = mocker.patch("recipestream.workers.transcode_worker.log")
        encoder.failures["probe"] = FatalEncoderError("moov atom not found")
        submitted = await _submit(coordinator, tmp_path)
        claimed = await worker.claim_next_job()

        outcome = await worker.process(claimed)

        assert outcome is JobState.ABANDONED
        abandoned = [c for c in mock_log.error.call_args_list if c.args[0] == "job_abandoned"]
        assert len(abandoned) == 1
        assert abandoned[0].kwargs["error_kind"] == "fatal_encoder"
        assert abandoned[0].kwargs["job_id"] == str(submitted.job_id)
        mock_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_master_abandons(self, worker, coordinator, primary_backend, test_session_factory, mock_alert, tmp_path):
        submitted = await _submit(coordinator, tmp_path)
        primary_backend.objects.pop(submitted.master_key)

        await worker.run_once()

        assert (await _job(test_session_factory, submitted.job_id)).state is JobState.ABANDONED

    @pytest.mark.asyncio
    async def test_exhausted_attempts_abandon(
        self, worker, coordinator, encoder, test_session_factory, mock_alert, tmp_path
    ):
        submitted = await _submit(coordinator, tmp_path)
        async with test_session_factory() as db, db.begin():
            await db.execute(
                update(TranscodeJob).where(TranscodeJob.id == submitted.job_id).values(attempt_count=2)
            )
        encoder.failures["720p"] = EncoderError("Conversion failed!")

        await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.ABANDONED
        assert job.attempt_count == 3
        mock_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, adapter, coordinator, test_session_factory, tmp_path):
        async def stall(rung):
            await asyncio.sleep(30)

        worker = TranscodeWorker(
            adapter,
            coordinator,
            encoder=FakeEncoder(during_encode=stall),
            session_factory=test_session_factory,
            encoder_timeout=0.2,
            heartbeat_interval=3600,
            backoff_base=0,
            backoff_max=0,
        )
        submitted = await _submit(coordinator, tmp_path)

        await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.QUEUED
        assert job.last_error_kind == "timeout"

    @pytest.mark.asyncio
    async def test_segment_stored_before_upload_failure_is_discarded(
        self, worker, adapter, coordinator, primary_backend, test_session_factory, tmp_path, monkeypatch
    ):
        submitted = await _submit(coordinator, tmp_path)
        stored = []

        async def store_then_time_out(key, path, content_type, kind):
            primary_backend._store(key, Path(path).read_bytes(), content_type, "public")
            stored.append(key)
            raise TransientError("read timeout", key=key, backend="primary")

        monkeypatch.setattr(adapter, "put_file", store_then_time_out)

        await worker.run_once()

        assert len(stored) == 1
        assert (await _job(test_session_factory, submitted.job_id)).state is JobState.QUEUED
        assert _rendition_keys(primary_backend) == []

    @pytest.mark.asyncio
    async def test_failed_retranscode_keeps_ready_video(
        self, worker, coordinator, encoder, test_session_factory, mock_alert, tmp_path
    ):
        video_id, published_job = await create_published_video(coordinator, recipe_id="recipe_pasta")
        encoder.failures["probe"] = FatalEncoderError("moov atom not found")
        submitted = await _submit(coordinator, tmp_path, recipe_id="recipe_pasta")

        await worker.run_once()

        video = await _video(test_session_factory, video_id)
        assert (await _job(test_session_factory, submitted.job_id)).state is JobState.ABANDONED
        assert video.state is VideoState.READY
        assert video.current_job_id == published_job
        assert video.last_error.startswith("fatal_encoder:")


class TestCancellationAndClaimLoss:
    @pytest.mark.asyncio
    async def test_cancel_while_running(
        self, adapter, coordinator, primary_backend, test_session_factory, tmp_path
    ):
        submitted = await _submit(coordinator, tmp_path)

        async def cancel(rung):
            await coordinator.cancel(submitted.job_id)

        encoder = FakeEncoder(during_encode=cancel)
        worker = TranscodeWorker(
            adapter,
            coordinator,
            encoder=encoder,
            session_factory=test_session_factory,
            heartbeat_interval=3600,
            backoff_base=0,
        )

        result = await worker.run_once()

        job = await _job(test_session_factory, submitted.job_id)
        assert result is True
        assert encoder.encoded == ["720p"]
        assert job.state is JobState.FAILED
        assert job.last_error_kind == "cancelled"
        assert _rendition_keys(primary_backend) == []
        assert (await _video(test_session_factory, submitted.video_id)).state is VideoState.FAILED

    @pytest.mark.asyncio
    async def test_claim_lost_discards_outputs_silently(
        self, adapter, coordinator, primary_backend, test_session_factory, tmp_path
    ):
        submitted = await _submit(coordinator, tmp_path)

        async def reclaim(rung):
            async with test_session_factory() as db, db.begin():
                await db.execute(
                    update(TranscodeJob)
                    .where(TranscodeJob.id == submitted.job_id)
                    .values(state=JobState.QUEUED, claim_token=None, version=TranscodeJob.version + 1)
                )

        worker = TranscodeWorker(
            adapter,
            coordinator,
            encoder=FakeEncoder(during_encode=reclaim),
            session_factory=test_session_factory,
            heartbeat_interval=3600,
        )
        claimed = await worker.claim_next_job()

        assert await worker.process(claimed) is None

        job = await _job(test_session_factory, submitted.job_id)
        assert job.state is JobState.QUEUED
        assert job.last_error_kind is None
        assert _rendition_keys(primary_backend) == []


class TestRecoverStaleJobs:
    @pytest.mark.asyncio
    async def test_stale_jobs_requeued_abandoned_or_cancelled(
        self, worker, test_session_factory, mock_alert
    ):
        stale = utcnow() - timedelta(hours=1)
        async with test_session_factory() as db, db.begin():
            videos = [create_video(state=VideoState.TRANSCODING) for _ in range(4)]
            retryable = create_job(videos[0], state=JobState.RUNNING, attempt_count=1, heartbeat_at=stale,
                                   claim_token=uuid.uuid4(), worker_id="dead-worker")
            exhausted = create_job(videos[1], state=JobState.RUNNING, attempt_count=3, heartbeat_at=stale)
            cancelled = create_job(videos[2], state=JobState.RUNNING, attempt_count=1, heartbeat_at=stale,
                                   cancel_requested=True)
            healthy = create_job(videos[3], state=JobState.RUNNING, attempt_count=1, heartbeat_at=utcnow())
            db.add_all([*videos, retryable, exhausted, cancelled, healthy])

        assert await worker.recover_stale_jobs() == 3

        retried = await _job(test_session_factory, retryable.id)
        assert retried.state is JobState.QUEUED
        assert retried.claim_token is None
        assert retried.last_error_kind == "stale"
        assert (await _job(test_session_factory, exhausted.id)).state is JobState.ABANDONED
        cancelled_job = await _job(test_session_factory, cancelled.id)
        assert cancelled_job.state is JobState.FAILED
        assert cancelled_job.last_error_kind == "cancelled"
        assert (await _job(test_session_factory, healthy.id)).state is JobState.RUNNING

        assert (await _video(test_session_factory, videos[1].id)).state is VideoState.FAILED
        assert (await _video(test_session_factory, videos[0].id)).state is VideoState.TRANSCODING
        mock_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nothing_stale(self, worker, test_session_factory):
        assert await worker.recover_stale_jobs() == 0
        async with test_session_factory() as db:
            assert await db.scalar(select(func.count()).select_from(TranscodeJob)) == 0

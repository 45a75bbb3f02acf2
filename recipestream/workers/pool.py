"""Bounded pool of transcode worker slots.

Each slot is an asyncio task that repeatedly claims and processes one job.
A separate reaper task periodically recovers jobs whose worker stopped
heartbeating (crashed process, lost container).

Shutdown:
    Setting the stop event lets every slot finish its current job and exit;
    no new job is claimed after the event is set.
"""

import asyncio
import contextlib

import structlog

from recipestream.config import get_worker_pool_size
from recipestream.workers.transcode_worker import TranscodeWorker

log = structlog.get_logger(__name__)


class TranscodeWorkerPool:
    """Runs `size` concurrent TranscodeWorker slots plus the stale-job reaper.

    Args:
        worker: Worker shared by every slot (it holds no per-job state).
        size: Number of slots (default: WORKER_POOL_SIZE).
        poll_interval: Idle sleep when no job is claimable.
        stale_check_interval: Seconds between stale-job recovery passes.
    """

    def __init__(
        self,
        worker: TranscodeWorker,
        size: int | None = None,
        poll_interval: float = 2.0,
        stale_check_interval: float = 60.0,
    ) -> None:
        self.worker = worker
        self.size = size or get_worker_pool_size()
        self.poll_interval = poll_interval
        self.stale_check_interval = stale_check_interval

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run until `stop_event` is set and every slot has drained."""
        log.info("worker_pool_started", size=self.size, worker_id=self.worker.worker_id)
        tasks = [asyncio.create_task(self._slot(index, stop_event)) for index in range(self.size)]
        tasks.append(asyncio.create_task(self._reaper(stop_event)))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info("worker_pool_stopped", worker_id=self.worker.worker_id)

    async def _slot(self, index: int, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                worked = await self.worker.run_once()
            except Exception as e:
                log.error("worker_slot_error", slot=index, error=str(e), exc_info=True)
                worked = False
            if not worked:
                await self._wait(stop_event, self.poll_interval)

    async def _reaper(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.worker.recover_stale_jobs()
            except Exception as e:
                log.error("stale_job_recovery_failed", error=str(e), exc_info=True)
            await self._wait(stop_event, self.stale_check_interval)

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)

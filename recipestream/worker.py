"""Transcode worker process entry point.

Runs a bounded pool of transcode slots as a process separate from the API.
Several worker processes may run against the same database; job claims are
compare-and-swap updates, so they never block each other.

Usage:
    python -m recipestream.worker

Graceful Shutdown:
    SIGTERM/SIGINT stop claiming new jobs; jobs already running finish (or hit
    their encoder timeout) before the process exits.
"""

import asyncio
import signal
import sys

from dotenv import load_dotenv

# .env must be loaded before recipestream.database creates the engine
load_dotenv()

from recipestream.config import get_database_url, get_worker_id, get_worker_pool_size  # noqa: E402
from recipestream.database import async_session_factory, engine  # noqa: E402
from recipestream.exceptions import ConfigurationError  # noqa: E402
from recipestream.services.ingest import IngestCoordinator  # noqa: E402
from recipestream.storage.adapter import ObjectStoreAdapter  # noqa: E402
from recipestream.storage.registry import BackendRegistry  # noqa: E402
from recipestream.utils.logging import configure_logging, get_logger  # noqa: E402
from recipestream.workers.pool import TranscodeWorkerPool  # noqa: E402
from recipestream.workers.transcode_worker import TranscodeWorker  # noqa: E402

log = get_logger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Load storage backends, build the worker pool and run it until stopped."""
    stop_event = stop_event or asyncio.Event()
    if async_session_factory is None:
        raise ConfigurationError("Database not configured. Set DATABASE_URL environment variable.")

    async with async_session_factory() as db:
        registry = await BackendRegistry.load(db)

    adapter = ObjectStoreAdapter(registry)
    worker = TranscodeWorker(adapter, IngestCoordinator(adapter))
    pool = TranscodeWorkerPool(worker)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, _request_shutdown, signum, stop_event)

    try:
        await pool.run(stop_event)
    finally:
        if engine is not None:
            await engine.dispose()


def _request_shutdown(signum: int, stop_event: asyncio.Event) -> None:
    log.info("shutdown_signal_received", signal=signum, signal_name=signal.Signals(signum).name)
    stop_event.set()


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    configure_logging()

    try:
        database_url = get_database_url()
        database_host = database_url.split("@")[-1].split("/")[0] if "@" in database_url else "local"
        log.info(
            "worker_configuration_loaded",
            database_url_host=database_host,
            worker_id=get_worker_id(),
            pool_size=get_worker_pool_size(),
        )
    except ValueError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()

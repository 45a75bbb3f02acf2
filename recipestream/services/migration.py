"""Migration Orchestrator.

Moves objects between storage backends without an outage. Each object goes
through its own two-phase commit:

    1. copy to the destination and verify the size (skipped when the
       destination already holds a verified copy)
    2. flip authoritative_backend with a compare-and-swap on the object's
       version:

       UPDATE storage_objects SET authoritative_backend=:dest, version=version+1
       WHERE key=:key AND authoritative_backend=:source AND version=:v

A crash between the two phases leaves the object servable from the source.
A write that lands between them bumps the version, so the flip fails and the
object is copied again.

Resumability:
    The scan only selects objects whose authoritative backend still equals
    the source, so resume() simply runs the scan again. Counters on the
    MigrationJob accumulate across runs; the failed counter is reset because
    failed objects are retried.
"""

import asyncio
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from recipestream.config import get_migration_concurrency
from recipestream.database import require_session_factory
from recipestream.exceptions import NotFound, StorageError, TransientError
from recipestream.models import MigrationJob, MigrationState, StorageObject, utcnow
from recipestream.storage.adapter import ObjectStoreAdapter, etag_matches

log = structlog.get_logger(__name__)

COPIED = "copied"
SKIPPED = "skipped"
FAILED = "failed"


class MigrationOrchestrator:
    """Copies objects between backends and commits each move individually.

    Args:
        adapter: Object store adapter (its registry defines the valid backends).
        session_factory: Session factory (defaults to the application factory).
        concurrency: Objects migrated in parallel (default: MIGRATION_CONCURRENCY).
        max_attempts: Attempts per object for transient failures.
        page_size: Objects fetched per scan page.
    """

    def __init__(
        self,
        adapter: ObjectStoreAdapter,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        concurrency: int | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max: float = 30.0,
        page_size: int = 200,
    ) -> None:
        self.adapter = adapter
        self._session_factory = session_factory
        self.concurrency = concurrency or get_migration_concurrency()
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max = backoff_max
        self.page_size = page_size

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return require_session_factory(self._session_factory)

    async def create(
        self, source: str, dest: str, prefix: str = "", delete_source: bool = False
    ) -> MigrationJob:
        """Validate the backends and persist a new migration handle.

        Raises:
            ConfigurationError: If either backend is unknown.
            ValueError: If source and destination are the same backend.
        """
        self.adapter.registry.get(source)
        self.adapter.registry.get(dest)
        if source == dest:
            raise ValueError("source and destination backends must differ")

        async with self.session_factory() as db, db.begin():
            job = MigrationJob(
                source_backend=source,
                dest_backend=dest,
                key_prefix=prefix,
                delete_source=delete_source,
                state=MigrationState.RUNNING,
            )
            db.add(job)
            await db.flush()

        log.info(
            "migration_created",
            migration_id=str(job.id),
            source=source,
            dest=dest,
            prefix=prefix,
            delete_source=delete_source,
        )
        return job

    async def migrate(
        self, source: str, dest: str, prefix: str = "", delete_source: bool = False
    ) -> MigrationJob:
        """Create a migration and run it to completion."""
        job = await self.create(source, dest, prefix, delete_source)
        return await self.run(job.id)

    async def resume(self, job_id: UUID) -> MigrationJob:
        """Re-scan for objects still on the source backend and migrate them.

        Raises:
            NotFound: If the migration does not exist.
        """
        async with self.session_factory() as db, db.begin():
            job = await db.get(MigrationJob, job_id)
            if job is None:
                raise NotFound(f"Migration not found: {job_id}")
            job.state = MigrationState.RUNNING
            job.failed = 0
            job.finished_at = None
        log.info("migration_resumed", migration_id=str(job_id))
        return await self.run(job_id)

    async def get(self, job_id: UUID) -> MigrationJob:
        async with self.session_factory() as db:
            job = await db.get(MigrationJob, job_id)
        if job is None:
            raise NotFound(f"Migration not found: {job_id}")
        return job

    async def list_jobs(self, limit: int = 50) -> list[MigrationJob]:
        async with self.session_factory() as db:
            result = await db.execute(select(MigrationJob).order_by(MigrationJob.created_at.desc()).limit(limit))
            return list(result.scalars().all())

    async def run(self, job_id: UUID) -> MigrationJob:
        """Scan and migrate every pending object of a migration.

        Per-object failures are counted and logged; they never abort the run.
        """
        job = await self.get(job_id)
        source, dest = job.source_backend, job.dest_backend
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(key: str) -> tuple[str, str, str | None]:
            async with semaphore:
                return await self._migrate_guarded(key, source, dest, job.delete_source)

        after = ""
        while True:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(StorageObject.key)
                    .where(
                        StorageObject.authoritative_backend == source,
                        StorageObject.key.startswith(job.key_prefix, autoescape=True),
                        StorageObject.key > after,
                    )
                    .order_by(StorageObject.key)
                    .limit(self.page_size)
                )
                keys = list(result.scalars().all())
            if not keys:
                break
            after = keys[-1]

            outcomes = await asyncio.gather(*(bounded(key) for key in keys))
            await self._record_page(job_id, outcomes)

        async with self.session_factory() as db, db.begin():
            job = await db.get(MigrationJob, job_id)
            job.state = MigrationState.COMPLETED if job.failed == 0 else MigrationState.COMPLETED_WITH_ERRORS
            job.finished_at = utcnow()

        log.info(
            "migration_finished",
            migration_id=str(job_id),
            state=job.state.value,
            copied=job.copied,
            skipped=job.skipped,
            failed=job.failed,
        )
        return job

    async def _record_page(self, job_id: UUID, outcomes: list[tuple[str, str, str | None]]) -> None:
        counts = {COPIED: 0, SKIPPED: 0, FAILED: 0}
        last_error = None
        for key, outcome, error in outcomes:
            counts[outcome] += 1
            if error:
                last_error = f"{key}: {error}"

        async with self.session_factory() as db, db.begin():
            job = await db.get(MigrationJob, job_id)
            job.copied += counts[COPIED]
            job.skipped += counts[SKIPPED]
            job.failed += counts[FAILED]
            if last_error:
                job.last_error = last_error[:2000]

        log.info("migration_page_done", migration_id=str(job_id), **counts)

    async def _migrate_guarded(
        self, key: str, source: str, dest: str, delete_source: bool
    ) -> tuple[str, str, str | None]:
        """Migrate one object with retries. Returns (key, outcome, error)."""
        retryer = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, min=self.backoff_seconds, max=self.backoff_max),
            before_sleep=lambda retry_state: log.warning(
                "migration_object_retry",
                key=key,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            ),
            reraise=True,
        )
        try:
            outcome = await retryer(self.migrate_object, key, source, dest, delete_source)
            return key, outcome, None
        except (StorageError, NotFound) as e:
            log.error("migration_object_failed", key=key, source=source, dest=dest, error=str(e))
            return key, FAILED, str(e)
        except Exception as e:
            log.error("migration_object_failed", key=key, source=source, dest=dest, error=str(e), exc_info=True)
            return key, FAILED, f"{type(e).__name__}: {e}"

    async def migrate_object(self, key: str, source: str, dest: str, delete_source: bool = False) -> str:
        """Copy, verify and commit one object.

        Returns:
            "copied" when bytes were copied, "skipped" when the destination
            already held a verified copy or the object no longer needs moving.

        Raises:
            TransientError: If the object changed between copy and commit.
        """
        record = await self._load(key)
        if record is None or record.authoritative_backend != source:
            return SKIPPED
        version = record.version

        outcome = COPIED
        if await self._destination_has_copy(record, dest):
            outcome = SKIPPED
        else:
            await self.adapter.copy(key, source, dest)

        async with self.session_factory() as db, db.begin():
            result = await db.execute(
                update(StorageObject)
                .where(
                    StorageObject.key == key,
                    StorageObject.authoritative_backend == source,
                    StorageObject.version == version,
                )
                .values(authoritative_backend=dest, version=StorageObject.version + 1)
                .execution_options(synchronize_session=False)
            )
            committed = result.rowcount == 1

        if not committed:
            current = await self._load(key)
            if current is None or current.authoritative_backend != source:
                return SKIPPED
            raise TransientError("object changed during migration", key=key, backend=dest)

        log.debug("object_migrated", key=key, source=source, dest=dest, copied=outcome == COPIED)

        if delete_source:
            await self.adapter.delete_from(key, source)
        return outcome

    async def _load(self, key: str) -> StorageObject | None:
        async with self.session_factory() as db:
            result = await db.execute(select(StorageObject).where(StorageObject.key == key))
            return result.scalar_one_or_none()

    async def _destination_has_copy(self, record: StorageObject, dest: str) -> bool:
        try:
            existing = await self.adapter.headers(record.key, backend_name=dest)
        except NotFound:
            return False
        return existing.size == record.size_bytes and etag_matches(existing.etag, record.checksum)

"""Storage migration routes.

- POST /api/v1/migrations                   create a migration and start it
- GET  /api/v1/migrations                   recent migrations
- GET  /api/v1/migrations/{id}              progress counters
- POST /api/v1/migrations/{id}/resume       re-scan and continue

Migrations run as background tasks after the response is sent; progress is
read back through GET.
"""

from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from recipestream.exceptions import ConfigurationError
from recipestream.routes.deps import get_migrations
from recipestream.schemas.jobs import MigrationCreate, MigrationResponse
from recipestream.services.migration import MigrationOrchestrator

log = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/migrations", tags=["migrations"])


async def _run_migration(migrations: MigrationOrchestrator, job_id: UUID, resume: bool = False) -> None:
    try:
        if resume:
            await migrations.resume(job_id)
        else:
            await migrations.run(job_id)
    except Exception as e:
        log.error("migration_run_failed", migration_id=str(job_id), error=str(e), exc_info=True)


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=MigrationResponse)
async def create_migration(
    payload: MigrationCreate,
    background_tasks: BackgroundTasks,
    migrations: MigrationOrchestrator = Depends(get_migrations),
) -> MigrationResponse:
    """Create a migration handle and run it in the background.

    Returns:
        202 Accepted: Migration created
        422 Unprocessable Entity: Unknown backend or source equals destination
    """
    try:
        job = await migrations.create(
            payload.source_backend,
            payload.dest_backend,
            prefix=payload.key_prefix,
            delete_source=payload.delete_source,
        )
    except (ConfigurationError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    background_tasks.add_task(_run_migration, migrations, job.id)
    return MigrationResponse.model_validate(job)


@router.get("", response_model=list[MigrationResponse])
async def list_migrations(
    migrations: MigrationOrchestrator = Depends(get_migrations),
) -> list[MigrationResponse]:
    return [MigrationResponse.model_validate(job) for job in await migrations.list_jobs()]


@router.get("/{migration_id}", response_model=MigrationResponse)
async def get_migration(
    migration_id: UUID,
    migrations: MigrationOrchestrator = Depends(get_migrations),
) -> MigrationResponse:
    return MigrationResponse.model_validate(await migrations.get(migration_id))


@router.post("/{migration_id}/resume", status_code=status.HTTP_202_ACCEPTED, response_model=MigrationResponse)
async def resume_migration(
    migration_id: UUID,
    background_tasks: BackgroundTasks,
    migrations: MigrationOrchestrator = Depends(get_migrations),
) -> MigrationResponse:
    job = await migrations.get(migration_id)
    background_tasks.add_task(_run_migration, migrations, job.id, True)
    return MigrationResponse.model_validate(job)

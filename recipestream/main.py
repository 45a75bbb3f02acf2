"""FastAPI application for recipe video ingest and delivery.

Serves uploads, status, playback access, job cancellation, storage
migrations and the signed-URL origin gate. Encoding never runs here; see
recipestream.worker for the transcode worker process.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from recipestream.clients.authorization import AuthorizationClient
from recipestream.database import async_session_factory
from recipestream.exceptions import (
    Conflict,
    Denied,
    InvalidStateTransitionError,
    NotFound,
    PermanentError,
    QuotaExceeded,
    TransientError,
)
from recipestream.routes import jobs, media, migrations, videos
from recipestream.services.ingest import IngestCoordinator
from recipestream.services.migration import MigrationOrchestrator
from recipestream.services.signed_url import SignedUrlIssuer
from recipestream.storage.adapter import ObjectStoreAdapter
from recipestream.storage.registry import BackendRegistry
from recipestream.utils.logging import configure_logging

log = structlog.get_logger(__name__)

# Denied and NotFound must be indistinguishable to callers
NOT_FOUND_BODY = {"detail": "Not Found"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the services on startup, close HTTP clients on shutdown.

    Startup:
    - Load storage backends from the database (requires DATABASE_URL)
    - Wire adapter, issuer, coordinator, migrations and authorization client

    Without DATABASE_URL the app still starts; service routes answer 503.
    """
    configure_logging()
    authorization = None

    if async_session_factory is not None:
        async with async_session_factory() as db:
            registry = await BackendRegistry.load(db)
        adapter = ObjectStoreAdapter(registry)
        issuer = SignedUrlIssuer(registry)
        authorization = AuthorizationClient()

        app.state.adapter = adapter
        app.state.issuer = issuer
        app.state.coordinator = IngestCoordinator(adapter, issuer)
        app.state.migrations = MigrationOrchestrator(adapter)
        app.state.authorization = authorization
        log.info("services_initialized", backends=registry.names(), primary=registry.primary_name)
    else:
        log.warning("services_disabled", message="DATABASE_URL not set, service routes will return 503")

    yield

    if authorization is not None:
        await authorization.close()


app = FastAPI(
    title="Recipe Stream - Video Ingest and Delivery",
    description="Ingest, transcoding and signed delivery of recipe videos",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(videos.router)
app.include_router(jobs.router)
app.include_router(migrations.router)
app.include_router(media.router)


@app.exception_handler(NotFound)
@app.exception_handler(Denied)
async def not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    log.info("request_not_found", path=request.url.path, reason=type(exc).__name__)
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=NOT_FOUND_BODY)


@app.exception_handler(Conflict)
async def conflict_handler(request: Request, exc: Conflict) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "recipe_video_id": str(exc.recipe_video_id) if exc.recipe_video_id else None,
            "job_id": str(exc.job_id) if exc.job_id else None,
        },
    )


@app.exception_handler(InvalidStateTransitionError)
async def transition_handler(request: Request, exc: InvalidStateTransitionError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(PermanentError)
async def permanent_storage_handler(request: Request, exc: PermanentError) -> JSONResponse:
    log.error("storage_permanent_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": "Storage backend rejected the request"})


@app.exception_handler(QuotaExceeded)
async def quota_handler(request: Request, exc: QuotaExceeded) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, content={"detail": "Storage quota exceeded"})


@app.exception_handler(TransientError)
async def transient_storage_handler(request: Request, exc: TransientError) -> JSONResponse:
    log.warning("storage_transient_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Storage temporarily unavailable"})


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness check for deployment validation."""
    return JSONResponse(
        content={
            "status": "healthy",
            "service": "recipe-stream-core",
            "database_configured": async_session_factory is not None,
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "recipestream.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )

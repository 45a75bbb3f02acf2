"""Transcode job routes.

- POST /api/v1/jobs/{job_id}/cancel
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from recipestream.routes.deps import get_coordinator
from recipestream.schemas.jobs import CancelResponse
from recipestream.services.ingest import IngestCoordinator

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: UUID,
    coordinator: IngestCoordinator = Depends(get_coordinator),
) -> CancelResponse:
    """Cancel a queued job immediately, or ask a running job's worker to stop.

    Returns:
        200 OK: Current job state ("failed" for queued jobs, "running" until
            the worker observes the request)
        404 Not Found: Unknown job
    """
    state = await coordinator.cancel(job_id)
    return CancelResponse(job_id=job_id, state=state)

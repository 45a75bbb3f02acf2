"""FastAPI dependencies resolving the services built at startup.

Services live on `app.state` (see recipestream.main.lifespan). Tests replace
them through `app.dependency_overrides` or by assigning `app.state` directly.
"""

from fastapi import HTTPException, Request, status

from recipestream.clients.authorization import AuthorizationClient
from recipestream.services.ingest import IngestCoordinator
from recipestream.services.migration import MigrationOrchestrator
from recipestream.services.signed_url import SignedUrlIssuer
from recipestream.storage.adapter import ObjectStoreAdapter


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not configured",
        )
    return service


def get_coordinator(request: Request) -> IngestCoordinator:
    return _service(request, "coordinator")


def get_issuer(request: Request) -> SignedUrlIssuer:
    return _service(request, "issuer")


def get_adapter(request: Request) -> ObjectStoreAdapter:
    return _service(request, "adapter")


def get_migrations(request: Request) -> MigrationOrchestrator:
    return _service(request, "migrations")


def get_authorization_client(request: Request) -> AuthorizationClient:
    return _service(request, "authorization")

"""Delivery origin gate.

- GET /media/{key}?b=&p=&iat=&exp=[&ip=]&sig=

The CDN (or a client, when no CDN is configured) fetches signed URLs here.
The signature is verified statelessly with the backend's signing key and the
request is redirected to a short-lived presigned GET on the authoritative
backend. The redirect carries the object kind's Cache-Control header.
"""

import time

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse

from recipestream.routes.deps import get_adapter, get_issuer
from recipestream.services.cache_policy import cache_control
from recipestream.services.signed_url import SignedUrlIssuer
from recipestream.storage.adapter import ObjectStoreAdapter

log = structlog.get_logger(__name__)
router = APIRouter(tags=["media"])


@router.get("/media/{key:path}")
async def serve_media(
    key: str,
    request: Request,
    issuer: SignedUrlIssuer = Depends(get_issuer),
    adapter: ObjectStoreAdapter = Depends(get_adapter),
) -> RedirectResponse:
    """Verify a signed URL and redirect to the backend.

    Returns:
        307 Temporary Redirect: Presigned backend URL
        404 Not Found: Invalid, expired or foreign signature, or unknown object
    """
    client_ip = request.client.host if request.client else None
    grant = issuer.verify_params(key, request.query_params, client_ip=client_ip)

    remaining = max(1, grant.expires_at - int(time.time()))
    url, record = await adapter.presigned_get(key, expires_in=remaining)

    log.debug("media_redirect", key=key, backend=record.authoritative_backend, principal=grant.principal)
    return RedirectResponse(
        url,
        status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        headers={"Cache-Control": cache_control(record.kind)},
    )

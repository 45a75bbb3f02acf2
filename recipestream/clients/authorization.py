"""Client for the external authorization (subscription/entitlement) service.

The authorization service answers "may principal P read video V". This core
never decides that itself; it asks, and hands the decision to the
SignedUrlIssuer which only checks that the decision covers the principal.

Protocol:
    GET {AUTHORIZATION_SERVICE_URL}/v1/decisions?principal=P&resource=videos/V
    200 {"allowed": true|false, "principal": "P"}

Any transport failure or non-200 answer is treated as a denial.
"""

from dataclasses import dataclass

import httpx
import structlog

from recipestream.config import get_authorization_service_url

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthorizationDecision:
    """Outcome of an authorization check for one principal and resource."""

    principal: str
    allowed: bool
    resource: str | None = None

    def allows(self, principal: str) -> bool:
        return self.allowed and bool(principal) and self.principal == principal


class AuthorizationClient:
    """Async HTTP client for authorization decisions.

    Args:
        base_url: Service base URL (default: AUTHORIZATION_SERVICE_URL).
        timeout: Per-request timeout in seconds.
        client: Optional pre-built httpx.AsyncClient (tests inject a mock transport).
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or get_authorization_service_url() or "").rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def decide(self, principal: str, resource: str) -> AuthorizationDecision:
        """Ask whether `principal` may read `resource`.

        Returns a denying decision when the service is not configured,
        unreachable, or answers with anything but a well-formed 200.
        """
        if not self.base_url:
            log.warning("authorization_service_not_configured", resource=resource)
            return AuthorizationDecision(principal=principal, allowed=False, resource=resource)

        try:
            response = await self.client.get(
                f"{self.base_url}/v1/decisions",
                params={"principal": principal, "resource": resource},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            log.warning(
                "authorization_http_error",
                status_code=e.response.status_code,
                resource=resource,
            )
            return AuthorizationDecision(principal=principal, allowed=False, resource=resource)
        except (httpx.HTTPError, ValueError) as e:
            log.error("authorization_request_failed", error=str(e), resource=resource)
            return AuthorizationDecision(principal=principal, allowed=False, resource=resource)

        if not isinstance(body, dict):
            log.warning("authorization_invalid_response", body_type=type(body).__name__, resource=resource)
            return AuthorizationDecision(principal=principal, allowed=False, resource=resource)

        allowed = body.get("allowed") is True and body.get("principal", principal) == principal
        return AuthorizationDecision(principal=principal, allowed=allowed, resource=resource)

    async def close(self) -> None:
        await self.client.aclose()

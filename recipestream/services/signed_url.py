"""Signed URL Issuer.

Turns an authorization decision into a time-limited, scoped access descriptor
for one stored object. Descriptors are HMAC-SHA256 signed with the signing key
of the object's authoritative backend and carry everything needed to verify
them again at the delivery origin (nothing is persisted).

URL shape:
    {base}/media/{key}?b={backend}&p={principal}&iat={issued}&exp={expires}[&ip={ip}]&sig={hex}

    base is the backend's CDN base URL when configured, else PUBLIC_ORIGIN_URL.

Signature:
    HMAC-SHA256(signing_key, "key|backend|iat|exp|principal|ip")

Expiry:
    expires_at = issued_at + min(policy.access_ttl, ACCESS_HARD_CEILING_SECONDS)

Re-issuing for the same object yields a new, independently valid descriptor;
earlier descriptors stay valid until their own expiry (no revocation list).
"""

import hashlib
import hmac
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

import structlog

from recipestream.clients.authorization import AuthorizationDecision
from recipestream.config import get_access_hard_ceiling, get_public_origin_url
from recipestream.exceptions import ConfigurationError, Denied
from recipestream.models import StorageObject
from recipestream.services.cache_policy import policy_for
from recipestream.storage.registry import BackendRegistry

log = structlog.get_logger(__name__)

MEDIA_PATH_PREFIX = "/media/"


@dataclass(frozen=True)
class AccessDescriptor:
    """A signed, expiring grant to read one object."""

    url: str
    key: str
    backend: str
    kind: str
    principal: str
    issued_at: int
    expires_at: int
    cache_control: str
    client_ip: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AccessGrant:
    """Grant reconstructed from a signed URL."""

    principal: str
    key: str
    backend: str
    issued_at: int
    expires_at: int
    client_ip: str | None
    signature: str


def _canonical(key: str, backend: str, issued_at: int, expires_at: int, principal: str, ip: str | None) -> bytes:
    return f"{key}|{backend}|{issued_at}|{expires_at}|{principal}|{ip or ''}".encode()


def _sign(signing_key: str, payload: bytes) -> str:
    return hmac.new(signing_key.encode(), payload, hashlib.sha256).hexdigest()


class SignedUrlIssuer:
    """Issues and verifies signed access descriptors.

    Args:
        registry: Storage backends (source of per-backend signing keys and CDN bases).
        hard_ceiling: Upper bound on descriptor lifetime (default: ACCESS_HARD_CEILING_SECONDS).
        origin_url: Base URL when a backend has no CDN base (default: PUBLIC_ORIGIN_URL).
    """

    def __init__(
        self,
        registry: BackendRegistry,
        hard_ceiling: int | None = None,
        origin_url: str | None = None,
    ) -> None:
        self.registry = registry
        self.hard_ceiling = hard_ceiling or get_access_hard_ceiling()
        self.origin_url = (origin_url or get_public_origin_url()).rstrip("/")

    def _signing_key(self, backend_name: str) -> str:
        backend = self.registry.get(backend_name)
        if not backend.signing_key:
            raise ConfigurationError(f"Storage backend has no signing key: {backend_name}")
        return backend.signing_key

    def issue(
        self,
        obj: StorageObject,
        principal: str,
        decision: AuthorizationDecision,
        client_ip: str | None = None,
        now: float | None = None,
    ) -> AccessDescriptor:
        """Issue a descriptor for `obj` if `decision` allows `principal`.

        Args:
            obj: Object to grant access to.
            principal: Requesting principal.
            decision: Externally produced authorization decision.
            client_ip: Bind the descriptor to this client IP when given.
            now: Issue time in epoch seconds (default: current time).

        Raises:
            Denied: If the decision does not allow this principal, or the
                object kind is never issued to clients.
        """
        if not decision.allows(principal):
            log.info("access_denied", principal=principal, key=obj.key, reason="decision")
            raise Denied("authorization decision does not allow access", principal=principal)

        policy = policy_for(obj.kind)
        if not policy.issuable:
            log.warning("access_denied", principal=principal, key=obj.key, reason="kind_not_issuable")
            raise Denied(f"{obj.kind.value} objects are not issued to clients", principal=principal)

        backend_name = obj.authoritative_backend
        backend = self.registry.get(backend_name)
        issued_at = int(now if now is not None else time.time())
        expires_at = issued_at + min(policy.access_ttl, self.hard_ceiling)

        signature = _sign(
            self._signing_key(backend_name),
            _canonical(obj.key, backend_name, issued_at, expires_at, principal, client_ip),
        )
        params: dict[str, Any] = {"b": backend_name, "p": principal, "iat": issued_at, "exp": expires_at}
        if client_ip:
            params["ip"] = client_ip
        params["sig"] = signature

        base = (backend.public_base_url or self.origin_url).rstrip("/")
        url = f"{base}{MEDIA_PATH_PREFIX}{quote(obj.key)}?{urlencode(params)}"

        return AccessDescriptor(
            url=url,
            key=obj.key,
            backend=backend_name,
            kind=obj.kind.value,
            principal=principal,
            issued_at=issued_at,
            expires_at=expires_at,
            cache_control=policy.header(),
            client_ip=client_ip,
        )

    def parse(self, url: str) -> AccessGrant:
        """Reconstruct the grant carried by a signed URL without verifying it.

        Raises:
            Denied: If the URL is not a well-formed signed media URL.
        """
        parts = urlsplit(url)
        marker = parts.path.find(MEDIA_PATH_PREFIX)
        if marker < 0:
            raise Denied("not a signed media URL")
        key = unquote(parts.path[marker + len(MEDIA_PATH_PREFIX):])
        params = {name: values[0] for name, values in parse_qs(parts.query).items()}
        return self._grant_from_params(key, params)

    def _grant_from_params(self, key: str, params: Mapping[str, str]) -> AccessGrant:
        try:
            return AccessGrant(
                principal=params["p"],
                key=key,
                backend=params["b"],
                issued_at=int(params["iat"]),
                expires_at=int(params["exp"]),
                client_ip=params.get("ip") or None,
                signature=params["sig"],
            )
        except (KeyError, ValueError) as e:
            raise Denied("malformed signed URL") from e

    def verify_params(
        self,
        key: str,
        params: Mapping[str, str],
        client_ip: str | None = None,
        now: float | None = None,
    ) -> AccessGrant:
        """Verify the query parameters of a signed media request.

        Raises:
            Denied: On bad signature, unknown backend, expiry (at or after
                expires_at), excessive lifetime, or client IP mismatch.
        """
        grant = self._grant_from_params(key, params)
        current = int(now if now is not None else time.time())

        if grant.backend not in self.registry:
            raise Denied("unknown backend in signed URL")

        expected = _sign(
            self._signing_key(grant.backend),
            _canonical(grant.key, grant.backend, grant.issued_at, grant.expires_at, grant.principal, grant.client_ip),
        )
        if not hmac.compare_digest(expected, grant.signature):
            log.warning("signed_url_bad_signature", key=key, principal=grant.principal)
            raise Denied("invalid signature", principal=grant.principal)

        if grant.expires_at - grant.issued_at > self.hard_ceiling:
            raise Denied("signed URL lifetime exceeds ceiling", principal=grant.principal)

        if current >= grant.expires_at:
            raise Denied("signed URL expired", principal=grant.principal)

        if grant.client_ip and grant.client_ip != client_ip:
            log.warning("signed_url_ip_mismatch", key=key, principal=grant.principal)
            raise Denied("client address does not match", principal=grant.principal)

        return grant

    def verify(self, url: str, client_ip: str | None = None, now: float | None = None) -> AccessGrant:
        grant = self.parse(url)
        params = {name: values[0] for name, values in parse_qs(urlsplit(url).query).items()}
        return self.verify_params(grant.key, params, client_ip=client_ip, now=now)

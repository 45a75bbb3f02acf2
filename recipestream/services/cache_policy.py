"""Cache Policy Engine.

Maps an object kind to its CDN cache lifetime, cacheability and signed URL
lifetime. Evaluation depends only on the kind, never on object content, and
has no side effects.

Defaults:
    manifest   public, max-age=300                 signed URLs live 600s
    segment    public, max-age=86400, immutable    signed URLs live 1800s
    source     private, no-store                   never issued to clients

Segments are immutable because every transcode writes under a new
job/attempt prefix, so a segment key is never rewritten with new content.
"""

from dataclasses import dataclass

from recipestream.config import (
    get_manifest_access_ttl,
    get_manifest_cache_ttl,
    get_segment_access_ttl,
    get_segment_cache_ttl,
)
from recipestream.models import ObjectKind

__all__ = ["CachePolicy", "ObjectKind", "cache_control", "policy_for"]


@dataclass(frozen=True)
class CachePolicy:
    """Delivery policy for one object kind.

    Attributes:
        ttl: CDN cache lifetime in seconds (0 means not cacheable).
        cacheable_by: "public" (shared caches allowed) or "private".
        access_ttl: Signed URL lifetime in seconds; 0 means never issued.
        immutable: Content under the key never changes.
    """

    ttl: int
    cacheable_by: str
    access_ttl: int
    immutable: bool = False

    @property
    def issuable(self) -> bool:
        return self.access_ttl > 0

    def header(self) -> str:
        """Render the Cache-Control header value."""
        if self.cacheable_by != "public" or self.ttl <= 0:
            return "private, no-store"
        value = f"public, max-age={self.ttl}"
        if self.immutable:
            value += ", immutable"
        return value


def policy_for(kind: ObjectKind) -> CachePolicy:
    """Return the cache policy for an object kind.

    Raises:
        ValueError: If `kind` is not a known ObjectKind.
    """
    if kind is ObjectKind.MANIFEST:
        return CachePolicy(
            ttl=get_manifest_cache_ttl(),
            cacheable_by="public",
            access_ttl=get_manifest_access_ttl(),
        )
    if kind is ObjectKind.SEGMENT:
        return CachePolicy(
            ttl=get_segment_cache_ttl(),
            cacheable_by="public",
            access_ttl=get_segment_access_ttl(),
            immutable=True,
        )
    if kind is ObjectKind.SOURCE:
        return CachePolicy(ttl=0, cacheable_by="private", access_ttl=0)
    raise ValueError(f"Unknown object kind: {kind!r}")


def cache_control(kind: ObjectKind) -> str:
    return policy_for(kind).header()

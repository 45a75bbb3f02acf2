"""Registry of configured storage backends, keyed by name.

Backends are selected exclusively by the name recorded on each StorageObject
(or the configured primary for new writes). Rows are loaded from the
storage_backends table and their secrets decrypted once, when the registry is
built.

Usage:
    async with async_session_factory() as db:
        registry = await BackendRegistry.load(db)

    backend = registry.get("s3-eu")
    primary = registry.primary
"""

from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recipestream.exceptions import ConfigurationError
from recipestream.models import StorageBackend
from recipestream.storage.backends import BackendSettings, S3Backend
from recipestream.utils.encryption import get_encryption_service

log = structlog.get_logger(__name__)


class BackendRegistry:
    """Name-addressed set of backends with exactly one primary.

    Args:
        backends: Mapping of backend name to backend instance.
        primary: Name of the backend that receives new writes.

    Raises:
        ConfigurationError: If the primary is not among the backends.
    """

    def __init__(self, backends: dict[str, Any], primary: str) -> None:
        if primary not in backends:
            raise ConfigurationError(f"Primary storage backend not configured: {primary}")
        self._backends = dict(backends)
        self._primary = primary

    @classmethod
    async def load(cls, db: AsyncSession) -> "BackendRegistry":
        """Build the registry from active StorageBackend rows.

        Raises:
            ConfigurationError: If no backend (or more than one) is marked primary.
            DecryptionError: If a stored secret cannot be decrypted.
        """
        result = await db.execute(select(StorageBackend).where(StorageBackend.is_active.is_(True)))
        rows = list(result.scalars().all())

        primaries = [row.name for row in rows if row.is_primary]
        if len(primaries) != 1:
            raise ConfigurationError(
                f"Exactly one active primary storage backend is required, found {len(primaries)}"
            )

        encryption = get_encryption_service()
        backends: dict[str, Any] = {}
        for row in rows:
            settings = BackendSettings(
                name=row.name,
                bucket=row.bucket,
                signing_key=encryption.decrypt(row.signing_key_encrypted, backend=row.name),
                endpoint_url=row.endpoint_url,
                region=row.region,
                addressing_style=row.addressing_style,
                public_base_url=row.public_base_url,
                access_key_id=(
                    encryption.decrypt(row.access_key_id_encrypted, backend=row.name)
                    if row.access_key_id_encrypted
                    else None
                ),
                secret_access_key=(
                    encryption.decrypt(row.secret_access_key_encrypted, backend=row.name)
                    if row.secret_access_key_encrypted
                    else None
                ),
            )
            backends[row.name] = S3Backend(settings)

        log.info("storage_backends_loaded", backends=sorted(backends), primary=primaries[0])
        return cls(backends, primaries[0])

    @property
    def primary_name(self) -> str:
        return self._primary

    @property
    def primary(self) -> Any:
        return self._backends[self._primary]

    def get(self, name: str) -> Any:
        """Return the backend registered under `name`.

        Raises:
            ConfigurationError: If no such backend is configured.
        """
        try:
            return self._backends[name]
        except KeyError:
            raise ConfigurationError(f"Unknown storage backend: {name}") from None

    def names(self) -> list[str]:
        return sorted(self._backends)

    def __contains__(self, name: object) -> bool:
        return name in self._backends

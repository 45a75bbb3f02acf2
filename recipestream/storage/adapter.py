"""Object Store Adapter.

Uniform put/get/delete/copy/headers over the configured S3-compatible
backends. The adapter is the only component that talks to backends; every
other service addresses objects by logical key.

Backend Resolution:
    Reads resolve the backend from StorageObject.authoritative_backend.
    Writes to a new key go to the registry's primary backend; rewrites of an
    existing key go to that key's authoritative backend.

Durability:
    A put only succeeds after a HEAD on the backend confirms the size (and,
    for single-part uploads, that the ETag equals the locally computed MD5).
    A failed verification is a TransientError and is retried like any other.

Retries:
    TransientError is retried with exponential backoff (tenacity) up to
    STORAGE_MAX_ATTEMPTS. PermanentError, QuotaExceeded and NotFound are
    raised immediately; QuotaExceeded additionally sends an operator alert.

All backend calls are blocking boto3 calls and run in worker threads via
asyncio.to_thread so the event loop is never blocked.
"""

import asyncio
import base64
import hashlib
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from recipestream.config import get_storage_max_attempts
from recipestream.database import require_session_factory
from recipestream.exceptions import NotFound, QuotaExceeded, TransientError
from recipestream.models import ObjectKind, StorageObject
from recipestream.services.cache_policy import cache_control
from recipestream.storage.backends import normalize_key
from recipestream.storage.registry import BackendRegistry
from recipestream.utils.alerts import send_alert

log = structlog.get_logger(__name__)

T = TypeVar("T")

_PLAIN_MD5_ETAG = re.compile(r"^[0-9a-f]{32}$")
_HASH_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class ObjectHeaders:
    """Metadata of an object as stored on one backend."""

    size: int
    etag: str
    content_type: str | None
    backend: str


def etag_matches(etag: str | None, md5_hex: str | None) -> bool:
    """False only when both are known, the ETag is a plain MD5, and they differ."""
    if not etag or not md5_hex or not _PLAIN_MD5_ETAG.match(etag):
        return True
    return etag == md5_hex


def _md5_of_file(path: str) -> tuple[str, int]:
    digest = hashlib.md5()  # noqa: S324 - integrity check, not security
    size = 0
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
            digest.update(chunk)
            size += len(chunk)
    return digest.hexdigest(), size


class ObjectStoreAdapter:
    """Storage facade used by the ingest, transcode and migration services.

    Args:
        registry: Backends by name, with one primary.
        session_factory: Session factory for StorageObject bookkeeping
            (defaults to the application factory).
        max_attempts: Attempts for transient failures (default: STORAGE_MAX_ATTEMPTS).
        backoff_seconds: Initial backoff between attempts; doubles up to backoff_max.
        backoff_max: Backoff ceiling in seconds.

    Example:
        >>> adapter = ObjectStoreAdapter(registry)
        >>> obj = await adapter.put("videos/abc/master.m3u8", body, "application/vnd.apple.mpegurl",
        ...                         ObjectKind.MANIFEST)
        >>> data = await adapter.get("videos/abc/master.m3u8")
    """

    def __init__(
        self,
        registry: BackendRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.registry = registry
        self._session_factory = session_factory
        self._max_attempts = max_attempts or get_storage_max_attempts()
        self._backoff = backoff_seconds
        self._backoff_max = backoff_max

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return require_session_factory(self._session_factory)

    async def _retrying(self, operation: str, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run `fn` with tenacity retries on TransientError.

        QuotaExceeded is alerted on before it propagates.
        """
        retryer = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=self._backoff, max=self._backoff_max),
            before_sleep=lambda retry_state: log.warning(
                "storage_operation_retry",
                operation=operation,
                key=key,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            ),
            reraise=True,
        )
        try:
            return await retryer(fn)
        except QuotaExceeded as e:
            log.error("storage_quota_exceeded", operation=operation, key=key, backend=e.backend)
            await send_alert(
                "CRITICAL",
                "Storage quota exceeded",
                details={"backend": str(e.backend), "key": key, "operation": operation},
            )
            raise

    async def _record(self, key: str) -> StorageObject | None:
        async with self.session_factory() as db:
            result = await db.execute(select(StorageObject).where(StorageObject.key == key))
            return result.scalar_one_or_none()

    async def _require_record(self, key: str) -> StorageObject:
        record = await self._record(key)
        if record is None:
            raise NotFound(f"Object not found: {key}", key=key)
        return record

    async def _write_target(self, key: str) -> str:
        record = await self._record(key)
        return record.authoritative_backend if record else self.registry.primary_name

    async def _save_record(
        self,
        key: str,
        backend_name: str,
        kind: ObjectKind,
        content_type: str,
        size: int,
        etag: str,
        checksum: str | None,
    ) -> StorageObject:
        """Insert or update the StorageObject row after a verified write.

        Raises:
            TransientError: If a migration moved the key to another backend
                while the write was in flight (the write is retried there).
        """
        try:
            return await self._upsert_record(key, backend_name, kind, content_type, size, etag, checksum)
        except IntegrityError as e:
            # a concurrent first write of the same key won the insert
            raise TransientError("object created concurrently", key=key, backend=backend_name) from e

    async def _upsert_record(
        self,
        key: str,
        backend_name: str,
        kind: ObjectKind,
        content_type: str,
        size: int,
        etag: str,
        checksum: str | None,
    ) -> StorageObject:
        async with self.session_factory() as db, db.begin():
            result = await db.execute(select(StorageObject).where(StorageObject.key == key))
            record = result.scalar_one_or_none()
            if record is None:
                record = StorageObject(
                    key=key,
                    authoritative_backend=backend_name,
                    kind=kind,
                    content_type=content_type,
                    size_bytes=size,
                    etag=etag,
                    checksum=checksum,
                    version=1,
                )
                db.add(record)
            else:
                if record.authoritative_backend != backend_name:
                    raise TransientError(
                        "authoritative backend changed during write", key=key, backend=backend_name
                    )
                # a content rewrite invalidates any in-flight migration copy
                updated = await db.execute(
                    update(StorageObject)
                    .where(
                        StorageObject.key == key,
                        StorageObject.authoritative_backend == backend_name,
                        StorageObject.version == record.version,
                    )
                    .values(
                        kind=kind,
                        content_type=content_type,
                        size_bytes=size,
                        etag=etag,
                        checksum=checksum,
                        version=StorageObject.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount != 1:
                    raise TransientError(
                        "object changed concurrently during write", key=key, backend=backend_name
                    )
                await db.refresh(record)
            await db.flush()
        return record

    async def _verify(
        self, backend: Any, key: str, expected_size: int, expected_md5: str | None
    ) -> dict[str, Any]:
        head = await asyncio.to_thread(backend.head_object, key)
        if head["size"] != expected_size:
            raise TransientError(
                f"size mismatch after write: expected {expected_size}, got {head['size']}",
                key=key,
                backend=backend.name,
            )
        etag = head["etag"]
        if not etag_matches(etag, expected_md5):
            raise TransientError("checksum mismatch after write", key=key, backend=backend.name)
        return head

    async def put(self, key: str, data: bytes, content_type: str, kind: ObjectKind) -> StorageObject:
        """Store bytes under `key` and record the object.

        Raises:
            TransientError: After retries are exhausted.
            PermanentError: On client/auth errors.
            QuotaExceeded: When the backend is out of capacity.
        """
        k = normalize_key(key)
        md5_hex = hashlib.md5(data).hexdigest()  # noqa: S324 - integrity check
        content_md5 = base64.b64encode(bytes.fromhex(md5_hex)).decode()
        header = cache_control(kind)

        async def attempt() -> StorageObject:
            backend_name = await self._write_target(k)
            backend = self.registry.get(backend_name)
            await asyncio.to_thread(backend.put_object, k, data, content_type, header, content_md5)
            head = await self._verify(backend, k, len(data), md5_hex)
            return await self._save_record(
                k, backend_name, kind, content_type, len(data), head["etag"], md5_hex
            )

        record = await self._retrying("put", k, attempt)
        log.debug("object_stored", key=k, backend=record.authoritative_backend, size=len(data))
        return record

    async def put_file(self, key: str, path: str, content_type: str, kind: ObjectKind) -> StorageObject:
        """Store a local file under `key`, streaming it to the backend.

        Large files are uploaded with multipart; their ETag is not an MD5 so
        only the size is verified for them.
        """
        k = normalize_key(key)
        md5_hex, size = await asyncio.to_thread(_md5_of_file, path)
        header = cache_control(kind)

        def upload(backend: Any) -> None:
            with open(path, "rb") as handle:
                backend.upload_fileobj(k, handle, content_type, header)

        async def attempt() -> StorageObject:
            backend_name = await self._write_target(k)
            backend = self.registry.get(backend_name)
            await asyncio.to_thread(upload, backend)
            head = await self._verify(backend, k, size, md5_hex)
            return await self._save_record(k, backend_name, kind, content_type, size, head["etag"], md5_hex)

        record = await self._retrying("put_file", k, attempt)
        log.debug("object_file_stored", key=k, backend=record.authoritative_backend, size=size)
        return record

    async def get(self, key: str) -> bytes:
        """Read an object from its authoritative backend.

        Raises:
            NotFound: If no object is recorded (or the backend lost it).
        """
        k = normalize_key(key)
        record = await self._require_record(k)
        backend = self.registry.get(record.authoritative_backend)

        async def attempt() -> bytes:
            return await asyncio.to_thread(backend.get_object, k)

        return await self._retrying("get", k, attempt)

    async def download(self, key: str, path: str) -> None:
        """Download an object to a local file (used for transcode sources)."""
        k = normalize_key(key)
        record = await self._require_record(k)
        backend = self.registry.get(record.authoritative_backend)

        async def attempt() -> None:
            await asyncio.to_thread(backend.download_file, k, path)

        await self._retrying("download", k, attempt)

    async def headers(self, key: str, backend_name: str | None = None) -> ObjectHeaders:
        """Return size, ETag and content type of an object.

        Args:
            key: Logical key.
            backend_name: Inspect this backend instead of the authoritative one.

        Raises:
            NotFound: If the object is not recorded, or absent on the backend.
        """
        k = normalize_key(key)
        if backend_name is None:
            backend_name = (await self._require_record(k)).authoritative_backend
        backend = self.registry.get(backend_name)

        async def attempt() -> dict[str, Any]:
            return await asyncio.to_thread(backend.head_object, k)

        head = await self._retrying("headers", k, attempt)
        return ObjectHeaders(
            size=head["size"],
            etag=head["etag"],
            content_type=head.get("content_type"),
            backend=backend_name,
        )

    async def delete(self, key: str) -> None:
        """Delete an object from its authoritative backend and drop its record.

        Raises:
            NotFound: If no object is recorded under `key`.
        """
        k = normalize_key(key)
        record = await self._require_record(k)
        backend = self.registry.get(record.authoritative_backend)

        async def attempt() -> None:
            await asyncio.to_thread(backend.delete_object, k)

        try:
            await self._retrying("delete", k, attempt)
        except NotFound:
            log.warning("object_missing_on_backend", key=k, backend=record.authoritative_backend)

        async with self.session_factory() as db, db.begin():
            result = await db.execute(select(StorageObject).where(StorageObject.key == k))
            current = result.scalar_one_or_none()
            if current is not None:
                await db.delete(current)

        log.debug("object_deleted", key=k, backend=record.authoritative_backend)

    async def discard(self, key: str) -> None:
        """Remove `key` whether or not its write finished.

        A recorded object is deleted as by `delete`. An unrecorded key is
        removed from the backend new writes go to, which covers uploads that
        stopped before their record was saved.
        """
        k = normalize_key(key)
        if await self._record(k) is not None:
            await self.delete(k)
            return
        await self.delete_from(k, await self._write_target(k))

    async def delete_from(self, key: str, backend_name: str) -> None:
        """Delete the copy of `key` held on a non-authoritative backend.

        Used after a migration commit. The StorageObject row is untouched.
        Missing copies are ignored.
        """
        k = normalize_key(key)
        backend = self.registry.get(backend_name)

        async def attempt() -> None:
            await asyncio.to_thread(backend.delete_object, k)

        try:
            await self._retrying("delete_from", k, attempt)
        except NotFound:
            log.debug("object_copy_already_absent", key=k, backend=backend_name)

    async def copy(self, key: str, from_backend: str, to_backend: str) -> ObjectHeaders:
        """Copy an object between backends and verify the destination.

        Uses a server-side copy when both backends share an endpoint and
        credentials, otherwise streams get -> upload. Does not change the
        object's authoritative backend.

        Raises:
            NotFound: If the object is not recorded or absent on the source.
            TransientError: If the destination size does not match after retries.
        """
        k = normalize_key(key)
        record = await self._require_record(k)
        source = self.registry.get(from_backend)
        dest = self.registry.get(to_backend)
        header = cache_control(record.kind)

        def stream_copy() -> None:
            body = source.open_stream(k)
            try:
                dest.upload_fileobj(k, body, record.content_type, header)
            finally:
                body.close()

        async def attempt() -> dict[str, Any]:
            source_head = await asyncio.to_thread(source.head_object, k)
            if dest.shares_endpoint_with(source):
                await asyncio.to_thread(dest.copy_from, source, k, record.content_type, header)
            else:
                await asyncio.to_thread(stream_copy)
            return await self._verify(dest, k, source_head["size"], None)

        head = await self._retrying("copy", k, attempt)
        log.debug("object_copied", key=k, source=from_backend, dest=to_backend, size=head["size"])
        return ObjectHeaders(
            size=head["size"],
            etag=head["etag"],
            content_type=head.get("content_type"),
            backend=to_backend,
        )

    async def presigned_get(self, key: str, expires_in: int) -> tuple[str, StorageObject]:
        """Presigned backend GET for the delivery origin. Returns (url, record)."""
        k = normalize_key(key)
        record = await self._require_record(k)
        backend = self.registry.get(record.authoritative_backend)
        url = await asyncio.to_thread(backend.presigned_get, k, expires_in, cache_control(record.kind))
        return url, record

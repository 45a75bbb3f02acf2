"""S3-compatible storage backend.

Thin, synchronous wrapper over a boto3 S3 client for one bucket. Callers on
the event loop go through ObjectStoreAdapter, which runs these methods in
worker threads and owns retries, verification and metadata.

Every botocore failure is translated into the storage error taxonomy:

    404 / NoSuchKey / NotFound           -> NotFound
    5xx, SlowDown, throttling, timeouts  -> TransientError
    507, QuotaExceeded, over-capacity    -> QuotaExceeded
    other 4xx, auth failures             -> PermanentError
"""

import re
from dataclasses import dataclass
from typing import IO, Any

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from recipestream.exceptions import NotFound, PermanentError, QuotaExceeded, StorageError, TransientError

_KEY_ALLOWED_RE = re.compile(r"[A-Za-z0-9._\-/+=@() ]+")

# 64 MB parts keep multi-gigabyte masters well under the 10,000 part limit
_COPY_TRANSFER_CONFIG = TransferConfig(multipart_threshold=64 * 1024 * 1024, multipart_chunksize=64 * 1024 * 1024)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_QUOTA_CODES = {"507", "QuotaExceeded", "XMinioStorageFull", "InsufficientStorage", "StorageFull"}
_TRANSIENT_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
    "XMinioServerNotInitialized",
}


def normalize_key(key: str) -> str:
    """Normalize and validate an object key.

    Strips whitespace and leading slashes, collapses repeated slashes, and
    rejects traversal or characters outside the allowed set.

    Raises:
        PermanentError: If the key is empty or unsafe.
    """
    k = str(key or "").strip().lstrip("/")
    k = re.sub(r"/{2,}", "/", k)
    if not k:
        raise PermanentError("Invalid storage key: empty")
    if ".." in k:
        raise PermanentError("Invalid storage key: path traversal detected", key=k)
    if not _KEY_ALLOWED_RE.fullmatch(k):
        raise PermanentError("Invalid storage key: contains forbidden characters", key=k)
    return k


def classify_error(exc: Exception, key: str | None, backend: str) -> StorageError | NotFound:
    """Translate a botocore exception into the storage error taxonomy."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        message = f"{exc.operation_name} failed: {code or status}"

        if code in _NOT_FOUND_CODES or status == 404:
            return NotFound(message, key=key)
        if code in _QUOTA_CODES or status == 507:
            return QuotaExceeded(message, key=key, backend=backend)
        if code in _TRANSIENT_CODES or status >= 500 or status == 429:
            return TransientError(message, key=key, backend=backend)
        return PermanentError(message, key=key, backend=backend)

    if isinstance(
        exc,
        (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError),
    ):
        return TransientError(f"connection failure: {type(exc).__name__}", key=key, backend=backend)

    if isinstance(exc, BotoCoreError):
        return TransientError(f"client failure: {type(exc).__name__}", key=key, backend=backend)

    return PermanentError(f"unexpected storage failure: {type(exc).__name__}", key=key, backend=backend)


@dataclass
class BackendSettings:
    """Decrypted configuration for one backend. Never logged."""

    name: str
    bucket: str
    signing_key: str
    endpoint_url: str | None = None
    region: str | None = None
    addressing_style: str = "path"
    public_base_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    def __repr__(self) -> str:
        return f"BackendSettings(name={self.name!r}, bucket={self.bucket!r}, endpoint={self.endpoint_url!r})"


class S3Backend:
    """One bucket on one S3-compatible endpoint.

    Args:
        settings: Decrypted backend configuration.
        client: Optional pre-built boto3 client (tests pass a stubbed one).
    """

    def __init__(self, settings: BackendSettings, client: Any = None) -> None:
        self.settings = settings
        self.name = settings.name
        self.bucket = settings.bucket
        self.signing_key = settings.signing_key
        self.public_base_url = (settings.public_base_url or "").rstrip("/") or None

        if client is None:
            config = BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 1, "mode": "standard"},  # adapter owns retries
                connect_timeout=5,
                read_timeout=60,
                s3={"addressing_style": settings.addressing_style},
            )
            client_kwargs: dict[str, Any] = {"config": config}
            if settings.region:
                client_kwargs["region_name"] = settings.region
            if settings.endpoint_url:
                client_kwargs["endpoint_url"] = settings.endpoint_url
            if settings.access_key_id and settings.secret_access_key:
                client_kwargs["aws_access_key_id"] = settings.access_key_id
                client_kwargs["aws_secret_access_key"] = settings.secret_access_key
            client = boto3.client("s3", **client_kwargs)

        self.client = client

    def __repr__(self) -> str:
        return f"<S3Backend(name={self.name!r}, bucket={self.bucket!r})>"

    def shares_endpoint_with(self, other: "S3Backend") -> bool:
        """True when a server-side copy from `other` into this backend is possible."""
        return (
            self.settings.endpoint_url == other.settings.endpoint_url
            and self.settings.access_key_id == other.settings.access_key_id
            and self.settings.region == other.settings.region
        )

    def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str,
        cache_control: str,
        content_md5: str | None = None,
    ) -> str:
        """Upload bytes in a single request. Returns the backend ETag."""
        k = normalize_key(key)
        params: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": k,
            "Body": body,
            "ContentType": content_type,
            "CacheControl": cache_control,
        }
        if content_md5:
            params["ContentMD5"] = content_md5
        try:
            response = self.client.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e
        return str(response.get("ETag", "")).strip('"')

    def upload_fileobj(self, key: str, fileobj: IO[bytes], content_type: str, cache_control: str) -> None:
        """Upload a file-like object, switching to multipart for large bodies."""
        k = normalize_key(key)
        try:
            self.client.upload_fileobj(
                fileobj,
                self.bucket,
                k,
                ExtraArgs={"ContentType": content_type, "CacheControl": cache_control},
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

    def get_object(self, key: str) -> bytes:
        k = normalize_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=k)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

    def open_stream(self, key: str) -> IO[bytes]:
        """Open a streaming body for cross-backend copies. Caller closes it."""
        k = normalize_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=k)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e
        return response["Body"]

    def download_file(self, key: str, path: str) -> None:
        k = normalize_key(key)
        try:
            self.client.download_file(self.bucket, k, path)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

    def head_object(self, key: str) -> dict[str, Any]:
        """Return {"size", "etag", "content_type", "cache_control"} for a key.

        Raises:
            NotFound: If the key does not exist on this backend.
        """
        k = normalize_key(key)
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=k)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e
        return {
            "size": int(response.get("ContentLength", 0)),
            "etag": str(response.get("ETag", "")).strip('"'),
            "content_type": response.get("ContentType"),
            "cache_control": response.get("CacheControl"),
        }

    def delete_object(self, key: str) -> None:
        k = normalize_key(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=k)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

    def copy_from(self, source: "S3Backend", key: str, content_type: str, cache_control: str) -> None:
        """Server-side copy of `key` from `source`'s bucket into this bucket.

        Uses the managed transfer copy, which switches to multipart
        UploadPartCopy above the multipart threshold (CopyObject rejects
        sources over 5 GB).
        """
        k = normalize_key(key)
        try:
            self.client.copy(
                {"Bucket": source.bucket, "Key": k},
                self.bucket,
                k,
                ExtraArgs={
                    "MetadataDirective": "REPLACE",
                    "ContentType": content_type,
                    "CacheControl": cache_control,
                },
                SourceClient=source.client,
                Config=_COPY_TRANSFER_CONFIG,
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

    def presigned_get(self, key: str, expires_in: int, cache_control: str | None = None) -> str:
        """Generate a short-lived SigV4 presigned GET URL."""
        k = normalize_key(key)
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": k}
        if cache_control:
            params["ResponseCacheControl"] = cache_control
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params=params,
                ExpiresIn=int(expires_in),
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, k, self.name) from e

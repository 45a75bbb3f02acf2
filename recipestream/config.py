"""Configuration management for the ingest and delivery core.

This module provides centralized configuration loading from environment variables.
Secrets are cached after first read; tunables are read on each call so that
tests (and operators, through a worker restart) can change them.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    FERNET_KEY: Encryption key for storage backend credentials (required)
    WORKER_POOL_SIZE: Concurrent transcode jobs per worker process (default: 2)
    TRANSCODE_MAX_ATTEMPTS: Attempts before a job is abandoned (default: 3)
    ENCODER_TIMEOUT_SECONDS: Wall-clock ceiling per transcode job (default: 3600)
    RETRY_BACKOFF_BASE_SECONDS / RETRY_BACKOFF_MAX_SECONDS: Requeue backoff
    MANIFEST_CACHE_TTL_SECONDS / SEGMENT_CACHE_TTL_SECONDS: CDN cache lifetimes
    MANIFEST_ACCESS_TTL_SECONDS / SEGMENT_ACCESS_TTL_SECONDS: Signed URL lifetimes
    ACCESS_HARD_CEILING_SECONDS: Upper bound for any signed URL lifetime
    PLAYBACK_SEGMENT_WINDOW: Segments per rendition issued per playback call
    STORAGE_MAX_ATTEMPTS: Attempts for transient storage failures (default: 4)
    MIGRATION_CONCURRENCY: Objects copied in parallel by a migration (default: 8)
    STALE_JOB_SECONDS: Heartbeat age after which a running job is reclaimed
    WORKSPACE_ROOT: Scratch directory for encoder output
    AUTHORIZATION_SERVICE_URL: Base URL of the external authorization service
    PUBLIC_ORIGIN_URL: Base URL used in signed URLs when a backend has no CDN base

Usage:
    from recipestream.config import get_database_url, get_segment_access_ttl

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    ttl = get_segment_access_ttl()
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)


DEFAULT_WORKER_POOL_SIZE = 2
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ENCODER_TIMEOUT = 3600
DEFAULT_BACKOFF_BASE = 30
DEFAULT_BACKOFF_MAX = 900

# Cache lifetimes at the CDN edge
DEFAULT_MANIFEST_CACHE_TTL = 300
DEFAULT_SEGMENT_CACHE_TTL = 86400

# Signed URL lifetimes. Never longer than the hard ceiling.
DEFAULT_MANIFEST_ACCESS_TTL = 600
DEFAULT_SEGMENT_ACCESS_TTL = 1800
DEFAULT_ACCESS_HARD_CEILING = 3600

DEFAULT_SEGMENT_WINDOW = 3
DEFAULT_STORAGE_MAX_ATTEMPTS = 4
DEFAULT_MIGRATION_CONCURRENCY = 8
DEFAULT_STALE_JOB_SECONDS = 300
DEFAULT_HLS_SEGMENT_SECONDS = 6


def _bounded_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer variable, clamping it into [minimum, maximum].

    Invalid values log a warning and fall back to the default.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", variable=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_worker_pool_size() -> int:
    """Get the number of concurrent transcode jobs per worker process (1-32)."""
    return _bounded_int("WORKER_POOL_SIZE", DEFAULT_WORKER_POOL_SIZE, 1, 32)


def get_transcode_max_attempts() -> int:
    """Get attempts allowed before a transcode job is abandoned (1-20)."""
    return _bounded_int("TRANSCODE_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS, 1, 20)


def get_encoder_timeout() -> int:
    """Get the hard wall-clock timeout for a single transcode job.

    Environment Variable:
        ENCODER_TIMEOUT_SECONDS: Seconds (default: 3600, range 60-86400)

    Note:
        A job exceeding this ceiling is terminated and treated as a
        transient failure, so it is retried while attempts remain.
    """
    return _bounded_int("ENCODER_TIMEOUT_SECONDS", DEFAULT_ENCODER_TIMEOUT, 60, 86400)


def get_retry_backoff_base() -> int:
    return _bounded_int("RETRY_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE, 0, 3600)


def get_retry_backoff_max() -> int:
    return _bounded_int("RETRY_BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX, 0, 86400)


def get_manifest_cache_ttl() -> int:
    """Get CDN cache lifetime for playlists (default: 300 seconds)."""
    return _bounded_int("MANIFEST_CACHE_TTL_SECONDS", DEFAULT_MANIFEST_CACHE_TTL, 0, 3600)


def get_segment_cache_ttl() -> int:
    """Get CDN cache lifetime for media segments (default: 86400 seconds)."""
    return _bounded_int("SEGMENT_CACHE_TTL_SECONDS", DEFAULT_SEGMENT_CACHE_TTL, 0, 31536000)


def get_access_hard_ceiling() -> int:
    """Get the absolute upper bound for any signed URL lifetime.

    Environment Variable:
        ACCESS_HARD_CEILING_SECONDS: Seconds (default: 3600, range 60-86400)
    """
    return _bounded_int("ACCESS_HARD_CEILING_SECONDS", DEFAULT_ACCESS_HARD_CEILING, 60, 86400)


def get_manifest_access_ttl() -> int:
    """Get signed URL lifetime for playlists (default: 600 seconds)."""
    return _bounded_int("MANIFEST_ACCESS_TTL_SECONDS", DEFAULT_MANIFEST_ACCESS_TTL, 1, 86400)


def get_segment_access_ttl() -> int:
    """Get signed URL lifetime for segments (default: 1800 seconds)."""
    return _bounded_int("SEGMENT_ACCESS_TTL_SECONDS", DEFAULT_SEGMENT_ACCESS_TTL, 1, 86400)


def get_playback_segment_window() -> int:
    """Get how many segments per rendition one playback call grants (1-100)."""
    return _bounded_int("PLAYBACK_SEGMENT_WINDOW", DEFAULT_SEGMENT_WINDOW, 1, 100)


def get_storage_max_attempts() -> int:
    return _bounded_int("STORAGE_MAX_ATTEMPTS", DEFAULT_STORAGE_MAX_ATTEMPTS, 1, 10)


def get_migration_concurrency() -> int:
    return _bounded_int("MIGRATION_CONCURRENCY", DEFAULT_MIGRATION_CONCURRENCY, 1, 64)


def get_stale_job_seconds() -> int:
    """Get heartbeat age after which a running job is considered orphaned.

    Environment Variable:
        STALE_JOB_SECONDS: Seconds (default: 300, minimum 30)
    """
    return _bounded_int("STALE_JOB_SECONDS", DEFAULT_STALE_JOB_SECONDS, 30, 86400)


def get_hls_segment_seconds() -> int:
    return _bounded_int("HLS_SEGMENT_SECONDS", DEFAULT_HLS_SEGMENT_SECONDS, 2, 30)


def get_workspace_root() -> str:
    """Get workspace root directory from environment.

    Environment Variable:
        WORKSPACE_ROOT: Base path for encoder scratch files (default: "/app/workspace")
    """
    return os.getenv("WORKSPACE_ROOT", "/app/workspace")


def get_ffmpeg_binary() -> str:
    return os.getenv("FFMPEG_BINARY", "ffmpeg")


def get_ffprobe_binary() -> str:
    return os.getenv("FFPROBE_BINARY", "ffprobe")


def get_authorization_service_url() -> str | None:
    """Get base URL of the external authorization service.

    Returns:
        URL string, or None if not configured. Playback requests are
        refused when no authorization service is configured.
    """
    return os.getenv("AUTHORIZATION_SERVICE_URL")


def get_public_origin_url() -> str:
    """Get the base URL of the delivery origin used in signed URLs.

    Environment Variable:
        PUBLIC_ORIGIN_URL: e.g. "https://media.example.com" (default: "http://localhost:8000")
    """
    return os.getenv("PUBLIC_ORIGIN_URL", "http://localhost:8000").rstrip("/")


def get_worker_id() -> str:
    return os.getenv("WORKER_ID", os.getenv("HOSTNAME", "worker-local"))

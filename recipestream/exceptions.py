"""Shared exceptions for the application.

This module contains exception classes used across the storage adapter,
transcode workers, ingest coordinator and HTTP layer so that services do not
depend on each other just to catch an error.

Taxonomy:
    StorageError
        TransientError   network faults, 5xx, throttling (retried)
        PermanentError   4xx, auth failures (never retried)
        QuotaExceeded    backend out of space or over quota (never retried, alerts)
    NotFound             unknown key, video or job
    Conflict             a transcode job is already active for the video
    Denied               authorization decision refused access
    EncoderError         encoder failure worth retrying
        FatalEncoderError  corrupt input or unsupported codec (abandon)
    JobCancelled         cooperative cancellation observed mid-encode
"""

from typing import Any


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    Examples are a missing primary storage backend, an unknown backend
    name, or a backend row without a signing key.
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid state transition on a tracked entity.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current state before the attempted transition.
        to_status: The state that was attempted but is not valid.

    Example:
        >>> job.state = JobState.SUCCEEDED
        >>> job.state = JobState.QUEUED
        InvalidStateTransitionError: Invalid transition: succeeded -> queued
    """

    def __init__(self, message: str, from_status: Any, to_status: Any):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class StorageError(Exception):
    """Base class for object store failures.

    Attributes:
        key: Logical object key involved, if any.
        backend: Backend name the operation ran against, if known.
    """

    kind = "storage"

    def __init__(self, message: str, key: str | None = None, backend: str | None = None):
        self.key = key
        self.backend = backend
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        context = [f"{name}={value}" for name, value in (("key", self.key), ("backend", self.backend)) if value]
        if context:
            return f"{base_message} ({', '.join(context)})"
        return base_message


class TransientError(StorageError):
    """Network fault, 5xx response, throttling or failed post-write verification."""

    kind = "transient"


class PermanentError(StorageError):
    """Client error (4xx) or authentication failure. Never retried."""

    kind = "permanent"


class QuotaExceeded(StorageError):
    """Backend refused the write for capacity reasons. Never retried."""

    kind = "quota_exceeded"


class NotFound(Exception):
    """Requested object, video or job does not exist (or is not ready)."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class Conflict(Exception):
    """A queued or running transcode job already exists for the recipe video.

    Attributes:
        recipe_video_id: Video that already has an active job.
        job_id: The active job blocking the submission.
    """

    def __init__(self, message: str, recipe_video_id: Any = None, job_id: Any = None):
        self.recipe_video_id = recipe_video_id
        self.job_id = job_id
        super().__init__(message)


class Denied(Exception):
    """Authorization decision does not allow the principal to read the object."""

    def __init__(self, message: str = "access denied", principal: str | None = None):
        self.principal = principal
        super().__init__(message)


class EncoderError(Exception):
    """Encoder process failed in a way that may succeed on retry.

    Attributes:
        exit_code: Encoder process exit code (None when it never started).
        stderr: Tail of the encoder's stderr output.
    """

    kind = "encoder"

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class FatalEncoderError(EncoderError):
    """Input is corrupt or uses an unsupported codec. The job is abandoned."""

    kind = "fatal_encoder"


class JobCancelled(Exception):
    """Cancellation was requested while the job was running."""

    kind = "cancelled"

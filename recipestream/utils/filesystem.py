"""Filesystem path helpers for the encoder scratch workspace.

Every transcode attempt gets its own directory so that a retried or stale
attempt can never pick up segments written by another one. All path helpers
create directories if they don't exist.

Security:
    Identifiers must be alphanumeric with optional underscores/dashes.
    Resolved paths are verified to stay within WORKSPACE_ROOT.

Layout:
    {WORKSPACE_ROOT}/
    ├── uploads/                     spooled incoming masters
    └── jobs/{job_id}/a{attempt}/
        ├── source/                  downloaded master
        └── {rendition_label}/       ffmpeg HLS output for one rung
"""

import re
import shutil
from pathlib import Path

from recipestream.config import get_workspace_root

__all__ = [
    "JOBS_DIR_NAME",
    "SOURCE_DIR_NAME",
    "UPLOADS_DIR_NAME",
    "get_attempt_dir",
    "get_rendition_dir",
    "get_source_dir",
    "get_upload_dir",
    "remove_attempt_workspace",
]

JOBS_DIR_NAME = "jobs"
UPLOADS_DIR_NAME = "uploads"
SOURCE_DIR_NAME = "source"

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _workspace_root() -> Path:
    return Path(get_workspace_root())


def _validate_identifier(identifier: str, name: str) -> None:
    """Validate identifier to prevent path traversal attacks.

    Raises:
        ValueError: If identifier is empty or contains disallowed characters
    """
    if not identifier:
        raise ValueError(f"{name} cannot be empty")

    if not _ID_PATTERN.match(identifier):
        raise ValueError(
            f"Invalid {name}: '{identifier}'. "
            f"Only alphanumeric characters, underscores, and dashes are allowed."
        )


def _verify_path_in_workspace(path: Path) -> None:
    resolved = path.resolve()
    workspace_resolved = _workspace_root().resolve()

    if not resolved.is_relative_to(workspace_resolved):
        raise ValueError(
            f"Path traversal detected: resolved path '{resolved}' "
            f"is outside workspace '{workspace_resolved}'"
        )


def get_upload_dir() -> Path:
    """Get the directory incoming master uploads are spooled to."""
    path = _workspace_root() / UPLOADS_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_attempt_dir(job_id: str, attempt: int) -> Path:
    """Get scratch directory for one attempt of a transcode job.

    Args:
        job_id: TranscodeJob UUID as string
        attempt: Attempt number (1-based)

    Returns:
        Path: {WORKSPACE_ROOT}/jobs/{job_id}/a{attempt}/

    Raises:
        ValueError: If job_id is invalid

    Example:
        >>> get_attempt_dir("6f1c...", 2)
        PosixPath('/app/workspace/jobs/6f1c.../a2')
    """
    _validate_identifier(job_id, "job_id")

    path = _workspace_root() / JOBS_DIR_NAME / job_id / f"a{int(attempt)}"
    _verify_path_in_workspace(path)

    path.mkdir(parents=True, exist_ok=True)
    return path


def get_source_dir(job_id: str, attempt: int) -> Path:
    path = get_attempt_dir(job_id, attempt) / SOURCE_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_rendition_dir(job_id: str, attempt: int, label: str) -> Path:
    """Get encoder output directory for one ladder rung.

    Raises:
        ValueError: If job_id or label is invalid
    """
    _validate_identifier(label, "label")

    path = get_attempt_dir(job_id, attempt) / label
    _verify_path_in_workspace(path)

    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_attempt_workspace(job_id: str, attempt: int) -> None:
    """Delete the scratch files of one attempt, leaving other attempts alone."""
    _validate_identifier(job_id, "job_id")

    path = _workspace_root() / JOBS_DIR_NAME / job_id / f"a{int(attempt)}"
    _verify_path_in_workspace(path)
    shutil.rmtree(path, ignore_errors=True)

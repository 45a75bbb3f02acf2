"""Async wrapper for short-lived media tool invocations.

Runs tools such as ffprobe through `asyncio.to_thread(subprocess.run, ...)` so
the event loop is never blocked. Long-running encodes that need streaming
output and cooperative cancellation use `asyncio.create_subprocess_exec`
directly (see recipestream.services.encoder).
"""

import asyncio
import os
import subprocess

from recipestream.utils.logging import get_logger

log = get_logger(__name__)

_SENSITIVE_FLAGS = ("-headers", "--api-key", "--token", "--secret", "--password")


class MediaToolError(Exception):
    """Raised when a media tool exits with a non-zero code.

    Attributes:
        tool (str): Binary name (e.g., "ffprobe")
        exit_code (int): Process exit code
        stderr (str): Captured stderr output
    """

    def __init__(self, tool: str, exit_code: int, stderr: str) -> None:
        self.tool: str = tool
        self.exit_code: int = exit_code
        self.stderr: str = stderr
        super().__init__(f"{tool} failed with exit code {exit_code}: {stderr[:500]}")


def sanitize_args(args: list[str]) -> list[str]:
    """Redact secrets and truncate long arguments for logging."""
    sanitized = []
    skip_next = False
    for arg in args:
        if skip_next:
            sanitized.append("***REDACTED***")
            skip_next = False
        elif arg.lower() in _SENSITIVE_FLAGS:
            sanitized.append(arg)
            skip_next = True
        else:
            sanitized.append(arg[:100] + "..." if len(arg) > 100 else arg)
    return sanitized


async def run_media_tool(
    binary: str,
    args: list[str],
    timeout: int = 120,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a media tool without blocking the event loop.

    Args:
        binary: Executable name or path (e.g., "ffprobe")
        args: Command-line arguments
        timeout: Timeout in seconds
        env: Extra environment variables layered over the parent environment

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        MediaToolError: If the tool exits with non-zero code
        asyncio.TimeoutError: If the tool exceeds timeout
        FileNotFoundError: If the binary cannot be found
    """
    command = [binary, *args]
    tool = os.path.basename(binary)

    log.info("media_tool_start", tool=tool, args=sanitize_args(args), timeout=timeout)

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    try:
        result = await asyncio.to_thread(
            subprocess.run,
            command,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            env=process_env,
        )
    except subprocess.TimeoutExpired as e:
        log.error("media_tool_timeout", tool=tool, timeout=timeout)
        raise asyncio.TimeoutError(f"{tool} exceeded timeout of {timeout}s") from e

    if result.returncode != 0:
        stderr_truncated = (
            result.stderr[:500] + "..." if len(result.stderr) > 500 else result.stderr
        )
        log.error("media_tool_error", tool=tool, exit_code=result.returncode, stderr=stderr_truncated)
        raise MediaToolError(tool, result.returncode, result.stderr)

    log.info("media_tool_success", tool=tool, stdout_bytes=len(result.stdout))
    return result

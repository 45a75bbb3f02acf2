"""Structured Logging Configuration.

This module configures structlog once per process and hands out bound loggers.
Outputs JSON for production log aggregation; set LOG_FORMAT=console for
human-readable development output.

Configuration:
- JSON output format (for production log aggregation)
- Context binding support (job_id, recipe_video_id, key, backend)
- Log levels: DEBUG, INFO, WARNING, ERROR, CRITICAL (LOG_LEVEL env var)
"""

import logging
import os
import sys
from typing import Any

import structlog

_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; only the first call has an effect.

    Args:
        level: Log level name (default: LOG_LEVEL env var or "INFO").
        fmt: "json" or "console" (default: LOG_FORMAT env var or "json").
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if (fmt or os.getenv("LOG_FORMAT", "json")) == "console"
        else structlog.processors.JSONRenderer()
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Bound structlog logger; keyword arguments become JSON fields.
    """
    return structlog.get_logger(name)

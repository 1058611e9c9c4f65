"""Structured logging for the engine, built on structlog.

Handlers bind the activity they are working on so every event emitted
while the activity lock is held carries ``activity_id``, ``actor`` and
``action`` without passing them around.
"""

import logging
import sys
from typing import Any
from uuid import UUID

import structlog

ACTIVITY_CONTEXT_KEYS = ("activity_id", "actor", "action")

_RENDERERS = {
    "json": structlog.processors.JSONRenderer,
    "console": lambda: structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
}


def configure_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: ``json`` for production, ``console`` for development
    """
    if log_format not in _RENDERERS:
        raise ValueError(f"Unknown log format '{log_format}', expected one of {sorted(_RENDERERS)}")
    numeric_level = logging.getLevelName(level.upper())

    # uvicorn and SQLAlchemy echo go through the stdlib root logger
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _RENDERERS[log_format](),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service="peerflow")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_activity_context(
    activity_id: UUID | str,
    actor: UUID | str | None = None,
    **kwargs: Any,
) -> None:
    """Bind activity context to all subsequent log entries."""
    context = {"activity_id": str(activity_id)}
    if actor:
        context["actor"] = str(actor)
    context.update(kwargs)
    structlog.contextvars.bind_contextvars(**context)


def clear_activity_context() -> None:
    """Remove what bind_activity_context bound; the service name stays."""
    structlog.contextvars.unbind_contextvars(*ACTIVITY_CONTEXT_KEYS)

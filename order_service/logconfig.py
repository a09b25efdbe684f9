"""structlog setup for the order service."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LOG_FORMAT, LOG_LEVEL


def configure_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Configure structlog once at application startup.

    Args:
        level: Minimum level name, e.g. ``"INFO"``.
        fmt: ``"json"`` for machine-readable lines, anything else for the
            colored console renderer.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

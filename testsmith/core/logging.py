"""Structured logging setup shared by every testsmith component."""
from __future__ import annotations

import logging
import os
import sys

import structlog


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog for the process.

    Args:
        level: Log level name, defaults to ``TESTSMITH_LOG_LEVEL`` or ``INFO``
        json_output: Force JSON lines; by default JSON is used when stderr is not a TTY
    """
    level_name = (level or os.getenv("TESTSMITH_LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    if json_output is None:
        json_output = not sys.stderr.isatty()

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    # Noisy third-party clients
    for noisy in ("httpx", "openai", "anthropic", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str):
    return structlog.get_logger(component=component)

"""Structured logging configuration for npm_hookwatch.

Provides a single :func:`setup_logging` entry point that configures
**structlog** together with the standard :mod:`logging` module, so that
events from npm_hookwatch and from libraries such as httpx flow through
one processor pipeline and one renderer.

Every event carries an ISO 8601 UTC timestamp, the log level and the
logger name. In a terminal, events are rendered by
:class:`structlog.dev.ConsoleRenderer` with rich tracebacks; with
``json_output=True`` they are rendered as single-line JSON objects for log
shippers.

Modules obtain loggers with ``structlog.get_logger(__name__)`` and log
snake_case event names with key/value context::

    logger.info("scan_complete", package="left-pad", alerts=0)
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def setup_logging(level: str = "info", json_output: bool = False) -> None:
    """Configure structlog with stdlib logging integration.

    Args:
        level: Log level name (``debug``, ``info``, ``warning``, ``error``).
        json_output: When True render JSON lines, otherwise human-readable
            console output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.rich_traceback,
        )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # httpx logs every request at INFO; keep it for debug runs only
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

"""structlog setup for procscope."""

import logging
import sys
from typing import TextIO

import structlog


def configure_logging(level: str = "info", json: bool = False, file: TextIO | None = None) -> None:
    """
    Configure structlog process-wide.

    Args:
        level: Minimum level name (debug, info, warning, error, critical).
        json: Render one JSON object per line instead of the console format.
        file: Output stream. Defaults to stderr.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level.upper())),
        logger_factory=structlog.PrintLoggerFactory(file=file or sys.stderr),
        cache_logger_on_first_use=False,
    )

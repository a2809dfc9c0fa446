"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import Processor

# Chatty third-party loggers kept at WARNING unless DEBUG is requested
_QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: str = "INFO", log_format: str = "console") -> None:
    """Set up structured logging with structlog.

    Output goes to stderr so that a caller printing results on stdout
    is never interleaved with diagnostics.

    Args:
        level: Log level name.
        log_format: ``json`` or ``console``.
    """
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    quiet_level = numeric_level if numeric_level <= logging.DEBUG else max(numeric_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=False, exception_formatter=structlog.dev.plain_traceback),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a bound logger instance."""
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


@contextmanager
def container_log_context(**context: Any) -> Iterator[None]:
    """Bind container fields to every log line emitted inside the block.

    ``None`` values are dropped. Fields already bound by an outer block
    are restored on exit.
    """
    fields = {k: v for k, v in context.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**fields):
        yield

from __future__ import annotations

import logging
import sys

import structlog

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

def level_from_name(name: str | None) -> int:
    """Unknown or empty names fall back to INFO."""
    return _LEVELS.get((name or "").strip().lower(), logging.INFO)

def configure_logging(level: str | None = "info", *, json: bool | None = None) -> None:
    """
    Configure structlog once at process start.
    Renders JSON when stdout is not a TTY (containers), pretty console otherwise.
    """
    if json is None:
        json = not sys.stdout.isatty()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_from_name(level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )

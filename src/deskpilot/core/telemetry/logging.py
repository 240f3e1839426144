from __future__ import annotations

import logging
import sys

import structlog


def _stderr_logger(*args) -> structlog.PrintLogger:
    # Resolved per logger so a swapped sys.stderr (tests, redirection) is honoured.
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(log_level: str = "INFO", json_logs: bool = True, *, to_stderr: bool = False) -> None:
    """Configure structlog for the whole process.

    CLIs log to stderr so that their stdout stays machine-readable.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.INFO)),
        logger_factory=_stderr_logger if to_stderr else structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str, **initial_values):
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(name, component=name, **initial_values)

"""Structured logging via structlog — JSON in production, pretty in dev."""

from __future__ import annotations

import logging
import sys

import structlog

_NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "sqlalchemy.engine", "uvicorn.access")


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog on top of stdlib logging.

    Safe to call more than once: the root handler is replaced, not stacked.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_job_context(job_type: str, job_id: str | None = None) -> None:
    """Attach job identity to every log line of the current invocation."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job_type=job_type)
    if job_id:
        structlog.contextvars.bind_contextvars(job_id=job_id)

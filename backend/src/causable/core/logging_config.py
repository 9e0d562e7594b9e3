"""structlog configuration shared by the API process and scripts."""

from __future__ import annotations

import logging

import structlog

from causable.core.config import settings


def configure_logging(*, json_logs: bool | None = None, level: int = logging.INFO) -> None:
    """Configure structlog rendering.

    Console rendering in debug, JSON lines otherwise.
    """
    if json_logs is None:
        json_logs = not settings.debug

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
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
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )

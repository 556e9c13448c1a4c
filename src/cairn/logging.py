"""Structured logging setup: JSON lines over the standard logging bridge."""

import logging
from typing import Any

import structlog

from cairn.settings import get_settings


def configure_logging(level: int | str | None = None) -> None:
    """Configure structlog/standard logging bridge.

    Args:
        level: Log level name or number. Defaults to `Settings.log_level`
            (`CAIRN_LOG_LEVEL`).
    """
    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = level.upper()

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s")


def bind_cycle(**kwargs: Any) -> None:
    """Bind fields (e.g. the cycle id) to every log line of the current run."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)

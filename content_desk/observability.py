"""
Logging setup.

Services log through ``structlog.get_logger()`` with snake_case event names;
the worker loop logs through the standard library. Both end up on the root
handler configured here.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from .config import get_settings


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name (default from settings)
        fmt: ``json`` or ``console`` (default from settings)
    """
    settings = get_settings()
    level_name = (level or settings.log_level).upper()
    fmt = (fmt or settings.log_format).lower()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        force=True,
    )

    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

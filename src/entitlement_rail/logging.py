"""
Structured logging setup using structlog.

Call `setup_logging()` once at process start (server lifespan, CLI main).
Modules keep using `structlog.get_logger()` directly.
"""

import logging
import sys
from typing import Optional

import structlog

from .config import get_settings


def setup_logging(log_format: Optional[str] = None, level: Optional[str] = None) -> None:
    """
    Configure structlog with a JSON or console renderer.

    Defaults come from LOG_FORMAT / LOG_LEVEL.
    """
    settings = get_settings()
    log_format = (log_format or settings.log_format).lower()
    level_name = (level or settings.log_level).upper()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

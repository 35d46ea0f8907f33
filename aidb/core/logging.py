"""
AIDB Logging

Structured logging setup shared by every engine module.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from aidb.core.config import AIDBConfig


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = True,
    config: Optional[AIDBConfig] = None,
) -> None:
    """Configure structured logging."""
    if config is not None:
        log_level = config.log_level.value
        json_logs = config.json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

"""Logging configuration.

Every module logs through ``structlog.get_logger(__name__)`` with dotted
event names (``lifecycle.strategy_cloned``, ``risk_engine.emergency_stop``)
and keyword context. This module wires structlog onto stdlib logging once
per process: JSON lines by default, a coloured console renderer when
``LOG_FORMAT=console``, plus an optional log file.
"""
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from dojo_risk.core.config import LoggingConfig, logging_config


def _shared_processors() -> List:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str):
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(config: Optional[LoggingConfig] = None) -> Optional[logging.FileHandler]:
    """
    Configure structlog and the root logger.

    Args:
        config: Logging settings; the module-level logging_config by default

    Returns:
        The file handler writing to config.log_file, or None without a file
    """
    config = config or logging_config
    level = getattr(logging, config.log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    structlog.configure(
        processors=_shared_processors() + [_renderer(config.log_format)],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if not config.log_file:
        return None

    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # One handler per file, however often setup runs
    for handler in root_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path.resolve():
            return handler

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)
    return file_handler

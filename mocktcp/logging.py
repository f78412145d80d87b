"""Central logging helpers"""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union
import structlog
import structlog.stdlib

from mocktcp.config import settings
from mocktcp.exceptions import ConfigurationError

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"


def resolve_level(level: Optional[Union[int, str]] = None) -> int:
    """Numeric level from an int, a level name, or Settings.log_level."""
    if level is None:
        level = settings.log_level
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ConfigurationError(f"Unknown log level: {level}", details={"level": level})
    return resolved


def add_component(component: str) -> structlog.types.Processor:
    """Processor stamping every event with the emitting component."""

    def _processor(logger, method_name, event_dict):
        event_dict.setdefault("component", component)
        return event_dict

    return _processor


def _build_file_handler(component: str) -> RotatingFileHandler:
    log_dir: Path = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{component}.log"
    handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def setup_logging(component: str = "mocktcpserver", level: Optional[Union[int, str]] = None) -> None:
    """
    Configure structlog + stdlib logging for a component.

    Level, file output and rendering come from Settings (MOCKTCP_LOG_LEVEL,
    MOCKTCP_LOG_TO_FILE, MOCKTCP_LOG_JSON) unless a level is passed in.
    """
    numeric_level = resolve_level(level)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_to_file:
        handlers.append(_build_file_handler(component))

    logging.basicConfig(level=numeric_level, handlers=handlers, format=_DEFAULT_FORMAT, force=True)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_component(component),
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger(__name__).info(
        "logging_initialized",
        extra={"component": component, "level": logging.getLevelName(numeric_level)},
    )

"""Structured JSON logging with save_id support.

Uses structlog for structured logging with JSON output.
Every log entry emitted during a save carries the save_id of that call.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

from mechanic_shop.core.config import ObservabilityConfig
from mechanic_shop.core.ids import new_save_id

# Context var for save_id propagation
_save_id: ContextVar[str] = ContextVar("save_id", default="")


def get_save_id() -> str:
    """Get current save ID from context (empty outside a save)."""
    return _save_id.get()


def set_save_id(save_id: str) -> None:
    """Set save ID in context."""
    _save_id.set(save_id)


def begin_save() -> str:
    """Generate and set a new save ID."""
    sid = new_save_id()
    _save_id.set(sid)
    return sid


def _add_save_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add save_id to log entries inside a save."""
    sid = get_save_id()
    if sid:
        event_dict.setdefault("save_id", sid)
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        _add_save_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )


def setup_logging_from(config: ObservabilityConfig) -> None:
    """Configure logging from the ``observability`` section of ``Settings``."""
    setup_logging(level=config.log_level, format=config.log_format)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a module."""
    return structlog.get_logger(name)

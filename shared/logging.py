"""
Shared logging configuration for the item cache.
"""

import sys
import structlog
import logging
import time
from typing import Any, Callable, Dict, Optional
from contextvars import ContextVar

from shared.errors import CacheError

# Context variable naming the cache whose work is being logged
cache_name_var: ContextVar[Optional[str]] = ContextVar('cache_name', default=None)

LogSink = Callable[[BaseException, str], None]


def configure_logging(log_level: str = "info", json_output: bool = True) -> None:
    """Configure structured logging for processes embedding the cache."""

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    # Configure structlog
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
            add_cache_context,
            add_timestamp,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_cache_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the active cache name to log events."""
    cache_name = cache_name_var.get()
    if cache_name and "cache" not in event_dict:
        event_dict["cache"] = cache_name

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["timestamp"] = time.time()
    return event_dict


def set_cache_context(cache_name: Optional[str]) -> None:
    """Set the cache name in the logging context."""
    cache_name_var.set(cache_name)


def clear_context():
    """Clear all context variables."""
    cache_name_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def make_log_sink(name: str) -> LogSink:
    """Build the default load-failure sink, forwarding to a structured logger."""
    logger = get_logger(name)

    def sink(error: BaseException, message: str) -> None:
        fields: Dict[str, Any] = {"error": str(error), "error_type": type(error).__name__}
        if isinstance(error, CacheError):
            fields.update(error_code=error.code, details=error.details)
        logger.error(message, exc_info=error, **fields)

    return sink

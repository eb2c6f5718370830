"""
Structured logging configuration.

Provides consistent, structured logging with correlation IDs and rich formatting.
"""

import logging
import sys
import uuid
from typing import Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

_CORRELATION_KEY = "correlation_id"


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set a correlation ID for the current execution context."""
    value = correlation_id or str(uuid.uuid4())[:8]
    structlog.contextvars.bind_contextvars(**{_CORRELATION_KEY: value})
    return value


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return structlog.contextvars.get_contextvars().get(_CORRELATION_KEY)


def setup_logging(debug: bool = False, json_output: bool = False) -> None:
    """
    Configure structured logging for the application.

    Args:
        debug: Enable debug level logging
        json_output: Emit JSON lines instead of rich console output
    """
    level = logging.DEBUG if debug else logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_output:
        # JSON output for production
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
        logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)
    else:
        console = Console(stderr=True)
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.rich_traceback,
            )
        )
        # Third-party libraries log through the standard library
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, show_path=False)],
        )

    for noisy in ("googleapiclient.discovery_cache", "httpx", "apscheduler.executors"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance with the given name."""
    return structlog.get_logger(name)

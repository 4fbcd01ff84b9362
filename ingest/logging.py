"""
Structured logging configuration using structlog.

Standardized log format:
{
    "ts": "2026-10-16T04:30:00.123456Z",
    "level": "info",
    "service": "event-ingest",
    "request_id": "uuid-v4",
    "client_ip": "10.0.0.7",
    "event": "http_request",
    "module": "ingest.middleware.access_log",
    "func_name": "dispatch",
    "lineno": 42,
    ...additional context...
}

structlog events and stdlib records (uvicorn's error logger) share one
handler, so both come out in this format.
"""
import logging
import sys
from typing import Any, TextIO

import structlog

from .config import SERVICE_NAME

HANDLER_NAME = "ingest"


def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Add service name to all log entries."""
    event_dict["service"] = SERVICE_NAME
    return event_dict


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _pre_chain() -> list:
    return [
        # Request id and client ip bound by the middleware chain
        structlog.contextvars.merge_contextvars,
        add_service_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def setup_logging(
    json_output: bool = True,
    level: str = "INFO",
    stream: TextIO | None = None,
    cache_loggers: bool = True,
) -> logging.Handler:
    """
    Configure structured logging with standardized fields.

    Calling it again replaces the handler installed by the previous call.

    Args:
        json_output: If True, output JSON logs. If False, use console format.
        level: Minimum level name, e.g. "INFO" or "DEBUG". Unknown names mean INFO.
        stream: Where lines are written, stdout by default.
        cache_loggers: Freeze loggers on first use. Off in tests that reconfigure.

    Returns:
        The installed root handler.
    """
    log_level = _resolve_level(level)
    pre_chain = _pre_chain()
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=cache_loggers,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if h.get_name() != HANDLER_NAME] + [handler]
    root.setLevel(log_level)

    # uvicorn errors go through the root handler; the access log middleware
    # replaces uvicorn's own request lines
    error_logger = logging.getLogger("uvicorn.error")
    error_logger.handlers = []
    error_logger.propagate = True
    access_logger = logging.getLogger("uvicorn.access")
    access_logger.handlers = []
    access_logger.propagate = False

    return handler


def get_logger():
    """Get a configured structlog logger."""
    return structlog.get_logger()

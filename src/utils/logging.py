"""Structured logging for the chat listener.

Importing this module configures structlog once for the process. Output is a
colored console format when LISTENER_ENVIRONMENT is 'local' and JSON lines
everywhere else. Standard library loggers (uvicorn, asyncpg, httpx) are routed
through the same formatter.

```
from src.utils.logging import get_logger

logger = get_logger(__name__)
logger.info("Conversation stored", conversation_id="c1")
```

Request-scoped values such as request_id and event_type are bound with
add_log_context() or the LogContext context manager and show up on every line
emitted inside that async context.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import structlog
import structlog.contextvars

from src.utils.config import get_listener_environment
from src.utils.newrelic_logging import newrelic_error_processor


def _use_console_renderer() -> bool:
    # LOG_RENDERER=console|json wins over the environment default
    override = os.getenv("LOG_RENDERER", "").lower()
    if override in ("console", "json"):
        return override == "console"
    return get_listener_environment() == "local"


def _get_log_renderer() -> structlog.types.Processor:
    if _use_console_renderer():
        return structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event=0,
            force_colors=False,
            repr_native_str=False,
            exception_formatter=structlog.dev.plain_traceback,
            sort_keys=True,
            event_key="message",
        )
    return structlog.processors.JSONRenderer()


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.contextvars.merge_contextvars,
        structlog.processors.EventRenamer("message"),
        newrelic_error_processor,
    ]


def configure_logging() -> None:
    """Configure structlog and the stdlib root logger for this environment."""
    processors = _shared_processors()

    structlog.configure(
        processors=processors
        + [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # foreign_pre_chain must not include filter_by_level: stdlib records
    # were already filtered by their own logger
    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(),
            foreign_pre_chain=processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger.setLevel(level)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
        if level <= logging.DEBUG:
            uvicorn_logger.setLevel(level)


configure_logging()


def add_log_context(**kwargs: Any) -> None:
    """Bind values into the logging context of the current async context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def remove_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_log_context() -> None:
    """Drop all bound context. Called at the start of every request."""
    structlog.contextvars.clear_contextvars()


LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    """Get a structlog logger, optionally with initial bound values."""
    return structlog.get_logger(name, **kwargs)


def get_uvicorn_log_config() -> dict[str, Any]:
    """Uvicorn dictConfig that renders its logs in the same format as ours."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processor": _get_log_renderer(),
                "foreign_pre_chain": [
                    structlog.stdlib.add_log_level,
                    structlog.stdlib.add_logger_name,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.contextvars.merge_contextvars,
                    structlog.processors.EventRenamer("message"),
                ],
            },
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            name: {"handlers": ["default"], "level": "INFO", "propagate": False}
            for name in ("uvicorn", "uvicorn.access", "uvicorn.error")
        },
    }

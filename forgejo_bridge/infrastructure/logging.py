"""structlog configuration for the bridge service"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from forgejo_bridge.core.config import settings
from forgejo_bridge.infrastructure.logging_processors import (
    add_service_context,
    add_request_context,
    sanitize_sensitive_data,
    format_exception_info,
    set_log_severity,
    MetricsProcessor
)

QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging() -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso")

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        add_request_context,
        structlog.processors.add_log_level,
        set_log_severity,
        format_exception_info,
        timestamper,
        # Must run last before rendering
        sanitize_sensitive_data,
        MetricsProcessor(),
    ]

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.rich_traceback,
        )

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level))

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, settings.log_level))
        logger.propagate = False

    # httpx logs every Forgejo REST call at INFO; the client logs its own failures
    for logger_name in QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(max(logging.WARNING, root_logger.level))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)

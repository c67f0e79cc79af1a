"""Custom structlog processors"""

import socket
import sys
import traceback
from typing import Any, Dict

from structlog.contextvars import get_contextvars
from structlog.types import EventDict, WrappedLogger

try:
    _HOSTNAME = socket.gethostname()
except OSError:
    _HOSTNAME = None

SENSITIVE_KEYS = {
    "password", "token", "secret", "api_key", "authorization",
    "private_key", "bearer", "signature",
}

REQUEST_CONTEXT_KEYS = (
    "correlation_id",
    "request_method",
    "request_path",
    "client_ip",
    "owner",
    "repo",
    "operation",
)


def add_service_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level context to logs"""
    from forgejo_bridge.core.config import settings

    event_dict["service"] = "forgejo-bridge"
    event_dict["environment"] = settings.environment
    if _HOSTNAME:
        event_dict["hostname"] = _HOSTNAME

    return event_dict


def add_request_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Copy request-scoped values bound by the middleware"""
    context = get_contextvars()
    for key in REQUEST_CONTEXT_KEYS:
        if key in context and key not in event_dict:
            event_dict[key] = context[key]
    return event_dict


def sanitize_sensitive_data(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Mask values whose keys look like credentials"""

    def sanitize_dict(d: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = {}
        for key, value in d.items():
            lower_key = str(key).lower()

            if any(sensitive in lower_key for sensitive in SENSITIVE_KEYS):
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, dict):
                sanitized[key] = sanitize_dict(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    sanitize_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                sanitized[key] = value

        return sanitized

    return sanitize_dict(event_dict)


def format_exception_info(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Format exception information for better readability"""
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, tuple):
            exc_type, exc_value, exc_tb = exc_info
        elif isinstance(exc_info, BaseException):
            exc_type, exc_value, exc_tb = type(exc_info), exc_info, exc_info.__traceback__
        else:
            exc_type, exc_value, exc_tb = sys.exc_info()

        if exc_type:
            event_dict["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
            }

    return event_dict


def set_log_severity(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Set severity field for log aggregation systems"""
    if "level" in event_dict:
        event_dict["severity"] = str(event_dict["level"]).upper()
    return event_dict


class MetricsProcessor:
    """Count log messages by level"""

    def __call__(
        self, logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        # Lazy import to avoid circular dependency
        from forgejo_bridge.infrastructure.metrics import log_messages_total

        if "level" in event_dict:
            log_messages_total.labels(
                level=event_dict["level"],
                logger=getattr(logger, "name", "unknown")
            ).inc()

        return event_dict

"""HTTP middleware package."""

from forgejo_bridge.infrastructure.middleware.correlation import CorrelationIDMiddleware
from forgejo_bridge.infrastructure.middleware.logging import LoggingMiddleware
from forgejo_bridge.infrastructure.middleware.metrics import MetricsMiddleware

__all__ = [
    "CorrelationIDMiddleware",
    "LoggingMiddleware",
    "MetricsMiddleware",
]

"""Metrics collection middleware for FastAPI"""

import re
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from forgejo_bridge.infrastructure.git_protocol import match_transport_path
from forgejo_bridge.infrastructure.logging import get_logger
from forgejo_bridge.infrastructure.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

logger = get_logger(__name__)

# Collapse owner/repo path parameters to keep label cardinality bounded
ENDPOINT_PATTERNS = [
    (re.compile(r"^/api/v3/repos/[^/]+/[^/]+/branches$"), "/api/v3/repos/{owner}/{repo}/branches"),
    (re.compile(r"^/api/v3/repos/[^/]+/[^/]+/hooks$"), "/api/v3/repos/{owner}/{repo}/hooks"),
    (re.compile(r"^/api/v3/repos/[^/]+/[^/]+$"), "/api/v3/repos/{owner}/{repo}"),
    (re.compile(r"^/api/v3/app/installations/[^/]+/access_tokens$"),
     "/api/v3/app/installations/{id}/access_tokens"),
    (re.compile(r"^/installations/[^/]+$"), "/installations/{id}"),
    (re.compile(r"^/settings/apps/[^/]+/permissions$"), "/settings/apps/{app}/permissions"),
    (re.compile(r"^/github-apps/[^/]+/installations/new$"), "/github-apps/{app}/installations/new"),
    (re.compile(r"^/login/oauth/(?!authorize$|access_token$)[^/]+$"), "/login/oauth/{path}"),
]


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware for collecting HTTP metrics"""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.exclude_paths = {
            "/metrics",
            "/health",
            "/ready",
        }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        endpoint = self._normalize_endpoint(request.url.path)
        method = request.method

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()

        start_time = time.time()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            status = str(response.status_code)

            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).observe(duration)

            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=status
            ).inc()

            return response

        except Exception as e:
            duration = time.time() - start_time

            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint,
                status="500"
            ).observe(duration)

            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status="500"
            ).inc()

            logger.error(
                "request_failed",
                method=method,
                endpoint=endpoint,
                duration_seconds=duration,
                error=str(e)
            )

            raise

        finally:
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path for metrics labels"""
        if path.endswith("/") and len(path) > 1:
            path = path[:-1]

        transport = match_transport_path(path)
        if transport:
            return f"/{{owner}}/{{repo}}.git/{transport.operation.path_suffix}"

        for pattern, replacement in ENDPOINT_PATTERNS:
            if pattern.match(path):
                return replacement

        if len(path) > 50:
            return path[:50] + "..."

        return path

import time
from typing import Callable, Dict

from fastapi import Request, Response
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware

from forgejo_bridge.infrastructure.git_protocol import match_transport_path
from forgejo_bridge.infrastructure.logging import bind_context, clear_context, get_logger
from forgejo_bridge.infrastructure.middleware.correlation import get_correlation_id

logger = get_logger(__name__)

SENSITIVE_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-forgejo-signature",
    "x-gitea-signature",
    "x-hub-signature-256",
}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging"""

    def __init__(self, app):
        super().__init__(app)
        self.exclude_paths = {
            "/health",  # Don't log health checks
            "/ready",
            "/metrics",
        }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        if request.url.path in self.exclude_paths:
            return await call_next(request)

        request_id = get_correlation_id()

        bind_context(
            correlation_id=request_id,
            request_method=request.method,
            request_path=request.url.path,
            client_ip=self._get_client_ip(request),
        )

        transport = match_transport_path(request.url.path)
        if transport:
            bind_context(
                owner=transport.key.owner,
                repo=transport.key.repository,
                operation=transport.operation.value,
            )

        logger.info(
            "http_request_started",
            method=request.method,
            path=request.url.path,
            query_params=dict(request.query_params) if request.query_params else None,
            headers=self._sanitize_headers(request.headers),
            request_size=request.headers.get("content-length", 0),
            user_agent=request.headers.get("user-agent", "unknown"),
        )

        try:
            response = await call_next(request)

            duration = time.time() - start_time

            logger.info(
                "http_request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                response_size=response.headers.get("content-length", 0),
            )

            if request_id:
                response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{round(duration * 1000, 2)}ms"

            return response

        except Exception as e:
            duration = time.time() - start_time

            logger.error(
                "http_request_failed",
                duration_ms=round(duration * 1000, 2),
                error_type=type(e).__name__,
                error_message=str(e),
                exc_info=True,
            )
            raise

        finally:
            clear_context()

    def _get_client_ip(self, request: Request) -> str:
        """Extract real client IP from request"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    def _sanitize_headers(self, headers: Headers) -> Dict[str, str]:
        sanitized = {}
        for key, value in headers.items():
            if key.lower() in SENSITIVE_HEADERS:
                sanitized[key] = "***REDACTED***"
            else:
                sanitized[key] = value

        return sanitized

"""Correlation ids for every request, including Git transport streams.

Written as plain ASGI rather than ``BaseHTTPMiddleware``: pack responses from
the Git transport are long streams and must reach the client unbuffered.
"""

import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from forgejo_bridge.infrastructure.logging import bind_context, unbind_context

CORRELATION_HEADER = "X-Correlation-ID"

# Reverse proxies in front of Coolify commonly set X-Request-ID instead
INCOMING_HEADERS = ("x-correlation-id", "x-request-id")

# Ids end up in log lines and response headers
VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

correlation_id_var: ContextVar[Optional[str]] = ContextVar(
    "correlation_id", default=None
)


def incoming_correlation_id(headers: Headers) -> Optional[str]:
    for name in INCOMING_HEADERS:
        value = headers.get(name)
        if value and VALID_CORRELATION_ID.match(value):
            return value
    return None


class CorrelationIDMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = incoming_correlation_id(Headers(scope=scope)) or str(uuid.uuid4())

        token = correlation_id_var.set(correlation_id)
        bind_context(correlation_id=correlation_id)

        async def send_with_correlation_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[CORRELATION_HEADER] = correlation_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation_id)
        finally:
            unbind_context("correlation_id")
            correlation_id_var.reset(token)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()

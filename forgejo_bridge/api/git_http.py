"""Git Smart HTTP served from the local mirror cache.

Transport paths are intercepted by a plain ASGI middleware before FastAPI
routing, so no REST route can shadow them. Everything else falls through to
the application untouched.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import ClientDisconnect, Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from forgejo_bridge.core.exceptions import (
    BaseAPIException,
    SubprocessLaunchError,
    SubprocessProtocolError,
    UpstreamSyncError,
)
from forgejo_bridge.infrastructure.eviction import EvictionScheduler
from forgejo_bridge.infrastructure.git_protocol import (
    GitContentType,
    GitOperation,
    TransportMatch,
    match_transport_path,
)
from forgejo_bridge.infrastructure.git_subprocess import GitBackendProcess, TransportRequest
from forgejo_bridge.infrastructure.logging import bind_context, get_logger
from forgejo_bridge.infrastructure.metrics import (
    git_backend_duration_seconds,
    git_backend_requests_total,
)
from forgejo_bridge.infrastructure.middleware.correlation import get_correlation_id
from forgejo_bridge.infrastructure.mirror_cache import MirrorCache

logger = get_logger(__name__)

T = TypeVar("T")

EXPECTED_REQUEST_TYPES = {
    GitOperation.UPLOAD_PACK: GitContentType.UPLOAD_PACK_REQUEST,
    GitOperation.RECEIVE_PACK: GitContentType.RECEIVE_PACK_REQUEST,
}

ERROR_OUTCOMES = {
    UpstreamSyncError: "sync_error",
    SubprocessLaunchError: "launch_error",
    SubprocessProtocolError: "protocol_error",
}


def build_transport_request(match: TransportMatch, request: Request) -> TransportRequest:
    query_string = request.scope.get("query_string", b"").decode("latin-1")
    request_uri = request.url.path + (f"?{query_string}" if query_string else "")

    return TransportRequest(
        match=match,
        method=request.method,
        query_string=query_string,
        request_uri=request_uri,
        content_type=request.headers.get("content-type", ""),
        content_length=request.headers.get("content-length"),
        remote_addr=request.client.host if request.client else "",
        git_protocol=request.headers.get("git-protocol"),
        content_encoding=request.headers.get("content-encoding"),
    )


class DisconnectWatcher:
    """Reads the client channel once the request body is no longer needed.

    The streaming response gets `receive` from here instead of the raw ASGI
    callable. When a `gate` is given, nothing is read from the client until it
    is set, so the watcher never competes with the request body pump.
    """

    def __init__(self, receive: Receive, gate: Optional[asyncio.Event] = None):
        self._receive = receive
        self._gate = gate
        self.disconnected = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self.disconnected.set()
                return

    async def receive(self) -> Message:
        if self._gate is not None:
            await self._gate.wait()
        self.start()
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


async def until_disconnect(awaitable: Awaitable[T], watcher: DisconnectWatcher) -> T:
    """Await `awaitable`, cancelling it if the client goes away first"""
    task = asyncio.ensure_future(awaitable)
    disconnect = asyncio.ensure_future(watcher.disconnected.wait())
    try:
        await asyncio.wait({task, disconnect}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        disconnect.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task.cancelled():
        raise ClientDisconnect()
    return task.result()


class GitTransportMiddleware:
    """Serves info/refs, git-upload-pack and git-receive-pack from mirrors.

    Expects ``app.state.mirror_cache`` and ``app.state.eviction_scheduler``.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        match = match_transport_path(scope["path"])
        if match is None:
            await self.app(scope, receive, send)
            return

        await self._serve(match, scope, receive, send)

    async def _serve(self, match: TransportMatch, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        cache: MirrorCache = request.app.state.mirror_cache
        scheduler: EvictionScheduler = request.app.state.eviction_scheduler

        key = match.key
        operation = match.operation
        bind_context(owner=key.owner, repo=key.repository, operation=operation.value)

        transport = build_transport_request(match, request)
        self._check_content_type(transport)

        logger.info("git_transport_request", method=transport.method, query=transport.query_string)

        watcher: Optional[DisconnectWatcher] = None
        if not transport.has_body:
            watcher = DisconnectWatcher(receive)
            watcher.start()

        scheduler.cancel(key)
        start_time = time.time()
        outcome = "success"

        try:
            # Reserved until the response is done so idle eviction cannot run in between
            with cache.reserve(key):
                if watcher is not None:
                    await until_disconnect(cache.ensure(key), watcher)
                else:
                    # Body-carrying requests are bounded by the sync timeout only
                    await cache.ensure(key)

                async with cache.hold(key):
                    backend = GitBackendProcess(cache.root)
                    body = request.stream() if transport.has_body else None

                    async with backend.execute(transport, body):
                        cgi = await backend.read_headers()

                        if watcher is None:
                            watcher = DisconnectWatcher(receive, gate=backend.input_done)

                        response = StreamingResponse(
                            backend.iter_body(cgi.leftover),
                            status_code=cgi.status_code,
                        )
                        for name, value in cgi.headers:
                            response.headers.append(name, value)
                        await response(scope, watcher.receive, send)

                        if watcher.disconnected.is_set() and not backend.output_done:
                            # Starlette ends the response quietly when the client goes away
                            raise ClientDisconnect()

                        return_code = await backend.wait()
                        if return_code != 0:
                            outcome = "nonzero_exit"
                            logger.warning(
                                "git_backend_nonzero_exit",
                                return_code=return_code,
                                stderr=backend.stderr_output.decode("utf-8", errors="replace").strip(),
                            )

        except ClientDisconnect:
            outcome = "client_disconnect"
            logger.info("git_transport_client_disconnected")

        except BaseAPIException as exc:
            outcome = ERROR_OUTCOMES.get(type(exc), "error")
            logger.error(
                "git_transport_failed",
                code=exc.code,
                message=exc.message,
                status_code=exc.status_code,
                details=exc.details,
            )
            await self._send_error(exc, scope, receive, send)

        finally:
            if watcher is not None:
                await watcher.stop()

            git_backend_requests_total.labels(operation=operation.value, outcome=outcome).inc()
            git_backend_duration_seconds.labels(operation=operation.value).observe(
                time.time() - start_time
            )
            scheduler.arm(key)

    @staticmethod
    def _check_content_type(transport: TransportRequest) -> None:
        expected = EXPECTED_REQUEST_TYPES.get(transport.match.operation)
        if expected and transport.has_body and not transport.content_type.startswith(expected):
            # git-http-backend gives the authoritative answer; only note it here
            logger.warning(
                "git_transport_unexpected_content_type",
                content_type=transport.content_type,
                expected=expected,
            )

    @staticmethod
    async def _send_error(exc: BaseAPIException, scope: Scope, receive: Receive, send: Send) -> None:
        correlation_id = get_correlation_id()
        error_response = exc.to_error_response(correlation_id=correlation_id)

        response = JSONResponse(
            status_code=exc.status_code,
            content=error_response.model_dump(exclude_none=True),
            headers={"X-Correlation-ID": correlation_id} if correlation_id else {},
        )
        await response(scope, receive, send)

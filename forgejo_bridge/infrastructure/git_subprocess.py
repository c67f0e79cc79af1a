"""Subprocess bridge to git-http-backend"""

import asyncio
import os
import signal
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from starlette.requests import ClientDisconnect

from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import SubprocessLaunchError, SubprocessProtocolError
from forgejo_bridge.infrastructure.git_protocol import TransportMatch
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

HEADER_DELIMITERS = (b"\r\n\r\n", b"\n\n")
BODYLESS_METHODS = ("GET", "HEAD")


@dataclass(frozen=True)
class TransportRequest:
    """What git-http-backend needs to know about one inbound request"""
    match: TransportMatch
    method: str
    query_string: str = ""
    request_uri: str = ""
    content_type: str = ""
    content_length: Optional[str] = None
    remote_addr: str = ""
    git_protocol: Optional[str] = None
    content_encoding: Optional[str] = None

    @property
    def has_body(self) -> bool:
        return self.method.upper() not in BODYLESS_METHODS


@dataclass
class CGIResponse:
    status_code: int = 200
    headers: List[Tuple[str, str]] = field(default_factory=list)
    leftover: bytes = b""


class CGIResponseParser:
    """Splits CGI output into a header block and the body that follows.

    Output is buffered only until the blank line ending the headers; any bytes
    that arrived in the same chunk after it are handed back untouched.
    """

    def __init__(self, max_header_bytes: Optional[int] = None):
        self.max_header_bytes = max_header_bytes or settings.max_cgi_header_bytes
        self._buffer = bytearray()
        self.response: Optional[CGIResponse] = None

    @property
    def complete(self) -> bool:
        return self.response is not None

    def feed(self, chunk: bytes) -> Optional[CGIResponse]:
        """Returns the parsed response once the header block is complete"""
        if self.response is not None:
            raise RuntimeError("Header block already parsed")

        self._buffer += chunk

        end, delimiter = self._find_delimiter()
        if end < 0:
            if len(self._buffer) > self.max_header_bytes:
                raise SubprocessProtocolError(
                    "Git backend header block too large",
                    details={"buffered_bytes": len(self._buffer)},
                )
            return None

        if end > self.max_header_bytes:
            raise SubprocessProtocolError("Git backend header block too large")

        header_block = bytes(self._buffer[:end])
        leftover = bytes(self._buffer[end + len(delimiter):])
        self._buffer.clear()

        self.response = self._parse_headers(header_block)
        self.response.leftover = leftover
        return self.response

    def _find_delimiter(self) -> Tuple[int, bytes]:
        best = (-1, b"")
        for delimiter in HEADER_DELIMITERS:
            index = self._buffer.find(delimiter)
            if index >= 0 and (best[0] < 0 or index < best[0]):
                best = (index, delimiter)
        return best

    @staticmethod
    def _parse_headers(block: bytes) -> CGIResponse:
        response = CGIResponse()

        for raw_line in block.split(b"\n"):
            line = raw_line.rstrip(b"\r")
            if not line.strip():
                continue

            if b":" not in line:
                logger.warning("git_backend_malformed_header", line=line[:200].decode("latin-1"))
                continue

            key, value = line.split(b":", 1)
            name = key.decode("latin-1").strip()
            text = value.decode("latin-1").strip()

            if name.lower() == "status":
                response.status_code = parse_http_status(text)
            else:
                response.headers.append((name, text))

        return response


def parse_http_status(status_line: str) -> int:
    """Parse the CGI Status header value ("404 Not Found")"""
    parts = status_line.split(None, 1)
    try:
        code = int(parts[0])
    except (IndexError, ValueError):
        raise SubprocessProtocolError(f"Invalid CGI status: {status_line!r}")
    if not 100 <= code <= 599:
        raise SubprocessProtocolError(f"Invalid CGI status: {status_line!r}")
    return code


class GitBackendProcess:
    """Runs one git-http-backend instance for one HTTP request"""

    def __init__(
        self,
        project_root: Path,
        command: Optional[Sequence[str]] = None,
        timeout: Optional[float] = None,
        header_timeout: Optional[float] = None,
        max_header_bytes: Optional[int] = None,
        chunk_size: int = 64 * 1024,
    ):
        self.project_root = project_root
        self.command = list(command or settings.git_http_backend_command)
        self.timeout = timeout if timeout is not None else settings.git_backend_timeout_seconds
        self.header_timeout = (
            header_timeout if header_timeout is not None else settings.cgi_header_timeout_seconds
        )
        self.max_header_bytes = max_header_bytes or settings.max_cgi_header_bytes
        self.chunk_size = chunk_size

        self.process: Optional[asyncio.subprocess.Process] = None
        self.start_time: Optional[float] = None
        self.return_code: Optional[int] = None
        self.client_disconnected = False
        self.input_done = asyncio.Event()
        self.output_done = False
        self.stderr_output = bytearray()

        self._input_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    def _create_cgi_environment(self, request: TransportRequest) -> Dict[str, str]:
        """CGI variables for git-http-backend"""

        # Base environment (filter sensitive variables)
        env = {
            k: v
            for k, v in os.environ.items()
            if k.startswith(("PATH", "HOME", "LANG", "LC_"))
        }

        env.update(
            {
                "GIT_PROJECT_ROOT": str(self.project_root),
                "GIT_HTTP_EXPORT_ALL": "1",
                "REQUEST_METHOD": request.method,
                "PATH_INFO": request.match.path_info,
                "REMOTE_USER": "git",
                "REMOTE_ADDR": request.remote_addr or "127.0.0.1",
                "CONTENT_TYPE": request.content_type,
                "QUERY_STRING": request.query_string,
                "REQUEST_URI": request.request_uri,
            }
        )

        if request.content_length is not None:
            env["CONTENT_LENGTH"] = request.content_length
        if request.git_protocol:
            env["GIT_PROTOCOL"] = request.git_protocol
            env["HTTP_GIT_PROTOCOL"] = request.git_protocol
        if request.content_encoding:
            env["HTTP_CONTENT_ENCODING"] = request.content_encoding

        return env

    @asynccontextmanager
    async def execute(
        self,
        request: TransportRequest,
        body: Optional[AsyncIterator[bytes]] = None,
    ):
        """Start the backend and guarantee it is reaped when the block exits"""
        env = self._create_cgi_environment(request)
        key = request.match.key

        logger.info(
            "git_backend_starting",
            method=request.method,
            path_info=env["PATH_INFO"],
            query_string=request.query_string,
            owner=key.owner,
            repo=key.repository,
        )

        self.start_time = time.time()

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(self.project_root),
                start_new_session=True,  # own process group so children die with it
            )
        except OSError as e:
            logger.error(
                "git_backend_launch_failed",
                command=self.command[0],
                error=str(e),
                owner=key.owner,
                repo=key.repository,
            )
            raise SubprocessLaunchError(details={"error_type": type(e).__name__}) from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._input_task = asyncio.create_task(
            self._pump_input(body if request.has_body else None)
        )

        try:
            yield self
        finally:
            await asyncio.shield(self.cleanup())

    async def _pump_input(self, body: Optional[AsyncIterator[bytes]]) -> None:
        """Copy the request body into stdin, then close it"""
        stdin = self.process.stdin
        try:
            if body is not None:
                async for chunk in body:
                    if not chunk:
                        continue
                    stdin.write(chunk)
                    await stdin.drain()
        except ClientDisconnect:
            self.client_disconnected = True
            logger.info("git_backend_client_disconnected", phase="request_body")
            await self.terminate()
        except (BrokenPipeError, ConnectionResetError):
            # Backend stopped reading; it will report through its own output
            logger.warning("git_backend_input_closed_early")
        finally:
            try:
                stdin.close()
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass
            self.input_done.set()

    async def _drain_stderr(self) -> None:
        stderr = self.process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                break
            if len(self.stderr_output) < 64 * 1024:
                self.stderr_output += line
            logger.warning("git_backend_stderr", line=line.decode("utf-8", errors="replace").rstrip())

    def _remaining(self) -> float:
        return self.timeout - (time.time() - self.start_time)

    async def read_headers(self) -> CGIResponse:
        """Read stdout up to the end of the CGI header block"""
        if not self.process or not self.process.stdout:
            raise RuntimeError("Process not started")

        parser = CGIResponseParser(self.max_header_bytes)
        deadline = time.time() + min(self.header_timeout, self._remaining())

        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                await self.terminate()
                raise SubprocessProtocolError("Git backend did not send headers in time")

            try:
                chunk = await asyncio.wait_for(
                    self.process.stdout.read(self.chunk_size), timeout=remaining
                )
            except asyncio.TimeoutError:
                continue

            if not chunk:
                if self.client_disconnected:
                    raise ClientDisconnect()
                raise SubprocessProtocolError("Git backend exited without sending headers")

            try:
                response = parser.feed(chunk)
            except SubprocessProtocolError:
                await self.terminate()
                raise

            if response is not None:
                return response

    async def iter_body(self, leftover: bytes = b"") -> AsyncIterator[bytes]:
        """Yield the rest of stdout verbatim"""
        if leftover:
            yield leftover

        while True:
            remaining = self._remaining()
            if remaining <= 0:
                logger.error("git_backend_timeout", timeout=self.timeout)
                await self.terminate()
                return

            try:
                chunk = await asyncio.wait_for(
                    self.process.stdout.read(self.chunk_size), timeout=remaining
                )
            except asyncio.TimeoutError:
                continue

            if not chunk:
                self.output_done = True
                return

            yield chunk

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code"""
        if not self.process:
            return -1

        try:
            self.return_code = await asyncio.wait_for(
                self.process.wait(), timeout=max(self._remaining(), 1.0)
            )
        except asyncio.TimeoutError:
            await self.terminate()
            self.return_code = self.process.returncode

        duration = time.time() - self.start_time if self.start_time else 0
        logger.info("git_backend_completed", return_code=self.return_code, duration=duration)
        return self.return_code

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass

    async def terminate(self) -> None:
        """Terminate the backend and its children, escalating to SIGKILL"""
        if not self.process or self.process.returncode is not None:
            return

        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self.process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            self._signal_group(signal.SIGKILL)
            await self.process.wait()

        logger.info("git_backend_terminated", return_code=self.process.returncode)

    async def cleanup(self) -> None:
        """Reap the process and its helper tasks"""
        if not self.process:
            return

        if self._input_task and not self._input_task.done():
            self._input_task.cancel()
        await self.terminate()

        for task in (self._input_task, self._stderr_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass

        if self.return_code is None:
            self.return_code = self.process.returncode

        if self.start_time:
            logger.debug("git_backend_cleanup", duration=time.time() - self.start_time)

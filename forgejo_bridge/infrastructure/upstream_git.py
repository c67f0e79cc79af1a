"""Clone and fetch mirrors from the upstream Forgejo server"""

import asyncio
import os
import signal
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import UpstreamSyncError
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

PASSTHROUGH_ENV_PREFIXES = (
    "PATH", "HOME", "USER", "LANG", "LC_", "SSL_", "GIT_SSL",
    "HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "http_proxy", "https_proxy", "no_proxy",
)


class UpstreamGitClient:
    """Runs `git clone --mirror` / `git fetch` against Forgejo.

    The bearer credential is passed through ``GIT_CONFIG_*`` environment
    variables as ``http.extraHeader`` so it never shows up in argv or in the
    mirror's config file.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        git_binary: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.forgejo_url).rstrip("/")
        self.token = token if token is not None else settings.forgejo_token
        self.git_binary = git_binary or settings.git_binary_path
        self.timeout = timeout if timeout is not None else settings.git_sync_timeout_seconds

    def remote_url(self, key: MirrorKey) -> str:
        return f"{self.base_url}/{key.owner}/{key.repository}.git"

    def _environment(self) -> Dict[str, str]:
        env = {
            k: v
            for k, v in os.environ.items()
            if k.startswith(PASSTHROUGH_ENV_PREFIXES)
        }
        env["GIT_TERMINAL_PROMPT"] = "0"
        if self.token:
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
            env["GIT_CONFIG_VALUE_0"] = f"Authorization: token {self.token}"
        return env

    async def clone_mirror(self, key: MirrorKey, destination: Path) -> None:
        """Full bare mirror clone into `destination` (which must not exist)"""
        await self._run(
            ["clone", "--mirror", "--quiet", self.remote_url(key), str(destination)],
            key=key,
            kind="clone",
        )

    async def fetch(self, key: MirrorKey, mirror_path: Path) -> None:
        """Refresh an existing mirror in place"""
        await self._run(
            ["fetch", "--all", "--prune", "--quiet"],
            key=key,
            kind="fetch",
            cwd=mirror_path,
        )

    async def _run(
        self,
        args: Sequence[str],
        key: MirrorKey,
        kind: str,
        cwd: Optional[Path] = None,
    ) -> None:
        command: List[str] = [self.git_binary, *args]
        start_time = time.time()

        logger.info("upstream_git_started", kind=kind, owner=key.owner, repo=key.repository)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(),
                cwd=str(cwd) if cwd else None,
                start_new_session=True,
            )
        except OSError as e:
            logger.error("upstream_git_launch_failed", kind=kind, error=str(e))
            raise UpstreamSyncError(
                f"Failed to {kind} repository",
                details={"repository": str(key)},
            ) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.error(
                "upstream_git_timeout",
                kind=kind,
                owner=key.owner,
                repo=key.repository,
                timeout=self.timeout,
            )
            raise UpstreamSyncError(
                f"Timed out during {kind}",
                details={"repository": str(key)},
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._kill(process))
            logger.info("upstream_git_cancelled", kind=kind, owner=key.owner, repo=key.repository)
            raise

        duration = time.time() - start_time
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            logger.error(
                "upstream_git_failed",
                kind=kind,
                owner=key.owner,
                repo=key.repository,
                return_code=process.returncode,
                stderr=message,
                duration=duration,
            )
            raise UpstreamSyncError(
                f"Failed to {kind} repository",
                details={"repository": str(key)},
            )

        logger.info(
            "upstream_git_completed",
            kind=kind,
            owner=key.owner,
            repo=key.repository,
            duration=duration,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        # git-remote-https runs as a child in the same session
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()

"""On-disk cache of bare mirrors, one per (owner, repository)"""

import asyncio
import secrets
import shutil
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Iterator, List, Optional

import aiofiles.os

from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import UpstreamSyncError, ValidationError
from forgejo_bridge.infrastructure.concurrency import KeyedLockManager
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.logging import get_logger
from forgejo_bridge.infrastructure.metrics import (
    MetricsContext,
    mirror_evictions_total,
    mirror_sync_coalesced_total,
    mirror_sync_duration_seconds,
    mirror_syncs_total,
    mirrors_cached,
)
from forgejo_bridge.infrastructure.upstream_git import UpstreamGitClient

logger = get_logger(__name__)

TEMP_MARKER = ".tmp-"


@dataclass
class MirrorInfo:
    key: MirrorKey
    path: Path
    last_used: float
    in_use: bool


class MirrorCache:
    """Owns every mirror under the cache root.

    Sync (clone or fetch) and deletion of a mirror hold the key's exclusive
    lock; serving from a mirror holds its shared lock. A new mirror is cloned
    into a hidden temporary directory next to its final location and renamed
    into place only once the clone succeeded, so a visible mirror is always
    complete.

    A request reserves its mirror for its whole lifetime, from before the
    sync until the response is finished. Idle and capacity eviction skip
    reserved mirrors; only a manual eviction removes one.
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        upstream: Optional[UpstreamGitClient] = None,
        locks: Optional[KeyedLockManager] = None,
        max_mirrors: Optional[int] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.root = Path(root if root is not None else settings.cache_root)
        self.upstream = upstream or UpstreamGitClient()
        self.locks = locks or KeyedLockManager()
        self.max_mirrors = max_mirrors if max_mirrors is not None else settings.max_mirrors
        self.lock_timeout = lock_timeout
        self._last_synced: Dict[MirrorKey, float] = {}
        self._last_used: Dict[MirrorKey, float] = {}
        self._reservations: Dict[MirrorKey, int] = {}

    def path_for(self, key: MirrorKey) -> Path:
        return self.root / key.owner / f"{key.repository}.git"

    def exists(self, key: MirrorKey) -> bool:
        return (self.path_for(key) / "HEAD").is_file()

    @contextmanager
    def reserve(self, key: MirrorKey) -> Iterator[None]:
        self._reservations[key] = self._reservations.get(key, 0) + 1
        try:
            yield
        finally:
            remaining = self._reservations[key] - 1
            if remaining:
                self._reservations[key] = remaining
            else:
                del self._reservations[key]

    def is_reserved(self, key: MirrorKey) -> bool:
        return key in self._reservations

    async def ensure(self, key: MirrorKey) -> Path:
        """Clone the mirror if absent, otherwise fetch; return its path"""
        requested_at = time.monotonic()
        created = False

        try:
            async with self.locks.exclusive(key, timeout=self.lock_timeout):
                path = self.path_for(key)

                if self.exists(key):
                    if self._last_synced.get(key, 0.0) > requested_at:
                        # Another request refreshed it while we were queued
                        mirror_sync_coalesced_total.inc()
                        logger.debug("mirror_fetch_coalesced", owner=key.owner, repo=key.repository)
                    else:
                        await self._fetch(key, path)
                else:
                    await self._clone(key, path)
                    created = True

                now = time.monotonic()
                self._last_synced[key] = now
                self._last_used[key] = now
        except asyncio.TimeoutError:
            raise UpstreamSyncError(
                "Timed out waiting for repository mirror",
                details={"repository": str(key)},
            )

        if created:
            self._refresh_gauge()
            await self._enforce_capacity(exclude=key)

        return path

    @asynccontextmanager
    async def hold(self, key: MirrorKey) -> AsyncIterator[Path]:
        """Keep an already synced mirror on disk while the caller serves it"""
        path = self.path_for(key)

        async with self.locks.shared(key):
            # An eviction may have slipped in between ensure and the shared lock
            if not self.exists(key):
                raise UpstreamSyncError(
                    "Repository mirror was evicted before it could be served",
                    details={"repository": str(key)},
                )
            self._last_used[key] = time.monotonic()
            try:
                yield path
            finally:
                self._last_used[key] = time.monotonic()

    async def _fetch(self, key: MirrorKey, path: Path) -> None:
        try:
            with MetricsContext(mirror_sync_duration_seconds, kind="fetch"):
                await self.upstream.fetch(key, path)
        except UpstreamSyncError:
            mirror_syncs_total.labels(kind="fetch", status="failure").inc()
            raise
        mirror_syncs_total.labels(kind="fetch", status="success").inc()

    async def _clone(self, key: MirrorKey, path: Path) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        if await aiofiles.os.path.exists(path):
            # Not a valid mirror (no HEAD): leftovers from an interrupted run
            logger.warning("mirror_invalid_removed", owner=key.owner, repo=key.repository)
            await asyncio.to_thread(shutil.rmtree, path)

        temp_path = path.parent / f".{path.name}{TEMP_MARKER}{secrets.token_hex(4)}"
        logger.info("mirror_clone_started", owner=key.owner, repo=key.repository)

        try:
            with MetricsContext(mirror_sync_duration_seconds, kind="clone"):
                await self.upstream.clone_mirror(key, temp_path)
            await aiofiles.os.rename(temp_path, path)
        except BaseException:
            mirror_syncs_total.labels(kind="clone", status="failure").inc()
            await asyncio.shield(self._discard(temp_path))
            raise

        mirror_syncs_total.labels(kind="clone", status="success").inc()
        logger.info("mirror_clone_completed", owner=key.owner, repo=key.repository, path=str(path))

    async def _discard(self, path: Path) -> None:
        if not await aiofiles.os.path.exists(path):
            return
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as e:
            logger.error("mirror_debris_removal_failed", path=str(path), error=str(e))

    async def evict(self, key: MirrorKey, reason: str = "idle") -> bool:
        """Delete a mirror from disk unless a request reserved it; errors are logged, never raised"""
        async with self.locks.exclusive(key):
            if reason != "manual" and self.is_reserved(key):
                mirror_evictions_total.labels(reason=reason, status="skipped").inc()
                logger.info("mirror_eviction_skipped", owner=key.owner, repo=key.repository, reason=reason)
                return False

            path = self.path_for(key)
            if not await aiofiles.os.path.exists(path):
                return False

            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as e:
                mirror_evictions_total.labels(reason=reason, status="failure").inc()
                logger.error(
                    "mirror_eviction_failed",
                    owner=key.owner,
                    repo=key.repository,
                    reason=reason,
                    error=str(e),
                )
                return False

            self._last_synced.pop(key, None)
            self._last_used.pop(key, None)

            try:
                await aiofiles.os.rmdir(path.parent)
            except OSError:
                pass  # other mirrors of this owner remain

        mirror_evictions_total.labels(reason=reason, status="success").inc()
        logger.info("mirror_evicted", owner=key.owner, repo=key.repository, reason=reason)
        self._refresh_gauge()
        return True

    def list_entries(self) -> List[MirrorInfo]:
        """Mirrors currently on disk"""
        entries: List[MirrorInfo] = []
        if not self.root.is_dir():
            return entries

        for owner_dir in sorted(self.root.iterdir()):
            if not owner_dir.is_dir() or owner_dir.name.startswith("."):
                continue
            for repo_dir in sorted(owner_dir.glob("*.git")):
                if not repo_dir.is_dir() or repo_dir.name.startswith("."):
                    continue
                try:
                    key = MirrorKey(owner_dir.name, repo_dir.name[: -len(".git")])
                except ValidationError:
                    continue
                last_used = self._last_used.get(key)
                if last_used is None:
                    # Mirrors from a previous run: order them by mtime
                    last_used = repo_dir.stat().st_mtime - time.time() + time.monotonic()
                entries.append(
                    MirrorInfo(
                        key=key,
                        path=repo_dir,
                        last_used=last_used,
                        in_use=self.is_reserved(key) or self.locks.in_use(key),
                    )
                )

        return entries

    def purge_debris(self) -> int:
        """Remove temporary clone directories left by a crashed process"""
        removed = 0
        if not self.root.is_dir():
            return removed

        for owner_dir in self.root.iterdir():
            if not owner_dir.is_dir():
                continue
            for candidate in owner_dir.glob(f".*{TEMP_MARKER}*"):
                try:
                    shutil.rmtree(candidate)
                    removed += 1
                except OSError as e:
                    logger.error("mirror_debris_removal_failed", path=str(candidate), error=str(e))

        if removed:
            logger.info("mirror_debris_purged", count=removed)
        return removed

    async def _enforce_capacity(self, exclude: MirrorKey) -> None:
        if self.max_mirrors <= 0:
            return

        entries = self.list_entries()
        excess = len(entries) - self.max_mirrors
        if excess <= 0:
            return

        candidates = sorted(
            (e for e in entries if e.key != exclude and not e.in_use),
            key=lambda e: e.last_used,
        )
        for entry in candidates[:excess]:
            await self.evict(entry.key, reason="capacity")

    def _refresh_gauge(self) -> None:
        mirrors_cached.set(len(self.list_entries()))

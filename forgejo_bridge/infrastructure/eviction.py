"""Deferred deletion of idle mirrors"""

import asyncio
from typing import Dict, Optional, Set

from forgejo_bridge.core.config import settings
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.logging import get_logger
from forgejo_bridge.infrastructure.mirror_cache import MirrorCache

logger = get_logger(__name__)


class EvictionScheduler:
    """One pending deletion timer per mirror.

    Arming a key replaces any timer already pending for it, so a mirror is
    deleted `delay` seconds after the last request that used it finished.
    """

    def __init__(self, cache: MirrorCache, delay: Optional[float] = None):
        self.cache = cache
        self.delay = delay if delay is not None else settings.eviction_delay_seconds
        self._tasks: Dict[MirrorKey, asyncio.Task] = {}

    def start(self) -> None:
        """Arm eviction for mirrors left on disk by a previous run"""
        self.cache.purge_debris()
        for entry in self.cache.list_entries():
            self.arm(entry.key)
        logger.info("eviction_scheduler_started", delay=self.delay, armed=len(self._tasks))

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("eviction_scheduler_stopped", cancelled=len(tasks))

    def arm(self, key: MirrorKey) -> None:
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(self._evict_later(key))
        logger.debug("eviction_armed", owner=key.owner, repo=key.repository, delay=self.delay)

    def cancel(self, key: MirrorKey) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("eviction_cancelled", owner=key.owner, repo=key.repository)
        return True

    def pending(self) -> Set[MirrorKey]:
        return {key for key, task in self._tasks.items() if not task.done()}

    async def _evict_later(self, key: MirrorKey) -> None:
        await asyncio.sleep(self.delay)
        # Past this point the deletion runs to completion even if re-armed
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await asyncio.shield(self.cache.evict(key, reason="idle"))
        except Exception as e:
            logger.error(
                "eviction_failed",
                owner=key.owner,
                repo=key.repository,
                error=str(e),
                exc_info=True,
            )

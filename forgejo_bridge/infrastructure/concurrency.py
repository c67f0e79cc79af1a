import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, Hashable, Optional, Tuple

from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ReadWriteLock:
    """FIFO reader/writer lock for a single event loop.

    Readers share the lock, a writer holds it alone. Waiters are granted in
    arrival order, so a queued writer is not starved by a stream of readers.
    Release never awaits, which keeps it safe inside ``finally`` blocks of
    cancelled tasks.
    """

    def __init__(self):
        self._readers = 0
        self._writer = False
        self._waiters: Deque[Tuple[bool, asyncio.Future]] = deque()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer

    def in_use(self) -> bool:
        return self._writer or self._readers > 0 or bool(self._waiters)

    def _compatible(self, exclusive: bool) -> bool:
        if exclusive:
            return not self._writer and self._readers == 0
        return not self._writer

    def _grant(self, exclusive: bool) -> None:
        if exclusive:
            self._writer = True
        else:
            self._readers += 1

    def _wake(self) -> None:
        while self._waiters:
            exclusive, fut = self._waiters[0]
            if fut.done():
                self._waiters.popleft()
                continue
            if not self._compatible(exclusive):
                break
            self._waiters.popleft()
            self._grant(exclusive)
            fut.set_result(None)
            if exclusive:
                break

    async def acquire(self, exclusive: bool) -> None:
        if not self._waiters and self._compatible(exclusive):
            self._grant(exclusive)
            return

        fut = asyncio.get_running_loop().create_future()
        entry = (exclusive, fut)
        self._waiters.append(entry)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Granted in the same tick we were cancelled
                self.release(exclusive)
            else:
                try:
                    self._waiters.remove(entry)
                except ValueError:
                    pass
                self._wake()
            raise

    def release(self, exclusive: bool) -> None:
        if exclusive:
            self._writer = False
        else:
            self._readers -= 1
        self._wake()


class KeyedLockManager:
    """Arena of reader/writer locks keyed by resource.

    Locks are created on first use and never removed, so two tasks asking for
    the same key always get the same lock object.
    """

    def __init__(self):
        self._locks: Dict[Hashable, ReadWriteLock] = {}
        self._metrics = {
            "acquisitions": 0,
            "contentions": 0,
            "timeouts": 0,
        }

    def get(self, key: Hashable) -> ReadWriteLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = ReadWriteLock()
        return lock

    def in_use(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.in_use()

    @asynccontextmanager
    async def _acquire(self, key: Hashable, exclusive: bool, timeout: Optional[float]):
        lock = self.get(key)
        if lock.in_use():
            self._metrics["contentions"] += 1

        try:
            if timeout is None:
                await lock.acquire(exclusive)
            else:
                await asyncio.wait_for(lock.acquire(exclusive), timeout)
        except asyncio.TimeoutError:
            self._metrics["timeouts"] += 1
            logger.warning("lock_timeout", key=str(key), exclusive=exclusive, timeout=timeout)
            raise

        self._metrics["acquisitions"] += 1
        try:
            yield lock
        finally:
            lock.release(exclusive)

    def exclusive(self, key: Hashable, timeout: Optional[float] = None):
        """Hold the key alone (mirror sync, eviction)"""
        return self._acquire(key, True, timeout)

    def shared(self, key: Hashable, timeout: Optional[float] = None):
        """Hold the key alongside other readers (serving from the mirror)"""
        return self._acquire(key, False, timeout)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "known_keys": len(self._locks),
            "busy_keys": sum(1 for lock in self._locks.values() if lock.in_use()),
        }

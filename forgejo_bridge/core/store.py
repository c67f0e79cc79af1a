"""Key-value storage for OAuth codes, access tokens and webhook mappings"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for bridge state storage"""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value with optional TTL"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value, None if missing or expired"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a value, return True if it existed"""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired entries, return count removed"""


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory store; state is lost on restart"""

    def __init__(self):
        # key -> (value, expires_at or None)
        self._items: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and time.monotonic() >= expires_at

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._items[key] = (value, expires_at)
        logger.debug("store_item_set", key_prefix=key.split("_", 1)[0], ttl=ttl_seconds)

    async def get(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None

        value, expires_at = item
        if self._expired(expires_at):
            del self._items[key]
            return None

        return value

    async def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    async def cleanup_expired(self) -> int:
        expired = [k for k, (_, exp) in self._items.items() if self._expired(exp)]
        for key in expired:
            del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._items)


class StoreManager:
    """Owns a store and its background expiry loop"""

    def __init__(self, store: Optional[KeyValueStore] = None, cleanup_interval: float = 300.0):
        self.store = store or InMemoryKeyValueStore()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._cleanup_interval = cleanup_interval

    async def start_cleanup_task(self) -> None:
        """Start background cleanup task"""
        if self._cleanup_task and not self._cleanup_task.done():
            return

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("store_cleanup_task_started")

    async def stop_cleanup_task(self) -> None:
        """Stop background cleanup task"""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.info("store_cleanup_task_stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                count = await self.store.cleanup_expired()
                if count > 0:
                    logger.info("store_cleanup_completed", removed=count)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("store_cleanup_error", error=str(e))

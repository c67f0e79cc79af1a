"""Tests for the keyed reader/writer lock arena"""

import asyncio

import pytest

from forgejo_bridge.infrastructure.concurrency import KeyedLockManager, ReadWriteLock


class TestReadWriteLock:
    @pytest.mark.asyncio
    async def test_readers_share(self):
        lock = ReadWriteLock()

        await lock.acquire(exclusive=False)
        await asyncio.wait_for(lock.acquire(exclusive=False), timeout=0.1)

        assert lock.readers == 2
        lock.release(exclusive=False)
        lock.release(exclusive=False)
        assert not lock.in_use()

    @pytest.mark.asyncio
    async def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        await lock.acquire(exclusive=False)

        writer = asyncio.create_task(lock.acquire(exclusive=True))
        await asyncio.sleep(0.01)
        assert not writer.done()

        lock.release(exclusive=False)
        await asyncio.wait_for(writer, timeout=0.1)
        assert lock.write_locked

    @pytest.mark.asyncio
    async def test_queued_writer_blocks_later_readers(self):
        lock = ReadWriteLock()
        await lock.acquire(exclusive=False)

        order = []

        async def take(name, exclusive):
            await lock.acquire(exclusive)
            order.append(name)
            await asyncio.sleep(0.01)
            lock.release(exclusive)

        writer = asyncio.create_task(take("writer", True))
        await asyncio.sleep(0)
        reader = asyncio.create_task(take("reader", False))
        await asyncio.sleep(0.01)

        # The second reader must not overtake the queued writer
        assert order == []

        lock.release(exclusive=False)
        await asyncio.gather(writer, reader)
        assert order == ["writer", "reader"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        lock = ReadWriteLock()
        await lock.acquire(exclusive=True)

        waiter = asyncio.create_task(lock.acquire(exclusive=True))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        lock.release(exclusive=True)
        assert not lock.in_use()


class TestKeyedLockManager:
    def test_same_key_same_lock(self):
        manager = KeyedLockManager()
        assert manager.get(("acme", "widgets")) is manager.get(("acme", "widgets"))
        assert manager.get(("acme", "widgets")) is not manager.get(("acme", "gadgets"))

    @pytest.mark.asyncio
    async def test_exclusive_serializes_same_key(self):
        manager = KeyedLockManager()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with manager.exclusive("k"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        manager = KeyedLockManager()
        started = asyncio.Event()

        async with manager.exclusive("a"):
            async def other():
                async with manager.exclusive("b"):
                    started.set()

            await asyncio.wait_for(other(), timeout=0.1)

        assert started.is_set()

    @pytest.mark.asyncio
    async def test_timeout(self):
        manager = KeyedLockManager()

        async with manager.exclusive("k"):
            with pytest.raises(asyncio.TimeoutError):
                async with manager.shared("k", timeout=0.01):
                    pass

        metrics = manager.get_metrics()
        assert metrics["timeouts"] == 1
        assert not manager.in_use("k")

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        manager = KeyedLockManager()

        with pytest.raises(RuntimeError):
            async with manager.exclusive("k"):
                raise RuntimeError("boom")

        assert not manager.in_use("k")
        assert manager.get_metrics()["acquisitions"] == 1

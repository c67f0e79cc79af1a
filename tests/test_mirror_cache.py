"""Tests for the on-disk mirror cache"""

import asyncio
import subprocess
from pathlib import Path

import pytest
from conftest import FakeUpstream, requires_git

from forgejo_bridge.core.exceptions import UpstreamSyncError
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.mirror_cache import TEMP_MARKER, MirrorCache
from forgejo_bridge.infrastructure.upstream_git import UpstreamGitClient

KEY = MirrorKey("acme", "widgets")


def debris(root: Path):
    return [p for p in root.rglob(f"*{TEMP_MARKER}*")]


class TestEnsure:
    @pytest.mark.asyncio
    async def test_clone_when_absent(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        path = await mirror_cache.ensure(KEY)

        assert path == mirror_cache.root / "acme" / "widgets.git"
        assert mirror_cache.exists(KEY)
        assert fake_upstream.clones == [KEY]
        assert fake_upstream.fetches == []
        assert debris(mirror_cache.root) == []

    @pytest.mark.asyncio
    async def test_fetch_when_present(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        await mirror_cache.ensure(KEY)
        await mirror_cache.ensure(KEY)

        assert fake_upstream.clones == [KEY]
        assert fake_upstream.fetches == [KEY]

    @pytest.mark.asyncio
    async def test_concurrent_requests_clone_once(self, cache_root: Path):
        upstream = FakeUpstream(delay=0.05)
        cache = MirrorCache(root=cache_root, upstream=upstream)

        paths = await asyncio.gather(*(cache.ensure(KEY) for _ in range(5)))

        assert len(set(paths)) == 1
        assert upstream.clones == [KEY]
        # Everyone queued behind the clone reuses it
        assert upstream.fetches == []

    @pytest.mark.asyncio
    async def test_clone_failure_leaves_nothing(self, cache_root: Path):
        upstream = FakeUpstream(fail=True)
        cache = MirrorCache(root=cache_root, upstream=upstream)

        with pytest.raises(UpstreamSyncError):
            await cache.ensure(KEY)

        assert not cache.exists(KEY)
        assert not cache.path_for(KEY).exists()
        assert debris(cache_root) == []

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        await mirror_cache.ensure(KEY)
        fake_upstream.fail = True

        with pytest.raises(UpstreamSyncError):
            await mirror_cache.ensure(KEY)

    @pytest.mark.asyncio
    async def test_cancelled_clone_leaves_nothing(self, cache_root: Path):
        upstream = FakeUpstream(delay=1.0)
        cache = MirrorCache(root=cache_root, upstream=upstream)

        task = asyncio.create_task(cache.ensure(KEY))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not cache.path_for(KEY).exists()
        assert debris(cache_root) == []
        assert not cache.locks.in_use(KEY)

    @pytest.mark.asyncio
    async def test_invalid_directory_is_replaced(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        broken = mirror_cache.path_for(KEY)
        broken.mkdir(parents=True)
        (broken / "garbage").write_text("x")

        await mirror_cache.ensure(KEY)

        assert mirror_cache.exists(KEY)
        assert not (broken / "garbage").exists()
        assert fake_upstream.clones == [KEY]


class TestHold:
    @pytest.mark.asyncio
    async def test_eviction_waits_for_holder(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)

        async with mirror_cache.hold(KEY) as path:
            eviction = asyncio.create_task(mirror_cache.evict(KEY))
            await asyncio.sleep(0.05)
            assert not eviction.done()
            assert (path / "HEAD").is_file()

        assert await eviction is True
        assert not mirror_cache.exists(KEY)

    @pytest.mark.asyncio
    async def test_hold_after_eviction_fails(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)
        await mirror_cache.evict(KEY)

        with pytest.raises(UpstreamSyncError):
            async with mirror_cache.hold(KEY):
                pass

    @pytest.mark.asyncio
    async def test_fetch_waits_for_holder(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        await mirror_cache.ensure(KEY)

        async with mirror_cache.hold(KEY):
            sync = asyncio.create_task(mirror_cache.ensure(KEY))
            await asyncio.sleep(0.05)
            assert fake_upstream.fetches == []

        await sync
        assert fake_upstream.fetches == [KEY]


class TestEvict:
    @pytest.mark.asyncio
    async def test_evict_removes_directory(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)

        assert await mirror_cache.evict(KEY) is True
        assert not mirror_cache.path_for(KEY).exists()
        # Empty owner directories go too
        assert not (mirror_cache.root / "acme").exists()

    @pytest.mark.asyncio
    async def test_evict_missing_is_noop(self, mirror_cache: MirrorCache):
        assert await mirror_cache.evict(KEY) is False

    @pytest.mark.asyncio
    async def test_evict_keeps_sibling_mirrors(self, mirror_cache: MirrorCache):
        other = MirrorKey("acme", "gadgets")
        await mirror_cache.ensure(KEY)
        await mirror_cache.ensure(other)

        await mirror_cache.evict(KEY)

        assert mirror_cache.exists(other)

    @pytest.mark.asyncio
    async def test_reclone_after_evict(self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream):
        await mirror_cache.ensure(KEY)
        await mirror_cache.evict(KEY)
        await mirror_cache.ensure(KEY)

        assert fake_upstream.clones == [KEY, KEY]


class TestReserve:
    @pytest.mark.asyncio
    async def test_idle_eviction_queued_between_sync_and_hold_is_skipped(
        self, mirror_cache: MirrorCache, fake_upstream: FakeUpstream
    ):
        await mirror_cache.ensure(KEY)
        fake_upstream.delay = 0.1

        with mirror_cache.reserve(KEY):
            sync = asyncio.create_task(mirror_cache.ensure(KEY))
            await asyncio.sleep(0.02)
            # Queued behind the fetch, so it runs before the shared lock below
            eviction = asyncio.create_task(mirror_cache.evict(KEY, reason="idle"))
            await sync

            async with mirror_cache.hold(KEY) as path:
                assert (path / "HEAD").is_file()

        assert await eviction is False
        assert mirror_cache.exists(KEY)

    @pytest.mark.asyncio
    async def test_released_mirror_is_evictable(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)

        with mirror_cache.reserve(KEY):
            with mirror_cache.reserve(KEY):
                assert mirror_cache.is_reserved(KEY)
            assert mirror_cache.is_reserved(KEY)

        assert not mirror_cache.is_reserved(KEY)
        assert await mirror_cache.evict(KEY) is True

    @pytest.mark.asyncio
    async def test_manual_eviction_ignores_reservations(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)

        with mirror_cache.reserve(KEY):
            assert await mirror_cache.evict(KEY, reason="manual") is True

        assert not mirror_cache.exists(KEY)

    @pytest.mark.asyncio
    async def test_capacity_spares_reserved_mirrors(self, cache_root: Path):
        cache = MirrorCache(root=cache_root, upstream=FakeUpstream(), max_mirrors=1)
        waiting, fresh = MirrorKey("o", "waiting"), MirrorKey("o", "fresh")

        await cache.ensure(waiting)
        with cache.reserve(waiting):
            await cache.ensure(fresh)

            assert cache.exists(waiting)
            assert [e.in_use for e in cache.list_entries() if e.key == waiting] == [True]


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_list_entries(self, mirror_cache: MirrorCache):
        await mirror_cache.ensure(KEY)
        await mirror_cache.ensure(MirrorKey("other", "thing"))

        keys = {entry.key for entry in mirror_cache.list_entries()}
        assert keys == {KEY, MirrorKey("other", "thing")}

    def test_purge_debris(self, mirror_cache: MirrorCache):
        leftover = mirror_cache.root / "acme" / f".widgets.git{TEMP_MARKER}deadbeef"
        leftover.mkdir(parents=True)
        (leftover / "HEAD").write_text("x")

        assert mirror_cache.purge_debris() == 1
        assert not leftover.exists()
        assert mirror_cache.list_entries() == []

    @pytest.mark.asyncio
    async def test_capacity_evicts_least_recently_used(self, cache_root: Path):
        cache = MirrorCache(root=cache_root, upstream=FakeUpstream(), max_mirrors=2)
        first, second, third = MirrorKey("o", "a"), MirrorKey("o", "b"), MirrorKey("o", "c")

        await cache.ensure(first)
        await asyncio.sleep(0.01)
        await cache.ensure(second)
        await asyncio.sleep(0.01)
        await cache.ensure(first)  # refresh: second is now the oldest
        await asyncio.sleep(0.01)
        await cache.ensure(third)

        assert cache.exists(first)
        assert not cache.exists(second)
        assert cache.exists(third)

    @pytest.mark.asyncio
    async def test_capacity_spares_mirrors_in_use(self, cache_root: Path):
        cache = MirrorCache(root=cache_root, upstream=FakeUpstream(), max_mirrors=1)
        busy, fresh = MirrorKey("o", "busy"), MirrorKey("o", "fresh")

        await cache.ensure(busy)
        async with cache.hold(busy):
            await cache.ensure(fresh)
            assert cache.exists(busy)


@requires_git
class TestWithRealGit:
    """Mirror a real repository through `git clone --mirror` over file://"""

    @pytest.mark.asyncio
    async def test_clone_then_fetch_new_commit(self, cache_root: Path, upstream_repo: Path, tmp_path: Path):
        upstream = UpstreamGitClient(base_url=f"file://{upstream_repo}", token="unused", timeout=60)
        cache = MirrorCache(root=cache_root, upstream=upstream)

        path = await cache.ensure(KEY)
        assert (path / "HEAD").is_file()

        def rev(repo: Path, ref: str) -> str:
            return subprocess.run(
                ["git", "rev-parse", ref], cwd=str(repo), check=True, capture_output=True, text=True
            ).stdout.strip()

        source = upstream_repo / "acme" / "widgets.git"
        assert rev(path, "refs/heads/main") == rev(source, "refs/heads/main")

        # Advance upstream, then the next ensure must pick it up
        work = tmp_path / "work"
        env_args = ["-c", "user.name=Test", "-c", "user.email=test@example.com"]
        (work / "CHANGES").write_text("v2\n")
        subprocess.run(["git", "add", "CHANGES"], cwd=str(work), check=True, capture_output=True)
        subprocess.run(["git", *env_args, "commit", "-q", "-m", "v2"], cwd=str(work), check=True, capture_output=True)
        subprocess.run(
            ["git", "push", "-q", str(source), "main"], cwd=str(work), check=True, capture_output=True
        )

        await cache.ensure(KEY)
        assert rev(path, "refs/heads/main") == rev(source, "refs/heads/main")

    @pytest.mark.asyncio
    async def test_missing_upstream_repository(self, cache_root: Path, upstream_repo: Path):
        upstream = UpstreamGitClient(base_url=f"file://{upstream_repo}", token="unused", timeout=60)
        cache = MirrorCache(root=cache_root, upstream=upstream)

        with pytest.raises(UpstreamSyncError):
            await cache.ensure(MirrorKey("acme", "missing"))

        assert not cache.path_for(MirrorKey("acme", "missing")).exists()
        assert debris(cache_root) == []

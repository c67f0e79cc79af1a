"""Pytest configuration and fixtures"""

import asyncio
import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Callable, Dict, List

import httpx
import pytest
import pytest_asyncio

from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import UpstreamSyncError
from forgejo_bridge.infrastructure.forgejo_client import ForgejoClient
from forgejo_bridge.infrastructure.git_protocol import MirrorKey
from forgejo_bridge.infrastructure.mirror_cache import MirrorCache
from forgejo_bridge.main import create_app

GIT_AVAILABLE = shutil.which("git") is not None

requires_git = pytest.mark.skipif(not GIT_AVAILABLE, reason="git binary not available")


class FakeUpstream:
    """Stands in for UpstreamGitClient: a mirror is a directory with a HEAD file"""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.clones: List[MirrorKey] = []
        self.fetches: List[MirrorKey] = []

    async def clone_mirror(self, key: MirrorKey, destination: Path) -> None:
        self.clones.append(key)
        destination.mkdir(parents=True)
        (destination / "HEAD").write_text("ref: refs/heads/main\n")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamSyncError("Failed to clone repository", details={"repository": str(key)})

    async def fetch(self, key: MirrorKey, mirror_path: Path) -> None:
        self.fetches.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UpstreamSyncError("Failed to fetch repository", details={"repository": str(key)})


def write_script(directory: Path, name: str, body: str) -> Path:
    """Create an executable /bin/sh script standing in for git-http-backend"""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def forgejo_transport(routes: Dict[str, Callable[[httpx.Request], httpx.Response]]) -> httpx.MockTransport:
    """Mock Forgejo keyed by "METHOD /api/v1/path"; unknown routes answer 404"""

    def handler(request: httpx.Request) -> httpx.Response:
        route = routes.get(f"{request.method} {request.url.path}")
        if route is None:
            return httpx.Response(404, json={"message": "not found"})
        return route(request)

    return httpx.MockTransport(handler)


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    root = tmp_path / "git-cache"
    root.mkdir()
    return root


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def mirror_cache(cache_root: Path, fake_upstream: FakeUpstream) -> MirrorCache:
    return MirrorCache(root=cache_root, upstream=fake_upstream)


@pytest.fixture
def forgejo_routes() -> Dict[str, Callable[[httpx.Request], httpx.Response]]:
    """Tests add entries to this before the app is first used"""
    return {}


@pytest.fixture
def app(mirror_cache: MirrorCache, forgejo_routes):
    forgejo = ForgejoClient(
        base_url="https://forgejo.test",
        token="forgejo-token",
        transport=forgejo_transport(forgejo_routes),
    )
    return create_app(mirror_cache=mirror_cache, forgejo_client=forgejo, eviction_delay=60)


@pytest_asyncio.fixture
async def async_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://bridge.test") as client:
        yield client
    await app.state.eviction_scheduler.stop()


@pytest.fixture
def backend_script(tmp_path: Path, monkeypatch):
    """Point the bridge at a shell script instead of git http-backend"""

    def install(body: str, name: str = "fake-http-backend") -> Path:
        script = write_script(tmp_path, name, body)
        monkeypatch.setattr(settings, "git_http_backend_path", str(script))
        return script

    return install


@pytest.fixture
def upstream_repo(tmp_path: Path) -> Path:
    """A real bare repository at <root>/acme/widgets.git with one commit on main"""
    if not GIT_AVAILABLE:
        pytest.skip("git binary not available")

    root = tmp_path / "forgejo"
    work = tmp_path / "work"
    bare = root / "acme" / "widgets.git"
    bare.parent.mkdir(parents=True)

    env = {
        **os.environ,
        "GIT_AUTHOR_NAME": "Test",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test",
        "GIT_COMMITTER_EMAIL": "test@example.com",
    }

    def git(*args: str, cwd: Path) -> None:
        subprocess.run(["git", *args], cwd=str(cwd), env=env, check=True, capture_output=True)

    work.mkdir()
    git("init", "--quiet", "--initial-branch=main", cwd=work)
    (work / "README.md").write_text("widgets\n")
    git("add", "README.md", cwd=work)
    git("commit", "--quiet", "-m", "initial", cwd=work)
    git("clone", "--quiet", "--bare", str(work), str(bare), cwd=tmp_path)

    return root

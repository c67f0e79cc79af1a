"""Health and readiness check endpoints"""

import asyncio
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Tuple

from fastapi import APIRouter, HTTPException, Request, status

from forgejo_bridge.core.config import settings
from forgejo_bridge.infrastructure.logging import get_logger
from forgejo_bridge.infrastructure.metrics import health_check_status

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


class HealthChecker:
    """Service health checking utilities"""

    def __init__(self):
        self.start_time = time.time()

    def check_cache_root(self, cache_root: Path) -> Tuple[bool, str]:
        """The mirror cache root must exist (or be creatable) and be writable"""
        try:
            cache_root.mkdir(parents=True, exist_ok=True)
            probe = cache_root / f".health_check_{os.getpid()}"
            probe.touch()
            probe.unlink()
            return True, "Cache root is writable"
        except OSError as e:
            return False, f"Cannot write to cache root: {e}"

    async def check_git_binary(self) -> Tuple[bool, str]:
        """Check if git binary is available"""
        try:
            process = await asyncio.create_subprocess_exec(
                settings.git_binary_path,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=5)
        except FileNotFoundError:
            return False, "Git binary not found"
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return False, "Git binary check timed out"
        except OSError as e:
            return False, f"Git binary check failed: {e}"

        if process.returncode != 0:
            return False, "Git binary returned non-zero exit code"
        return True, stdout.decode("utf-8", errors="replace").strip()

    def get_uptime(self) -> float:
        return time.time() - self.start_time


health_checker = HealthChecker()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Liveness: 200 whenever the process is serving"""
    health_check_status.labels(check_type="liveness").set(1)
    return {"status": "ok", "bridge": "forgejo-coolify", "version": settings.app_version}


@router.get("/ready")
async def readiness_check(request: Request) -> Dict[str, Any]:
    """
    Readiness check endpoint

    Returns 503 unless the cache root is writable and git is runnable.
    """
    response_time_start = time.time()
    cache = request.app.state.mirror_cache

    checks: Dict[str, Dict[str, Any]] = {}

    cache_ok, cache_message = health_checker.check_cache_root(cache.root)
    checks["cache_root"] = {"healthy": cache_ok, "message": cache_message}

    git_ok, git_message = await health_checker.check_git_binary()
    checks["git_binary"] = {"healthy": git_ok, "message": git_message}

    all_healthy = cache_ok and git_ok

    response = {
        "status": "ready" if all_healthy else "not_ready",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": health_checker.get_uptime(),
        "mirrors": len(cache.list_entries()),
        "pending_evictions": len(request.app.state.eviction_scheduler.pending()),
        "checks": checks,
        "response_time_ms": round((time.time() - response_time_start) * 1000, 2),
    }

    health_check_status.labels(check_type="readiness").set(1 if all_healthy else 0)

    if not all_healthy:
        logger.warning("readiness_check_failed", checks=checks)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=response)

    logger.debug("readiness_check", mirrors=response["mirrors"])
    return response

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from forgejo_bridge.api import health, metrics_endpoint
from forgejo_bridge.api.exception_handlers import (
    base_api_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from forgejo_bridge.api.git_http import GitTransportMiddleware
from forgejo_bridge.api.router import api_router
from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import BaseAPIException
from forgejo_bridge.core.store import StoreManager
from forgejo_bridge.infrastructure.eviction import EvictionScheduler
from forgejo_bridge.infrastructure.forgejo_client import ForgejoClient
from forgejo_bridge.infrastructure.logging import get_logger, setup_logging
from forgejo_bridge.infrastructure.middleware.correlation import CorrelationIDMiddleware
from forgejo_bridge.infrastructure.middleware.logging import LoggingMiddleware
from forgejo_bridge.infrastructure.middleware.metrics import MetricsMiddleware
from forgejo_bridge.infrastructure.mirror_cache import MirrorCache

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        environment=settings.environment,
        forgejo_url=settings.forgejo_url,
        cache_root=str(app.state.mirror_cache.root),
    )

    # Mirrors left by a previous run get the usual idle grace period
    app.state.eviction_scheduler.start()
    await app.state.store_manager.start_cleanup_task()

    yield

    await app.state.store_manager.stop_cleanup_task()
    await app.state.eviction_scheduler.stop()
    await app.state.forgejo_client.close()

    logger.info("application_shutdown", app_name=settings.app_name)


def create_app(
    mirror_cache: Optional[MirrorCache] = None,
    forgejo_client: Optional[ForgejoClient] = None,
    store_manager: Optional[StoreManager] = None,
    eviction_delay: Optional[float] = None,
) -> FastAPI:
    app = FastAPI(
        title="Forgejo Bridge",
        description="Presents a Forgejo server to Coolify as if it were GitHub",
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.state.is_production = settings.is_production
    app.state.mirror_cache = mirror_cache or MirrorCache()
    app.state.eviction_scheduler = EvictionScheduler(app.state.mirror_cache, delay=eviction_delay)
    app.state.forgejo_client = forgejo_client or ForgejoClient()
    app.state.store_manager = store_manager or StoreManager()

    # Innermost: Git transport paths are answered here, before any routing
    app.add_middleware(GitTransportMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BaseAPIException, base_api_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    @app.get("/", response_model=Dict[str, Any])
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "description": "Forgejo to GitHub API bridge",
            "status": "running",
            "environment": settings.environment,
            "endpoints": {
                "github_api": "/api/v3",
                "health": "/health",
                "metrics": "/metrics",
            },
        }

    app.include_router(health.router)
    app.include_router(metrics_endpoint.router)
    app.include_router(api_router)

    return app


app = create_app()

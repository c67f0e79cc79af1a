#!/usr/bin/env python3
import uvicorn

from forgejo_bridge.core.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "forgejo_bridge.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )

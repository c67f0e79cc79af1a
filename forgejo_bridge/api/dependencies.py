"""Common dependencies for API routes."""

from fastapi import Request

from forgejo_bridge.core.store import KeyValueStore
from forgejo_bridge.infrastructure.forgejo_client import ForgejoClient


def get_forgejo_client(request: Request) -> ForgejoClient:
    return request.app.state.forgejo_client


def get_store(request: Request) -> KeyValueStore:
    """Bridge state (OAuth codes, tokens, webhook mappings)."""
    return request.app.state.store_manager.store

"""GitHub-style OAuth authorization code flow.

There is no real user consent: every authorize request is granted and the
issued token only stands in for the bridge's own Forgejo credential.
"""

import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from forgejo_bridge.api.dependencies import get_store
from forgejo_bridge.api.routes.github import authorize_redirect
from forgejo_bridge.core.config import settings
from forgejo_bridge.core.store import KeyValueStore
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/login/oauth", tags=["oauth"])

CODE_PREFIX = "oauth_code_"
ACCESS_TOKEN_PREFIX = "access_token_"


def _append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


@router.get("/authorize")
async def authorize(
    redirect_uri: str = Query(..., description="Where to send the authorization code"),
    client_id: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    store: KeyValueStore = Depends(get_store),
):
    code = secrets.token_hex(20)
    await store.set(
        f"{CODE_PREFIX}{code}",
        {"client_id": client_id, "state": state},
        ttl_seconds=settings.oauth_code_ttl_seconds,
    )

    logger.info("oauth_code_issued", client_id=client_id)

    params = {"code": code}
    if state is not None:
        params["state"] = state
    return RedirectResponse(_append_query(redirect_uri, params), status_code=302)


async def _read_code(request: Request) -> Optional[str]:
    """The code may arrive as JSON, as a form, or in the query string"""
    content_type = request.headers.get("content-type", "")
    code: Any = None

    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            code = payload.get("code")
    elif "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        code = form.get("code")

    if not code:
        code = request.query_params.get("code")

    return code if isinstance(code, str) else None


@router.post("/access_token")
async def access_token(request: Request, store: KeyValueStore = Depends(get_store)):
    code = await _read_code(request)
    grant = await store.get(f"{CODE_PREFIX}{code}") if code else None

    if grant is None:
        logger.warning("oauth_invalid_code")
        # OAuth clients read the `error` field, not the bridge error envelope
        return JSONResponse(status_code=400, content={"error": "Invalid code"})

    token = secrets.token_hex(20)
    await store.set(f"{ACCESS_TOKEN_PREFIX}{token}", grant)
    await store.delete(f"{CODE_PREFIX}{code}")

    logger.info("oauth_token_issued", client_id=grant.get("client_id"))

    return {"access_token": token, "token_type": "bearer", "scope": "repo,user"}


@router.get("/{path}")
async def oauth_catch_all(path: str, request: Request):
    return authorize_redirect(request)

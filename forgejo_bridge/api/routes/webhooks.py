"""Webhook registration and Forgejo webhook receipt"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from forgejo_bridge.api.dependencies import get_forgejo_client, get_store
from forgejo_bridge.api.models import MASKED_SECRET, CreateHookRequest, HookConfig, HookResponse
from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import AuthenticationError
from forgejo_bridge.core.signing import verify_signature
from forgejo_bridge.core.store import KeyValueStore
from forgejo_bridge.infrastructure.forgejo_client import ForgejoClient
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

WEBHOOK_PREFIX = "webhook_"


@router.post("/api/v3/repos/{owner}/{repo}/hooks", response_model=HookResponse)
async def create_repository_hook(
    owner: str,
    repo: str,
    hook: CreateHookRequest,
    forgejo: ForgejoClient = Depends(get_forgejo_client),
    store: KeyValueStore = Depends(get_store),
):
    """Register a Forgejo webhook that delivers to this bridge"""
    events = hook.events or ["push"]

    created = await forgejo.create_hook(
        owner,
        repo,
        {
            "type": "forgejo",
            "config": {
                "url": f"{settings.bridge_url}/webhook/forgejo",
                "content_type": "json",
                "secret": settings.bridge_secret,
            },
            "events": events,
            "active": hook.active,
        },
    )

    await store.set(
        f"{WEBHOOK_PREFIX}{created['id']}",
        {
            "coolify_url": hook.config.url,
            "coolify_secret": hook.config.secret,
            "repo": f"{owner}/{repo}",
        },
    )

    logger.info("webhook_registered", owner=owner, repo=repo, hook_id=created["id"], events=events)

    return HookResponse(
        id=created["id"],
        url=created.get("url"),
        config=HookConfig(url=hook.config.url, content_type="json", secret=MASKED_SECRET),
        events=events,
        active=hook.active,
    )


@router.post("/webhook/forgejo", response_class=PlainTextResponse)
async def receive_forgejo_webhook(request: Request):
    # Signed over the raw body, so read bytes before anything parses them
    payload = await request.body()
    signature = request.headers.get("x-forgejo-signature") or request.headers.get("x-gitea-signature")
    event = request.headers.get("x-forgejo-event") or request.headers.get("x-gitea-event")

    if not verify_signature(settings.bridge_secret, payload, signature):
        logger.warning("webhook_invalid_signature", event=event)
        raise AuthenticationError("Invalid signature")

    logger.info("webhook_received", event=event, size=len(payload), downstream=settings.coolify_webhook_url)

    # Receipt is acknowledged only; payloads are not translated or forwarded downstream
    return "OK"

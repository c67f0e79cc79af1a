from fastapi import APIRouter

from forgejo_bridge.api.routes import github, oauth, webhooks

api_router = APIRouter()

# OAuth flow Coolify drives through the browser
api_router.include_router(oauth.router)

# GitHub REST v3 translation and GitHub App surface
api_router.include_router(github.router)

# Webhook registration and receipt
api_router.include_router(webhooks.router)

"""GitHub REST v3 endpoints translated onto the Forgejo API"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from forgejo_bridge.api.dependencies import get_forgejo_client
from forgejo_bridge.api.models import (
    GitHubBranch,
    GitHubRepository,
    GitHubRepositoryListItem,
    GitHubUser,
    InstallationRepositories,
    InstallationRepository,
)
from forgejo_bridge.core.config import settings
from forgejo_bridge.infrastructure.forgejo_client import ForgejoClient
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["github"])

APP_ID = 999999
APP_SLUG = "forgejo-bridge"
INSTALLATION_ID = 1
INSTALLATION_TOKEN_TTL = timedelta(hours=1)
DEFAULT_REFERER = "https://coolify.local"

INSTALLATION_ACCOUNT = {"login": "forgejo-user", "id": 1, "type": "User"}
INSTALLATION_LINKS = {
    "repository_selection": "all",
    "access_tokens_url": f"/api/v3/app/installations/{INSTALLATION_ID}/access_tokens",
    "repositories_url": "/api/v3/installation/repositories",
}


def _isoformat(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def authorize_redirect(request: Request) -> RedirectResponse:
    """Send the browser through our OAuth authorize step"""
    params = urlencode(
        {
            "client_id": APP_SLUG,
            "redirect_uri": request.headers.get("referer") or DEFAULT_REFERER,
            "state": "coolify",
        }
    )
    return RedirectResponse(f"/login/oauth/authorize?{params}", status_code=302)


@router.get("/api/v3/user", response_model=GitHubUser)
async def get_authenticated_user(forgejo: ForgejoClient = Depends(get_forgejo_client)):
    return GitHubUser.from_forgejo(await forgejo.get_user())


@router.get("/api/v3/user/repos", response_model=List[GitHubRepositoryListItem])
async def list_user_repositories(
    page: int = Query(1, ge=1),
    per_page: int = Query(30, ge=1, le=100),
    forgejo: ForgejoClient = Depends(get_forgejo_client),
):
    repos = await forgejo.list_user_repos(page=page, limit=per_page)
    return [GitHubRepositoryListItem.from_forgejo(repo) for repo in repos]


@router.get("/api/v3/repos/{owner}/{repo}", response_model=GitHubRepository)
async def get_repository(
    owner: str,
    repo: str,
    forgejo: ForgejoClient = Depends(get_forgejo_client),
):
    return GitHubRepository.from_forgejo(await forgejo.get_repo(owner, repo))


@router.get("/api/v3/repos/{owner}/{repo}/branches", response_model=List[GitHubBranch])
async def list_branches(
    owner: str,
    repo: str,
    forgejo: ForgejoClient = Depends(get_forgejo_client),
):
    branches = await forgejo.list_branches(owner, repo)
    return [GitHubBranch.from_forgejo(branch) for branch in branches]


# GitHub App surface. Coolify insists on a GitHub App; these answers are static.

@router.get("/api/v3/app")
async def get_app() -> Dict[str, Any]:
    now = _isoformat(datetime.now(timezone.utc))
    return {
        "id": APP_ID,
        "slug": APP_SLUG,
        "name": "Forgejo Bridge",
        "owner": {"login": APP_SLUG, "id": 1, "avatar_url": "", "type": "User"},
        "description": "Bridge between Forgejo and Coolify",
        "external_url": settings.forgejo_url,
        "html_url": settings.forgejo_url,
        "created_at": now,
        "updated_at": now,
    }


@router.get("/api/v3/app/installations")
async def list_app_installations() -> List[Dict[str, Any]]:
    return [
        {
            "id": INSTALLATION_ID,
            "account": {**INSTALLATION_ACCOUNT, "avatar_url": ""},
            **INSTALLATION_LINKS,
        }
    ]


@router.post("/api/v3/app/installations/{installation_id}/access_tokens")
async def create_installation_token(installation_id: str) -> Dict[str, Any]:
    logger.info("installation_token_issued", installation_id=installation_id)
    return {
        "token": f"ghs_{secrets.token_hex(20)}",
        "expires_at": _isoformat(datetime.now(timezone.utc) + INSTALLATION_TOKEN_TTL),
        "permissions": {
            "contents": "read",
            "metadata": "read",
            "pull_requests": "write",
            "issues": "write",
        },
        "repository_selection": "all",
    }


@router.get("/api/v3/installation")
async def get_installation() -> Dict[str, Any]:
    return {"id": INSTALLATION_ID, "account": dict(INSTALLATION_ACCOUNT), **INSTALLATION_LINKS}


@router.get("/api/v3/installation/repositories", response_model=InstallationRepositories)
async def list_installation_repositories(forgejo: ForgejoClient = Depends(get_forgejo_client)):
    repos = [InstallationRepository.from_forgejo(r) for r in await forgejo.list_user_repos(limit=100)]
    return InstallationRepositories(total_count=len(repos), repositories=repos)


@router.get("/settings/apps/{app_name}/permissions")
async def get_app_permissions(app_name: str) -> Dict[str, Any]:
    return {
        "permissions": {
            "contents": "read",
            "metadata": "read",
            "pull_requests": "write",
            "webhooks": "write",
        },
        "events": ["push", "pull_request"],
    }


@router.get("/app/installations")
async def list_installations() -> List[Dict[str, Any]]:
    return [{"id": INSTALLATION_ID, "account": {**INSTALLATION_ACCOUNT, "avatar_url": ""}}]


@router.get("/github-apps/{app_name}/installations/new")
async def new_installation(app_name: str, request: Request):
    return authorize_redirect(request)


@router.get("/installations/{installation_id}")
async def get_installation_by_id(installation_id: str) -> Dict[str, Any]:
    return {"id": installation_id, "account": dict(INSTALLATION_ACCOUNT)}

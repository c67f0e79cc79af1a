"""Async client for the Forgejo REST API (v1)"""

from typing import Any, Dict, List, Optional

import httpx

from forgejo_bridge.core.config import settings
from forgejo_bridge.core.exceptions import UpstreamAPIError
from forgejo_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ForgejoClient:
    """Thin wrapper over one shared ``httpx.AsyncClient``.

    Every call authenticates with the configured Forgejo token. Upstream
    failures surface as UpstreamAPIError carrying the upstream status code,
    or 500 when no response was received.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.forgejo_url).rstrip("/")
        token = token if token is not None else settings.forgejo_token

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"token {token}"

        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1",
            headers=headers,
            timeout=timeout if timeout is not None else settings.upstream_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.warning(
                "forgejo_api_error",
                method=method,
                path=path,
                status_code=status_code,
            )
            raise UpstreamAPIError(
                f"Forgejo API returned {status_code}",
                status_code=status_code,
                details={"path": path},
            ) from e
        except httpx.RequestError as e:
            logger.error("forgejo_api_unreachable", method=method, path=path, error=str(e))
            raise UpstreamAPIError(
                "Forgejo API request failed",
                details={"path": path, "error_type": type(e).__name__},
            ) from e

        if not response.content:
            return None
        return response.json()

    async def get_user(self) -> Dict[str, Any]:
        return await self._request("GET", "/user")

    async def list_user_repos(self, page: int = 1, limit: int = 30) -> List[Dict[str, Any]]:
        return await self._request("GET", "/user/repos", params={"page": page, "limit": limit})

    async def get_repo(self, owner: str, repo: str) -> Dict[str, Any]:
        return await self._request("GET", f"/repos/{owner}/{repo}")

    async def list_branches(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/repos/{owner}/{repo}/branches")

    async def create_hook(self, owner: str, repo: str, hook: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/repos/{owner}/{repo}/hooks", json=hook)

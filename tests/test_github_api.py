"""Tests for the GitHub-compatible REST surface"""

import json
import re

import httpx
import pytest

FORGEJO_REPO = {
    "id": 42,
    "name": "widgets",
    "full_name": "acme/widgets",
    "private": True,
    "fork": False,
    "html_url": "https://forgejo.test/acme/widgets",
    "description": "Widget factory",
    "ssh_url": "git@forgejo.test:acme/widgets.git",
    "clone_url": "https://forgejo.test/acme/widgets.git",
    "default_branch": "main",
    "created_at": "2024-01-01T00:00:00Z",
    "updated_at": "2024-02-01T00:00:00Z",
    "owner": {"login": "acme", "id": 7, "avatar_url": "https://forgejo.test/avatars/7"},
}


def reply(payload, status_code=200):
    return lambda request: httpx.Response(status_code, json=payload)


class TestUserEndpoints:
    @pytest.mark.asyncio
    async def test_get_user(self, async_client, forgejo_routes):
        seen = {}

        def user(request):
            seen["authorization"] = request.headers.get("authorization")
            return httpx.Response(
                200,
                json={
                    "login": "jane",
                    "id": 3,
                    "avatar_url": "https://forgejo.test/avatars/3",
                    "full_name": "Jane Doe",
                    "email": "jane@example.com",
                    "is_admin": True,
                },
            )

        forgejo_routes["GET /api/v1/user"] = user

        response = await async_client.get("/api/v3/user")

        assert response.status_code == 200
        assert response.json() == {
            "login": "jane",
            "id": 3,
            "avatar_url": "https://forgejo.test/avatars/3",
            "name": "Jane Doe",
            "email": "jane@example.com",
        }
        assert seen["authorization"] == "token forgejo-token"

    @pytest.mark.asyncio
    async def test_list_repositories(self, async_client, forgejo_routes):
        seen = {}

        def repos(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=[FORGEJO_REPO])

        forgejo_routes["GET /api/v1/user/repos"] = repos

        response = await async_client.get("/api/v3/user/repos", params={"page": 2, "per_page": 50})

        assert response.status_code == 200
        assert seen == {"page": "2", "limit": "50"}
        [repo] = response.json()
        assert repo["full_name"] == "acme/widgets"
        assert repo["private"] is True
        assert repo["pushed_at"] == "2024-02-01T00:00:00Z"
        assert repo["owner"] == {
            "login": "acme",
            "id": 7,
            "avatar_url": "https://forgejo.test/avatars/7",
        }

    @pytest.mark.asyncio
    async def test_per_page_is_bounded(self, async_client):
        response = await async_client.get("/api/v3/user/repos", params={"per_page": 500})

        assert response.status_code == 400
        assert response.json()["code"] == "FJB-400"


class TestRepositoryEndpoints:
    @pytest.mark.asyncio
    async def test_get_repository(self, async_client, forgejo_routes):
        forgejo_routes["GET /api/v1/repos/acme/widgets"] = reply(FORGEJO_REPO)

        response = await async_client.get("/api/v3/repos/acme/widgets")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == 42
        assert body["default_branch"] == "main"
        assert body["clone_url"] == "https://forgejo.test/acme/widgets.git"
        assert body["owner"] == {"login": "acme", "id": 7}

    @pytest.mark.asyncio
    async def test_missing_repository_keeps_upstream_status(self, async_client):
        response = await async_client.get("/api/v3/repos/acme/missing")

        assert response.status_code == 404
        body = response.json()
        assert body["code"] == "FJB-404"
        assert "forgejo-token" not in response.text

    @pytest.mark.asyncio
    async def test_unreachable_forgejo(self, async_client, forgejo_routes):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        forgejo_routes["GET /api/v1/repos/acme/widgets"] = boom

        response = await async_client.get("/api/v3/repos/acme/widgets")

        assert response.status_code == 500
        assert response.json()["code"] == "FJB-500"

    @pytest.mark.asyncio
    async def test_list_branches(self, async_client, forgejo_routes):
        forgejo_routes["GET /api/v1/repos/acme/widgets/branches"] = reply(
            [
                {"name": "main", "commit": {"id": "a" * 40, "url": "https://forgejo.test/c/a"}},
                {"name": "dev", "commit": {"id": "b" * 40}, "protected": True},
            ]
        )

        response = await async_client.get("/api/v3/repos/acme/widgets/branches")

        assert response.status_code == 200
        assert response.json() == [
            {"name": "main", "commit": {"sha": "a" * 40, "url": "https://forgejo.test/c/a"}, "protected": False},
            {"name": "dev", "commit": {"sha": "b" * 40, "url": None}, "protected": True},
        ]


class TestAppEndpoints:
    @pytest.mark.asyncio
    async def test_app(self, async_client):
        response = await async_client.get("/api/v3/app")

        assert response.status_code == 200
        assert response.json()["id"] == 999999
        assert response.json()["slug"] == "forgejo-bridge"

    @pytest.mark.asyncio
    async def test_installation_token(self, async_client):
        response = await async_client.post("/api/v3/app/installations/1/access_tokens")

        assert response.status_code == 200
        body = response.json()
        assert re.fullmatch(r"ghs_[0-9a-f]{40}", body["token"])
        assert body["expires_at"].endswith("Z")
        assert body["permissions"]["contents"] == "read"

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, async_client):
        first = await async_client.post("/api/v3/app/installations/1/access_tokens")
        second = await async_client.post("/api/v3/app/installations/1/access_tokens")

        assert first.json()["token"] != second.json()["token"]

    @pytest.mark.asyncio
    async def test_installations(self, async_client):
        app_installations = await async_client.get("/api/v3/app/installations")
        installation = await async_client.get("/api/v3/installation")
        by_id = await async_client.get("/installations/77")

        assert app_installations.json()[0]["id"] == 1
        assert installation.json()["repositories_url"] == "/api/v3/installation/repositories"
        assert by_id.json()["id"] == "77"

    @pytest.mark.asyncio
    async def test_installation_repositories(self, async_client, forgejo_routes):
        seen = {}

        def repos(request):
            seen.update(request.url.params)
            return httpx.Response(200, json=[FORGEJO_REPO, {**FORGEJO_REPO, "id": 43, "name": "gadgets"}])

        forgejo_routes["GET /api/v1/user/repos"] = repos

        response = await async_client.get("/api/v3/installation/repositories")

        assert response.status_code == 200
        assert seen["limit"] == "100"
        body = response.json()
        assert body["total_count"] == 2
        assert [r["id"] for r in body["repositories"]] == [42, 43]

    @pytest.mark.asyncio
    async def test_app_permissions(self, async_client):
        response = await async_client.get("/settings/apps/forgejo-bridge/permissions")

        assert response.status_code == 200
        assert "push" in response.json()["events"]

    @pytest.mark.asyncio
    async def test_new_installation_redirects_to_authorize(self, async_client):
        response = await async_client.get(
            "/github-apps/forgejo-bridge/installations/new",
            headers={"Referer": "https://coolify.example/source/new"},
        )

        assert response.status_code == 302
        location = httpx.URL(response.headers["location"])
        assert location.path == "/login/oauth/authorize"
        assert location.params["redirect_uri"] == "https://coolify.example/source/new"
        assert location.params["state"] == "coolify"

    @pytest.mark.asyncio
    async def test_new_installation_default_referer(self, async_client):
        response = await async_client.get("/github-apps/forgejo-bridge/installations/new")

        location = httpx.URL(response.headers["location"])
        assert location.params["redirect_uri"] == "https://coolify.local"


class TestRoot:
    @pytest.mark.asyncio
    async def test_root_lists_endpoints(self, async_client):
        response = await async_client.get("/")

        assert response.status_code == 200
        assert json.loads(response.text)["endpoints"]["github_api"] == "/api/v3"

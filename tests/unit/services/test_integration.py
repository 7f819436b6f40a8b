"""Tests for the GitLabIntegration facade against the in-memory GitLab."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from labpulse.services.gitlab.exceptions import ErrorCode, GitLabAuthError, GitLabConfigError
from labpulse.services.integration import GitLabIntegration
from tests.helpers.gitlab_fakes import API, commit_json, project_json, user_json

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seed_dashboard(fake_gitlab) -> None:
    fake_gitlab.add("GET", f"{API}/user", user_json())
    fake_gitlab.add("GET", f"{API}/projects", [project_json(1, "intern-app")])
    fake_gitlab.add("GET", f"{API}/projects/1/repository/commits", [commit_json("a" * 40, "2024-01-10T09:00:00Z")])
    fake_gitlab.add("GET", f"{API}/projects/1/languages", {"Python": 100.0})
    fake_gitlab.add("GET", f"{API}/issues", [{"id": 11, "title": "Fix login", "state": "opened"}])
    fake_gitlab.add("GET", f"{API}/merge_requests", [{"id": 21, "title": "Login page", "state": "opened"}])
    fake_gitlab.add("GET", f"{API}/events", [{"action_name": "pushed to"}])


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, json={"message": "500 Internal Server Error"})


@pytest.fixture
async def integration(settings, gitlab_http):
    gitlab = GitLabIntegration(settings, http=gitlab_http, sleep=AsyncMock())
    yield gitlab
    await gitlab.close()


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════


class TestLifecycle:
    async def test_operations_require_initialize(self, integration):
        with pytest.raises(GitLabConfigError) as exc_info:
            await integration.get_repositories()
        assert exc_info.value.code == ErrorCode.NOT_INITIALIZED

    async def test_initialize(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        initialized = []
        integration.on("initialized", initialized.append)

        result = await integration.initialize("glpat-test")

        assert result["success"] is True
        assert integration.is_initialized
        assert integration.user_id == "7"
        assert integration.user_cache.get("7", "user_profile").data["username"] == "intern1"
        assert initialized == [{"user": result["user"]}]

    async def test_rejected_token_leaves_integration_uninitialized(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", {"message": "401 Unauthorized"}, status_code=401)

        with pytest.raises(GitLabAuthError):
            await integration.initialize("revoked")

        assert not integration.is_initialized
        assert integration.client is None

    async def test_disconnect_discards_user_cache(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        disconnected = []
        integration.on("disconnected", disconnected.append)
        await integration.initialize("glpat-test")

        integration.disconnect()

        assert not integration.is_initialized
        assert integration.user_cache.get("7", "user_profile") is None
        assert disconnected == [{"user_id": "7"}]

    async def test_close_leaves_injected_http_open(self, settings, gitlab_http):
        gitlab = GitLabIntegration(settings, http=gitlab_http)

        await gitlab.close()

        assert not gitlab_http.is_closed

    async def test_disabled_features(self, settings, gitlab_http):
        config = settings.model_copy(
            update={"enable_cache": False, "enable_rate_limit": False, "enable_webhooks": False}
        )
        gitlab = GitLabIntegration(config, http=gitlab_http)

        assert gitlab.get_cache_stats() is None
        assert gitlab.get_rate_limit_status() is None
        assert gitlab.clear_cache() == 0
        with pytest.raises(GitLabConfigError):
            await gitlab.handle_webhook("{}", {})
        await gitlab.close()


# ═══════════════════════════════════════════════════════════════════════════
# Dashboard
# ═══════════════════════════════════════════════════════════════════════════


class TestDashboard:
    async def test_all_sections_fresh(self, integration, fake_gitlab):
        _seed_dashboard(fake_gitlab)
        await integration.initialize("glpat-test")

        dashboard = await integration.get_dashboard_data(days=30)

        assert dashboard["user"]["username"] == "intern1"
        assert dashboard["repositories"][0]["name"] == "intern-app"
        assert dashboard["issues"][0]["title"] == "Fix login"
        assert dashboard["merge_requests"][0]["title"] == "Login page"
        assert dashboard["recent_activity"] == [{"action_name": "pushed to"}]
        assert dashboard["commit_activity"]["date_range"]["days"] == 30
        assert set(dashboard["sources"].values()) == {"fresh"}
        assert dashboard["errors"] == []
        assert "generated_at" in dashboard

    async def test_failed_section_falls_back_to_cache(self, integration, fake_gitlab):
        _seed_dashboard(fake_gitlab)
        await integration.initialize("glpat-test")
        await integration.get_dashboard_data()

        integration.clear_cache("gitlab:*")
        fake_gitlab.route("GET", f"{API}/issues", _server_error)
        dashboard = await integration.get_dashboard_data()

        assert dashboard["issues"][0]["title"] == "Fix login"
        assert dashboard["sources"]["issues"] == "cached"
        assert dashboard["sources"]["repositories"] == "fresh"
        assert dashboard["errors"] == [{"type": "issues", "error": "500 Internal Server Error"}]

    async def test_failed_section_without_cache_uses_default(self, integration, fake_gitlab):
        _seed_dashboard(fake_gitlab)
        fake_gitlab.route("GET", f"{API}/merge_requests", _server_error)
        await integration.initialize("glpat-test")

        dashboard = await integration.get_dashboard_data()

        assert dashboard["merge_requests"] == []
        assert "merge_requests" not in dashboard["sources"]
        assert dashboard["errors"][0]["type"] == "merge_requests"
        assert dashboard["repositories"]

    async def test_use_cached_skips_fetch(self, integration, fake_gitlab):
        _seed_dashboard(fake_gitlab)
        await integration.initialize("glpat-test")
        await integration.get_dashboard_data()
        integration.clear_cache("gitlab:*")
        calls_before = fake_gitlab.calls("GET", f"{API}/issues")

        dashboard = await integration.get_dashboard_data(use_cached=True)

        assert fake_gitlab.calls("GET", f"{API}/issues") == calls_before
        assert dashboard["sources"]["issues"] == "cached"


# ═══════════════════════════════════════════════════════════════════════════
# Token refresh
# ═══════════════════════════════════════════════════════════════════════════


class TestTokenRefresh:
    async def test_expired_token_is_refreshed_once_and_retried(self, integration, fake_gitlab):
        def projects(request: httpx.Request) -> httpx.Response:
            if request.headers["Authorization"] == "Bearer old-token":
                return httpx.Response(401, json={"error": "invalid_token", "error_description": "Token is expired"})
            return httpx.Response(200, json=[project_json()])

        fake_gitlab.add("GET", f"{API}/user", user_json())
        fake_gitlab.route("GET", f"{API}/projects", projects)
        fake_gitlab.add("POST", "/oauth/token", {"access_token": "new-token", "expires_in": 7200})
        refreshed = []
        integration.on("token_refreshed", refreshed.append)
        await integration.initialize("old-token", refresh_token="refresh-1")

        repositories = await integration.get_repositories()

        assert repositories[0]["id"] == 1
        assert fake_gitlab.calls("POST", "/oauth/token") == 1
        assert integration.credential.access_token == "new-token"
        assert integration.credential.refresh_token == "refresh-1"
        assert len(refreshed) == 1

    async def test_invalid_token_is_not_refreshed(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        fake_gitlab.add("GET", f"{API}/projects", {"message": "401 Unauthorized"}, status_code=401)
        await integration.initialize("glpat-test", refresh_token="refresh-1")

        with pytest.raises(GitLabAuthError) as exc_info:
            await integration.get_repositories()

        assert exc_info.value.code == ErrorCode.INVALID_TOKEN
        assert fake_gitlab.calls("POST", "/oauth/token") == 0

    async def test_refresh_without_refresh_token(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        await integration.initialize("glpat-test")

        with pytest.raises(GitLabAuthError) as exc_info:
            await integration.refresh_token()

        assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED

    async def test_complete_oauth_flow(self, integration, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", {"access_token": "oauth-token", "refresh_token": "refresh-1"})
        fake_gitlab.add("GET", f"{API}/user", user_json())

        request = integration.start_oauth_flow()
        result = await integration.complete_oauth_flow("auth-code", request.state)

        assert result["credential"].access_token == "oauth-token"
        assert integration.is_initialized
        assert fake_gitlab.requests[-1].headers["Authorization"] == "Bearer oauth-token"


# ═══════════════════════════════════════════════════════════════════════════
# Webhooks and diagnostics
# ═══════════════════════════════════════════════════════════════════════════


class TestWebhooksAndStatus:
    async def test_setup_webhook(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        fake_gitlab.add("POST", f"{API}/projects/42/hooks", {"id": 5}, status_code=201)
        await integration.initialize("glpat-test")

        result = await integration.setup_webhook(42, "https://labpulse.example.com/api/v1/webhooks/gitlab", ["push"])

        assert result["webhook"]["id"] == 5
        body = json.loads(fake_gitlab.requests[-1].content)
        assert body["token"] == "hook-secret"
        assert body["push_events"] is True

    async def test_handle_webhook(self, integration):
        payload = json.dumps({"object_kind": "push", "project": {"id": 42}})

        result = await integration.handle_webhook(
            payload, {"X-Gitlab-Event": "Push Hook", "X-Gitlab-Token": "hook-secret"}
        )

        assert result.processed
        assert result.event_info.type == "push"

    async def test_status(self, integration, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", user_json())
        await integration.initialize("glpat-test")

        status = integration.get_status()

        assert status["is_initialized"] is True
        assert status["config"]["oauth_enabled"] is True
        assert status["rate_limit"]["capacity"] == 100
        assert "user" in status["cache"]

    async def test_connection_check_never_raises(self, integration):
        assert (await integration.test_connection())["success"] is False

"""Unit tests for the GitLab OAuth flow."""

from __future__ import annotations

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from labpulse.config.settings import OAuthConfig, RetryPolicy
from labpulse.services.gitlab.exceptions import ErrorCode, GitLabAuthError, GitLabConfigError
from labpulse.services.gitlab.oauth import GitLabOAuth, OAuthState, generate_state
from tests.helpers.gitlab_fakes import API, user_json

TOKEN_RESPONSE = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "token_type": "Bearer",
    "expires_in": 7200,
    "scope": "read_user read_api",
}


def _config(**overrides) -> OAuthConfig:
    values = {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "redirect_uri": "https://labpulse.example.com/oauth/callback",
        "gitlab_url": "https://gitlab.example.com",
    }
    values.update(overrides)
    return OAuthConfig(**values)


@pytest.fixture
def oauth(gitlab_http) -> GitLabOAuth:
    return GitLabOAuth(
        _config(),
        gitlab_http,
        retry_policy=RetryPolicy(retries=0),
        sleep=AsyncMock(),
    )


def _form(request: httpx.Request) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(request.content.decode()).items()}


# ═══════════════════════════════════════════════════════════════════════════
# Configuration
# ═══════════════════════════════════════════════════════════════════════════


class TestConfiguration:
    def test_missing_credentials(self, gitlab_http):
        with pytest.raises(GitLabConfigError) as exc_info:
            GitLabOAuth(_config(client_secret=""), gitlab_http)
        assert exc_info.value.code == ErrorCode.MISSING_CREDENTIALS
        assert "client_secret" in exc_info.value.message

    def test_invalid_redirect_uri(self, gitlab_http):
        with pytest.raises(GitLabConfigError) as exc_info:
            GitLabOAuth(_config(redirect_uri="not-a-url"), gitlab_http)
        assert exc_info.value.code == ErrorCode.INVALID_CONFIG

    def test_get_config_hides_secret(self, oauth):
        config = oauth.get_config()
        assert "client_secret" not in config
        assert config["client_id"] == "client-id"
        assert config["state"] == "unauthenticated"


# ═══════════════════════════════════════════════════════════════════════════
# Authorization URL
# ═══════════════════════════════════════════════════════════════════════════


class TestAuthorizationUrl:
    def test_url_parameters(self, oauth):
        request = oauth.get_authorization_url()

        parsed = urlparse(request.url)
        query = {key: values[0] for key, values in parse_qs(parsed.query).items()}
        assert parsed.netloc == "gitlab.example.com"
        assert parsed.path == "/oauth/authorize"
        assert query["client_id"] == "client-id"
        assert query["response_type"] == "code"
        assert query["state"] == request.state
        assert query["scope"] == " ".join(request.scopes)
        assert oauth.state == OAuthState.AUTHORIZATION_REQUESTED

    def test_explicit_state_and_extra_params(self, oauth):
        request = oauth.get_authorization_url("fixed-state", {"prompt": "consent"})

        assert request.state == "fixed-state"
        assert "prompt=consent" in request.url

    def test_generated_states_are_random(self):
        first, second = generate_state(), generate_state()
        assert len(first) == 32
        assert first != second


# ═══════════════════════════════════════════════════════════════════════════
# Code exchange
# ═══════════════════════════════════════════════════════════════════════════


class TestExchange:
    async def test_round_trip(self, oauth, fake_gitlab, gitlab_http):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)
        fake_gitlab.add("GET", f"{API}/user", user_json())
        obtained = []
        oauth.on("token_obtained", obtained.append)

        request = oauth.get_authorization_url()
        credential = await oauth.exchange_code_for_token("auth-code", request.state)
        validation = await oauth.validate_token(credential.access_token)

        assert credential.access_token == "access-1"
        assert credential.refresh_token == "refresh-1"
        assert credential.scopes == ["read_user", "read_api"]
        assert credential.expires_at is not None
        assert obtained == [credential]
        assert oauth.state == OAuthState.AUTHENTICATED
        assert validation["valid"] is True
        assert validation["user"]["username"] == "intern1"

        token_request = fake_gitlab.requests[0]
        assert token_request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert _form(token_request) == {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "code": "auth-code",
            "grant_type": "authorization_code",
            "redirect_uri": "https://labpulse.example.com/oauth/callback",
        }
        assert fake_gitlab.requests[1].headers["Authorization"] == "Bearer access-1"

    async def test_state_mismatch(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)
        errors = []
        oauth.on("auth_error", errors.append)
        oauth.get_authorization_url()

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.exchange_code_for_token("auth-code", "forged-state")

        assert exc_info.value.code == ErrorCode.INVALID_TOKEN
        assert fake_gitlab.calls("POST", "/oauth/token") == 0
        assert errors == [exc_info.value]
        assert oauth.state == OAuthState.ERROR

    async def test_state_is_single_use(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)
        request = oauth.get_authorization_url()
        await oauth.exchange_code_for_token("auth-code", request.state)

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.exchange_code_for_token("auth-code", request.state)

        assert exc_info.value.code == ErrorCode.INVALID_TOKEN
        assert fake_gitlab.calls("POST", "/oauth/token") == 1

    async def test_unissued_state_on_fresh_instance(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)

        with pytest.raises(GitLabAuthError):
            await oauth.exchange_code_for_token("auth-code", "forged-state")

        assert fake_gitlab.calls("POST", "/oauth/token") == 0

    async def test_expired_state_is_rejected(self, gitlab_http, fake_gitlab, clock):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)
        oauth = GitLabOAuth(_config(state_ttl=600), gitlab_http, retry_policy=RetryPolicy(retries=0), timer=clock)
        request = oauth.get_authorization_url()

        clock.advance(601)

        with pytest.raises(GitLabAuthError):
            await oauth.exchange_code_for_token("auth-code", request.state)
        assert fake_gitlab.calls("POST", "/oauth/token") == 0

    async def test_pending_states_are_capped(self, gitlab_http, fake_gitlab, clock):
        fake_gitlab.add("POST", "/oauth/token", TOKEN_RESPONSE)
        oauth = GitLabOAuth(
            _config(max_pending_states=2), gitlab_http, retry_policy=RetryPolicy(retries=0), timer=clock
        )
        first = oauth.get_authorization_url()
        clock.advance(1)
        oauth.get_authorization_url()
        clock.advance(1)
        latest = oauth.get_authorization_url()

        with pytest.raises(GitLabAuthError):
            await oauth.exchange_code_for_token("auth-code", first.state)
        credential = await oauth.exchange_code_for_token("auth-code", latest.state)
        assert credential.access_token == "access-1"

    async def test_missing_access_token(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", {"token_type": "Bearer"})

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.exchange_code_for_token("auth-code")

        assert exc_info.value.code == ErrorCode.INVALID_TOKEN

    async def test_rejected_code(self, oauth, fake_gitlab):
        fake_gitlab.add(
            "POST",
            "/oauth/token",
            {"error": "invalid_grant", "error_description": "The provided authorization grant is invalid"},
            status_code=400,
        )

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.exchange_code_for_token("bad-code")

        assert exc_info.value.code == ErrorCode.INVALID_TOKEN
        assert "authorization grant is invalid" in exc_info.value.message


# ═══════════════════════════════════════════════════════════════════════════
# Refresh
# ═══════════════════════════════════════════════════════════════════════════


class TestRefresh:
    async def test_refresh_emits_event(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", {**TOKEN_RESPONSE, "access_token": "access-2"})
        refreshed = []
        oauth.on("token_refreshed", refreshed.append)

        credential = await oauth.refresh_access_token("refresh-1")

        assert credential.access_token == "access-2"
        assert refreshed == [credential]
        form = _form(fake_gitlab.requests[0])
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"

    async def test_rejected_refresh_is_token_expired(self, oauth, fake_gitlab):
        fake_gitlab.add("POST", "/oauth/token", {"error": "invalid_grant"}, status_code=400)

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.refresh_access_token("refresh-1")

        assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED
        assert exc_info.value.needs_token_refresh

    async def test_empty_refresh_token(self, oauth, fake_gitlab):
        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.refresh_access_token("")

        assert exc_info.value.code == ErrorCode.TOKEN_EXPIRED
        assert fake_gitlab.requests == []

    async def test_unreachable_gitlab_is_network_error(self, oauth, fake_gitlab):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        fake_gitlab.route("POST", "/oauth/token", refuse)

        with pytest.raises(GitLabAuthError) as exc_info:
            await oauth.refresh_access_token("refresh-1")

        assert exc_info.value.code == ErrorCode.NETWORK_ERROR


# ═══════════════════════════════════════════════════════════════════════════
# Token validation
# ═══════════════════════════════════════════════════════════════════════════


class TestValidateToken:
    async def test_invalid_token_never_raises(self, oauth, fake_gitlab):
        fake_gitlab.add("GET", f"{API}/user", {"message": "401 Unauthorized"}, status_code=401)

        result = await oauth.validate_token("revoked")

        assert result["valid"] is False
        assert result["status"] == 401

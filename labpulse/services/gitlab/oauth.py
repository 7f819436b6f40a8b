"""
OAuth 2.0 authorization code flow against a GitLab instance.

Builds the authorize URL, exchanges codes and refresh tokens at
``/oauth/token`` and validates tokens against the current-user endpoint.
Emits ``token_obtained``, ``token_refreshed`` and ``auth_error`` events so the
integration facade can rebuild its API client when the token changes.
"""

import asyncio
import logging
import secrets
import string
from datetime import UTC, datetime, timedelta
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode, urlparse

import httpx
from cachetools import TTLCache  # type: ignore[import-untyped]

from labpulse.config.settings import OAuthConfig, RetryPolicy
from labpulse.core.events import EventEmitter
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabAuthError,
    GitLabConfigError,
    GitLabError,
    GitLabNetworkError,
)
from labpulse.services.gitlab.executor import HttpRequestExecutor, SleepFn
from labpulse.services.gitlab.types import AccessCredential, AuthorizationRequest

logger = logging.getLogger(__name__)

STATE_ALPHABET = string.ascii_letters + string.digits
STATE_LENGTH = 32


class OAuthState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    CODE_EXCHANGE_PENDING = "code_exchange_pending"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    ERROR = "error"


def generate_state(length: int = STATE_LENGTH) -> str:
    return "".join(secrets.choice(STATE_ALPHABET) for _ in range(length))


def _validate_config(config: OAuthConfig) -> OAuthConfig:
    missing = [
        name
        for name in ("client_id", "client_secret", "redirect_uri")
        if not getattr(config, name)
    ]
    if missing:
        raise GitLabConfigError(
            f"Missing required OAuth configuration: {', '.join(missing)}",
            ErrorCode.MISSING_CREDENTIALS,
        )
    for name in ("redirect_uri", "gitlab_url"):
        parsed = urlparse(getattr(config, name))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise GitLabConfigError(f"Invalid {name} format", ErrorCode.INVALID_CONFIG)
    return config


class GitLabOAuth:
    """OAuth client for one GitLab OAuth application."""

    def __init__(
        self,
        config: OAuthConfig,
        http: httpx.AsyncClient,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        sleep: SleepFn = asyncio.sleep,
        events: EventEmitter | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = _validate_config(config)
        self.gitlab_url = config.gitlab_url.rstrip("/")
        self.events = events or EventEmitter()
        self.state = OAuthState.UNAUTHENTICATED
        self._timer = timer
        # Pending states expire after state_ttl; the oldest are dropped beyond the cap.
        self._issued_states: TTLCache[str, float] = TTLCache(
            maxsize=config.max_pending_states, ttl=config.state_ttl, timer=timer
        )
        self._executor = HttpRequestExecutor(
            http,
            self.gitlab_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            retry_policy=retry_policy,
            sleep=sleep,
        )

    def on(self, event: str, handler: Any) -> Any:
        return self.events.on(event, handler)

    def _transition(self, state: OAuthState) -> None:
        if state != self.state:
            logger.debug(f"OAuth state {self.state.value} -> {state.value}")
            self.state = state

    def _fail(self, error: GitLabAuthError) -> GitLabAuthError:
        self._transition(OAuthState.ERROR)
        self.events.emit("auth_error", error)
        return error

    def get_authorization_url(
        self,
        state: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> AuthorizationRequest:
        """Build the URL that sends the user to GitLab to grant access."""
        auth_state = state or generate_state()
        scopes = list(self.config.scopes)
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": auth_state,
            **(extra_params or {}),
        }
        self._issued_states[auth_state] = self._timer()
        self._transition(OAuthState.AUTHORIZATION_REQUESTED)
        return AuthorizationRequest(
            url=f"{self.gitlab_url}/oauth/authorize?{urlencode(params)}",
            state=auth_state,
            scopes=scopes,
        )

    def _credential_from(self, token_data: Any, failure_code: ErrorCode, action: str) -> AccessCredential:
        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise self._fail(
                GitLabAuthError(
                    f"No access token received during {action}",
                    failure_code,
                    response_body=token_data,
                )
            )

        now = datetime.now(UTC)
        expires_in = token_data.get("expires_in")
        scope = token_data.get("scope")
        return AccessCredential(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            token_type=token_data.get("token_type") or "Bearer",
            scopes=scope.split() if scope else list(self.config.scopes),
            obtained_at=now,
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
            raw=token_data,
        )

    async def _post_token(self, body: dict[str, str], failure_code: ErrorCode, action: str) -> Any:
        try:
            return await self._executor.execute("POST", "/oauth/token", data=body)
        except GitLabNetworkError as e:
            raise self._fail(
                GitLabAuthError(f"Failed to {action}: {e.message}", ErrorCode.NETWORK_ERROR)
            ) from e
        except GitLabError as e:
            body_data = e.response_body if isinstance(e.response_body, dict) else {}
            reason = body_data.get("error_description") or body_data.get("error") or e.message
            raise self._fail(
                GitLabAuthError(
                    f"Token {action} failed: {reason}",
                    failure_code,
                    status_code=e.status_code,
                    response_body=e.response_body,
                )
            ) from e

    async def exchange_code_for_token(self, code: str, state: str | None = None) -> AccessCredential:
        """
        Exchange an authorization code for an access credential.

        When ``state`` is given it must be one this instance issued within
        ``state_ttl`` and not yet used.

        Raises:
            GitLabAuthError: INVALID_TOKEN on rejection or a missing token,
                NETWORK_ERROR when GitLab could not be reached
        """
        if state is not None:
            if self._issued_states.pop(state, None) is None:
                raise self._fail(GitLabAuthError("OAuth state mismatch", ErrorCode.INVALID_TOKEN))

        self._transition(OAuthState.CODE_EXCHANGE_PENDING)
        body = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.config.redirect_uri,
        }
        token_data = await self._post_token(body, ErrorCode.INVALID_TOKEN, "exchange")
        credential = self._credential_from(token_data, ErrorCode.INVALID_TOKEN, "exchange")

        self._transition(OAuthState.AUTHENTICATED)
        logger.info("Obtained GitLab access token")
        self.events.emit("token_obtained", credential)
        return credential

    async def refresh_access_token(self, refresh_token: str) -> AccessCredential:
        """
        Trade a refresh token for a new credential.

        Raises:
            GitLabAuthError: TOKEN_EXPIRED when GitLab rejects the refresh
        """
        if not refresh_token:
            raise self._fail(GitLabAuthError("No refresh token available", ErrorCode.TOKEN_EXPIRED))

        self._transition(OAuthState.REFRESHING)
        body = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "redirect_uri": self.config.redirect_uri,
        }
        token_data = await self._post_token(body, ErrorCode.TOKEN_EXPIRED, "refresh")
        credential = self._credential_from(token_data, ErrorCode.TOKEN_EXPIRED, "refresh")

        self._transition(OAuthState.AUTHENTICATED)
        logger.info("Refreshed GitLab access token")
        self.events.emit("token_refreshed", credential)
        return credential

    async def validate_token(self, access_token: str) -> dict[str, Any]:
        """Check a token against the current-user endpoint. Never raises."""
        validated_at = datetime.now(UTC).isoformat()
        try:
            user = await self._executor.execute(
                "GET",
                "/api/v4/user",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except GitLabError as e:
            return {
                "valid": False,
                "error": e.message,
                "status": e.status_code,
                "validated_at": validated_at,
            }

        return {
            "valid": True,
            "user": {
                "id": user.get("id"),
                "username": user.get("username"),
                "name": user.get("name"),
                "email": user.get("email"),
            },
            "validated_at": validated_at,
        }

    def get_config(self) -> dict[str, Any]:
        """Public view of the configuration, without the client secret."""
        return {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "gitlab_url": self.gitlab_url,
            "scopes": list(self.config.scopes),
            "state": self.state.value,
        }

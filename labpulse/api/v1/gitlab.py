"""
GitLab read endpoints for the dashboard.

Every endpoint except the OAuth ones takes the caller's GitLab token from the
Authorization header; nothing is stored between requests beyond the shared
response cache.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from labpulse.api.deps import get_gitlab, get_oauth
from labpulse.services.gitlab.oauth import GitLabOAuth
from labpulse.services.integration import GitLabIntegration

router = APIRouter(prefix="/gitlab", tags=["gitlab"])
logger = logging.getLogger(__name__)


# --- Response Models ---


class ConnectionStatus(BaseModel):
    """Result of checking a token against GitLab."""

    success: bool
    user: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None
    gitlab: dict[str, Any] | None = None
    connection: dict[str, Any] | None = None


class AuthorizationUrl(BaseModel):
    """Where to send the user to grant access."""

    url: str
    state: str
    scopes: list[str]


class OAuthTokenResponse(BaseModel):
    """Tokens issued by GitLab plus the account they belong to."""

    access_token: str
    refresh_token: str | None
    token_type: str
    scopes: list[str]
    expires_at: str | None
    user: dict[str, Any]


# --- Endpoints ---


@router.get("/connection", response_model=ConnectionStatus)
async def get_connection(gitlab: GitLabIntegration = Depends(get_gitlab)) -> ConnectionStatus:
    """Check that the caller's token works and report the GitLab account."""
    return ConnectionStatus(**await gitlab.test_connection())


@router.get("/dashboard")
async def get_dashboard(
    days: int = Query(30, ge=1, le=365),
    use_cached: bool = Query(False),
    gitlab: GitLabIntegration = Depends(get_gitlab),
) -> dict[str, Any]:
    """Repositories, commit activity, issues, merge requests and recent events."""
    return await gitlab.get_dashboard_data(days, use_cached=use_cached)


@router.get("/commit-activity")
async def get_commit_activity(
    days: int = Query(90, ge=1, le=365),
    gitlab: GitLabIntegration = Depends(get_gitlab),
) -> dict[str, Any]:
    """Commit statistics, heatmap and language breakdown for the caller."""
    return await gitlab.get_commit_activity(days)


@router.get("/oauth/authorize", response_model=AuthorizationUrl)
async def start_oauth(oauth: GitLabOAuth = Depends(get_oauth)) -> AuthorizationUrl:
    """Begin the OAuth flow. The client redirects the user to ``url``."""
    request = oauth.get_authorization_url()
    return AuthorizationUrl(url=request.url, state=request.state, scopes=request.scopes)


@router.get("/oauth/callback", response_model=OAuthTokenResponse)
async def complete_oauth(
    code: str = Query(...),
    state: str = Query(...),
    oauth: GitLabOAuth = Depends(get_oauth),
) -> OAuthTokenResponse:
    """Exchange the authorization code GitLab redirected back with."""
    credential = await oauth.exchange_code_for_token(code, state)
    validation = await oauth.validate_token(credential.access_token)
    data = credential.to_dict()
    logger.info(f"OAuth flow completed for {(validation.get('user') or {}).get('username')}")
    return OAuthTokenResponse(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        token_type=data["token_type"],
        scopes=data["scopes"],
        expires_at=data["expires_at"],
        user=validation.get("user") or {},
    )

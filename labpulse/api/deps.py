"""Request dependencies: bearer token extraction and per-request GitLab facades."""

import logging
from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from labpulse.core.resources import GitLabResources
from labpulse.services.gitlab.oauth import GitLabOAuth
from labpulse.services.integration import GitLabIntegration
from labpulse.services.webhooks import WebhookRouter

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_resources(request: Request) -> GitLabResources:
    """Shared GitLab resources created by the application lifespan."""
    resources: GitLabResources | None = getattr(request.app.state, "gitlab", None)
    if resources is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="GitLab integration is not ready",
        )
    return resources


def get_gitlab_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """GitLab access token (OAuth or personal) from the Authorization header."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


async def get_gitlab(
    token: str = Depends(get_gitlab_token),
    resources: GitLabResources = Depends(get_resources),
) -> AsyncGenerator[GitLabIntegration, None]:
    """
    A GitLab facade connected with the caller's token.

    Raises GitLabAuthError (mapped to 401) when GitLab rejects the token.
    """
    integration = resources.integration()
    try:
        await integration.initialize(token)
        yield integration
    finally:
        await integration.close()


def get_webhook_router(resources: GitLabResources = Depends(get_resources)) -> WebhookRouter:
    return resources.webhooks


def get_oauth(resources: GitLabResources = Depends(get_resources)) -> GitLabOAuth:
    if resources.oauth is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="OAuth is not configured",
        )
    return resources.oauth

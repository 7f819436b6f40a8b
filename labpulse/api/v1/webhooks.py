"""
GitLab webhook ingress.

GitLab posts project events here. The shared secret configured on the hook
arrives in X-Gitlab-Token and is checked by the WebhookRouter; rejected
deliveries are answered with {error, details} by the GitLabError handler.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from labpulse.api.deps import get_webhook_router
from labpulse.services.webhooks import WebhookRouter

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


class WebhookAck(BaseModel):
    """Acknowledgement returned to GitLab for an accepted delivery."""

    success: bool
    processed: bool
    event_type: str | None = None
    project: dict[str, Any] | None = None
    reason: str | None = None


@router.post("/gitlab", response_model=WebhookAck)
async def receive_gitlab_webhook(
    request: Request,
    webhooks: WebhookRouter = Depends(get_webhook_router),
) -> WebhookAck:
    """Verify and dispatch one GitLab webhook delivery."""
    body = await request.body()
    result = await webhooks.handle_webhook(body, request.headers)
    return WebhookAck(
        success=result.success,
        processed=result.processed,
        event_type=result.event_info.type,
        project=result.event_info.project,
        reason=result.reason,
    )

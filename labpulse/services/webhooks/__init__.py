"""GitLab webhook ingress and project hook management."""

from labpulse.services.webhooks.router import (
    HandlerResult,
    WebhookEventInfo,
    WebhookResult,
    WebhookRouter,
    build_hook_settings,
    create_event_filter,
    extract_commits_from_push,
    extract_event_info,
    validate_payload,
)

__all__ = [
    "HandlerResult",
    "WebhookEventInfo",
    "WebhookResult",
    "WebhookRouter",
    "build_hook_settings",
    "create_event_filter",
    "extract_commits_from_push",
    "extract_event_info",
    "validate_payload",
]

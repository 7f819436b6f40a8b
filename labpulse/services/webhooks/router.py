"""
GitLab webhook ingress: verification, classification and dispatch.

GitLab authenticates hooks with a static shared token sent in the
``X-Gitlab-Token`` header (no HMAC). Event type comes from ``X-Gitlab-Event``
(``"Merge Request Hook"`` -> ``merge_request``), falling back to the
payload's ``object_kind``.
"""

import hmac
import inspect
import json
import logging
from collections import defaultdict
from collections.abc import Callable, Collection, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from labpulse.config.settings import WebhookConfig
from labpulse.services.gitlab.client import GitLabClient, ProjectId
from labpulse.services.gitlab.constants import GITLAB_EVENTS
from labpulse.services.gitlab.exceptions import ErrorCode, GitLabError, GitLabWebhookError

logger = logging.getLogger(__name__)

WILDCARD = "*"

WebhookHandler = Callable[["WebhookEventInfo", dict[str, Any]], Any]
EventFilter = Callable[["WebhookEventInfo"], bool]


@dataclass
class WebhookEventInfo:
    type: str
    timestamp: str
    source: str = "gitlab"
    project: dict[str, Any] | None = None
    user: dict[str, Any] | None = None
    object: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HandlerResult:
    handler: str
    success: bool
    result: Any = None
    error: str | None = None
    generic: bool = False


@dataclass
class WebhookResult:
    success: bool
    processed: bool
    event_info: WebhookEventInfo
    handlers_executed: int = 0
    results: list[HandlerResult] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "event_info": self.event_info.to_dict(),
            "handlers_executed": self.handlers_executed,
            "results": [asdict(r) for r in self.results],
            "reason": self.reason,
        }


@dataclass
class WebhookStats:
    total_webhooks: int = 0
    events_received: int = 0
    events_processed: int = 0
    events_failed: int = 0
    last_event_time: str | None = None


def normalize_event_type(header: str | None, payload: Mapping[str, Any]) -> str:
    """``"Tag Push Hook"`` -> ``tag_push``; falls back to ``object_kind``."""
    if header:
        name = header.strip().lower()
        if name.endswith(" hook"):
            name = name[: -len(" hook")]
        return name.replace(" ", "_")
    kind = payload.get("object_kind")
    return str(kind) if kind else "unknown"


def _object_summary(event_type: str, payload: Mapping[str, Any]) -> dict[str, Any] | None:
    attrs = payload.get("object_attributes") or {}
    if event_type == "push":
        return {
            "ref": payload.get("ref"),
            "before": payload.get("before"),
            "after": payload.get("after"),
            "commits": len(payload.get("commits") or []),
            "total_commits_count": payload.get("total_commits_count"),
        }
    if event_type == "tag_push":
        return {"ref": payload.get("ref"), "before": payload.get("before"), "after": payload.get("after")}
    if not attrs:
        return None
    if event_type == "issue":
        return {key: attrs.get(key) for key in ("id", "iid", "title", "state", "action")}
    if event_type == "merge_request":
        return {
            key: attrs.get(key)
            for key in ("id", "iid", "title", "state", "action", "source_branch", "target_branch")
        }
    if event_type == "pipeline":
        return {key: attrs.get(key) for key in ("id", "status", "ref", "sha")}
    return None


def extract_event_info(payload: Mapping[str, Any], headers: Mapping[str, str]) -> WebhookEventInfo:
    lowered = {k.lower(): v for k, v in headers.items()}
    event_type = normalize_event_type(lowered.get("x-gitlab-event"), payload)
    info = WebhookEventInfo(type=event_type, timestamp=datetime.now(UTC).isoformat())

    project = payload.get("project")
    if isinstance(project, Mapping):
        info.project = {
            "id": project.get("id"),
            "name": project.get("name"),
            "path": project.get("path_with_namespace"),
            "url": project.get("web_url"),
        }

    user = payload.get("user")
    if isinstance(user, Mapping):
        info.user = {key: user.get(key) for key in ("id", "username", "name", "email")}
    elif payload.get("user_id") is not None:
        info.user = {
            "id": payload.get("user_id"),
            "username": payload.get("user_username"),
            "name": payload.get("user_name"),
            "email": payload.get("user_email"),
        }

    info.object = _object_summary(event_type, payload)
    return info


def validate_payload(payload: Any) -> tuple[bool, str | None]:
    if not isinstance(payload, Mapping):
        return False, "Payload must be an object"
    if "object_kind" not in payload:
        return False, "Missing required fields: object_kind"
    return True, None


def extract_commits_from_push(payload: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Flatten the commits of a push event payload."""
    if payload.get("object_kind") != "push":
        return []
    commits = []
    for commit in payload.get("commits") or []:
        author = commit.get("author") or {}
        commits.append(
            {
                "id": commit.get("id"),
                "message": commit.get("message"),
                "timestamp": commit.get("timestamp"),
                "author": {"name": author.get("name"), "email": author.get("email")},
                "url": commit.get("url"),
                "added": commit.get("added") or [],
                "modified": commit.get("modified") or [],
                "removed": commit.get("removed") or [],
            }
        )
    return commits


def create_event_filter(
    *,
    allowed_events: Collection[str] = (),
    blocked_events: Collection[str] = (),
    allowed_projects: Collection[int] = (),
    blocked_projects: Collection[int] = (),
    allowed_users: Collection[int] = (),
    blocked_users: Collection[int] = (),
) -> EventFilter:
    """Build a filter predicate from allow/block lists. Empty lists allow everything."""

    def event_filter(info: WebhookEventInfo) -> bool:
        if allowed_events and info.type not in allowed_events:
            return False
        if info.type in blocked_events:
            return False
        if info.project:
            project_id = info.project.get("id")
            if allowed_projects and project_id not in allowed_projects:
                return False
            if project_id in blocked_projects:
                return False
        if info.user:
            user_id = info.user.get("id")
            if allowed_users and user_id not in allowed_users:
                return False
            if user_id in blocked_users:
                return False
        return True

    return event_filter


def build_hook_settings(
    url: str,
    events: Collection[str] = (),
    *,
    token: str | None = None,
    enable_ssl_verification: bool = True,
    **extra: Any,
) -> dict[str, Any]:
    """
    Project hook body for the GitLab hooks API.

    With no events, the hook subscribes to pushes only.
    """
    unknown = set(events) - set(GITLAB_EVENTS)
    if unknown:
        raise GitLabWebhookError(
            f"Unknown webhook events: {', '.join(sorted(unknown))}",
            ErrorCode.INVALID_CONFIG,
        )
    return {
        "url": url,
        "push_events": "push" in events or not events,
        "tag_push_events": "tag_push" in events,
        "issues_events": "issue" in events,
        "confidential_issues_events": "confidential_issue" in events,
        "merge_requests_events": "merge_request" in events,
        "note_events": "note" in events,
        "confidential_note_events": "confidential_note" in events,
        "wiki_page_events": "wiki_page" in events,
        "deployment_events": "deployment" in events,
        "job_events": "job" in events,
        "pipeline_events": "pipeline" in events,
        "releases_events": "release" in events,
        "enable_ssl_verification": enable_ssl_verification,
        **({"token": token} if token else {}),
        **extra,
    }


class WebhookRouter:
    """Verifies inbound GitLab hooks and dispatches them to registered handlers."""

    def __init__(
        self,
        config: WebhookConfig | None = None,
        *,
        event_filter: EventFilter | None = None,
    ) -> None:
        self.config = config or WebhookConfig()
        self.event_filter = event_filter
        if self.event_filter is None and self.config.allowed_events:
            self.event_filter = create_event_filter(allowed_events=self.config.allowed_events)
        self._handlers: dict[str, list[WebhookHandler]] = defaultdict(list)
        self._hooks: dict[int, dict[str, Any]] = {}
        self.stats = WebhookStats()

    # ─────────────────────────────────────────────────────────────────────
    # Handler registration
    # ─────────────────────────────────────────────────────────────────────

    def on(self, event_type: str, handler: WebhookHandler) -> WebhookHandler:
        self._handlers[event_type].append(handler)
        return handler

    def off(self, event_type: str, handler: WebhookHandler) -> bool:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def remove_all_handlers(self, event_type: str | None = None) -> None:
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(event_type, None)

    # ─────────────────────────────────────────────────────────────────────
    # Ingress
    # ─────────────────────────────────────────────────────────────────────

    def verify_token(self, headers: Mapping[str, str], secret_token: str | None = None) -> bool:
        """Constant-time comparison of X-Gitlab-Token against the shared secret."""
        expected = secret_token or self.config.secret_token
        received = next((v for k, v in headers.items() if k.lower() == "x-gitlab-token"), None)
        if not expected or not received:
            return False
        return hmac.compare_digest(received.encode(), expected.encode())

    def _parse(self, raw_payload: str | bytes | Mapping[str, Any]) -> tuple[dict[str, Any], int]:
        if isinstance(raw_payload, Mapping):
            payload = dict(raw_payload)
            return payload, len(json.dumps(payload, default=str).encode())

        size = len(raw_payload.encode() if isinstance(raw_payload, str) else raw_payload)
        if size > self.config.max_payload_size:
            return {}, size
        try:
            payload = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise GitLabWebhookError(f"Malformed webhook payload: {e}", ErrorCode.INVALID_PAYLOAD) from e
        if not isinstance(payload, dict):
            raise GitLabWebhookError("Webhook payload must be a JSON object", ErrorCode.INVALID_PAYLOAD)
        return payload, size

    async def handle_webhook(
        self,
        raw_payload: str | bytes | Mapping[str, Any],
        headers: Mapping[str, str],
        *,
        secret_token: str | None = None,
    ) -> WebhookResult:
        """
        Verify, classify and dispatch one webhook delivery.

        Raises:
            GitLabWebhookError: PAYLOAD_TOO_LARGE, INVALID_PAYLOAD, or
                ACCESS_DENIED when the shared token is missing or wrong
        """
        self.stats.events_received += 1
        self.stats.last_event_time = datetime.now(UTC).isoformat()
        try:
            payload, size = self._parse(raw_payload)
            if size > self.config.max_payload_size:
                raise GitLabWebhookError(
                    f"Payload size ({size}) exceeds maximum allowed size ({self.config.max_payload_size})",
                    ErrorCode.PAYLOAD_TOO_LARGE,
                )

            if self.config.verify_signature and not self.verify_token(headers, secret_token):
                raise GitLabWebhookError("Invalid webhook token", ErrorCode.ACCESS_DENIED)
        except GitLabWebhookError as e:
            self.stats.events_failed += 1
            logger.warning(f"Rejected GitLab webhook: {e.message}")
            raise

        info = extract_event_info(payload, headers)

        if self.config.enable_filtering and self.event_filter is not None and not self.event_filter(info):
            logger.debug(f"Filtered out {info.type} webhook")
            return WebhookResult(success=True, processed=False, event_info=info, reason="Event filtered out")

        results = await self._dispatch(info, payload)
        self.stats.events_processed += 1
        logger.info(f"Processed GitLab {info.type} webhook ({len(results)} handlers)")
        return WebhookResult(
            success=True,
            processed=True,
            event_info=info,
            handlers_executed=len(results),
            results=results,
        )

    async def _dispatch(self, info: WebhookEventInfo, payload: dict[str, Any]) -> list[HandlerResult]:
        results = []
        handlers = [(h, False) for h in self._handlers.get(info.type, ())]
        handlers += [(h, True) for h in self._handlers.get(WILDCARD, ())]
        for handler, generic in handlers:
            name = getattr(handler, "__name__", None) or "anonymous"
            try:
                outcome = handler(info, payload)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as e:
                logger.warning(f"Webhook handler {name} failed for {info.type}: {e}")
                results.append(HandlerResult(handler=name, success=False, error=str(e), generic=generic))
                continue
            results.append(HandlerResult(handler=name, success=True, result=outcome, generic=generic))
        return results

    # ─────────────────────────────────────────────────────────────────────
    # Hook management on GitLab
    # ─────────────────────────────────────────────────────────────────────

    async def create_webhook(
        self,
        client: GitLabClient,
        project_id: ProjectId,
        url: str,
        events: Collection[str] = (),
        *,
        secret_token: str | None = None,
        enable_ssl_verification: bool = True,
    ) -> dict[str, Any]:
        settings = build_hook_settings(
            url,
            events,
            token=secret_token or self.config.secret_token,
            enable_ssl_verification=enable_ssl_verification,
        )
        try:
            hook = await client.create_project_hook(project_id, settings)
        except GitLabError as e:
            raise GitLabWebhookError(
                f"Failed to create webhook: {e.message}",
                ErrorCode.API_ERROR,
                status_code=e.status_code,
            ) from e

        record = {
            "project_id": project_id,
            "url": url,
            "events": list(events),
            "created_at": datetime.now(UTC).isoformat(),
        }
        self._hooks[hook["id"]] = record
        self.stats.total_webhooks += 1
        logger.info(f"Created GitLab webhook {hook['id']} on project {project_id}")
        return {"success": True, "webhook": hook, "config": record}

    async def update_webhook(
        self,
        client: GitLabClient,
        project_id: ProjectId,
        hook_id: int,
        updates: Mapping[str, Any],
    ) -> dict[str, Any]:
        try:
            hook = await client.update_project_hook(project_id, hook_id, updates)
        except GitLabError as e:
            raise GitLabWebhookError(
                f"Failed to update webhook: {e.message}",
                ErrorCode.API_ERROR,
                status_code=e.status_code,
            ) from e
        if hook_id in self._hooks:
            self._hooks[hook_id].update(
                {k: v for k, v in updates.items() if k != "token"},
                updated_at=datetime.now(UTC).isoformat(),
            )
        return {"success": True, "webhook": hook, "config": self._hooks.get(hook_id)}

    async def delete_webhook(self, client: GitLabClient, project_id: ProjectId, hook_id: int) -> dict[str, Any]:
        try:
            await client.delete_project_hook(project_id, hook_id)
        except GitLabError as e:
            raise GitLabWebhookError(
                f"Failed to delete webhook: {e.message}",
                ErrorCode.API_ERROR,
                status_code=e.status_code,
            ) from e
        if self._hooks.pop(hook_id, None) is not None:
            self.stats.total_webhooks = max(0, self.stats.total_webhooks - 1)
        return {"success": True, "deleted_at": datetime.now(UTC).isoformat()}

    async def list_webhooks(self, client: GitLabClient, project_id: ProjectId) -> dict[str, Any]:
        try:
            hooks = await client.list_project_hooks(project_id)
        except GitLabError as e:
            raise GitLabWebhookError(
                f"Failed to list webhooks: {e.message}",
                ErrorCode.API_ERROR,
                status_code=e.status_code,
            ) from e
        return {"success": True, "webhooks": hooks, "count": len(hooks)}

    def get_stats(self) -> dict[str, Any]:
        return {
            **asdict(self.stats),
            "active_webhooks": len(self._hooks),
            "registered_handlers": sum(len(h) for h in self._handlers.values()),
        }

    def get_configurations(self) -> list[dict[str, Any]]:
        return [{"id": hook_id, **record} for hook_id, record in self._hooks.items()]

    def clear(self) -> None:
        self._handlers.clear()
        self._hooks.clear()

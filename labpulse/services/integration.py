"""
GitLab integration facade.

Wires the HTTP client, response cache, rate limiter, OAuth flow, analytics
and webhook router together behind dashboard-ready operations. One instance
serves one connected GitLab account; the cache and limiter may be shared
between instances by injecting them.

Usage:
    async with GitLabIntegration() as gitlab:
        await gitlab.initialize(token)
        dashboard = await gitlab.get_dashboard_data(days=30)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

import httpx

from labpulse.config.settings import Settings, settings as default_settings
from labpulse.core.events import EventEmitter
from labpulse.services.analytics import CommitAnalytics
from labpulse.services.gitlab.cache import ResponseCache
from labpulse.services.gitlab.client import GitLabClient, ProjectId
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabAuthError,
    GitLabConfigError,
    GitLabError,
)
from labpulse.services.gitlab.executor import SleepFn
from labpulse.services.gitlab.http_client import close_gitlab_client, create_gitlab_client
from labpulse.services.gitlab.oauth import GitLabOAuth
from labpulse.services.gitlab.rate_limiter import TokenBucketLimiter
from labpulse.services.gitlab.types import AccessCredential, AuthorizationRequest
from labpulse.services.gitlab.user_cache import CachedResult, UserCacheService
from labpulse.services.webhooks import WebhookResult, WebhookRouter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Dashboard section -> user cache data type
DASHBOARD_SECTIONS: dict[str, str] = {
    "repositories": "repositories",
    "commit_activity": "analytics",
    "issues": "issues",
    "merge_requests": "merge_requests",
    "recent_activity": "activity",
}

# Value reported for a dashboard section that failed with nothing cached
DASHBOARD_DEFAULTS: dict[str, Any] = {
    "repositories": [],
    "commit_activity": None,
    "issues": [],
    "merge_requests": [],
    "recent_activity": [],
}


class GitLabIntegration:
    """
    Facade over the GitLab access layer for one connected account.

    Components are built from settings unless injected. Disabled features
    (cache, rate limiting, webhooks, OAuth) are left as None and the
    operations that depend on them degrade or raise GitLabConfigError.

    Events (via ``on``): ``initialized``, ``token_refreshed``, ``auth_error``,
    ``rate_limit_exceeded``, ``disconnected``.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        cache: ResponseCache | None = None,
        limiter: TokenBucketLimiter | None = None,
        oauth: GitLabOAuth | None = None,
        webhooks: WebhookRouter | None = None,
        user_cache: UserCacheService | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.config = config or default_settings
        self.events = EventEmitter()
        self._sleep = sleep

        self._owns_http = http is None
        self.http = http or create_gitlab_client(self.config.request_timeout)

        self._owns_cache = cache is None
        if cache is None and self.config.enable_cache:
            cache = ResponseCache(self.config.cache_config())
        self.cache = cache

        self._owns_limiter = limiter is None
        if limiter is None and self.config.enable_rate_limit:
            limiter = TokenBucketLimiter(
                self.config.rate_limit_config(),
                on_rate_limited=self._on_rate_limited,
            )
        self.limiter = limiter

        if user_cache is None and self.cache is not None:
            user_cache = UserCacheService(self.cache)
        self.user_cache = user_cache

        if oauth is None and self.config.oauth_enabled:
            oauth = GitLabOAuth(
                self.config.oauth_config(),
                self.http,
                retry_policy=self.config.retry_policy(),
                timeout=self.config.request_timeout,
                sleep=sleep,
            )
        self.oauth = oauth
        if self.oauth is not None:
            self.oauth.on("token_refreshed", self._on_token_refreshed)
            self.oauth.on("auth_error", self._on_auth_error)

        self._owns_webhooks = webhooks is None
        if webhooks is None and self.config.enable_webhooks:
            webhooks = WebhookRouter(self.config.webhook_config())
        self.webhooks = webhooks

        self.client: GitLabClient | None = None
        self.analytics: CommitAnalytics | None = None
        self.credential: AccessCredential | None = None
        self.current_user: dict[str, Any] | None = None
        self.user_id: str | None = None
        self._refresh_lock = asyncio.Lock()

    async def __aenter__(self) -> "GitLabIntegration":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_initialized(self) -> bool:
        return self.client is not None and self.current_user is not None

    # ─────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        return self.events.on(event, handler)

    def off(self, event: str, handler: Callable[..., Any]) -> bool:
        return self.events.off(event, handler)

    def _on_token_refreshed(self, credential: AccessCredential) -> None:
        if credential.refresh_token is None and self.credential is not None:
            credential.refresh_token = self.credential.refresh_token
        self._build_client(credential)
        self.events.emit("token_refreshed", credential)

    def _on_auth_error(self, error: GitLabAuthError) -> None:
        self.events.emit("auth_error", error)

    def _on_rate_limited(self, retry_after: float) -> None:
        self.events.emit("rate_limit_exceeded", {"retry_after": retry_after})

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start background maintenance. Requires a running event loop."""
        if self.cache is not None:
            self.cache.start()

    def _build_client(self, credential: AccessCredential) -> None:
        self.credential = credential
        self.client = GitLabClient(
            self.http,
            credential.access_token,
            gitlab_url=self.config.gitlab_url,
            api_version=self.config.api_version,
            cache=self.cache,
            limiter=self.limiter,
            retry_policy=self.config.retry_policy(),
            timeout=self.config.request_timeout,
            sleep=self._sleep,
        )
        self.analytics = CommitAnalytics(self.client)

    async def initialize(
        self,
        access_token: str,
        *,
        user_id: str | None = None,
        refresh_token: str | None = None,
    ) -> dict[str, Any]:
        """
        Connect with an access token (OAuth or personal access token).

        Builds the API client and analytics engine and loads the current user.

        Raises:
            GitLabConfigError: If the token is empty
            GitLabAuthError: If GitLab rejects the token
        """
        return await self._connect(AccessCredential(access_token=access_token, refresh_token=refresh_token), user_id)

    async def _connect(self, credential: AccessCredential, user_id: str | None = None) -> dict[str, Any]:
        self._build_client(credential)
        try:
            user = await self.client.get_current_user(use_cache=False)  # type: ignore[union-attr]
        except GitLabError as e:
            logger.warning(f"Failed to initialize GitLab integration: {e.message}")
            self.client = None
            self.analytics = None
            self.credential = None
            raise

        self.current_user = user
        self.user_id = user_id or str(user.get("id"))
        if self.user_cache is not None:
            self.user_cache.set(self.user_id, "user_profile", user)

        logger.info(f"GitLab integration initialized for {user.get('username')}")
        self.events.emit("initialized", {"user": user})
        return {"success": True, "user": user}

    def disconnect(self) -> None:
        """Drop the credential and any cached data for the connected user."""
        if self.user_cache is not None and self.user_id is not None:
            self.user_cache.invalidate_user(self.user_id)
            self.user_cache.cleanup_user_stats(self.user_id)
        user_id = self._drop_session()
        if user_id is not None:
            self.events.emit("disconnected", {"user_id": user_id})

    def _drop_session(self) -> str | None:
        user_id = self.user_id
        self.client = None
        self.analytics = None
        self.credential = None
        self.current_user = None
        self.user_id = None
        return user_id

    async def close(self) -> None:
        """
        Drop the session and release the components this instance created.

        Injected components are left running for their owner to close.
        Cached user data is kept; use disconnect() to discard it.
        """
        self._drop_session()
        if self.limiter is not None and self._owns_limiter:
            await self.limiter.close()
        if self.cache is not None and self._owns_cache:
            await self.cache.close()
        if self.webhooks is not None and self._owns_webhooks:
            self.webhooks.clear()
        if self._owns_http:
            await close_gitlab_client(self.http)
        self.events.clear()

    def _require_client(self) -> GitLabClient:
        if self.client is None or self.current_user is None:
            raise GitLabConfigError(
                "GitLab integration is not initialized. Call initialize() first.",
                ErrorCode.NOT_INITIALIZED,
            )
        return self.client

    def _require_analytics(self) -> CommitAnalytics:
        self._require_client()
        return self.analytics  # type: ignore[return-value]

    # ─────────────────────────────────────────────────────────────────────
    # OAuth
    # ─────────────────────────────────────────────────────────────────────

    def _require_oauth(self) -> GitLabOAuth:
        if self.oauth is None:
            raise GitLabConfigError("OAuth is not configured", ErrorCode.MISSING_CREDENTIALS)
        return self.oauth

    def start_oauth_flow(self, state: str | None = None) -> AuthorizationRequest:
        return self._require_oauth().get_authorization_url(state)

    async def complete_oauth_flow(self, code: str, state: str | None = None) -> dict[str, Any]:
        """Exchange the authorization code and connect with the new token."""
        credential = await self._require_oauth().exchange_code_for_token(code, state)
        result = await self._connect(credential)
        return {**result, "credential": credential}

    async def refresh_token(self, refresh_token: str | None = None) -> dict[str, Any]:
        """
        Trade a refresh token (the held one by default) for a new access token.

        The client and analytics engine are rebuilt from the token_refreshed
        event before the current user is reloaded.
        """
        oauth = self._require_oauth()
        token = refresh_token or (self.credential.refresh_token if self.credential else None)
        if not token:
            raise GitLabAuthError("No refresh token available", ErrorCode.TOKEN_EXPIRED)

        credential = await oauth.refresh_access_token(token)
        result = await self._connect(credential, self.user_id)
        return {**result, "credential": credential}

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run an operation, refreshing an expired token once and retrying.

        ``operation`` must read ``self.client`` when invoked so the retry
        goes out with the refreshed token.
        """
        self._require_client()
        try:
            return await operation()
        except GitLabAuthError as e:
            if not e.needs_token_refresh or self.oauth is None or not (self.credential and self.credential.can_refresh):
                raise
            stale_token = self.credential.access_token

        async with self._refresh_lock:
            if self.credential is not None and self.credential.access_token == stale_token:
                logger.info("GitLab access token expired, refreshing")
                await self.refresh_token()
        return await operation()

    # ─────────────────────────────────────────────────────────────────────
    # Repositories and activity
    # ─────────────────────────────────────────────────────────────────────

    async def get_repositories(self, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_user_projects(**options))

    async def get_repository(self, project_id: ProjectId) -> dict[str, Any]:
        return await self._call(lambda: self._require_client().get_project(project_id))

    async def get_commits(self, project_id: ProjectId, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_project_commits(project_id, **options))

    async def get_issues(self, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_user_issues(**options))

    async def get_merge_requests(self, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_user_merge_requests(**options))

    async def get_file_content(self, project_id: ProjectId, file_path: str, ref: str = "HEAD") -> dict[str, Any]:
        return await self._call(lambda: self._require_client().get_repository_file(project_id, file_path, ref))

    async def get_repository_tree(self, project_id: ProjectId, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_repository_tree(project_id, **options))

    async def search_repositories(self, query: str, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().search_projects(query, **options))

    async def search_code(self, query: str, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().search_code(query, **options))

    async def get_activity(self, **options: Any) -> list[dict[str, Any]]:
        return await self._call(lambda: self._require_client().get_user_events(**options))

    # ─────────────────────────────────────────────────────────────────────
    # Analytics
    # ─────────────────────────────────────────────────────────────────────

    async def get_commit_activity(self, days: int | None = None, **options: Any) -> dict[str, Any]:
        return await self._call(lambda: self._require_analytics().get_user_commit_activity(days, **options))

    async def get_project_insights(self, project_id: ProjectId, days: int = 30, **options: Any) -> dict[str, Any]:
        return await self._call(lambda: self._require_analytics().get_project_insights(project_id, days, **options))

    async def compare_projects(self, project_ids: Sequence[ProjectId], days: int = 30) -> dict[str, Any]:
        return await self._call(lambda: self._require_analytics().compare_projects(project_ids, days))

    async def test_connection(self) -> dict[str, Any]:
        """Connection check for the current token. Never raises."""
        if self.client is None:
            return {"success": False, "error": "GitLab integration is not initialized"}
        return await self.client.test_connection()

    async def _load_section(
        self,
        section: str,
        fetch: Callable[[], Awaitable[Any]],
        params: Mapping[str, Any] | None,
        use_cached: bool,
    ) -> tuple[CachedResult, GitLabError | None]:
        """Load one dashboard section; on failure fall back to the cached copy."""
        data_type = DASHBOARD_SECTIONS[section]
        if self.user_cache is None or self.user_id is None:
            return CachedResult(data=await fetch(), from_cache=False, cached_at=0.0, age=0.0), None

        try:
            result = await self.user_cache.get_or_fetch(
                self.user_id, data_type, fetch, params, force_refresh=not use_cached
            )
        except GitLabError as e:
            cached = self.user_cache.get(self.user_id, data_type, params)
            if cached is None:
                raise
            logger.warning(f"Serving cached {section} after fetch failure: {e.message}")
            return cached, e
        return result, None

    async def get_dashboard_data(self, days: int = 30, *, use_cached: bool = False) -> dict[str, Any]:
        """
        Everything the dashboard shows, loaded concurrently.

        A failing section does not fail the dashboard: it is reported under
        ``errors`` and falls back to the last cached copy when one exists.
        ``sources`` marks each delivered section as "fresh" or "cached".

        Args:
            days: Commit activity window
            use_cached: Serve cached sections within their TTL instead of
                always fetching fresh data
        """
        self._require_client()
        loaders: dict[str, tuple[Callable[[], Awaitable[Any]], Mapping[str, Any] | None]] = {
            "repositories": (lambda: self.get_repositories(per_page=50), None),
            "commit_activity": (lambda: self.get_commit_activity(days), {"days": days}),
            "issues": (lambda: self.get_issues(state="opened", per_page=20), {"state": "opened"}),
            "merge_requests": (lambda: self.get_merge_requests(state="opened", per_page=20), {"state": "opened"}),
            "recent_activity": (lambda: self.get_activity(per_page=20), None),
        }

        results = await asyncio.gather(
            *[self._load_section(section, fetch, params, use_cached) for section, (fetch, params) in loaders.items()],
            return_exceptions=True,
        )

        dashboard: dict[str, Any] = {"user": self.current_user}
        sources: dict[str, str] = {}
        errors: list[dict[str, Any]] = []
        for section, result in zip(loaders, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                message = result.message if isinstance(result, GitLabError) else str(result)
                logger.warning(f"Dashboard section {section} failed: {message}")
                errors.append({"type": section, "error": message})
                dashboard[section] = DASHBOARD_DEFAULTS[section]
                continue

            loaded, failure = result
            if failure is not None:
                errors.append({"type": section, "error": failure.message})
            dashboard[section] = loaded.data
            sources[section] = loaded.source

        dashboard["sources"] = sources
        dashboard["errors"] = errors
        dashboard["generated_at"] = datetime.now(UTC).isoformat()
        return dashboard

    # ─────────────────────────────────────────────────────────────────────
    # Webhooks
    # ─────────────────────────────────────────────────────────────────────

    def _require_webhooks(self) -> WebhookRouter:
        if self.webhooks is None:
            raise GitLabConfigError("Webhooks are not enabled in configuration")
        return self.webhooks

    async def setup_webhook(
        self,
        project_id: ProjectId,
        url: str,
        events: Collection[str] = (),
        **options: Any,
    ) -> dict[str, Any]:
        """Create a project hook on GitLab pointing at ``url``."""
        router = self._require_webhooks()
        return await self._call(
            lambda: router.create_webhook(self._require_client(), project_id, url, events, **options)
        )

    async def handle_webhook(
        self,
        raw_payload: str | bytes | Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> WebhookResult:
        return await self._require_webhooks().handle_webhook(raw_payload, headers)

    # ─────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────

    def clear_cache(self, pattern: str | None = None) -> int:
        """Remove cached responses matching ``pattern`` (all when None)."""
        if self.cache is None:
            return 0
        return self.cache.clear(pattern)

    def get_cache_stats(self) -> dict[str, Any] | None:
        if self.cache is None:
            return None
        stats = self.cache.get_stats()
        if self.user_cache is not None and self.user_id is not None:
            stats["user"] = self.user_cache.user_stats(self.user_id)
        return stats

    def get_rate_limit_status(self) -> dict[str, Any] | None:
        if self.limiter is None:
            return None
        return self.limiter.status()

    def get_status(self) -> dict[str, Any]:
        return {
            "is_initialized": self.is_initialized,
            "has_token": self.credential is not None,
            "current_user": self.current_user,
            "config": {
                "gitlab_url": self.config.gitlab_url,
                "api_version": self.config.api_version,
                "enable_cache": self.cache is not None,
                "enable_rate_limit": self.limiter is not None,
                "enable_webhooks": self.webhooks is not None,
                "oauth_enabled": self.oauth is not None,
            },
            "cache": self.get_cache_stats(),
            "rate_limit": self.get_rate_limit_status(),
        }

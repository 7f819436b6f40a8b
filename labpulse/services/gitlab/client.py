"""
Typed GitLab REST operations.

Every call runs the same pipeline: rate limit admission, cache lookup (GET
only), execution with retries, cache store on success. Retries re-enter
admission so a retried call is counted like a fresh one.
"""

import asyncio
import base64
import binascii
import hashlib
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx

from labpulse.config.settings import RetryPolicy
from labpulse.services.gitlab.cache import KEY_PREFIX, ResponseCache, request_key
from labpulse.services.gitlab.constants import (
    CACHE_TTL,
    DEFAULT_API_VERSION,
    DEFAULT_GITLAB_URL,
    DEFAULT_PER_PAGE,
    MAX_PAGES,
    MAX_PER_PAGE,
)
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabConfigError,
    GitLabError,
    GitLabNetworkError,
)
from labpulse.services.gitlab.executor import HttpRequestExecutor, SleepFn
from labpulse.services.gitlab.helpers import encode_project_id, to_iso
from labpulse.services.gitlab.rate_limiter import TokenBucketLimiter

logger = logging.getLogger(__name__)

ProjectId = int | str


def _per_page(value: int) -> int:
    return max(1, min(value, MAX_PER_PAGE))


class GitLabClient:
    """
    GitLab API client bound to one access token.

    Cache and limiter are optional and normally shared with the owning
    GitLabIntegration. Cache keys are namespaced by a fingerprint of the
    token so clients for different users never read each other's entries.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        access_token: str,
        *,
        gitlab_url: str = DEFAULT_GITLAB_URL,
        api_version: str = DEFAULT_API_VERSION,
        cache: ResponseCache | None = None,
        limiter: TokenBucketLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if not access_token:
            raise GitLabConfigError("An access token is required", ErrorCode.MISSING_CREDENTIALS)
        if not gitlab_url.startswith(("http://", "https://")):
            raise GitLabConfigError(f"Invalid GitLab URL: {gitlab_url!r}")

        self.gitlab_url = gitlab_url.rstrip("/")
        self.api_version = api_version
        self.base_url = f"{self.gitlab_url}/api/{api_version}"
        self.cache = cache
        self.limiter = limiter
        self._namespace = hashlib.sha256(access_token.encode()).hexdigest()[:12]
        self._executor = HttpRequestExecutor(
            http,
            self.base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            retry_policy=retry_policy,
            on_response=limiter.update_from_headers if limiter else None,
            sleep=sleep,
        )
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    # ─────────────────────────────────────────────────────────────────────
    # Request pipeline
    # ─────────────────────────────────────────────────────────────────────

    def cache_key(self, method: str, endpoint: str, params: Mapping[str, Any] | None = None) -> str:
        return request_key(method, endpoint, params, scope=f"{KEY_PREFIX}:{self._namespace}")

    async def _admit(self, priority: int, endpoint: str) -> None:
        if self.limiter is not None:
            await self.limiter.admit(priority, endpoint)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        ttl: float | None = None,
        priority: int = 0,
        use_cache: bool = True,
        supersede: bool = False,
    ) -> Any:
        """
        Perform one API call through limiter, cache and executor.

        Args:
            method: HTTP verb; only GET responses are cached
            endpoint: Path under the API base, e.g. "/projects/42"
            params: Query parameters; None values are dropped
            json: Request body for POST/PUT
            ttl: Cache TTL override for this call
            priority: Limiter queue priority (higher first)
            use_cache: Set False to bypass the cache for a GET
            supersede: Cancel any still-running call for the same resource;
                the cancelled caller receives REQUEST_SUPERSEDED

        Raises:
            GitLabError: Typed failure after retries are exhausted
        """
        method = method.upper()
        cacheable = method == "GET" and use_cache and self.cache is not None
        key = self.cache_key(method, endpoint, params)

        await self._admit(priority, endpoint)

        if cacheable:
            cached = self.cache.get(key)  # type: ignore[union-attr]
            if cached is not None:
                return cached

        if supersede:
            previous = self._inflight.get(key)
            if previous is not None and not previous.done():
                logger.debug(f"Superseding in-flight {method} {endpoint}")
                previous.cancel()

        task = asyncio.ensure_future(
            self._executor.execute(
                method,
                endpoint,
                params=params,
                json=json,
                before_retry=lambda: self._admit(priority, endpoint),
            )
        )
        self._inflight[key] = task
        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                raise GitLabNetworkError(
                    f"{method} {endpoint} was superseded by a newer request",
                    ErrorCode.REQUEST_SUPERSEDED,
                ) from None
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

        if cacheable:
            self.cache.set(key, result, ttl)  # type: ignore[union-attr]
        return result

    async def get(self, endpoint: str, params: Mapping[str, Any] | None = None, **kwargs: Any) -> Any:
        return await self.request("GET", endpoint, params=params, **kwargs)

    async def post(self, endpoint: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", endpoint, json=body or {}, **kwargs)

    async def put(self, endpoint: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", endpoint, json=body or {}, **kwargs)

    async def delete(self, endpoint: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", endpoint, **kwargs)

    async def _get_all_pages(
        self,
        endpoint: str,
        params: Mapping[str, Any],
        *,
        per_page: int = MAX_PER_PAGE,
        max_pages: int = MAX_PAGES,
        ttl: float | None = None,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        per_page = _per_page(per_page)
        for page in range(1, max_pages + 1):
            batch = await self.get(endpoint, {**params, "per_page": per_page, "page": page}, ttl=ttl)
            if not batch:
                break
            items.extend(batch)
            if len(batch) < per_page:
                break
        else:
            logger.warning(f"Stopped paging {endpoint} after {max_pages} pages")
        return items

    # ─────────────────────────────────────────────────────────────────────
    # Users
    # ─────────────────────────────────────────────────────────────────────

    async def get_current_user(self, **kwargs: Any) -> dict[str, Any]:
        return await self.get("/user", ttl=CACHE_TTL["user"], **kwargs)

    async def get_user_issues(
        self,
        *,
        state: str = "opened",
        scope: str = "assigned_to_me",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
        **params: Any,
    ) -> list[dict[str, Any]]:
        return await self.get(
            "/issues",
            {"state": state, "scope": scope, "per_page": _per_page(per_page), "page": page, **params},
            ttl=CACHE_TTL["issues"],
        )

    async def get_user_merge_requests(
        self,
        *,
        state: str = "opened",
        scope: str = "assigned_to_me",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
        **params: Any,
    ) -> list[dict[str, Any]]:
        return await self.get(
            "/merge_requests",
            {"state": state, "scope": scope, "per_page": _per_page(per_page), "page": page, **params},
            ttl=CACHE_TTL["merge_requests"],
        )

    async def get_user_events(
        self,
        *,
        user_id: int | None = None,
        after: datetime | str | None = None,
        before: datetime | str | None = None,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
        **params: Any,
    ) -> list[dict[str, Any]]:
        """Recent activity events of the current user (or ``user_id``)."""
        endpoint = f"/users/{user_id}/events" if user_id is not None else "/events"
        return await self.get(
            endpoint,
            {
                "after": _date_param(after),
                "before": _date_param(before),
                "per_page": _per_page(per_page),
                "page": page,
                **params,
            },
        )

    # ─────────────────────────────────────────────────────────────────────
    # Projects
    # ─────────────────────────────────────────────────────────────────────

    async def get_user_projects(
        self,
        *,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
        order_by: str = "last_activity_at",
        sort: str = "desc",
        membership: bool = True,
        **params: Any,
    ) -> list[dict[str, Any]]:
        return await self.get(
            "/projects",
            {
                "membership": membership,
                "per_page": _per_page(per_page),
                "page": page,
                "order_by": order_by,
                "sort": sort,
                **params,
            },
            ttl=CACHE_TTL["projects"],
        )

    async def get_all_user_projects(self, *, max_pages: int = MAX_PAGES, **params: Any) -> list[dict[str, Any]]:
        """Every project the user is a member of, walking all pages."""
        query = {"membership": True, "order_by": "last_activity_at", "sort": "desc", **params}
        return await self._get_all_pages("/projects", query, max_pages=max_pages, ttl=CACHE_TTL["projects"])

    async def get_project(self, project_id: ProjectId, **kwargs: Any) -> dict[str, Any]:
        return await self.get(f"/projects/{encode_project_id(project_id)}", ttl=CACHE_TTL["projects"], **kwargs)

    async def get_project_commits(
        self,
        project_id: ProjectId,
        *,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        author: str | None = None,
        ref_name: str | None = None,
        with_stats: bool = False,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/repository/commits",
            {
                "since": to_iso(since),
                "until": to_iso(until),
                "author": author,
                "ref_name": ref_name,
                "with_stats": with_stats or None,
                "per_page": _per_page(per_page),
                "page": page,
            },
            ttl=CACHE_TTL["commits"],
        )

    async def get_all_project_commits(
        self,
        project_id: ProjectId,
        *,
        since: datetime | str | None = None,
        until: datetime | str | None = None,
        author: str | None = None,
        ref_name: str | None = None,
        with_stats: bool = False,
        max_pages: int = 10,
    ) -> list[dict[str, Any]]:
        return await self._get_all_pages(
            f"/projects/{encode_project_id(project_id)}/repository/commits",
            {
                "since": to_iso(since),
                "until": to_iso(until),
                "author": author,
                "ref_name": ref_name,
                "with_stats": with_stats or None,
            },
            max_pages=max_pages,
            ttl=CACHE_TTL["commits"],
        )

    async def get_project_languages(self, project_id: ProjectId) -> dict[str, float]:
        """Language name -> percentage of the repository."""
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/languages",
            ttl=CACHE_TTL["repository"],
        )

    async def get_project_issues(
        self,
        project_id: ProjectId,
        *,
        state: str | None = None,
        created_after: datetime | str | None = None,
        per_page: int = MAX_PER_PAGE,
        page: int = 1,
        **params: Any,
    ) -> list[dict[str, Any]]:
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/issues",
            {
                "state": state,
                "created_after": to_iso(created_after),
                "per_page": _per_page(per_page),
                "page": page,
                **params,
            },
            ttl=CACHE_TTL["issues"],
        )

    async def get_project_merge_requests(
        self,
        project_id: ProjectId,
        *,
        state: str | None = None,
        created_after: datetime | str | None = None,
        per_page: int = MAX_PER_PAGE,
        page: int = 1,
        **params: Any,
    ) -> list[dict[str, Any]]:
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/merge_requests",
            {
                "state": state,
                "created_after": to_iso(created_after),
                "per_page": _per_page(per_page),
                "page": page,
                **params,
            },
            ttl=CACHE_TTL["merge_requests"],
        )

    async def get_project_members(
        self,
        project_id: ProjectId,
        *,
        include_inherited: bool = False,
        per_page: int = MAX_PER_PAGE,
    ) -> list[dict[str, Any]]:
        suffix = "members/all" if include_inherited else "members"
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/{suffix}",
            {"per_page": _per_page(per_page)},
            ttl=CACHE_TTL["projects"],
        )

    # ─────────────────────────────────────────────────────────────────────
    # Repository
    # ─────────────────────────────────────────────────────────────────────

    async def get_repository_file(
        self,
        project_id: ProjectId,
        file_path: str,
        ref: str = "HEAD",
    ) -> dict[str, Any]:
        """
        Fetch one file. Base64 content is decoded into ``decoded_content``
        (None for binary files).
        """
        data = await self.get(
            f"/projects/{encode_project_id(project_id)}/repository/files/{encode_project_id(file_path)}",
            {"ref": ref},
            ttl=CACHE_TTL["repository"],
        )
        if isinstance(data, dict) and data.get("encoding") == "base64" and "content" in data:
            try:
                data = {**data, "decoded_content": base64.b64decode(data["content"]).decode("utf-8")}
            except (binascii.Error, UnicodeDecodeError):
                data = {**data, "decoded_content": None}
        return data

    async def get_repository_tree(
        self,
        project_id: ProjectId,
        *,
        path: str | None = None,
        ref: str | None = None,
        recursive: bool = False,
        per_page: int = MAX_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        return await self.get(
            f"/projects/{encode_project_id(project_id)}/repository/tree",
            {
                "path": path,
                "ref": ref,
                "recursive": recursive,
                "per_page": _per_page(per_page),
                "page": page,
            },
            ttl=CACHE_TTL["repository"],
        )

    # ─────────────────────────────────────────────────────────────────────
    # Search
    # ─────────────────────────────────────────────────────────────────────

    async def search_projects(
        self,
        query: str,
        *,
        membership: bool | None = None,
        owned: bool | None = None,
        starred: bool | None = None,
        order_by: str = "last_activity_at",
        sort: str = "desc",
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        return await self.get(
            "/projects",
            {
                "search": query,
                "membership": membership,
                "owned": owned,
                "starred": starred,
                "order_by": order_by,
                "sort": sort,
                "per_page": _per_page(per_page),
                "page": page,
            },
            ttl=CACHE_TTL["projects"],
        )

    async def search_code(
        self,
        query: str,
        *,
        project_id: ProjectId | None = None,
        ref: str | None = None,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
    ) -> list[dict[str, Any]]:
        """Search code blobs, instance-wide or within one project."""
        endpoint = "/search" if project_id is None else f"/projects/{encode_project_id(project_id)}/search"
        return await self.get(
            endpoint,
            {
                "scope": "blobs",
                "search": query,
                "ref": ref,
                "per_page": _per_page(per_page),
                "page": page,
            },
        )

    # ─────────────────────────────────────────────────────────────────────
    # Project hooks
    # ─────────────────────────────────────────────────────────────────────

    def _hooks_endpoint(self, project_id: ProjectId) -> str:
        return f"/projects/{encode_project_id(project_id)}/hooks"

    def _invalidate_hooks(self, project_id: ProjectId) -> None:
        if self.cache is not None:
            self.cache.clear(self.cache_key("GET", self._hooks_endpoint(project_id)) + "*")

    async def list_project_hooks(self, project_id: ProjectId) -> list[dict[str, Any]]:
        return await self.get(self._hooks_endpoint(project_id))

    async def get_project_hook(self, project_id: ProjectId, hook_id: int) -> dict[str, Any]:
        return await self.get(f"{self._hooks_endpoint(project_id)}/{hook_id}")

    async def create_project_hook(self, project_id: ProjectId, hook: Mapping[str, Any]) -> dict[str, Any]:
        result = await self.post(self._hooks_endpoint(project_id), dict(hook))
        self._invalidate_hooks(project_id)
        return result

    async def update_project_hook(
        self,
        project_id: ProjectId,
        hook_id: int,
        hook: Mapping[str, Any],
    ) -> dict[str, Any]:
        result = await self.put(f"{self._hooks_endpoint(project_id)}/{hook_id}", dict(hook))
        self._invalidate_hooks(project_id)
        return result

    async def delete_project_hook(self, project_id: ProjectId, hook_id: int) -> None:
        await self.delete(f"{self._hooks_endpoint(project_id)}/{hook_id}")
        self._invalidate_hooks(project_id)

    # ─────────────────────────────────────────────────────────────────────
    # Diagnostics
    # ─────────────────────────────────────────────────────────────────────

    async def test_connection(self) -> dict[str, Any]:
        """Check the token against the current-user endpoint. Never raises."""
        tested_at = datetime.now(UTC).isoformat()
        gitlab = {"url": self.gitlab_url, "api_version": self.api_version}
        try:
            user = await self.get_current_user(use_cache=False)
        except GitLabError as e:
            logger.info(f"GitLab connection test failed: {e.message}")
            return {
                "success": False,
                "error": e.message,
                "code": e.code.value,
                "gitlab": gitlab,
                "connection": {"tested_at": tested_at},
            }
        except Exception as e:
            logger.exception("Unexpected error while testing GitLab connection")
            return {
                "success": False,
                "error": str(e),
                "code": ErrorCode.API_ERROR.value,
                "gitlab": gitlab,
                "connection": {"tested_at": tested_at},
            }

        return {
            "success": True,
            "user": {
                "id": user.get("id"),
                "username": user.get("username"),
                "name": user.get("name"),
                "email": user.get("email"),
            },
            "gitlab": gitlab,
            "connection": {"tested_at": tested_at},
        }


def _date_param(value: datetime | str | None) -> str | None:
    """Events endpoints take plain dates."""
    if value is None or isinstance(value, str):
        return value
    return value.date().isoformat()

"""
Per-user caching of dashboard data.

Sits on top of ResponseCache with keys of the form
``{user_id}:{data_type}[:k=v&...]`` so hit/miss counters are tracked per
user. Results carry a fresh/cached indicator and the age of the cached copy,
which the integration facade uses to serve stale data when GitLab fails.
"""

import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from labpulse.services.gitlab.cache import ResponseCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

# TTLs in seconds per dashboard data type
USER_DATA_TTL: dict[str, int] = {
    "user_profile": 900,
    "commits": 300,
    "analytics": 600,
    "repositories": 1800,
    "merge_requests": 180,
    "issues": 180,
    "activity": 120,
    "insights": 900,
    "connection_status": 60,
}

DEFAULT_USER_DATA_TTL = 300


@dataclass
class CachedResult:
    data: Any
    from_cache: bool
    cached_at: float
    age: float

    @property
    def source(self) -> str:
        return "cached" if self.from_cache else "fresh"


def user_data_key(user_id: str, data_type: str, params: Mapping[str, Any] | None = None) -> str:
    key = f"{user_id}:{data_type}"
    if params:
        encoded = "&".join(f"{k}={v}" for k, v in sorted(params.items()) if v is not None)
        if encoded:
            key = f"{key}:{encoded}"
    return key


class UserCacheService:
    """Caches dashboard payloads per user and data type."""

    def __init__(
        self,
        cache: ResponseCache,
        *,
        ttls: Mapping[str, int] | None = None,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.ttls = {**USER_DATA_TTL, **(ttls or {})}
        self._wall_clock = wall_clock

    def ttl_for(self, data_type: str) -> int:
        return self.ttls.get(data_type, DEFAULT_USER_DATA_TTL)

    def get(
        self,
        user_id: str,
        data_type: str,
        params: Mapping[str, Any] | None = None,
    ) -> CachedResult | None:
        stored = self.cache.get(user_data_key(user_id, data_type, params))
        if stored is None:
            return None
        cached_at = stored["cached_at"]
        return CachedResult(
            data=stored["data"],
            from_cache=True,
            cached_at=cached_at,
            age=max(0.0, self._wall_clock() - cached_at),
        )

    def set(
        self,
        user_id: str,
        data_type: str,
        data: Any,
        params: Mapping[str, Any] | None = None,
        ttl: float | None = None,
    ) -> bool:
        return self.cache.set(
            user_data_key(user_id, data_type, params),
            {"data": data, "cached_at": self._wall_clock()},
            ttl if ttl is not None else self.ttl_for(data_type),
        )

    async def get_or_fetch(
        self,
        user_id: str,
        data_type: str,
        fetch: Callable[[], Awaitable[T]],
        params: Mapping[str, Any] | None = None,
        *,
        force_refresh: bool = False,
    ) -> CachedResult:
        """Return the cached copy, or fetch, store and return fresh data."""
        if not force_refresh:
            cached = self.get(user_id, data_type, params)
            if cached is not None:
                return cached

        data = await fetch()
        self.set(user_id, data_type, data, params)
        now = self._wall_clock()
        return CachedResult(data=data, from_cache=False, cached_at=now, age=0.0)

    def invalidate_user(self, user_id: str) -> int:
        count = self.cache.clear(f"{user_id}:*")
        logger.info(f"Invalidated {count} cache entries for user {user_id}")
        return count

    def invalidate_data_type(self, user_id: str, data_type: str) -> int:
        count = self.cache.clear(f"{user_id}:{data_type}")
        count += self.cache.clear(f"{user_id}:{data_type}:*")
        return count

    def user_stats(self, user_id: str) -> dict[str, Any]:
        return self.cache.get_prefix_stats(user_id)

    def cleanup_user_stats(self, user_id: str) -> None:
        self.cache.reset_prefix_stats(user_id)

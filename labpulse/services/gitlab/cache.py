"""
TTL caching for GitLab API responses.

Entries are stored pickled in a ``cachetools.Cache`` whose eviction order is
insertion order, so a full cache drops the entry created longest ago. Expiry
is checked lazily on every read and swept periodically by an optional
background task. All operations are synchronous.

Keys are built by the typed builders below; the segment before the first
``:`` is the key prefix used for per-prefix statistics (the user cache service
puts the user id there).
"""

import asyncio
import logging
import pickle
import re
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cachetools import Cache  # type: ignore[import-untyped]

from labpulse.config.settings import CacheConfig

logger = logging.getLogger(__name__)

KEY_PREFIX = "gitlab"


@dataclass
class CacheEntry:
    key: str
    serialized_value: bytes
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class InsertionOrderCache(Cache):  # type: ignore[misc]
    """cachetools Cache that evicts the oldest inserted key first."""

    def __init__(self, maxsize: int) -> None:
        super().__init__(maxsize)
        self._order: OrderedDict[str, None] = OrderedDict()

    def __setitem__(self, key: str, value: CacheEntry) -> None:
        super().__setitem__(key, value)
        self._order[key] = None
        self._order.move_to_end(key)

    def __delitem__(self, key: str) -> None:
        super().__delitem__(key)
        self._order.pop(key, None)

    def popitem(self) -> tuple[str, CacheEntry]:
        try:
            key = next(iter(self._order))
        except StopIteration:
            raise KeyError(f"{type(self).__name__} is empty") from None
        return (key, self.pop(key))


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> str:
        lookups = self.hits + self.misses
        rate = (self.hits / lookups * 100) if lookups else 0.0
        return f"{rate:.2f}%"

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "evictions": self.evictions,
            "hit_rate": self.hit_rate,
        }


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a ``*`` wildcard pattern into an anchored regex."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


class ResponseCache:
    """In-memory TTL cache for idempotent GitLab responses."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._timer = timer
        self._store = InsertionOrderCache(maxsize=self.config.max_size)
        self.stats = CacheStats()
        self._prefix_stats: dict[str, CacheStats] = {}
        self._sweeper: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._store)

    def _stats_for(self, key: str) -> CacheStats:
        prefix = key.split(":", 1)[0]
        stats = self._prefix_stats.get(prefix)
        if stats is None:
            stats = self._prefix_stats[prefix] = CacheStats()
        return stats

    def _count(self, key: str, field: str) -> None:
        setattr(self.stats, field, getattr(self.stats, field) + 1)
        prefix_stats = self._stats_for(key)
        setattr(prefix_stats, field, getattr(prefix_stats, field) + 1)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when absent or expired."""
        entry: CacheEntry | None = self._store.get(key)
        if entry is None:
            self._count(key, "misses")
            return None

        if entry.is_expired(self._timer()):
            del self._store[key]
            self._count(key, "misses")
            logger.debug(f"Cache EXPIRED: {key}")
            return None

        try:
            value = pickle.loads(entry.serialized_value)
        except (pickle.UnpicklingError, EOFError, AttributeError, TypeError) as e:
            logger.warning(f"Dropping unreadable cache entry {key}: {e}")
            del self._store[key]
            self._count(key, "errors")
            return None

        self._count(key, "hits")
        logger.debug(f"Cache HIT: {key}")
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """Store a value. Returns False if it cannot be serialized."""
        try:
            serialized = pickle.dumps(value)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            logger.warning(f"Cannot cache value for {key}: {e}")
            self._count(key, "errors")
            return False

        now = self._timer()
        effective_ttl = self.config.ttl if ttl is None else ttl
        # Re-inserting moves the key to the back of the eviction order.
        self._store.pop(key, None)
        if len(self._store) >= self._store.maxsize:
            evicted, _ = self._store.popitem()
            self.stats.evictions += 1
            logger.debug(f"Cache EVICT: {evicted}")
        self._store[key] = CacheEntry(
            key=key,
            serialized_value=serialized,
            created_at=now,
            expires_at=now + effective_ttl,
        )
        self._count(key, "sets")
        return True

    def has(self, key: str) -> bool:
        """Check for a live entry without touching hit/miss counters."""
        entry: CacheEntry | None = self._store.get(key)
        if entry is None:
            return False
        if entry.is_expired(self._timer()):
            del self._store[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        if key not in self._store:
            return False
        del self._store[key]
        self._count(key, "deletes")
        return True

    def keys(self, pattern: str | None = None) -> list[str]:
        if pattern is None:
            return list(self._store.keys())
        regex = _pattern_to_regex(pattern)
        return [key for key in self._store.keys() if regex.match(key)]

    def clear(self, pattern: str | None = None) -> int:
        """Remove every entry, or those whose key matches a ``*`` pattern."""
        if pattern is None:
            count = len(self._store)
            self._store.clear()
            logger.debug(f"Cache cleared ({count} entries)")
            return count

        matched = self.keys(pattern)
        for key in matched:
            del self._store[key]
            self._count(key, "deletes")
        logger.debug(f"Cache cleared {len(matched)} entries matching {pattern!r}")
        return len(matched)

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        now = self._timer()
        expired = [key for key, entry in self._store.items() if entry.is_expired(now)]
        for key in expired:
            del self._store[key]
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats.to_dict(),
            "size": len(self._store),
            "max_size": self._store.maxsize,
            "default_ttl": self.config.ttl,
        }

    def get_prefix_stats(self, prefix: str) -> dict[str, Any]:
        stats = self._prefix_stats.get(prefix, CacheStats())
        return {**stats.to_dict(), "size": len(self.keys(f"{prefix}:*"))}

    def reset_prefix_stats(self, prefix: str) -> None:
        self._prefix_stats.pop(prefix, None)

    def start(self) -> None:
        """Start the periodic sweeper. Requires a running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._run_sweeper())

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.sweep()

    async def close(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and not sweeper.done():
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        self._store.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Key builders
# ─────────────────────────────────────────────────────────────────────────────


def _render(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _encode_params(params: Mapping[str, Any] | None) -> str:
    if not params:
        return ""
    return "&".join(
        f"{key}={_render(value)}" for key, value in sorted(params.items()) if value is not None
    )


def request_key(
    method: str,
    endpoint: str,
    params: Mapping[str, Any] | None = None,
    *,
    scope: str = KEY_PREFIX,
) -> str:
    """Key for a raw REST call: method, endpoint and sorted query params."""
    key = f"{scope}:{method.upper()}:{endpoint}"
    encoded = _encode_params(params)
    return f"{key}?{encoded}" if encoded else key


def user_key(user_id: int | str) -> str:
    return f"{KEY_PREFIX}:user:{user_id}"


def projects_key(user_id: int | str, params: Mapping[str, Any] | None = None) -> str:
    encoded = _encode_params(params)
    return f"{KEY_PREFIX}:projects:{user_id}" + (f"?{encoded}" if encoded else "")


def commits_key(project_id: int | str, since: datetime | str | None = None) -> str:
    return f"{KEY_PREFIX}:commits:{project_id}:{_render(since) if since else 'all'}"


def issues_key(project_id: int | str, state: str = "all") -> str:
    return f"{KEY_PREFIX}:issues:{project_id}:{state}"


def merge_requests_key(project_id: int | str, state: str = "all") -> str:
    return f"{KEY_PREFIX}:merge_requests:{project_id}:{state}"


def repository_key(project_id: int | str, path: str, ref: str = "HEAD") -> str:
    return f"{KEY_PREFIX}:repository:{project_id}:{ref}:{path}"

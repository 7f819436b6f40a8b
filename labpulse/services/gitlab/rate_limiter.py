"""Token bucket admission control for outbound GitLab calls.

Tokens refill lazily from elapsed clock time on every check. When the bucket
is empty, callers either wait in a priority queue drained by a background
ticker or are rejected with a retry-after estimate. GitLab's rate limit
response headers can shrink the bucket, change the refill rate or impose a
cooldown.

All state changes happen in synchronous code, so interleaved coroutines on
the event loop never observe a half-applied update.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from labpulse.config.settings import RateLimitConfig
from labpulse.services.gitlab.exceptions import ErrorCode, GitLabRateLimitError
from labpulse.services.gitlab.helpers import RateLimitInfo

logger = logging.getLogger(__name__)

# Never poll faster than this while waiters are queued
MIN_TICK_SECONDS = 0.005


@dataclass(order=True)
class QueuedRequest:
    """A caller waiting for a token. Ordered by priority (desc), then arrival."""

    sort_priority: int
    sequence: int
    enqueued_at: float = field(compare=False)
    future: asyncio.Future[None] = field(compare=False, repr=False)
    endpoint: str | None = field(compare=False, default=None)

    @property
    def priority(self) -> int:
        return -self.sort_priority


@dataclass
class LimiterStats:
    total_requests: int = 0
    rate_limited_requests: int = 0
    queued_requests: int = 0
    total_wait_time: float = 0.0
    completed_waits: int = 0
    last_rate_limit_time: float | None = None

    @property
    def average_wait_time(self) -> float:
        if not self.completed_waits:
            return 0.0
        return self.total_wait_time / self.completed_waits

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "rate_limited_requests": self.rate_limited_requests,
            "queued_requests": self.queued_requests,
            "average_wait_time": round(self.average_wait_time, 3),
            "last_rate_limit_time": self.last_rate_limit_time,
        }


class TokenBucketLimiter:
    """Token bucket rate limiter with a priority wait queue.

    Args:
        config: Bucket capacity, refill rate and queue settings
        timer: Monotonic clock used for refill and cooldown arithmetic
        wall_clock: Epoch clock used to interpret ``RateLimit-Reset`` headers
        sleep: Sleep used by the queue ticker
        on_rate_limited: Called with the retry-after delay whenever GitLab or
            the local bucket rejects a request
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        timer: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_rate_limited: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._timer = timer
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._on_rate_limited = on_rate_limited

        self.capacity = float(self.config.burst_limit)
        self.requests_per_minute = self.config.requests_per_minute
        self.refill_rate = self.requests_per_minute / 60.0

        self._tokens = self.capacity
        self._last_refill = timer()
        self._cooldown_until: float | None = None
        self._reset_at: float | None = None

        self._queue: list[QueuedRequest] = []
        self._sequence = itertools.count()
        self._ticker: asyncio.Task[None] | None = None
        self._closed = False
        self.stats = LimiterStats()

    # ─────────────────────────────────────────────────────────────────────
    # Bucket arithmetic
    # ─────────────────────────────────────────────────────────────────────

    def _refill(self, now: float) -> None:
        if self._reset_at is not None and now >= self._reset_at:
            self._tokens = self.capacity
            self._reset_at = None
        else:
            elapsed = max(0.0, now - self._last_refill)
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = max(self._last_refill, now)

    def _cooldown_remaining(self, now: float) -> float:
        if self._cooldown_until is None:
            return 0.0
        remaining = self._cooldown_until - now
        if remaining <= 0:
            self._cooldown_until = None
            return 0.0
        return remaining

    def _try_take(self, now: float) -> bool:
        self._refill(now)
        if self._cooldown_remaining(now) > 0:
            return False
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def _time_until_token(self, now: float) -> float:
        """Seconds until one token can be taken, including any cooldown."""
        self._refill(now)
        cooldown = self._cooldown_remaining(now)
        if self._tokens >= 1:
            return cooldown
        needed = (1 - self._tokens) / self.refill_rate if self.refill_rate > 0 else float("inf")
        if self._reset_at is not None:
            needed = min(needed, self._reset_at - now)
        return max(cooldown, needed)

    @property
    def tokens(self) -> float:
        """Tokens currently available, after lazy refill."""
        self._refill(self._timer())
        return self._tokens

    @property
    def queue_size(self) -> int:
        return sum(1 for waiter in self._queue if not waiter.future.done())

    # ─────────────────────────────────────────────────────────────────────
    # Admission
    # ─────────────────────────────────────────────────────────────────────

    async def admit(self, priority: int = 0, endpoint: str | None = None) -> None:
        """
        Wait until a token is granted.

        Raises:
            GitLabRateLimitError: When queuing is disabled and no token is
                available (RATE_LIMIT_EXCEEDED, with retry_after), when the
                queue is full (QUEUE_FULL) or when the limiter is closed.
        """
        if self._closed:
            raise GitLabRateLimitError("Rate limiter is closed", ErrorCode.LIMITER_CLOSED)

        self.stats.total_requests += 1
        now = self._timer()

        if not self._queue and self._try_take(now):
            return

        if not self.config.enable_queuing:
            retry_after = self._time_until_token(now)
            self._record_rate_limited(retry_after)
            raise GitLabRateLimitError(
                f"Rate limit exceeded, retry in {retry_after:.2f}s",
                retry_after=retry_after,
                details={"endpoint": endpoint},
            )

        if self.queue_size >= self.config.max_queue_size:
            self._record_rate_limited(self._time_until_token(now))
            raise GitLabRateLimitError(
                "Request queue is full",
                ErrorCode.QUEUE_FULL,
                details={"queue_size": self.queue_size, "endpoint": endpoint},
            )

        waiter = QueuedRequest(
            sort_priority=-priority,
            sequence=next(self._sequence),
            enqueued_at=now,
            endpoint=endpoint,
            future=asyncio.get_running_loop().create_future(),
        )
        heapq.heappush(self._queue, waiter)
        self.stats.queued_requests += 1
        logger.debug(f"Queued request for {endpoint or 'gitlab'} (priority={priority}, queue={len(self._queue)})")
        self._ensure_ticker()

        try:
            await waiter.future
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise

        self.stats.completed_waits += 1
        self.stats.total_wait_time += max(0.0, self._timer() - waiter.enqueued_at)

    def _abandon(self, waiter: QueuedRequest) -> None:
        """Drop a cancelled waiter, handing back its token if one was granted."""
        if waiter.future.done() and not waiter.future.cancelled() and waiter.future.exception() is None:
            self._tokens = min(self.capacity, self._tokens + 1)
        if waiter in self._queue:
            self._queue.remove(waiter)
            heapq.heapify(self._queue)

    def process_queue(self) -> int:
        """Grant tokens to queued callers, highest priority first. Returns the number admitted."""
        now = self._timer()
        admitted = 0
        while self._queue:
            head = self._queue[0]
            if head.future.done():
                heapq.heappop(self._queue)
                continue
            if not self._try_take(now):
                break
            heapq.heappop(self._queue)
            head.future.set_result(None)
            admitted += 1
        return admitted

    def _ensure_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.get_running_loop().create_task(self._run_ticker())

    async def _run_ticker(self) -> None:
        try:
            while self._queue and not self._closed:
                self.process_queue()
                if not self._queue:
                    break
                delay = self._time_until_token(self._timer())
                await self._sleep(min(max(delay, MIN_TICK_SECONDS), self.config.tick_interval))
        finally:
            self._ticker = None

    def _record_rate_limited(self, retry_after: float) -> None:
        self.stats.rate_limited_requests += 1
        self.stats.last_rate_limit_time = self._wall_clock()
        if self._on_rate_limited is not None:
            try:
                self._on_rate_limited(retry_after)
            except Exception:
                logger.exception("Rate limit callback failed")

    # ─────────────────────────────────────────────────────────────────────
    # Server feedback
    # ─────────────────────────────────────────────────────────────────────

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """
        Apply GitLab rate limit headers.

        - remaining: shrinks available tokens (never grows them)
        - limit: changes requests-per-minute and the refill rate
        - reset: refills the bucket completely at the reset instant
        - retry-after: blocks admission until the delay has passed

        Applying the same headers twice at the same instant changes nothing.
        """
        info = RateLimitInfo(headers)
        if info.is_empty:
            return

        now = self._timer()
        self._refill(now)

        if info.limit is not None and info.limit > 0 and info.limit != self.requests_per_minute:
            logger.info(f"GitLab rate limit changed: {self.requests_per_minute} -> {info.limit} rpm")
            self.requests_per_minute = info.limit
            self.refill_rate = info.limit / 60.0

        if info.remaining is not None:
            self._tokens = min(self._tokens, float(max(0, info.remaining)))

        if info.reset is not None:
            delta = info.reset - self._wall_clock()
            if delta > 0:
                self._reset_at = now + delta

        if info.retry_after is not None and info.retry_after > 0:
            until = now + info.retry_after
            if self._cooldown_until is None or until > self._cooldown_until:
                self._cooldown_until = until
                logger.warning(f"GitLab requested a {info.retry_after:.0f}s cooldown")
                self._record_rate_limited(info.retry_after)

        if self._queue and not self._closed:
            self._ensure_ticker()

    # ─────────────────────────────────────────────────────────────────────
    # Introspection and lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        now = self._timer()
        next_token_in = self._time_until_token(now)
        return {
            "remaining_tokens": int(self._tokens),
            "capacity": int(self.capacity),
            "requests_per_minute": self.requests_per_minute,
            "queue_size": self.queue_size,
            "is_rate_limited": self._tokens < 1 or self._cooldown_remaining(now) > 0,
            "next_token_in": round(next_token_in, 3),
            "cooldown_remaining": round(self._cooldown_remaining(now), 3),
            "stats": self.stats.to_dict(),
        }

    def reset(self) -> None:
        """Refill the bucket, clear cooldowns and statistics, then admit waiters."""
        self._tokens = self.capacity
        self._last_refill = self._timer()
        self._cooldown_until = None
        self._reset_at = None
        self.stats = LimiterStats()
        self.process_queue()

    async def close(self) -> None:
        """Stop the ticker and reject every queued caller."""
        self._closed = True
        ticker, self._ticker = self._ticker, None
        if ticker is not None and not ticker.done():
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass

        waiters, self._queue = self._queue, []
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(
                    GitLabRateLimitError("Rate limiter is closed", ErrorCode.LIMITER_CLOSED)
                )
        if waiters:
            logger.debug(f"Rejected {len(waiters)} queued requests on close")

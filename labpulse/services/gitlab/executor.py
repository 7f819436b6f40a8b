"""
Outbound request execution for the GitLab API.

``with_retry`` is the single retry combinator used by the executor and the
OAuth flow. ``HttpRequestExecutor`` performs one logical call: a timeout per
attempt, typed error classification, retries for transient failures and
JSON normalization of the response body.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from labpulse.config.settings import RetryPolicy
from labpulse.services.gitlab.exceptions import ErrorCode, GitLabError, GitLabNetworkError
from labpulse.services.gitlab.helpers import error_from_response, normalize_payload

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
HeadersHook = Callable[[httpx.Headers], None]


def is_retryable_error(exc: BaseException) -> bool:
    return isinstance(exc, GitLabError) and exc.is_retryable


class BackoffWait:
    """Exponential backoff with jitter, honouring a server-provided Retry-After."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number
        delay = self.policy.retry_delay * (2 ** (attempt - 1))
        if self.policy.jitter > 0:
            delay += random.uniform(0, self.policy.jitter)

        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = exc.retry_after if isinstance(exc, GitLabError) else None
        if retry_after is not None:
            delay = max(delay, retry_after)

        return min(delay, max(self.policy.max_delay, retry_after or 0.0))


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    before_retry: Callable[[], Awaitable[None]] | None = None,
    retry_on: Callable[[BaseException], bool] = is_retryable_error,
    sleep: SleepFn = asyncio.sleep,
    label: str = "request",
) -> T:
    """
    Run ``fn`` with retries for transient failures.

    Makes at most ``policy.retries + 1`` attempts. ``before_retry`` runs before
    every attempt after the first (the client uses it to re-enter rate limit
    admission). The last error is re-raised unchanged once attempts run out.
    """
    total = policy.retries + 1

    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Retrying {label} in {wait:.1f}s "
            f"(attempt {retry_state.attempt_number}/{total} failed: {exc})"
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(total),
        wait=BackoffWait(policy),
        retry=retry_if_exception(retry_on),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            if attempt.retry_state.attempt_number > 1 and before_retry is not None:
                await before_retry()
            return await fn()

    raise AssertionError("unreachable: tenacity exhausted without raising")


def parse_response(response: httpx.Response) -> Any:
    """
    Decode a successful response.

    JSON bodies are parsed and date fields normalized; other content types
    are returned as text. Empty bodies decode to None.
    """
    if response.status_code == 204 or not response.content:
        return None

    content_type = response.headers.get("content-type", "")
    if "json" not in content_type:
        return response.text

    try:
        data = response.json()
    except ValueError as e:
        raise GitLabError(
            "Invalid JSON in GitLab response",
            ErrorCode.INVALID_RESPONSE,
            status_code=response.status_code,
            response_body=response.text[:500],
        ) from e
    return normalize_payload(data)


class HttpRequestExecutor:
    """Executes GitLab REST calls against one API base URL."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        on_response: HeadersHook | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._on_response = on_response
        self._sleep = sleep

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Perform a single attempt. Raises a typed GitLabError on failure."""
        request_headers = {**self.headers, **(headers or {})}
        try:
            async with asyncio.timeout(self.timeout):
                response = await self._client.request(
                    method,
                    url,
                    params=_clean_params(params),
                    json=json,
                    data=data,
                    headers=request_headers,
                )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise GitLabNetworkError(
                f"Request timed out after {self.timeout}s: {method} {url}",
                ErrorCode.TIMEOUT,
            ) from e
        except httpx.TransportError as e:
            raise GitLabNetworkError(f"Network error calling GitLab: {e}") from e

        if self._on_response is not None:
            self._on_response(response.headers)

        if not response.is_success:
            error = error_from_response(response)
            logger.debug(f"{method} {url} failed: {error!r}")
            raise error

        return parse_response(response)

    async def execute(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        before_retry: Callable[[], Awaitable[None]] | None = None,
    ) -> Any:
        """Perform a call with retries for network errors, 429 and 5xx."""
        url = self.url_for(path)

        async def attempt() -> Any:
            return await self.send(method, url, params=params, json=json, data=data, headers=headers)

        return await with_retry(
            attempt,
            self.retry_policy,
            before_retry=before_retry,
            sleep=self._sleep,
            label=f"{method} {path}",
        )


def _clean_params(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop None values and render booleans the way GitLab expects."""
    if not params:
        return None
    cleaned: dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        cleaned[key] = str(value).lower() if isinstance(value, bool) else value
    return cleaned

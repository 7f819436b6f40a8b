"""Unit tests for request execution and retries.

Drives HttpRequestExecutor through httpx.MockTransport with an injected
sleep so no test waits on wall-clock time.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from labpulse.config.settings import RetryPolicy
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabAuthError,
    GitLabError,
    GitLabNetworkError,
    GitLabRateLimitError,
)
from labpulse.services.gitlab.executor import HttpRequestExecutor, parse_response, with_retry

BASE_URL = "https://gitlab.example.com/api/v4"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _executor(handler, *, retries: int = 3, sleep=None, on_response=None, timeout: float = 30.0):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    executor = HttpRequestExecutor(
        client,
        BASE_URL,
        headers={"Authorization": "Bearer glpat-test"},
        timeout=timeout,
        retry_policy=RetryPolicy(retries=retries, retry_delay=1.0, jitter=0.0),
        on_response=on_response,
        sleep=sleep or AsyncMock(),
    )
    return executor, client


def _counting(status_code: int, json_data: object = None, headers: dict[str, str] | None = None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code, json=json_data, headers=headers or {})

    return handler, calls


# ═══════════════════════════════════════════════════════════════════════════
# Retry ceiling
# ═══════════════════════════════════════════════════════════════════════════


class TestRetryCeiling:
    """A call makes at most retries + 1 attempts, and only for transient errors."""

    async def test_server_error_attempts_retries_plus_one(self):
        handler, calls = _counting(500, {"message": "500 Internal Server Error"})
        sleep = AsyncMock()
        executor, client = _executor(handler, retries=3, sleep=sleep)

        with pytest.raises(GitLabError) as exc_info:
            await executor.execute("GET", "/projects")

        assert len(calls) == 4
        assert exc_info.value.status_code == 500
        assert sleep.await_count == 3
        await client.aclose()

    async def test_unauthorized_is_not_retried(self):
        handler, calls = _counting(401, {"message": "401 Unauthorized"})
        executor, client = _executor(handler, retries=3)

        with pytest.raises(GitLabAuthError):
            await executor.execute("GET", "/user")

        assert len(calls) == 1
        await client.aclose()

    @pytest.mark.parametrize("status_code", [403, 404])
    async def test_client_errors_fail_immediately(self, status_code):
        handler, calls = _counting(status_code, {"message": "nope"})
        executor, client = _executor(handler, retries=3)

        with pytest.raises(GitLabError):
            await executor.execute("GET", "/projects/1")

        assert len(calls) == 1
        await client.aclose()

    async def test_rate_limited_waits_at_least_retry_after(self):
        handler, calls = _counting(429, {"message": "Retry later"}, {"Retry-After": "5"})
        sleep = AsyncMock()
        executor, client = _executor(handler, retries=1, sleep=sleep)

        with pytest.raises(GitLabRateLimitError):
            await executor.execute("GET", "/projects")

        assert len(calls) == 2
        waited = sleep.await_args.args[0]
        assert waited >= 5.0
        await client.aclose()

    async def test_recovers_after_transient_failure(self):
        responses = iter(
            [
                httpx.Response(503, json={"message": "Service Unavailable"}),
                httpx.Response(200, json=[{"id": 1}]),
            ]
        )
        executor, client = _executor(lambda request: next(responses), retries=3)

        result = await executor.execute("GET", "/projects")

        assert result == [{"id": 1}]
        await client.aclose()

    async def test_before_retry_runs_before_each_retry_only(self):
        handler, calls = _counting(500, {"message": "boom"})
        before_retry = AsyncMock()
        executor, client = _executor(handler, retries=2)

        with pytest.raises(GitLabError):
            await executor.execute("GET", "/projects", before_retry=before_retry)

        assert len(calls) == 3
        assert before_retry.await_count == 2
        await client.aclose()


class TestWithRetry:
    async def test_backoff_doubles(self):
        sleep = AsyncMock()
        fn = AsyncMock(side_effect=GitLabNetworkError("reset"))

        with pytest.raises(GitLabNetworkError):
            await with_retry(fn, RetryPolicy(retries=3, retry_delay=1.0, jitter=0.0), sleep=sleep)

        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 4.0]

    async def test_backoff_is_capped(self):
        sleep = AsyncMock()
        fn = AsyncMock(side_effect=GitLabNetworkError("reset"))
        policy = RetryPolicy(retries=4, retry_delay=10.0, max_delay=15.0, jitter=0.0)

        with pytest.raises(GitLabNetworkError):
            await with_retry(fn, policy, sleep=sleep)

        assert max(call.args[0] for call in sleep.await_args_list) == 15.0

    async def test_non_retryable_error_raises_unchanged(self):
        error = GitLabAuthError("bad token")
        fn = AsyncMock(side_effect=error)

        with pytest.raises(GitLabAuthError) as exc_info:
            await with_retry(fn, RetryPolicy(retries=3), sleep=AsyncMock())

        assert exc_info.value is error
        assert fn.await_count == 1


# ═══════════════════════════════════════════════════════════════════════════
# Transport failures
# ═══════════════════════════════════════════════════════════════════════════


class TestTransportFailures:
    async def test_timeout_maps_to_timeout_code(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        executor, client = _executor(handler, retries=0)

        with pytest.raises(GitLabNetworkError) as exc_info:
            await executor.execute("GET", "/projects")

        assert exc_info.value.code == ErrorCode.TIMEOUT
        await client.aclose()

    async def test_hanging_transport_is_cut_off(self):
        async def handler(request):
            await asyncio.Event().wait()

        executor, client = _executor(handler, retries=0, timeout=0.05)

        with pytest.raises(GitLabNetworkError) as exc_info:
            await asyncio.wait_for(executor.execute("GET", "/projects"), timeout=2)

        assert exc_info.value.code == ErrorCode.TIMEOUT
        await client.aclose()

    async def test_connect_error_maps_to_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        executor, client = _executor(handler, retries=0)

        with pytest.raises(GitLabNetworkError) as exc_info:
            await executor.execute("GET", "/projects")

        assert exc_info.value.code == ErrorCode.NETWORK_ERROR
        await client.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Request construction and response parsing
# ═══════════════════════════════════════════════════════════════════════════


class TestRequestConstruction:
    async def test_sends_auth_header_and_clean_params(self):
        handler, calls = _counting(200, [])
        executor, client = _executor(handler)

        await executor.execute("GET", "/projects", params={"membership": True, "search": None, "page": 2})

        request = calls[0]
        assert request.headers["Authorization"] == "Bearer glpat-test"
        assert str(request.url) == f"{BASE_URL}/projects?membership=true&page=2"
        await client.aclose()

    async def test_on_response_receives_headers(self):
        handler, _ = _counting(200, {}, {"RateLimit-Remaining": "10"})
        seen = []
        executor, client = _executor(handler, on_response=seen.append)

        await executor.execute("GET", "/user")

        assert seen[0]["ratelimit-remaining"] == "10"
        await client.aclose()

    async def test_on_response_called_for_errors_too(self):
        handler, _ = _counting(404, {"message": "404 Not Found"}, {"RateLimit-Remaining": "9"})
        seen = []
        executor, client = _executor(handler, on_response=seen.append)

        with pytest.raises(GitLabError):
            await executor.execute("GET", "/projects/404")

        assert len(seen) == 1
        await client.aclose()


class TestParseResponse:
    def test_no_content(self):
        assert parse_response(httpx.Response(204)) is None

    def test_text_passthrough(self):
        assert parse_response(httpx.Response(200, text="raw file")) == "raw file"

    def test_invalid_json(self):
        response = httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})
        with pytest.raises(GitLabError) as exc_info:
            parse_response(response)
        assert exc_info.value.code == ErrorCode.INVALID_RESPONSE

    def test_normalizes_dates(self):
        data = parse_response(httpx.Response(200, json={"created_at": "2024-01-10T00:00:00Z"}))
        assert data["created_at"].year == 2024

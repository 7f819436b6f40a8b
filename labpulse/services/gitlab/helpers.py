"""
GitLab API helper utilities.

Provides rate limit header parsing, error response classification and
payload normalization shared by the executor, client and OAuth flow.
"""

import logging
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabAuthError,
    GitLabError,
    GitLabPermissionError,
    GitLabRateLimitError,
)

logger = logging.getLogger(__name__)


class RateLimitInfo:
    """Rate limit information from GitLab response headers.

    GitLab sends both ``RateLimit-*`` and legacy ``X-RateLimit-*`` variants;
    whichever is present wins.
    """

    def __init__(self, headers: httpx.Headers | dict[str, str]) -> None:
        headers = httpx.Headers(headers)
        self.remaining = _first_int(headers, "ratelimit-remaining", "x-ratelimit-remaining")
        self.limit = _first_int(headers, "ratelimit-limit", "x-ratelimit-limit")
        self.reset = _first_int(headers, "ratelimit-reset", "x-ratelimit-reset")
        self.retry_after = parse_retry_after(headers.get("retry-after"))

    @property
    def is_exhausted(self) -> bool:
        return self.remaining is not None and self.remaining == 0

    @property
    def is_empty(self) -> bool:
        return (
            self.remaining is None
            and self.limit is None
            and self.reset is None
            and self.retry_after is None
        )


def _first_int(headers: httpx.Headers, *names: str) -> int | None:
    for name in names:
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return int(float(raw))
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit header {name}={raw!r}")
    return None


def parse_retry_after(value: str | None) -> float | None:
    """
    Parse a Retry-After header into seconds.

    Accepts both delta-seconds and HTTP-date forms. Returns None when absent
    or unparseable.
    """
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    if isinstance(body, str) and body.strip():
        return body.strip()[:200]
    return default


def _read_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def error_from_response(response: httpx.Response) -> GitLabError:
    """
    Build the typed error for a non-2xx GitLab response.

    401 maps to an auth error (expired vs invalid is read from the body),
    403 to a permission error, 429 to a rate limit error carrying the
    Retry-After delay, anything else to an API error.
    """
    status = response.status_code
    body = _read_body(response)
    message = _error_message(body, f"GitLab API error: {status} {response.reason_phrase}")

    if status == 401:
        code = ErrorCode.TOKEN_EXPIRED if "expired" in message.lower() else ErrorCode.INVALID_TOKEN
        return GitLabAuthError(message, code, status_code=status, response_body=body)

    if status == 403:
        code = ErrorCode.INSUFFICIENT_SCOPE if "scope" in message.lower() else ErrorCode.ACCESS_DENIED
        return GitLabPermissionError(message, code, status_code=status, response_body=body)

    if status == 404:
        return GitLabError(
            _error_message(body, "Resource not found"),
            ErrorCode.NOT_FOUND,
            status_code=status,
            response_body=body,
        )

    if status == 429:
        info = RateLimitInfo(response.headers)
        retry_after = info.retry_after
        if retry_after is None and info.reset is not None:
            retry_after = max(0.0, info.reset - time.time())
        return GitLabRateLimitError(
            message,
            retry_after=retry_after,
            status_code=status,
            response_body=body,
        )

    return GitLabError(message, ErrorCode.API_ERROR, status_code=status, response_body=body)


def _is_date_key(key: str) -> bool:
    return "_at" in key or "_date" in key or key in ("created", "updated")


def _parse_datetime(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_payload(data: Any) -> Any:
    """
    Recursively convert GitLab date strings into timezone-aware datetimes.

    Only string values under keys that look like timestamps (``*_at``,
    ``*_date``, ``created``, ``updated``) are converted; values that fail to
    parse are left untouched.
    """
    if isinstance(data, list):
        return [normalize_payload(item) for item in data]
    if not isinstance(data, dict):
        return data

    normalized: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str) and _is_date_key(key):
            parsed = _parse_datetime(value)
            normalized[key] = parsed if parsed is not None else value
        elif isinstance(value, (dict, list)):
            normalized[key] = normalize_payload(value)
        else:
            normalized[key] = value
    return normalized


def encode_project_id(project_id: int | str) -> str:
    """Encode a numeric id or ``group/project`` path for use in a URL."""
    if isinstance(project_id, int):
        return str(project_id)
    project_id = project_id.strip()
    if project_id.isdigit():
        return project_id
    return quote(project_id, safe="")


def to_iso(value: datetime | str | None) -> str | None:
    """Render a datetime as an ISO-8601 UTC string for query parameters."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")

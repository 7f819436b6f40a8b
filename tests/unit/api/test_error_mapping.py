"""Unit tests for mapping GitLab errors onto HTTP statuses."""

from __future__ import annotations

import pytest

from labpulse.api.errors import status_for
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    GitLabAuthError,
    GitLabConfigError,
    GitLabError,
    GitLabNetworkError,
    GitLabPermissionError,
    GitLabRateLimitError,
    GitLabWebhookError,
)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (GitLabAuthError("401 Unauthorized", status_code=401), 401),
        (GitLabPermissionError("403 Forbidden", status_code=403), 403),
        (GitLabError("404 Project Not Found", ErrorCode.NOT_FOUND, status_code=404), 404),
        (GitLabRateLimitError("Rate limit exceeded", retry_after=3), 429),
        (GitLabNetworkError("Request timed out", ErrorCode.TIMEOUT), 504),
        (GitLabNetworkError("Connection refused"), 502),
        (GitLabError("500 Internal Server Error", status_code=500), 502),
        (GitLabConfigError("GitLab client not initialized", ErrorCode.NOT_INITIALIZED), 401),
        (GitLabConfigError("Invalid URL"), 500),
        (GitLabWebhookError("Invalid webhook token", ErrorCode.ACCESS_DENIED), 401),
        (GitLabWebhookError("Payload too large", ErrorCode.PAYLOAD_TOO_LARGE), 413),
        (GitLabWebhookError("Invalid JSON payload"), 400),
    ],
)
def test_status_for(exc, expected):
    assert status_for(exc) == expected


def test_webhook_management_failure_is_a_bad_gateway():
    exc = GitLabWebhookError("Failed to list webhooks: 403 Forbidden", ErrorCode.API_ERROR, status_code=403)
    assert status_for(exc) == 502

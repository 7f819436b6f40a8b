"""Root conftest: shared fixtures for all LabPulse tests.

Provides:
- Manual clocks for TTL, refill and cooldown tests
- Settings isolated from the developer's .env
- An in-memory GitLab served through httpx.MockTransport
"""

from __future__ import annotations

import pytest

from labpulse.config.settings import Settings
from tests.helpers.gitlab_fakes import FakeClock, FakeGitLab


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeClock:
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
def settings() -> Settings:
    """Settings with test values, ignoring any local .env file."""
    return Settings(
        _env_file=None,
        gitlab_url="https://gitlab.example.com",
        max_retries=2,
        retry_delay=0.01,
        enable_webhooks=True,
        webhook_secret_token="hook-secret",
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
        oauth_redirect_uri="https://labpulse.example.com/oauth/callback",
    )


@pytest.fixture
def fake_gitlab() -> FakeGitLab:
    return FakeGitLab()


@pytest.fixture
async def gitlab_http(fake_gitlab: FakeGitLab):
    """httpx client whose requests are answered by fake_gitlab."""
    client = fake_gitlab.client()
    yield client
    await client.aclose()

"""API test fixtures.

The application is served in-process through httpx.ASGITransport. The
lifespan does not run under ASGITransport, so the shared GitLab resources are
installed on app.state by the ``api_client`` fixture, wired to the
in-memory GitLab.
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from labpulse.core.resources import create_resources
from labpulse.main import app


@pytest.fixture
async def resources(settings, fake_gitlab):
    shared = create_resources(settings, transport=fake_gitlab.transport())
    yield shared
    await shared.close()


@pytest.fixture
async def api_client(resources):
    """Client for the app with GitLab resources installed."""
    previous = getattr(app.state, "gitlab", None)
    app.state.gitlab = resources
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.state.gitlab = previous

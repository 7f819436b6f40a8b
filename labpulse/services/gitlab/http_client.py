"""
HTTP client factory for GitLab API operations.

The integration facade owns one AsyncClient per instance and closes it on
shutdown; auth headers are passed per request, not stored on the client.
"""

import logging

import httpx

logger = logging.getLogger(__name__)


def create_gitlab_client(
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Create an HTTP client configured for GitLab API calls.

    Args:
        timeout: Overall read timeout in seconds
        transport: Optional transport override (tests pass an httpx.MockTransport)

    Returns:
        httpx.AsyncClient with connection pooling and HTTP/2 enabled
    """
    client = httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=5.0),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        http2=transport is None,
        transport=transport,
        headers={"Accept": "application/json", "User-Agent": "labpulse/0.1"},
    )
    logger.debug("Created GitLab HTTP client with connection pooling")
    return client


async def close_gitlab_client(client: httpx.AsyncClient | None) -> None:
    """Close a client created by create_gitlab_client, if still open."""
    if client is not None and not client.is_closed:
        await client.aclose()
        logger.debug("Closed GitLab HTTP client")

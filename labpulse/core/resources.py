"""
Process-wide GitLab resources shared by every request.

One HTTP connection pool, one response cache, one rate limiter and one
webhook router serve all connected accounts; per-request integrations are
built on top of them and never close them.
"""

import asyncio
import logging
from dataclasses import dataclass

import httpx

from labpulse.config.settings import Settings
from labpulse.services.gitlab.cache import ResponseCache
from labpulse.services.gitlab.http_client import close_gitlab_client, create_gitlab_client
from labpulse.services.gitlab.oauth import GitLabOAuth
from labpulse.services.gitlab.rate_limiter import TokenBucketLimiter
from labpulse.services.integration import GitLabIntegration
from labpulse.services.webhooks import WebhookRouter

logger = logging.getLogger(__name__)


@dataclass
class GitLabResources:
    settings: Settings
    http: httpx.AsyncClient
    cache: ResponseCache | None
    limiter: TokenBucketLimiter | None
    webhooks: WebhookRouter
    oauth: GitLabOAuth | None

    def integration(self) -> GitLabIntegration:
        """A facade for one request, sharing the pooled resources."""
        return GitLabIntegration(
            self.settings,
            http=self.http,
            cache=self.cache,
            limiter=self.limiter,
            webhooks=self.webhooks if self.settings.enable_webhooks else None,
        )

    async def close(self) -> None:
        if self.limiter is not None:
            await self.limiter.close()
        if self.cache is not None:
            await self.cache.close()
        self.webhooks.clear()
        await close_gitlab_client(self.http)
        logger.info("GitLab resources released")


def create_resources(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GitLabResources:
    """Build the shared resources. Starts the cache sweeper when a loop is running."""
    http = create_gitlab_client(settings.request_timeout, transport=transport)
    cache = ResponseCache(settings.cache_config()) if settings.enable_cache else None
    limiter = TokenBucketLimiter(settings.rate_limit_config()) if settings.enable_rate_limit else None
    oauth = None
    if settings.oauth_enabled:
        oauth = GitLabOAuth(settings.oauth_config(), http, retry_policy=settings.retry_policy())

    if cache is not None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; cache sweeper not started")
        else:
            cache.start()

    logger.info(
        f"GitLab resources ready for {settings.gitlab_url} "
        f"(cache={'on' if cache else 'off'}, rate_limit={'on' if limiter else 'off'}, "
        f"oauth={'on' if oauth else 'off'})"
    )
    return GitLabResources(
        settings=settings,
        http=http,
        cache=cache,
        limiter=limiter,
        webhooks=WebhookRouter(settings.webhook_config()),
        oauth=oauth,
    )

"""Configuration package."""

from labpulse.config.settings import (
    CacheConfig,
    OAuthConfig,
    RateLimitConfig,
    RetryPolicy,
    Settings,
    WebhookConfig,
    settings,
)

__all__ = [
    "CacheConfig",
    "OAuthConfig",
    "RateLimitConfig",
    "RetryPolicy",
    "Settings",
    "WebhookConfig",
    "settings",
]

"""
GitLab service package.

Usage: `from labpulse.services.gitlab import GitLabClient, ResponseCache`

Module structure:
- client.py: Typed REST operations (limiter -> cache -> executor)
- executor.py: Single-call execution with timeout, retries and error mapping
- rate_limiter.py: Token bucket admission control
- cache.py: TTL response cache and key builders
- user_cache.py: Per-user dashboard cache with fresh/cached indicator
- oauth.py: OAuth authorization code and refresh flow
- helpers.py: Rate limit headers, error classification, payload normalization
- http_client.py: httpx client factory
- types.py: Data types
- exceptions.py: Error taxonomy
- constants.py: API constants and defaults
"""

from labpulse.services.gitlab.cache import ResponseCache
from labpulse.services.gitlab.client import GitLabClient
from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    ErrorKind,
    GitLabAuthError,
    GitLabConfigError,
    GitLabError,
    GitLabNetworkError,
    GitLabPermissionError,
    GitLabRateLimitError,
    GitLabWebhookError,
)
from labpulse.services.gitlab.executor import HttpRequestExecutor, with_retry
from labpulse.services.gitlab.http_client import close_gitlab_client, create_gitlab_client
from labpulse.services.gitlab.oauth import GitLabOAuth, OAuthState
from labpulse.services.gitlab.rate_limiter import TokenBucketLimiter
from labpulse.services.gitlab.types import AccessCredential, AuthorizationRequest, CommitRecord, ProjectRef
from labpulse.services.gitlab.user_cache import CachedResult, UserCacheService

__all__ = [
    # Client and pipeline
    "GitLabClient",
    "HttpRequestExecutor",
    "with_retry",
    "TokenBucketLimiter",
    "ResponseCache",
    "UserCacheService",
    "CachedResult",
    # HTTP client lifecycle
    "create_gitlab_client",
    "close_gitlab_client",
    # OAuth
    "GitLabOAuth",
    "OAuthState",
    # Exceptions
    "ErrorCode",
    "ErrorKind",
    "GitLabError",
    "GitLabAuthError",
    "GitLabConfigError",
    "GitLabNetworkError",
    "GitLabPermissionError",
    "GitLabRateLimitError",
    "GitLabWebhookError",
    # Types
    "AccessCredential",
    "AuthorizationRequest",
    "CommitRecord",
    "ProjectRef",
]

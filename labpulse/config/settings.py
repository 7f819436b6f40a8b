from dataclasses import dataclass, field

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCOPES = ("read_api", "read_user", "read_repository")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for outbound calls."""

    retries: int = 3  # Extra attempts after the first
    retry_delay: float = 1.0  # Base delay in seconds, doubled per attempt
    max_delay: float = 60.0
    jitter: float = 1.0  # Upper bound of random jitter added to each wait


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket configuration."""

    requests_per_minute: int = 600
    burst_limit: int = 100
    enable_queuing: bool = True
    max_queue_size: int = 100
    tick_interval: float = 1.0


@dataclass(frozen=True)
class CacheConfig:
    """Response cache configuration."""

    ttl: float = 300
    max_size: int = 1000
    sweep_interval: float = 60


@dataclass(frozen=True)
class OAuthConfig:
    """OAuth application credentials and endpoints."""

    client_id: str
    client_secret: str
    redirect_uri: str
    gitlab_url: str = "https://code.swecha.org"
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    state_ttl: float = 600  # Seconds an issued state stays valid
    max_pending_states: int = 1000


@dataclass(frozen=True)
class WebhookConfig:
    """Inbound webhook verification settings."""

    secret_token: str | None = None
    verify_signature: bool = True
    enable_filtering: bool = True
    max_payload_size: int = 10 * 1024 * 1024
    allowed_events: tuple[str, ...] = field(default_factory=tuple)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # GitLab instance
    gitlab_url: str = "https://code.swecha.org"
    api_version: str = "v4"
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0

    # Feature switches
    enable_cache: bool = True
    enable_rate_limit: bool = True
    enable_webhooks: bool = False

    # Cache
    cache_ttl: float = 300
    cache_max_size: int = 1000
    cache_sweep_interval: float = 60

    # Rate limiting - GitLab.com defaults for authenticated API traffic
    rate_limit_requests_per_minute: int = 600
    rate_limit_burst: int = 100
    rate_limit_enable_queuing: bool = True
    rate_limit_max_queue_size: int = 100

    # OAuth application - empty client id = OAuth disabled (PAT only)
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_redirect_uri: str = ""
    oauth_scopes: str = " ".join(DEFAULT_SCOPES)

    # Webhooks - shared secret configured on the GitLab hook
    webhook_secret_token: str = ""
    webhook_verify_signature: bool = True
    webhook_max_payload_size: int = 10 * 1024 * 1024

    # Application
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    @field_validator("gitlab_url")
    @classmethod
    def _validate_gitlab_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("gitlab_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator(
        "request_timeout",
        "cache_ttl",
        "cache_max_size",
        "cache_sweep_interval",
        "rate_limit_requests_per_minute",
        "rate_limit_burst",
        "rate_limit_max_queue_size",
        "webhook_max_payload_size",
    )
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_retries cannot be negative")
        return value

    @property
    def api_base_url(self) -> str:
        return f"{self.gitlab_url}/api/{self.api_version}"

    @property
    def oauth_enabled(self) -> bool:
        """Check if an OAuth application is configured."""
        return bool(self.oauth_client_id)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(retries=self.max_retries, retry_delay=self.retry_delay)

    def rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            requests_per_minute=self.rate_limit_requests_per_minute,
            burst_limit=self.rate_limit_burst,
            enable_queuing=self.rate_limit_enable_queuing,
            max_queue_size=self.rate_limit_max_queue_size,
        )

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            ttl=self.cache_ttl,
            max_size=self.cache_max_size,
            sweep_interval=self.cache_sweep_interval,
        )

    def oauth_config(self) -> OAuthConfig:
        return OAuthConfig(
            client_id=self.oauth_client_id,
            client_secret=self.oauth_client_secret,
            redirect_uri=self.oauth_redirect_uri,
            gitlab_url=self.gitlab_url,
            scopes=tuple(self.oauth_scopes.split()),
        )

    def webhook_config(self) -> WebhookConfig:
        return WebhookConfig(
            secret_token=self.webhook_secret_token or None,
            verify_signature=self.webhook_verify_signature,
            max_payload_size=self.webhook_max_payload_size,
        )


settings = Settings()

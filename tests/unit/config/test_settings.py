"""Unit tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from labpulse.config.settings import Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    def test_trailing_slash_is_stripped(self):
        config = _settings(gitlab_url="https://gitlab.example.com/")

        assert config.gitlab_url == "https://gitlab.example.com"
        assert config.api_base_url == "https://gitlab.example.com/api/v4"

    def test_url_must_be_http(self):
        with pytest.raises(ValidationError):
            _settings(gitlab_url="gitlab.example.com")

    @pytest.mark.parametrize("field", ["request_timeout", "cache_ttl", "cache_sweep_interval", "rate_limit_burst"])
    def test_positive_values(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: 0})

    def test_negative_retries(self):
        with pytest.raises(ValidationError):
            _settings(max_retries=-1)

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_BURST", "7")
        monkeypatch.setenv("ENABLE_WEBHOOKS", "true")

        config = _settings()

        assert config.rate_limit_burst == 7
        assert config.enable_webhooks is True


class TestDerivedConfig:
    def test_oauth_disabled_without_client_id(self):
        assert _settings(oauth_client_id="").oauth_enabled is False

    def test_oauth_config(self):
        config = _settings(
            oauth_client_id="client-id",
            oauth_client_secret="secret",
            oauth_redirect_uri="https://labpulse.example.com/callback",
            oauth_scopes="read_api read_user",
        ).oauth_config()

        assert config.scopes == ("read_api", "read_user")
        assert config.gitlab_url == "https://code.swecha.org"

    def test_webhook_config_treats_empty_secret_as_unset(self):
        assert _settings(webhook_secret_token="").webhook_config().secret_token is None

    def test_rate_limit_and_retry_policy(self):
        config = _settings(rate_limit_requests_per_minute=120, rate_limit_burst=10, max_retries=2)

        assert config.rate_limit_config().requests_per_minute == 120
        assert config.rate_limit_config().burst_limit == 10
        assert config.retry_policy().retries == 2

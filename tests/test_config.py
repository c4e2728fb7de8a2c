"""Tests for environment-driven Kit settings."""

import logging

import pytest

from kit_mcp.config import (
    DEFAULT_BASE_URL,
    ConfigurationError,
    KitSettings,
    describe,
)


class TestFromEnv:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError, match="Kit authentication required"):
            KitSettings.from_env({})

    def test_blank_credentials_are_missing(self):
        with pytest.raises(ConfigurationError):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "   ", "CONVERTKIT_API_KEY": ""})

    def test_oauth_defaults(self):
        settings = KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token-123"})
        assert settings.auth_mode == "oauth"
        assert settings.base_url == DEFAULT_BASE_URL
        assert settings.timeout == 30.0
        assert settings.rate_limit.requests_per_minute == 600
        assert settings.rate_limit.retry_delay == 1.0
        assert settings.rate_limit.max_retry_delay == 10.0
        assert settings.cache.enabled is True
        assert settings.cache.ttl == 300.0
        assert settings.cache.max_size == 1000
        assert settings.cache.check_period == 60.0

    def test_api_key_defaults(self):
        settings = KitSettings.from_env(
            {"CONVERTKIT_API_KEY": "key", "CONVERTKIT_API_SECRET": "secret"}
        )
        assert settings.auth_mode == "api_key"
        assert settings.rate_limit.requests_per_minute == 120

    def test_overrides(self):
        settings = KitSettings.from_env(
            {
                "CONVERTKIT_ACCESS_TOKEN": "token",
                "CONVERTKIT_BASE_URL": "https://kit.test/v4",
                "CONVERTKIT_TIMEOUT_SECONDS": "5",
                "CONVERTKIT_REQUESTS_PER_MINUTE": "30",
                "CONVERTKIT_MAX_RETRY_DELAY_SECONDS": "2.5",
                "CONVERTKIT_CACHE_ENABLED": "off",
                "CONVERTKIT_CACHE_TTL_SECONDS": "60",
                "CONVERTKIT_CACHE_MAX_SIZE": "10",
            }
        )
        assert settings.base_url == "https://kit.test/v4"
        assert settings.timeout == 5.0
        assert settings.rate_limit.requests_per_minute == 30
        assert settings.rate_limit.max_retry_delay == 2.5
        assert settings.cache.enabled is False
        assert settings.cache.ttl == 60.0
        assert settings.cache.max_size == 10

    @pytest.mark.parametrize("raw", ["fast", "-1"])
    def test_rejects_bad_numbers(self, raw):
        with pytest.raises(ConfigurationError, match="CONVERTKIT_TIMEOUT_SECONDS"):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_TIMEOUT_SECONDS": raw})

    @pytest.mark.parametrize("raw", ["0", "0.0"])
    def test_rejects_zero_max_retry_delay(self, raw):
        with pytest.raises(ConfigurationError, match="CONVERTKIT_MAX_RETRY_DELAY_SECONDS must be greater than zero"):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_MAX_RETRY_DELAY_SECONDS": raw})

    def test_zero_retry_delay_is_allowed(self):
        settings = KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_RETRY_DELAY_SECONDS": "0"})
        assert settings.rate_limit.retry_delay == 0.0

    @pytest.mark.parametrize("name", ["CONVERTKIT_REQUESTS_PER_MINUTE", "CONVERTKIT_CACHE_MAX_SIZE"])
    def test_rejects_fractional_counts(self, name):
        with pytest.raises(ConfigurationError, match=f"{name} must be a whole number"):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", name: "1.9"})

    def test_whole_number_with_decimal_point_is_accepted(self):
        settings = KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_REQUESTS_PER_MINUTE": "30.0"})
        assert settings.rate_limit.requests_per_minute == 30

    @pytest.mark.parametrize("raw", ["nan", "inf"])
    def test_rejects_non_finite_numbers(self, raw):
        with pytest.raises(ConfigurationError, match="finite"):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_CACHE_TTL_SECONDS": raw})

    def test_rejects_bad_flag(self):
        with pytest.raises(ConfigurationError, match="CONVERTKIT_CACHE_ENABLED"):
            KitSettings.from_env({"CONVERTKIT_ACCESS_TOKEN": "token", "CONVERTKIT_CACHE_ENABLED": "maybe"})

    def test_warns_when_secret_missing(self, caplog):
        with caplog.at_level(logging.WARNING, logger="kit_mcp.config"):
            KitSettings.from_env({"CONVERTKIT_API_KEY": "key"})
        assert "CONVERTKIT_API_SECRET not provided" in caplog.text


class TestAuth:
    def test_token_takes_precedence(self):
        settings = KitSettings(access_token="token", api_key="key", api_secret="secret")
        assert settings.is_oauth_mode is True
        assert settings.is_api_key_mode is False
        assert settings.auth_headers()["X-Kit-Api-Key"] == "token"
        assert settings.auth_params() == {}

    def test_api_key_params(self):
        settings = KitSettings(api_key="key", api_secret="secret")
        headers = settings.auth_headers()
        assert "X-Kit-Api-Key" not in headers
        assert headers["Accept"] == "application/json"
        assert headers["User-Agent"].startswith("kit-mcp/")
        assert settings.auth_params() == {"api_key": "key", "api_secret": "secret"}

    def test_api_key_without_secret(self):
        assert KitSettings(api_key="key").auth_params() == {"api_key": "key"}

    def test_unknown_mode(self):
        assert KitSettings().auth_mode == "unknown"


def test_describe_omits_secrets():
    settings = KitSettings(access_token="token", api_key="key", api_secret="secret")
    summary = describe(settings)
    assert summary["auth_mode"] == "oauth"
    assert "token" not in repr(summary)
    assert "secret" not in repr(summary)

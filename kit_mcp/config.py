"""Configuration and authentication settings for the Kit API."""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
DEFAULT_BASE_URL = "https://api.kit.com/v4"

# Kit allows 600 requests per minute for OAuth tokens and 120 for API keys.
OAUTH_REQUESTS_PER_MINUTE = 600
API_KEY_REQUESTS_PER_MINUTE = 120


class ConfigurationError(RuntimeError):
    """Raised when the Kit configuration is missing or invalid."""


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = Field(default=API_KEY_REQUESTS_PER_MINUTE, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    # Caps each admission wait; must stay above zero.
    max_retry_delay: float = Field(default=10.0, gt=0)


class CacheConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    ttl: float = 300.0
    max_size: int = 1000
    check_period: float = 60.0


class KitSettings(BaseModel):
    """Resolved Kit credentials plus rate limit and cache tuning."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    api_secret: str | None = None
    access_token: str | None = None
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    rate_limit: RateLimitConfig = RateLimitConfig()
    cache: CacheConfig = CacheConfig()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "KitSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Raises:
            ConfigurationError: If no credentials are present or a numeric
                variable is malformed.
        """
        env = os.environ if environ is None else environ

        access_token = _clean(env.get("CONVERTKIT_ACCESS_TOKEN"))
        api_key = _clean(env.get("CONVERTKIT_API_KEY"))
        api_secret = _clean(env.get("CONVERTKIT_API_SECRET"))

        default_rpm = OAUTH_REQUESTS_PER_MINUTE if access_token else API_KEY_REQUESTS_PER_MINUTE

        settings = cls(
            api_key=api_key,
            api_secret=api_secret,
            access_token=access_token,
            base_url=_clean(env.get("CONVERTKIT_BASE_URL")) or DEFAULT_BASE_URL,
            timeout=_number(env, "CONVERTKIT_TIMEOUT_SECONDS", 30.0),
            rate_limit=RateLimitConfig(
                requests_per_minute=_integer(env, "CONVERTKIT_REQUESTS_PER_MINUTE", default_rpm),
                retry_delay=_number(env, "CONVERTKIT_RETRY_DELAY_SECONDS", 1.0),
                max_retry_delay=_number(env, "CONVERTKIT_MAX_RETRY_DELAY_SECONDS", 10.0, positive=True),
            ),
            cache=CacheConfig(
                enabled=_flag(env, "CONVERTKIT_CACHE_ENABLED", True),
                ttl=_number(env, "CONVERTKIT_CACHE_TTL_SECONDS", 300.0),
                max_size=_integer(env, "CONVERTKIT_CACHE_MAX_SIZE", 1000),
                check_period=_number(env, "CONVERTKIT_CACHE_CHECK_PERIOD_SECONDS", 60.0),
            ),
        )
        settings.validate_credentials()
        return settings

    def validate_credentials(self) -> None:
        """Validate that at least one authentication method is configured."""
        if not self.access_token and not self.api_key:
            raise ConfigurationError(
                "Kit authentication required: Either CONVERTKIT_ACCESS_TOKEN (OAuth) "
                "or CONVERTKIT_API_KEY must be provided."
            )

        if self.api_key and not self.api_secret:
            logger.warning(
                "CONVERTKIT_API_SECRET not provided. Some API endpoints may require it for authentication."
            )

    @property
    def is_oauth_mode(self) -> bool:
        return bool(self.access_token)

    @property
    def is_api_key_mode(self) -> bool:
        return bool(self.api_key) and not self.access_token

    @property
    def auth_mode(self) -> str:
        if self.is_oauth_mode:
            return "oauth"
        if self.is_api_key_mode:
            return "api_key"
        return "unknown"

    def auth_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"kit-mcp/{VERSION}",
        }
        if self.access_token:
            headers["X-Kit-Api-Key"] = self.access_token
        return headers

    def auth_params(self) -> dict[str, str]:
        """Query parameters for legacy key/secret authentication."""
        params: dict[str, str] = {}
        if self.is_api_key_mode and self.api_key:
            params["api_key"] = self.api_key
            if self.api_secret:
                params["api_secret"] = self.api_secret
        return params


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _number(env: Mapping[str, str], name: str, default: float, *, positive: bool = False) -> float:
    raw = _clean(env.get(name))
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f'{name} must be a number, got "{raw}".') from e
    if not math.isfinite(value):
        raise ConfigurationError(f'{name} must be a finite number, got "{raw}".')
    if value < 0:
        raise ConfigurationError(f"{name} cannot be negative.")
    if positive and value == 0:
        raise ConfigurationError(f"{name} must be greater than zero.")
    return value


def _integer(env: Mapping[str, str], name: str, default: int) -> int:
    value = _number(env, name, default)
    if not value.is_integer():
        raise ConfigurationError(f'{name} must be a whole number, got "{env.get(name)}".')
    return int(value)


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _clean(env.get(name))
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f'{name} must be a boolean, got "{raw}".')


def describe(settings: KitSettings) -> dict[str, Any]:
    """Non-secret summary of the active configuration."""
    return {
        "auth_mode": settings.auth_mode,
        "base_url": settings.base_url,
        "timeout": settings.timeout,
        "rate_limit": settings.rate_limit.model_dump(),
        "cache": settings.cache.model_dump(),
    }

from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from chatauth.logging import get_logger

logger = get_logger(__name__)

# Actions guarded by the rate limiter; each has its own budget in Settings.
RATE_LIMIT_ACTIONS = ("login", "registration", "password-reset", "token-refresh", "api-call")

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Deployment settings for the authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow an ephemeral signing secret and other deterministic test behaviors.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes; also the TTL of session and revocation keys",
    )
    token_clock_skew_seconds: int = env_field(0, "TOKEN_CLOCK_SKEW_SECONDS")
    password_reset_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TTL_MINUTES", description="Lifetime of a one-time password reset token"
    )

    # Account lockout
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")
    failed_attempt_ttl_minutes: int = env_field(
        24 * 60,
        "FAILED_ATTEMPT_TTL_MINUTES",
        description="How long an idle failed-attempt counter is kept before it lapses",
    )

    # Key-value backend
    store_operation_timeout_seconds: float = env_field(1.0, "STORE_OPERATION_TIMEOUT_SECONDS")
    store_retry_backoff_ms: int = env_field(50, "STORE_RETRY_BACKOFF_MS")

    permission_cache_ttl_seconds: int = env_field(60, "PERMISSION_CACHE_TTL_SECONDS")
    permission_cache_max_size: int = env_field(1024, "PERMISSION_CACHE_MAX_SIZE")

    # Rate limits per action: max attempts / window seconds / block seconds
    rate_limit_login_max_attempts: int = env_field(5, "RATE_LIMIT_LOGIN_MAX_ATTEMPTS")
    rate_limit_login_window_seconds: int = env_field(900, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_login_block_seconds: int = env_field(1800, "RATE_LIMIT_LOGIN_BLOCK_SECONDS")
    rate_limit_registration_max_attempts: int = env_field(
        3, "RATE_LIMIT_REGISTRATION_MAX_ATTEMPTS"
    )
    rate_limit_registration_window_seconds: int = env_field(
        3600, "RATE_LIMIT_REGISTRATION_WINDOW_SECONDS"
    )
    rate_limit_registration_block_seconds: int = env_field(
        3600, "RATE_LIMIT_REGISTRATION_BLOCK_SECONDS"
    )
    rate_limit_password_reset_max_attempts: int = env_field(
        3, "RATE_LIMIT_PASSWORD_RESET_MAX_ATTEMPTS"
    )
    rate_limit_password_reset_window_seconds: int = env_field(
        3600, "RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS"
    )
    rate_limit_password_reset_block_seconds: int = env_field(
        1800, "RATE_LIMIT_PASSWORD_RESET_BLOCK_SECONDS"
    )
    rate_limit_token_refresh_max_attempts: int = env_field(
        30, "RATE_LIMIT_TOKEN_REFRESH_MAX_ATTEMPTS"
    )
    rate_limit_token_refresh_window_seconds: int = env_field(
        60, "RATE_LIMIT_TOKEN_REFRESH_WINDOW_SECONDS"
    )
    rate_limit_token_refresh_block_seconds: int = env_field(
        300, "RATE_LIMIT_TOKEN_REFRESH_BLOCK_SECONDS"
    )
    rate_limit_api_call_max_attempts: int = env_field(100, "RATE_LIMIT_API_CALL_MAX_ATTEMPTS")
    rate_limit_api_call_window_seconds: int = env_field(60, "RATE_LIMIT_API_CALL_WINDOW_SECONDS")
    rate_limit_api_call_block_seconds: int = env_field(60, "RATE_LIMIT_API_CALL_BLOCK_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Instances share one signing secret, so a generated one is only usable
        # for a single-process test run.
        if info.data.get("test_mode"):
            logger.warning("jwt_secret_generated_for_test_mode")
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_failed_attempts",
        "lockout_duration_minutes",
        "failed_attempt_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    def rate_limit_budget(self, action: str) -> tuple[int, int, int]:
        """Return ``(max_attempts, window_seconds, block_seconds)`` for an action."""
        if action not in RATE_LIMIT_ACTIONS:
            raise KeyError(f"unknown rate limit action: {action}")
        prefix = "rate_limit_" + action.replace("-", "_")
        return (
            getattr(self, f"{prefix}_max_attempts"),
            getattr(self, f"{prefix}_window_seconds"),
            getattr(self, f"{prefix}_block_seconds"),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

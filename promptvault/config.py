from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from promptvault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the API and the ephemeral state services."""

    # KVS connection
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    kvs_socket_timeout: float = env_field(
        2.0, "KVS_SOCKET_TIMEOUT", description="Socket/connect timeout in seconds"
    )
    kvs_operation_timeout: float = env_field(
        0.5,
        "KVS_OPERATION_TIMEOUT",
        description="Upper bound for a single KVS command before the caller degrades",
    )
    use_memory_kvs: bool = env_field(False, "USE_MEMORY_KVS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviours; implies the in-memory KVS",
    )

    # Access tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("promptvault", "JWT_ISSUER")
    jwt_audience: str = env_field("promptvault-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")

    # Sessions and presence
    session_ttl_seconds: int = env_field(24 * 60 * 60, "SESSION_TTL_SECONDS")
    remember_me_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REMEMBER_ME_TTL_SECONDS"
    )
    presence_window_seconds: int = env_field(15 * 60, "PRESENCE_WINDOW_SECONDS")
    presence_prune_interval_seconds: int = env_field(
        300, "PRESENCE_PRUNE_INTERVAL_SECONDS", description="Background sweep of the presence set"
    )

    # One-time tokens
    password_reset_ttl_seconds: int = env_field(60 * 60, "PASSWORD_RESET_TTL_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 60 * 60, "EMAIL_VERIFICATION_TTL_SECONDS"
    )

    # Login lockout
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS")

    # Cache durations per data class
    cache_ttl_short: int = env_field(300, "CACHE_TTL_SHORT")
    cache_ttl_medium: int = env_field(1800, "CACHE_TTL_MEDIUM")
    cache_ttl_long: int = env_field(3600, "CACHE_TTL_LONG")
    cache_ttl_very_long: int = env_field(86400, "CACHE_TTL_VERY_LONG")
    cache_ttl_week: int = env_field(604800, "CACHE_TTL_WEEK")
    cache_scan_invalidation: bool = env_field(
        True,
        "CACHE_SCAN_INVALIDATION",
        description="Use SCAN-based pattern deletes in addition to the tag index",
    )

    # Rate limit policies: window in milliseconds, ceiling per window
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_global_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_GLOBAL_WINDOW_MS")
    rate_limit_global_max: int = env_field(1000, "RATE_LIMIT_GLOBAL_MAX")
    rate_limit_auth_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_AUTH_WINDOW_MS")
    rate_limit_auth_max: int = env_field(5, "RATE_LIMIT_AUTH_MAX")
    rate_limit_social_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_SOCIAL_WINDOW_MS")
    rate_limit_social_max: int = env_field(30, "RATE_LIMIT_SOCIAL_MAX")
    rate_limit_upload_window_ms: int = env_field(60 * 60 * 1000, "RATE_LIMIT_UPLOAD_WINDOW_MS")
    rate_limit_upload_max: int = env_field(50, "RATE_LIMIT_UPLOAD_MAX")
    rate_limit_search_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_SEARCH_WINDOW_MS")
    rate_limit_search_max: int = env_field(60, "RATE_LIMIT_SEARCH_MAX")
    rate_limit_comment_window_ms: int = env_field(5 * 60 * 1000, "RATE_LIMIT_COMMENT_WINDOW_MS")
    rate_limit_comment_max: int = env_field(10, "RATE_LIMIT_COMMENT_MAX")
    rate_limit_creation_window_ms: int = env_field(60 * 60 * 1000, "RATE_LIMIT_CREATION_WINDOW_MS")
    rate_limit_creation_max: int = env_field(5, "RATE_LIMIT_CREATION_MAX")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    app_env: str = env_field("development", "APP_ENV")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_seconds",
        "remember_me_ttl_seconds",
        "presence_window_seconds",
        "presence_prune_interval_seconds",
        "password_reset_ttl_seconds",
        "email_verification_ttl_seconds",
        "login_attempt_window_seconds",
        "cache_ttl_short",
        "cache_ttl_medium",
        "cache_ttl_long",
        "cache_ttl_very_long",
        "cache_ttl_week",
        "access_token_ttl_minutes",
    )
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("duration must be positive")
        return value

    @field_validator("kvs_socket_timeout", "kvs_operation_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; generated a per-process signing secret",
        )
        return secrets.token_urlsafe(64)

    @property
    def memory_kvs(self) -> bool:
        return self.use_memory_kvs or self.test_mode


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

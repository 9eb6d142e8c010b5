from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Session cache; empty disables it and sessions use the database only",
    )
    cache_timeout_seconds: float = env_field(
        2.0,
        "CACHE_TIMEOUT_SECONDS",
        description="Socket and connect timeout for cache calls",
        gt=0,
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (console email, relaxed startup).",
    )

    # Sessions
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS", gt=0)
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER", ge=1)
    session_rotation_minutes: int = env_field(30, "SESSION_ROTATION_MINUTES", gt=0)
    session_cookie_name: str = env_field("session-token", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(
        False,
        "SESSION_COOKIE_SECURE",
        description="Mark the session cookie Secure (enable behind HTTPS)",
    )
    session_cleanup_interval_seconds: int = env_field(
        3600,
        "SESSION_CLEANUP_INTERVAL_SECONDS",
        description="How often expired rows are purged from the sessions table; 0 disables",
        ge=0,
    )

    # Verification and reset tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_min_score: int = env_field(3, "PASSWORD_MIN_SCORE", ge=0, le=4)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Rate limits (requests per window, keyed by client address)
    rate_limits_enabled: bool = env_field(True, "RATE_LIMITS_ENABLED")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(15 * 60, "REGISTER_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    forgot_password_rate_window_seconds: int = env_field(
        60 * 60, "FORGOT_PASSWORD_RATE_WINDOW_SECONDS"
    )
    reset_password_rate_limit: int = env_field(3, "RESET_PASSWORD_RATE_LIMIT")
    reset_password_rate_window_seconds: int = env_field(
        60 * 60, "RESET_PASSWORD_RATE_WINDOW_SECONDS"
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    api_host: str = env_field("0.0.0.0", "API_HOST")
    api_port: int = env_field(8000, "API_PORT")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def session_cookie_max_age(self) -> int:
        return self.session_ttl_seconds


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

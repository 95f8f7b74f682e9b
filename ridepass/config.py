from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ridepass.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and verification engine."""

    app_name: str = env_field("RidePass", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/ridepass", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_connect_timeout: float = env_field(
        10.0,
        "DB_CONNECT_TIMEOUT",
        description="Seconds to wait for a pooled Postgres connection",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Socket and connect timeout for Redis calls in seconds",
    )
    # Session tokens
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("ridepass-api", "JWT_ISSUER")
    jwt_audience: str = env_field("ridepass-app", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated on exp checks"
    )
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL in minutes",
    )
    # One-time codes
    otc_ttl_seconds: int = env_field(
        300, "OTC_TTL_SECONDS", description="Lifetime of registration and login codes"
    )
    reset_otc_ttl_seconds: int = env_field(
        600, "RESET_OTC_TTL_SECONDS", description="Lifetime of password reset codes"
    )
    otc_max_verify_attempts: int = env_field(
        5,
        "OTC_MAX_VERIFY_ATTEMPTS",
        description="Wrong guesses allowed before a live code is discarded",
    )
    otp_rate_limit_per_hour: int = env_field(
        5,
        "OTP_RATE_LIMIT_PER_HOUR",
        description="Code requests allowed per identifier and purpose per window; 0 disables",
    )
    otp_rate_window_seconds: int = env_field(3600, "OTP_RATE_WINDOW_SECONDS")
    default_country_code: str = env_field("251", "DEFAULT_COUNTRY_CODE")
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("RidePass", "EMAIL_FROM_NAME")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_cache_fallback_dev: bool = env_field(False, "ALLOW_CACHE_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process stores and generated secrets for local testing",
    )

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

    @field_validator("default_country_code")
    @classmethod
    def _validate_country_code(cls, value: str) -> str:
        value = value.strip().lstrip("+")
        if not value.isdigit():
            raise ValueError("default_country_code must be digits")
        return value

    @field_validator(
        "otc_ttl_seconds",
        "reset_otc_ttl_seconds",
        "otp_rate_window_seconds",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("otp_rate_limit_per_hour", "otc_max_verify_attempts")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside test mode"
                )
            # Per-process secrets; tokens will not survive a restart
            logger.warning("jwt_secrets_generated", test_mode=True)
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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

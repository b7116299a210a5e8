from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hrmsauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the access-control service."""

    database_url: str = env_field("postgresql://localhost:5432/hrms", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax secret requirements and allow in-process fallbacks for tests.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing: access and refresh tokens never share a key
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("hrms-api", "JWT_ISSUER")
    jwt_audience: str = env_field("hrms-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Credential lifecycle
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    max_refresh_tokens: int = env_field(
        5,
        "MAX_REFRESH_TOKENS",
        description="Active refresh tokens kept per credential (one per device)",
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    # Rate limits for unauthenticated auth endpoints
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    forgot_password_rate_limit: int = env_field(3, "FORGOT_PASSWORD_RATE_LIMIT")
    forgot_password_rate_window_seconds: int = env_field(
        60 * 60, "FORGOT_PASSWORD_RATE_WINDOW_SECONDS"
    )
    reset_password_rate_limit: int = env_field(5, "RESET_PASSWORD_RATE_LIMIT")
    reset_password_rate_window_seconds: int = env_field(
        60 * 60, "RESET_PASSWORD_RATE_WINDOW_SECONDS"
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_failed_logins",
        "lockout_minutes",
        "max_refresh_tokens",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            if not self.test_mode:
                raise ValueError(
                    "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set outside TEST_MODE"
                )
            # Process-local secrets; tokens do not survive a restart
            logger.warning(
                "token_secrets_generated",
                message="Signing secrets missing under TEST_MODE; generated ephemeral keys",
            )
            self.access_token_secret = self.access_token_secret or secrets.token_urlsafe(64)
            self.refresh_token_secret = self.refresh_token_secret or secrets.token_urlsafe(64)
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use different signing secrets")
        return self

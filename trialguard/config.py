from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from trialguard.logging import get_logger

logger = get_logger(__name__)


class RateLimitBackend(str, Enum):
    """Where rate-limit request records are counted."""

    DATABASE = "database"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core.

    Built once per process (``Settings.from_env``) and handed to every gate;
    gate logic never reads the environment itself.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/clinical_trial", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    rate_limit_backend: RateLimitBackend = env_field(
        RateLimitBackend.DATABASE,
        "RATE_LIMIT_BACKEND",
        description="database (rate_limit_log table) or redis (sorted sets)",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated secrets and runtime resets for tests.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_seconds: int = env_field(1800, "LOCKOUT_DURATION")

    # Signup
    physician_domain_whitelist: list[str] = env_field(
        [],
        "PHYSICIAN_DOMAIN_WHITELIST",
        description="Comma separated email domains; empty means no restriction",
    )

    # Pre-authentication rate limits
    preauth_ip_limit: int = env_field(20, "PREAUTH_IP_LIMIT")
    preauth_ip_window_seconds: int = env_field(3600, "PREAUTH_IP_WINDOW_SECONDS")
    preauth_email_limit: int = env_field(3, "PREAUTH_EMAIL_LIMIT")
    preauth_email_window_seconds: int = env_field(900, "PREAUTH_EMAIL_WINDOW_SECONDS")

    # Request-time rate limits (independent of the pre-authentication ones)
    user_rate_limit: int = env_field(100, "USER_RATE_LIMIT")
    user_rate_limit_window_seconds: int = env_field(3600, "USER_RATE_LIMIT_WINDOW_SECONDS")
    ip_rate_limit: int = env_field(500, "IP_RATE_LIMIT")
    ip_rate_limit_window_seconds: int = env_field(3600, "IP_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit: int = env_field(20, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(900, "AUTH_RATE_LIMIT_WINDOW_SECONDS")

    # Sessions and tokens
    physician_session_timeout_seconds: int = env_field(3600, "PHYSICIAN_SESSION_TIMEOUT")
    patient_session_timeout_seconds: int = env_field(1800, "PATIENT_SESSION_TIMEOUT")
    physician_token_ttl_seconds: int = env_field(3600, "PHYSICIAN_TOKEN_TTL")
    patient_token_ttl_seconds: int = env_field(1800, "PATIENT_TOKEN_TTL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("physician_domain_whitelist", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("physician_domain_whitelist")
    @classmethod
    def _lower_domains(cls, value: list[str]) -> list[str]:
        return [domain.lower() for domain in value]

    @field_validator("rate_limit_backend")
    @classmethod
    def _validate_backend(cls, value: RateLimitBackend) -> RateLimitBackend:
        return RateLimitBackend(value)

    @field_validator(
        "max_login_attempts",
        "lockout_duration_seconds",
        "preauth_ip_limit",
        "preauth_ip_window_seconds",
        "preauth_email_limit",
        "preauth_email_window_seconds",
        "user_rate_limit",
        "user_rate_limit_window_seconds",
        "ip_rate_limit",
        "ip_rate_limit_window_seconds",
        "auth_rate_limit",
        "auth_rate_limit_window_seconds",
        "physician_session_timeout_seconds",
        "patient_session_timeout_seconds",
        "physician_token_ttl_seconds",
        "patient_token_ttl_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Tokens signed with a generated secret only live as long as the process
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated", reason="test_mode")
        return self


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

from __future__ import annotations

import os
import re
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fitos_auth.logging import get_logger

logger = get_logger(__name__)


_DURATION_PATTERN = re.compile(r"^(\d+)([smhdwMy])$")

# Seconds per unit; "M" is a 30-day month and "y" a 365-day year.
_DURATION_UNITS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
    "M": 30 * 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}


def parse_expiration(value: str) -> int:
    """Convert a duration such as ``15m`` or ``7d`` into seconds.

    Raises ``ValueError`` for anything that is not ``<digits><unit>``.
    """
    match = _DURATION_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"invalid duration format: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field("postgresql://localhost:5432/fitos", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables in-process fallbacks and a generated JWT secret",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("fitos", "JWT_ISSUER")
    jwt_audience: str = env_field("fitos-app", "JWT_AUDIENCE")
    jwt_access_expires_in: str = env_field("1h", "JWT_ACCESS_EXPIRES_IN")
    jwt_refresh_expires_in: str = env_field("7d", "JWT_REFRESH_EXPIRES_IN")
    session_ttl: str = env_field("1h", "SESSION_TTL")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    token_encryption_key: str | None = env_field(
        None,
        "TOKEN_ENCRYPTION_KEY",
        description="Key material for encrypting third-party OAuth tokens at rest",
    )

    # Password policy and login lockout
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_lockout_seconds: int = env_field(15 * 60, "LOGIN_LOCKOUT_SECONDS")

    # Tenancy
    default_tenant_subdomain: str = env_field("default", "DEFAULT_TENANT_SUBDOMAIN")
    default_tenant_id: str = env_field("default-tenant", "DEFAULT_TENANT_ID")

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_OAUTH_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_OAUTH_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    google_calendar_redirect_uri: str | None = env_field(
        None, "GOOGLE_CALENDAR_REDIRECT_URI"
    )
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("FitOS", "EMAIL_FROM_NAME")

    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    session_cleanup_interval_seconds: int = env_field(
        60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS"
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

    @field_validator("jwt_access_expires_in", "jwt_refresh_expires_in", "session_ttl")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_expiration(value)
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("frontend_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral secret for TEST_MODE",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_expiration(self.jwt_access_expires_in)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_expiration(self.jwt_refresh_expires_in)

    @property
    def session_ttl_seconds(self) -> int:
        return parse_expiration(self.session_ttl)


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

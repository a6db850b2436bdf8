from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the login engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Test/CI environment: skips the canonical login host guard and permits in-memory fallbacks.",
    )

    # Lockout
    max_failed_logins: int = env_field(
        10,
        "MAX_FAILED_LOGINS",
        description="Failed password attempts before login is refused until a successful authentication.",
    )

    # Second factor
    second_factor_replay_ttl_seconds: int = env_field(
        240,
        "SECOND_FACTOR_REPLAY_TTL_SECONDS",
        description="How long an accepted (user, code) pair stays on the replay denylist.",
    )
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_window: int = env_field(
        1, "TOTP_WINDOW", description="Adjacent time steps accepted for clock skew."
    )
    totp_issuer: str = env_field("Gatehouse", "TOTP_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Redirects and hosts
    redirect_to: str = env_field("/dashboard", "LOGIN_REDIRECT_TO")
    site_url: str = env_field("http://localhost:8000", "SITE_URL")
    hosted_mode: bool = env_field(
        False,
        "HOSTED_MODE",
        description="Multi-tenant hosted deployment; login must happen on the canonical host.",
    )
    tenant_subdomain_prefix: str = env_field("webapp-", "TENANT_SUBDOMAIN_PREFIX")

    # Sessions
    session_ttl_minutes: int = env_field(120, "SESSION_TTL_MINUTES")
    session_cookie_name: str = env_field("gatehouse_session", "SESSION_COOKIE_NAME")
    session_cookie_secure: bool = env_field(False, "SESSION_COOKIE_SECURE")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

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

    @field_validator("max_failed_logins")
    @classmethod
    def _validate_max_failed_logins(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_FAILED_LOGINS must be at least 1")
        return value

    @field_validator("second_factor_replay_ttl_seconds", "totp_interval_seconds")
    @classmethod
    def _validate_positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("site_url")
    @classmethod
    def _strip_site_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("redis_url")
    @classmethod
    def _empty_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @property
    def login_url(self) -> str:
        return f"{self.site_url}/login"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            hosted_mode=_settings_cache.hosted_mode,
            test_mode=_settings_cache.test_mode,
            max_failed_logins=_settings_cache.max_failed_logins,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

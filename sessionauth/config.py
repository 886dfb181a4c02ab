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
    """Runtime settings for the auth service.

    Token secrets have no defaults on purpose: the token codec refuses to sign
    or verify with an unset secret and surfaces a configuration error instead.
    """

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/sessionauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    password_reset_token_secret: str | None = env_field(
        None, "PASSWORD_RESET_TOKEN_SECRET"
    )
    password_reset_token_expires_in: str | None = env_field(
        None,
        "PASSWORD_RESET_TOKEN_EXPIRES_IN",
        description="Reset token lifetime: '15m', '1h', '2d' or seconds",
    )
    jwt_issuer: str = env_field("sessionauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionauth-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    password_hash_time_cost: int = env_field(
        3,
        "PASSWORD_HASH_TIME_COST",
        description="argon2id time cost; raise to slow down offline guessing",
    )
    # Public URLs
    frontend_url: str = env_field("http://localhost:5173", "FRONTEND_URL")
    api_base_url: str = env_field("http://localhost:3001", "API_BASE_URL")
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("SessionAuth", "EMAIL_FROM_NAME")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    refresh_token_purge_interval_seconds: int = env_field(
        3600,
        "REFRESH_TOKEN_PURGE_INTERVAL_SECONDS",
        description="How often expired refresh-token records are deleted; 0 disables",
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

    @field_validator(
        "jwt_secret",
        "jwt_refresh_secret",
        "password_reset_token_secret",
        "password_reset_token_expires_in",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("frontend_url", "api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def oauth_callback_uri(self) -> str:
        return self.oauth_redirect_uri or f"{self.api_base_url}/api/auth/oauth/callback"

    def missing_secrets(self) -> list[str]:
        """Names of unset signing settings, for the startup warning."""
        required = {
            "JWT_SECRET": self.jwt_secret,
            "JWT_REFRESH_SECRET": self.jwt_refresh_secret,
            "PASSWORD_RESET_TOKEN_SECRET": self.password_reset_token_secret,
            "PASSWORD_RESET_TOKEN_EXPIRES_IN": self.password_reset_token_expires_in,
        }
        return [name for name, value in required.items() if not value]


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

from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pggarden.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pggarden", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    environment: str = env_field(
        "development",
        "NODE_ENV",
        description="'production' marks session cookies Secure",
    )
    app_base_url: str = env_field("http://localhost:3000", "VITE_ROOT_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # GitHub OAuth
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_pat: str | None = env_field(
        None,
        "GITHUB_PAT",
        description="Token used to look up sponsor/collaborator status for role escalation",
    )
    github_sponsor_owner: str = env_field("danielfgray", "GITHUB_SPONSOR_OWNER")
    github_sponsor_repo: str = env_field("postgres-playground", "GITHUB_SPONSOR_REPO")
    # Email delivery for queued notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Postgres Garden", "EMAIL_FROM_NAME")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    job_poll_interval_seconds: float = env_field(5.0, "JOB_POLL_INTERVAL_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; disables the background job worker.",
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

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("session_ttl_days")
    @classmethod
    def _validate_session_ttl(cls, value: int) -> int:
        if value < 1:
            logger.warning("session_ttl_days_invalid", value=value)
            raise ValueError("SESSION_TTL_DAYS must be at least 1")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def github_configured(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)


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

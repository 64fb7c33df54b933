from __future__ import annotations

import os
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from campusauth.logging import get_logger
from campusauth.service.passwords import password_is_strong

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and never mutated."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(
        True,
        "USE_MEMORY_STORE",
        description="Keep session records in process memory instead of Redis.",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow an ephemeral signing secret and other test-only shortcuts.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("campusauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        gt=0,
        description="Access token lifetime; must be shorter than the refresh lifetime.",
    )
    refresh_token_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "REFRESH_TOKEN_TTL_MINUTES",
        gt=0,
        description="Refresh token lifetime.",
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        ge=0,
        description="Clock skew tolerated when checking token expiry.",
    )
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    admin_username: str | None = env_field(
        None,
        "ADMIN_USERNAME",
        description="Administrator ensured at startup; created, or promoted if the user exists.",
    )
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD", repr=False)
    departments: dict[str, str] = env_field(
        {},
        "DEPARTMENTS",
        description="Departments loaded at startup as CODE=Name pairs separated by commas.",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

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

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("departments", mode="before")
    @classmethod
    def _parse_departments(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parsed: dict[str, str] = {}
        for item in value.split(","):
            if not item.strip():
                continue
            code, sep, name = item.partition("=")
            if not sep or not code.strip() or not name.strip():
                raise ValueError(f"department entry {item.strip()!r} must look like CODE=Name")
            parsed[code.strip()] = name.strip()
        return parsed

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any, info: ValidationInfo) -> Any:
        if not value:
            if not info.data.get("test_mode"):
                raise ValueError("JWT_SECRET is required outside TEST_MODE")
            # Tokens signed with an ephemeral secret die with the process
            logger.warning("jwt_secret_ephemeral", reason="test_mode")
            return secrets.token_urlsafe(48)
        if isinstance(value, str) and len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.access_token_ttl_minutes >= self.refresh_token_ttl_minutes:
            raise ValueError(
                "access_token_ttl_minutes must be strictly shorter than refresh_token_ttl_minutes"
            )
        if not self.use_memory_store and not self.redis_url:
            raise ValueError("REDIS_URL is required when USE_MEMORY_STORE is false")
        admin = (self.admin_username, self.admin_email, self.admin_password)
        if any(admin) and not all(admin):
            raise ValueError(
                "ADMIN_USERNAME, ADMIN_EMAIL and ADMIN_PASSWORD must be set together"
            )
        if self.admin_password and not password_is_strong(self.admin_password):
            raise ValueError(
                "ADMIN_PASSWORD must be at least 12 characters with 3+ character classes"
            )
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

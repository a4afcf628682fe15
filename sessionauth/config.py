from __future__ import annotations

import os
from enum import Enum
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionauth.logging import get_logger
from sessionauth.service.durations import (
    FIVE_MINUTES,
    ONE_DAY,
    Duration,
    DurationParseError,
    parse_duration_or_default,
)

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 16


class FingerprintPolicy(str, Enum):
    """What refresh does when the presented user agent differs from the stored one."""

    WARN = "warn"
    REJECT = "reject"
    IGNORE = "ignore"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment and an optional ``.env`` file."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionauth-clients", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        "5m",
        "JWT_ACCESS_EXPIRES_IN",
        description="Access token lifetime as <digits><s|m|h|d>",
    )
    refresh_token_ttl: str = env_field(
        "1d",
        "JWT_REFRESH_EXPIRES_IN",
        description="Refresh session lifetime as <digits><s|m|h|d>",
    )
    strict_durations: bool = env_field(
        False,
        "STRICT_DURATIONS",
        description="Fail at startup on malformed lifetimes instead of falling back to 1d",
    )
    fingerprint_policy: FingerprintPolicy = env_field(
        FingerprintPolicy.WARN, "REFRESH_FINGERPRINT_POLICY"
    )
    environment: str = env_field("development", "APP_ENV")
    cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie flag; unset follows production mode",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionauth", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    shared_fs_root: Optional[str] = env_field(None, "SHARED_FS_ROOT")
    rate_limit_requests: int = env_field(20, "RATE_LIMIT_REQUESTS", ge=0)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS", gt=0)
    session_sweep_interval_seconds: int = env_field(
        300, "SESSION_SWEEP_INTERVAL_SECONDS", ge=1
    )
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")
    cors_origins: list[str] = env_field(["http://localhost:5173"], "CORS_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower()

    def _duration(self, raw: str, setting: str, default: Duration) -> Duration:
        if self.strict_durations:
            return Duration.parse(raw)
        return parse_duration_or_default(raw, default, setting=setting)

    @property
    def access_ttl(self) -> Duration:
        return self._duration(self.access_token_ttl, "JWT_ACCESS_EXPIRES_IN", FIVE_MINUTES)

    @property
    def refresh_ttl(self) -> Duration:
        return self._duration(self.refresh_token_ttl, "JWT_REFRESH_EXPIRES_IN", ONE_DAY)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    def validate_durations(self) -> None:
        """Resolve both lifetimes once so misconfiguration surfaces at startup.

        Raises:
            DurationParseError: only when ``strict_durations`` is enabled.
        """
        try:
            _ = (self.access_ttl, self.refresh_ttl)
        except DurationParseError as exc:
            logger.error("invalid_token_lifetime", value=str(exc.text), reason=exc.reason)
            raise


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

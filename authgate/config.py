from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)

# Fifteen minutes without pointer, key, scroll or touch input signs the user out
DEFAULT_INACTIVITY_TIMEOUT_SECONDS = 15 * 60
DEFAULT_MANUAL_GUARD_GRACE_MS = 300
DEFAULT_RECOVERY_MARKER = "type=recovery"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session controller and its collaborators."""

    identity_url: str = env_field("http://localhost:54321", "IDENTITY_URL")
    identity_api_key: str | None = env_field(
        None,
        "IDENTITY_API_KEY",
        description="Public API key sent to the identity provider and backing store",
    )
    app_base_url: str = env_field(
        "http://localhost:5173/",
        "APP_BASE_URL",
        description="Page URL used to build password-reset redirect targets",
    )
    inactivity_timeout_seconds: float = env_field(
        DEFAULT_INACTIVITY_TIMEOUT_SECONDS,
        "INACTIVITY_TIMEOUT_SECONDS",
        description="Seconds without user activity before an active session is signed out",
    )
    manual_guard_grace_ms: int = env_field(
        DEFAULT_MANUAL_GUARD_GRACE_MS,
        "MANUAL_GUARD_GRACE_MS",
        description="Trailing window after login() during which duplicate push events are ignored",
    )
    recovery_marker: str = env_field(
        DEFAULT_RECOVERY_MARKER,
        "RECOVERY_MARKER",
        description="Fragment marker that identifies a password-recovery page load",
    )
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS")
    use_memory_backends: bool = env_field(
        False,
        "USE_MEMORY_BACKENDS",
        description="Wire the in-memory identity provider and profile store",
    )
    profiles_table: str = env_field("profiles", "PROFILES_TABLE")

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

    @field_validator("inactivity_timeout_seconds", "http_timeout_seconds")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("manual_guard_grace_ms")
    @classmethod
    def _validate_grace(cls, value: int) -> int:
        if value < 0:
            raise ValueError("manual_guard_grace_ms must be >= 0")
        return value

    @field_validator("recovery_marker")
    @classmethod
    def _validate_marker(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("recovery_marker must not be blank")
        return value

    @field_validator("identity_url", "app_base_url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return value

    @property
    def manual_guard_grace_seconds(self) -> float:
        return self.manual_guard_grace_ms / 1000.0


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            identity_url=_settings_cache.identity_url,
            use_memory_backends=_settings_cache.use_memory_backends,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

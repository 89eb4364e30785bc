"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ first.
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_throttle_settings() -> "ThrottleSettings":
    """Build throttle settings from environment.

    Static type checkers treat defaulted BaseSettings fields as constructor
    arguments, which is not how BaseSettings is intended to be used.
    """

    return ThrottleSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_app_settings() -> "AppSettings":
    return AppSettings()  # type: ignore[call-arg]


class ThrottleSettings(BaseSettings):
    """Request throttling configuration.

    ``presets`` maps a name to either ``{"max_attempts": N, "decay_seconds": M}``
    or a two-tier ``{"ip": {...}, "account": {"field": ..., ...}}`` policy.
    In the environment it is given as JSON, e.g.
    ``THROTTLE_PRESETS='{"login": {"max_attempts": 5, "decay_seconds": 60}}'``.
    """

    enabled: bool = Field(
        True,
        description="Enable request throttling",
    )
    add_global_middleware: bool = Field(
        False,
        description="Throttle every request with the default limits, not only throttled routes",
    )
    max_attempts: int = Field(
        60,
        description="Default attempts allowed per window",
        ge=1,
    )
    decay_seconds: int = Field(
        60,
        description="Default window length in seconds",
        ge=1,
    )
    except_paths: list[str] = Field(
        default_factory=list,
        description="Paths (exact or '*' globs) that are never throttled",
    )
    trusted_proxies: list[str] = Field(
        default_factory=list,
        description="Proxy IPs or CIDR blocks allowed to supply X-Forwarded-For / X-Real-IP",
    )
    presets: dict[str, dict[str, Any]] = Field(
        default_factory=lambda: {
            "login": {
                "ip": {"max_attempts": 10, "decay_seconds": 60},
                "account": {"field": "email", "max_attempts": 5, "decay_seconds": 300},
            },
        },
        description="Named throttle policies",
    )
    storage: Literal["session", "database", "redis"] = Field(
        "session",
        description="Throttle storage backend",
    )
    table: str = Field(
        "throttle_requests",
        description="Table used by the database backend",
    )
    prefix: str = Field(
        "throttle:",
        description="Key prefix used by the session and redis backends",
    )
    database_url: str | None = Field(
        None,
        description="SQLAlchemy URL for the database backend",
    )
    redis_url: str | None = Field(
        None,
        description="Redis URL for the redis backend",
    )
    session_secret: str = Field(
        "change-me",
        description="Secret used to sign the session cookie for session storage",
    )

    model_config = SettingsConfigDict(
        env_prefix="THROTTLE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log output format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(0, description="Rotate the log file at this size (0 disables rotation)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field("X-Request-ID", description="Correlation header name")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    throttle: ThrottleSettings = Field(default_factory=_build_throttle_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


class ConfigSource(Protocol):
    """Read-only dotted-key configuration lookup."""

    def get(self, key: str, default: Any = None) -> Any: ...


class SettingsConfigSource:
    """Expose settings as a nested tree addressed by dotted keys.

    Throttle settings are mounted under ``security.throttle`` so policy code
    can ask for ``security.throttle.presets`` without importing Settings.
    """

    def __init__(self, tree: dict[str, Any]) -> None:
        self._tree = tree

    @classmethod
    def from_settings(cls, source: Settings) -> SettingsConfigSource:
        return cls({"security": {"throttle": source.throttle.model_dump()}})

    def get(self, key: str, default: Any = None) -> Any:
        value: Any = self._tree
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value


# Global settings instance - composed from domain-specific settings
settings = Settings()

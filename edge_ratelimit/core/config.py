"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


StorageBackend = Literal["memory", "redis", "rest", "noop", "none"]
StorageErrorPolicyName = Literal["raise", "open", "closed"]


def _build_rate_limit_settings() -> "RateLimitSettings":
    """Build rate limit settings from environment.

    Pydantic Settings (v2) populates values from environment variables, but
    static type checkers treat fields as constructor arguments. The helper
    keeps the type ignore in one place.
    """

    return RateLimitSettings()  # type: ignore[call-arg]


def _build_storage_settings() -> "StorageSettings":
    return StorageSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class RateLimitSettings(BaseSettings):
    """Admission-control configuration for the HTTP layer."""

    enabled: bool = Field(
        True,
        description="Enable per-identity rate limiting on incoming requests",
    )
    limit: int = Field(
        60,
        description="Maximum tokens (requests) per window for one identity",
        ge=1,
    )
    window_ms: int = Field(
        60_000,
        description="Window duration in milliseconds",
        ge=1,
    )
    refill_rate_per_ms: float | None = Field(
        None,
        description="Token refill rate per millisecond (defaults to limit / window_ms)",
        ge=0,
    )
    identity_header: str = Field(
        "x-forwarded-for",
        description="Request header used as caller identity (first comma-separated entry)",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on admitted responses",
    )
    on_storage_error: StorageErrorPolicyName = Field(
        "open",
        description="What to do when the KV store fails: raise, open (memoryless) or closed (deny)",
    )
    exempt_paths: str = Field(
        "/health",
        description="Comma-separated list of paths that bypass rate limiting",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    @property
    def exempt_path_set(self) -> set[str]:
        return {p.strip() for p in self.exempt_paths.split(",") if p.strip()}


class StorageSettings(BaseSettings):
    """Key-value backing store selection.

    Validation of backend-specific requirements happens in the factory.
    """

    backend: StorageBackend = Field(
        "memory",
        description="KV backend: memory, redis, rest, noop, or none (memoryless)",
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL (required for the redis backend)",
    )
    rest_url: str | None = Field(
        None,
        description="Base URL of a REST KV service (required for the rest backend)",
    )
    rest_token: str | None = Field(
        None,
        description="Bearer token for the REST KV service",
    )
    timeout_seconds: float = Field(
        1.0,
        description="Network timeout for remote KV operations",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="KV_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log line format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    storage: StorageSettings = Field(default_factory=_build_storage_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()

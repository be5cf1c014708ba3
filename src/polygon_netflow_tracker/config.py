"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
net-flow tracker, loading and validating environment variables at
startup. Configuration is immutable once loaded; invalid or missing
settings are fatal before the polling loop starts.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./data/polygon.db",
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional RPC response cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class LedgerSettings(BaseSettings):
    """Ledger JSON-RPC settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    rpc_url: str | None = Field(
        default=None,
        alias="LEDGER_RPC_URL",
        description="Primary JSON-RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="LEDGER_FALLBACK_RPC_URL",
        description="Fallback JSON-RPC endpoint",
    )
    height_timeout_seconds: float = Field(
        default=10.0,
        alias="LEDGER_HEIGHT_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Timeout for latest-height queries",
    )
    block_timeout_seconds: float = Field(
        default=20.0,
        alias="LEDGER_BLOCK_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Timeout for block listing and transaction detail queries",
    )
    max_retries: int = Field(
        default=3,
        alias="LEDGER_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before the call fails",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="LEDGER_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial delay between attempts (doubles each retry)",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="LEDGER_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Client-side rate limit for RPC calls",
    )
    resolve_receipts: bool = Field(
        default=True,
        alias="LEDGER_RESOLVE_RECEIPTS",
        description="Fetch receipts for matched transactions (fee, status, token logs)",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v


class PollerSettings(BaseSettings):
    """Polling loop settings."""

    model_config = SettingsConfigDict(env_prefix="POLL_", extra="ignore")

    interval_seconds: float = Field(
        default=10.0,
        alias="POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Delay between the end of one cycle and the start of the next",
    )
    detail_concurrency: int = Field(
        default=4,
        alias="POLL_DETAIL_CONCURRENCY",
        ge=1,
        le=64,
        description="Maximum concurrent transaction detail lookups per cycle",
    )


class WatchlistSettings(BaseSettings):
    """Watchlist source settings."""

    model_config = SettingsConfigDict(env_prefix="WATCHLIST_", extra="ignore")

    path: Path | None = Field(
        default=None,
        alias="WATCHLIST_PATH",
        description="JSON file mapping entity names to addresses, plus tracked assets",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from polygon_netflow_tracker.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.poller.interval_seconds)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ledger: LedgerSettings = Field(
        default_factory=lambda: LedgerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    poller: PollerSettings = Field(
        default_factory=lambda: PollerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    watchlist: WatchlistSettings = Field(
        default_factory=lambda: WatchlistSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "ledger": {
                "rpc_url": self._redact_url(self.ledger.rpc_url) if self.ledger.rpc_url else "(not set)",
                "fallback_rpc_url": (
                    self._redact_url(self.ledger.fallback_rpc_url)
                    if self.ledger.fallback_rpc_url
                    else "(not set)"
                ),
                "height_timeout_seconds": str(self.ledger.height_timeout_seconds),
                "block_timeout_seconds": str(self.ledger.block_timeout_seconds),
                "resolve_receipts": str(self.ledger.resolve_receipts),
            },
            "poller": {
                "interval_seconds": str(self.poller.interval_seconds),
                "detail_concurrency": str(self.poller.detail_concurrency),
            },
            "watchlist_path": str(self.watchlist.path) if self.watchlist.path else "(not set)",
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "once", "show", "init-db"]) -> None:
        """Validate command-specific requirements.

        Raises:
            ValueError: If a setting the command depends on is missing.
        """
        if command in ("run", "once"):
            if not self.ledger.rpc_url:
                raise ValueError("LEDGER_RPC_URL is required to poll the ledger")
            if self.watchlist.path is None:
                raise ValueError("WATCHLIST_PATH is required to poll the ledger")
            if not self.watchlist.path.is_file():
                raise ValueError(f"WATCHLIST_PATH does not point to a file: {self.watchlist.path}")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()

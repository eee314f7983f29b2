"""Configuration management service with Pydantic Settings.

This module provides centralized configuration for the AMM phase monitor,
loading and validating environment variables at startup. Per-pool alert
thresholds are consumed by the detector as an opaque, immutable value.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class ConfigurationMissingError(Exception):
    """Raised when a monitored pool has no alert thresholds configured."""


class AlertThresholds(BaseModel):
    """Alert thresholds for a single pool.

    Percentages are plain percent values (20 means 20%).
    """

    model_config = ConfigDict(frozen=True)

    reserve_drop_percent: float = Field(default=20.0, ge=0.0)
    reserve_drop_window_seconds: int = Field(default=3600, ge=1)
    price_spike_percent: float = Field(default=20.0, ge=0.0)
    price_spike_window_seconds: int = Field(default=3600, ge=1)
    supply_change_percent: float = Field(default=15.0, ge=0.0)
    supply_change_window_seconds: int = Field(default=3600, ge=1)
    min_reserve_usd: Decimal = Field(default=Decimal("1000"), ge=0)
    high_fees_usd: Decimal = Field(default=Decimal("50000"), ge=0)
    paused_duration_hours: float = Field(default=1.0, ge=0.0)


class PoolConfig(BaseModel):
    """A monitored pool."""

    model_config = ConfigDict(frozen=True)

    pool_id: str = Field(description="AMM pool contract address")
    name: str | None = Field(default=None, description="Human-readable label (model id)")
    token_address: str | None = Field(
        default=None,
        description="Pool token address; resolved on-chain via hokusaiToken() when unset",
    )
    thresholds: AlertThresholds | None = Field(
        default=None,
        description="Per-pool threshold override",
    )
    use_default_thresholds: bool = Field(
        default=True,
        description="Fall back to the ALERT_* defaults when no override is given",
    )

    @field_validator("pool_id", "token_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        """Normalize addresses to checksum form."""
        if v is None:
            return v
        if not Web3.is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return Web3.to_checksum_address(v)

    @property
    def label(self) -> str:
        return self.name or self.pool_id


class ChainSettings(BaseSettings):
    """EVM RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore", populate_by_name=True)

    rpc_url: str = Field(
        default="http://localhost:8545",
        alias="CHAIN_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=2,
        alias="CHAIN_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before failing over",
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


class RedisSettings(BaseSettings):
    """Optional Redis backing cache for contract-immutable parameters."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string",
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


class MonitorSettings(BaseSettings):
    """Polling, history and pool list settings."""

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore", populate_by_name=True)

    poll_interval_seconds: float = Field(
        default=12.0,
        alias="MONITOR_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Seconds between scheduled ticks per pool (12s is one mainnet block)",
    )
    read_timeout_seconds: float = Field(
        default=10.0,
        alias="MONITOR_READ_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="Upper bound on one batched state read; the tick is abandoned on timeout",
    )
    history_capacity: int = Field(
        default=300,
        alias="MONITOR_HISTORY_CAPACITY",
        ge=2,
        le=100_000,
        description="Snapshots retained per pool (300 is ~1h at 12s)",
    )
    event_watch_enabled: bool = Field(
        default=True,
        alias="MONITOR_EVENT_WATCH_ENABLED",
        description="Watch PhaseTransition events for fast re-evaluation",
    )
    event_poll_interval_seconds: float = Field(
        default=4.0,
        alias="MONITOR_EVENT_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=600.0,
        description="Seconds between PhaseTransition log queries",
    )
    pools: list[PoolConfig] = Field(
        default_factory=list,
        alias="MONITOR_POOLS",
        description="JSON list of pools to monitor",
    )


class ThresholdSettings(BaseSettings):
    """Default alert thresholds applied to pools without an override."""

    model_config = SettingsConfigDict(env_prefix="ALERT_", extra="ignore", populate_by_name=True)

    reserve_drop_percent: float = Field(default=20.0, alias="ALERT_RESERVE_DROP_PCT", ge=0.0)
    reserve_drop_window_seconds: int = Field(
        default=3600, alias="ALERT_RESERVE_DROP_WINDOW_SECONDS", ge=1
    )
    price_spike_percent: float = Field(default=20.0, alias="ALERT_PRICE_SPIKE_PCT", ge=0.0)
    price_spike_window_seconds: int = Field(
        default=3600, alias="ALERT_PRICE_SPIKE_WINDOW_SECONDS", ge=1
    )
    supply_change_percent: float = Field(default=15.0, alias="ALERT_SUPPLY_CHANGE_PCT", ge=0.0)
    supply_change_window_seconds: int = Field(
        default=3600, alias="ALERT_SUPPLY_CHANGE_WINDOW_SECONDS", ge=1
    )
    min_reserve_usd: Decimal = Field(default=Decimal("1000"), alias="ALERT_MIN_RESERVE_USD", ge=0)
    high_fees_usd: Decimal = Field(default=Decimal("50000"), alias="ALERT_HIGH_FEES_USD", ge=0)
    paused_duration_hours: float = Field(
        default=1.0, alias="ALERT_PAUSED_DURATION_HOURS", ge=0.0
    )

    def to_thresholds(self) -> AlertThresholds:
        return AlertThresholds(
            reserve_drop_percent=self.reserve_drop_percent,
            reserve_drop_window_seconds=self.reserve_drop_window_seconds,
            price_spike_percent=self.price_spike_percent,
            price_spike_window_seconds=self.price_spike_window_seconds,
            supply_change_percent=self.supply_change_percent,
            supply_change_window_seconds=self.supply_change_window_seconds,
            min_reserve_usd=self.min_reserve_usd,
            high_fees_usd=self.high_fees_usd,
            paused_duration_hours=self.paused_duration_hours,
        )


class Settings(BaseSettings):
    """Root application settings."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
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
    monitor: MonitorSettings = Field(
        default_factory=lambda: MonitorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    thresholds: ThresholdSettings = Field(
        default_factory=lambda: ThresholdSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Log alerts instead of handing them to the notification sink",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def thresholds_for(self, pool: PoolConfig) -> AlertThresholds:
        """Resolve the alert thresholds for a pool.

        Raises:
            ConfigurationMissingError: If the pool has no override and opted
                out of the defaults.
        """
        if pool.thresholds is not None:
            return pool.thresholds
        if pool.use_default_thresholds:
            return self.thresholds.to_thresholds()
        raise ConfigurationMissingError(f"No alert thresholds configured for pool {pool.label}")

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
            },
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "monitor": {
                "poll_interval_seconds": str(self.monitor.poll_interval_seconds),
                "read_timeout_seconds": str(self.monitor.read_timeout_seconds),
                "history_capacity": str(self.monitor.history_capacity),
                "event_watch_enabled": str(self.monitor.event_watch_enabled),
                "pools": str(len(self.monitor.pools)),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

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

"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
launchpad indexer, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite is accepted for local runs)",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional block cache)."""

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


class LedgerSettings(BaseSettings):
    """EVM ledger RPC and contract settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", extra="ignore")

    rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com",
        alias="LEDGER_RPC_URL",
        description="Primary RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="LEDGER_FALLBACK_RPC_URL",
        description="Fallback RPC endpoint",
    )
    factory_address: str | None = Field(
        default=None,
        alias="LEDGER_FACTORY_ADDRESS",
        description="Token factory contract emitting TokenLaunched",
    )
    locker_address: str | None = Field(
        default=None,
        alias="LEDGER_LOCKER_ADDRESS",
        description="Token locker contract emitting TokensLocked/TokensUnlocked",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="LEDGER_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=1000.0,
        description="Client-side rate limit for RPC calls",
    )
    max_retries: int = Field(
        default=3,
        alias="LEDGER_MAX_RETRIES",
        ge=1,
        le=10,
        description="Retry attempts per RPC endpoint",
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        alias="LEDGER_RETRY_DELAY_SECONDS",
        ge=0.0,
        le=30.0,
        description="Initial backoff between retries",
    )
    poa_middleware: bool = Field(
        default=False,
        alias="LEDGER_POA_MIDDLEWARE",
        description="Inject the extra-data middleware (proof-of-authority chains)",
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

    @field_validator("factory_address", "locker_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not (v.startswith("0x") and len(v) == 42):
            raise ValueError("contract address must be a 0x-prefixed 20-byte hex string")
        return v.lower()


class IndexerSettings(BaseSettings):
    """Ingestion run, reorg and block-range settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    confirmation_depth: int = Field(
        default=3,
        alias="INDEXER_CONFIRMATION_DEPTH",
        ge=0,
        le=256,
        description="Trailing blocks treated as not-yet-final (safety vs. latency tradeoff)",
    )
    run_budget_seconds: float = Field(
        default=25.0,
        alias="INDEXER_RUN_BUDGET_SECONDS",
        gt=0.0,
        le=600.0,
        description="Wall-clock budget of a single ingestion run",
    )
    min_block_range: int = Field(
        default=100,
        alias="INDEXER_MIN_BLOCK_RANGE",
        ge=1,
        le=10_000,
        description="Smallest eth_getLogs range used when close to the head",
    )
    max_block_range: int = Field(
        default=2000,
        alias="INDEXER_MAX_BLOCK_RANGE",
        ge=1,
        le=50_000,
        description="Largest eth_getLogs range used when far behind",
    )
    initial_lookback_blocks: int = Field(
        default=10_000,
        alias="INDEXER_INITIAL_LOOKBACK_BLOCKS",
        ge=0,
        le=10_000_000,
        description="Where a fresh partition starts, relative to the safe head",
    )
    max_rollback_blocks: int = Field(
        default=100,
        alias="INDEXER_MAX_ROLLBACK_BLOCKS",
        ge=1,
        le=100_000,
        description="How far back the reorg guard searches for an agreement point",
    )
    parallel_tokens: int = Field(
        default=6,
        alias="INDEXER_PARALLEL_TOKENS",
        ge=1,
        le=64,
        description="Tokens processed concurrently in one swap run",
    )
    tier_batch_size: int = Field(
        default=50,
        alias="INDEXER_TIER_BATCH_SIZE",
        ge=1,
        le=10_000,
        description="Tokens fetched per tier run",
    )
    stale_tier_seconds: int = Field(
        default=300,
        alias="INDEXER_STALE_TIER_SECONDS",
        ge=1,
        le=86_400,
        description="Age after which a token's tier is recomputed by the batch path",
    )
    lock_wait_seconds: float = Field(
        default=5.0,
        alias="INDEXER_LOCK_WAIT_SECONDS",
        ge=0.0,
        le=120.0,
        description="Bounded wait for coordinator locks inside a run",
    )
    auto_skip_malformed_blocks: bool = Field(
        default=False,
        alias="INDEXER_AUTO_SKIP_MALFORMED_BLOCKS",
        description="Add blocks with undecodable logs to the persistent skip list",
    )

    @field_validator("max_block_range")
    @classmethod
    def validate_max_block_range(cls, v: int) -> int:
        if v < 100:
            raise ValueError("INDEXER_MAX_BLOCK_RANGE must be >= 100")
        return v


class TierSettings(BaseSettings):
    """Poll cadence per activity tier (seconds)."""

    model_config = SettingsConfigDict(env_prefix="TIER_", extra="ignore")

    hot_interval_seconds: int = Field(default=10, alias="TIER_HOT_INTERVAL_SECONDS", ge=1, le=86_400)
    warm_interval_seconds: int = Field(default=120, alias="TIER_WARM_INTERVAL_SECONDS", ge=1, le=86_400)
    cold_interval_seconds: int = Field(default=600, alias="TIER_COLD_INTERVAL_SECONDS", ge=1, le=86_400)
    dormant_interval_seconds: int = Field(
        default=3600, alias="TIER_DORMANT_INTERVAL_SECONDS", ge=1, le=7 * 86_400
    )
    maintenance_interval_seconds: int = Field(
        default=60,
        alias="TIER_MAINTENANCE_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="Cadence of queue reaping and stale-tier recompute",
    )

    def cadence_table(self) -> dict[str, int]:
        """Cadence per tier name."""
        return {
            "hot": self.hot_interval_seconds,
            "warm": self.warm_interval_seconds,
            "cold": self.cold_interval_seconds,
            "dormant": self.dormant_interval_seconds,
        }


class CoordinatorSettings(BaseSettings):
    """Lock & queue coordinator settings."""

    model_config = SettingsConfigDict(env_prefix="COORDINATOR_", extra="ignore")

    lease_seconds: int = Field(
        default=300,
        alias="COORDINATOR_LEASE_SECONDS",
        ge=1,
        le=86_400,
        description="Lock lease length; a crashed holder is recovered after this",
    )
    retention_seconds: int = Field(
        default=3600,
        alias="COORDINATOR_RETENTION_SECONDS",
        ge=60,
        le=30 * 86_400,
        description="How long terminal queue entries are kept",
    )
    poll_interval_seconds: float = Field(
        default=3.0,
        alias="COORDINATOR_POLL_INTERVAL_SECONDS",
        gt=0.0,
        le=60.0,
        description="Queue polling interval while waiting for a lock",
    )
    renew_interval_seconds: float = Field(
        default=30.0,
        alias="COORDINATOR_RENEW_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Auto-renew interval for long-running holders",
    )


class ChartSettings(BaseSettings):
    """Chart query and display-rate settings."""

    model_config = SettingsConfigDict(env_prefix="CHART_", extra="ignore")

    max_points: int = Field(
        default=500,
        alias="CHART_MAX_POINTS",
        ge=2,
        le=100_000,
        description="Default point budget for sampled series",
    )
    noise_threshold: float = Field(
        default=0.001,
        alias="CHART_NOISE_THRESHOLD",
        ge=0.0,
        le=0.5,
        description="Relative change below which interior points are dropped",
    )
    default_display_rate: Decimal = Field(
        default=Decimal("3000"),
        alias="CHART_DEFAULT_DISPLAY_RATE",
        description="Display-currency rate used when no rate history exists",
    )

    interpolation_gap_seconds: int = Field(
        default=30,
        alias="CHART_INTERPOLATION_GAP_SECONDS",
        ge=1,
        le=86_400,
        description="Gap between observed snapshots above which synthetic points are filled in",
    )
    interpolation_step_seconds: int = Field(
        default=15,
        alias="CHART_INTERPOLATION_STEP_SECONDS",
        ge=1,
        le=86_400,
        description="Spacing of synthetic points inside a gap",
    )
    interpolation_lookback_hours: float = Field(
        default=24,
        alias="CHART_INTERPOLATION_LOOKBACK_HOURS",
        gt=0,
        le=24 * 30,
        description="How far back each interpolation pass scans for gaps",
    )
    interpolation_interval_seconds: int = Field(
        default=300,
        alias="CHART_INTERPOLATION_INTERVAL_SECONDS",
        ge=1,
        le=86_400,
        description="How often the scheduler runs an interpolation pass",
    )

    @field_validator("default_display_rate")
    @classmethod
    def validate_default_display_rate(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("CHART_DEFAULT_DISPLAY_RATE must be > 0")
        return v


class DisplayRateSettings(BaseSettings):
    """Display-currency rate tracking settings."""

    model_config = SettingsConfigDict(env_prefix="DISPLAY_RATE_", extra="ignore")

    enabled: bool = Field(
        default=True,
        alias="DISPLAY_RATE_ENABLED",
        description="Poll the rate provider from the scheduler",
    )
    url: str = Field(
        default="https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd",
        alias="DISPLAY_RATE_URL",
        description="Simple-price endpoint returning {asset: {currency: rate}}",
    )
    asset: str = Field(default="ethereum", alias="DISPLAY_RATE_ASSET", description="Asset key in the payload")
    currency: str = Field(default="usd", alias="DISPLAY_RATE_CURRENCY", description="Currency key in the payload")
    interval_seconds: int = Field(
        default=300,
        alias="DISPLAY_RATE_INTERVAL_SECONDS",
        ge=10,
        le=86_400,
        description="How often the scheduler records a new rate",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="DISPLAY_RATE_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="HTTP timeout for one rate request",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from launchpad_indexer.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.indexer.confirmation_depth)
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
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tiers: TierSettings = Field(
        default_factory=lambda: TierSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    coordinator: CoordinatorSettings = Field(
        default_factory=lambda: CoordinatorSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chart: ChartSettings = Field(
        default_factory=lambda: ChartSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    display_rate: DisplayRateSettings = Field(
        default_factory=lambda: DisplayRateSettings(
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
                "rpc_url": self.ledger.rpc_url,
                "fallback_rpc_url": self.ledger.fallback_rpc_url or "(not set)",
                "factory_address": self.ledger.factory_address or "(not set)",
                "locker_address": self.ledger.locker_address or "(not set)",
            },
            "indexer": {
                "confirmation_depth": str(self.indexer.confirmation_depth),
                "run_budget_seconds": str(self.indexer.run_budget_seconds),
                "max_rollback_blocks": str(self.indexer.max_rollback_blocks),
            },
            "tiers": {name: str(seconds) for name, seconds in self.tiers.cadence_table().items()},
            "display_rate": {
                "enabled": str(self.display_rate.enabled),
                "url": self.display_rate.url,
            },
            "log_level": self.log_level,
        }

    def validate_requirements(self, *, command: Literal["run", "ingest", "backfill"]) -> None:
        """Validate command-specific requirements.

        Ingestion commands refuse to start without the contract addresses
        they read events from.
        """
        if command in ("run", "ingest") and not self.ledger.factory_address:
            raise ValueError("LEDGER_FACTORY_ADDRESS is required to index launches and swaps")

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

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()

"""SQLAlchemy models for persistent storage.

This module defines the database schema for launched tokens, swap/lock/burn
events, price snapshots, reorg bookkeeping and the lock coordinator.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TokenModel(Base):
    """A launched token and its activity counters."""

    __tablename__ = "tokens"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    amm_address: Mapped[str] = mapped_column(String(42), nullable=False)
    creator_address: Mapped[str] = mapped_column(String(42), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    symbol: Mapped[str] = mapped_column(String(50), nullable=False)

    liquidity_percent: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    initial_liquidity_eth: Mapped[Decimal] = mapped_column(Numeric(40, 18), nullable=False)

    # Pinned at creation; the chart anchor depends on these never changing.
    launch_price_eth: Mapped[Decimal] = mapped_column(Numeric(40, 24), nullable=False)
    launch_display_rate: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)

    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    last_swap_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    swap_count_24h: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    activity_tier: Mapped[str] = mapped_column(String(10), nullable=False, default="dormant")
    last_tier_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_block: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_tokens_tier_priority", "activity_tier", "swap_count_24h", "last_checked_block"),
        Index("idx_tokens_block_number", "block_number"),
        Index("idx_tokens_amm", "amm_address"),
    )


class SwapModel(Base):
    """One AMM trade; the transaction hash is the natural key."""

    __tablename__ = "swaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amm_address: Mapped[str] = mapped_column(String(42), nullable=False)
    trader_address: Mapped[str] = mapped_column(String(42), nullable=False)

    eth_in: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    token_in: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    eth_out: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    token_out: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_swaps_tx_hash"),
        Index("idx_swaps_token_ts", "token_address", "timestamp"),
        Index("idx_swaps_block_number", "block_number"),
    )


class LockRecordModel(Base):
    """A time-locked token deposit; active until withdrawn (monotonic)."""

    __tablename__ = "token_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_id: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)

    lock_duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    unlock_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdraw_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    withdraw_block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    lock_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("lock_tx_hash", name="uq_token_locks_tx_hash"),
        UniqueConstraint("lock_id", name="uq_token_locks_lock_id"),
        Index("idx_token_locks_token", "token_address"),
        Index("idx_token_locks_owner", "owner_address"),
    )


class BurnModel(Base):
    """ERC20 transfers to the zero address."""

    __tablename__ = "token_burns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    display_rate: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)

    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("token_address", "tx_hash", name="uq_token_burns_token_tx"),
        Index("idx_token_burns_token_ts", "token_address", "timestamp"),
    )


class PriceSnapshotModel(Base):
    """Point-in-time price observation; (token, block) is the idempotency key."""

    __tablename__ = "price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    price_eth: Mapped[Decimal] = mapped_column(Numeric(40, 24), nullable=False)
    reserve_eth: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    reserve_token: Mapped[Decimal] = mapped_column(Numeric(78, 0), nullable=False)
    display_rate: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    interpolated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("token_address", "block_number", name="uq_price_snapshots_token_block"),
        Index("idx_price_snapshots_token_ts", "token_address", "timestamp"),
    )


class IndexerStateModel(Base):
    """Per-partition cursor; written only by the reorg guard under lock."""

    __tablename__ = "indexer_state"

    partition: Mapped[str] = mapped_column(String(20), primary_key=True)
    last_block: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    confirmation_depth: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class BlockCheckpointModel(Base):
    """Stored block hashes used to locate the reorg agreement point."""

    __tablename__ = "block_checkpoints"

    block_number: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class CoordinatorLockModel(Base):
    """A held lease; the primary key enforces one holder per resource."""

    __tablename__ = "coordinator_locks"

    resource_key: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder_request_id: Mapped[str] = mapped_column(String(36), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CoordinatorQueueModel(Base):
    """FIFO waiter bookkeeping for the lock coordinator."""

    __tablename__ = "coordinator_queue"

    queue_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_key: Mapped[str] = mapped_column(String(100), nullable=False)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # waiting/processing/completed/timeout
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acquired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("request_id", name="uq_coordinator_queue_request"),
        Index("idx_coordinator_queue_key_status", "resource_key", "status", "queue_id"),
    )


class SkipBlockModel(Base):
    """Blocks excluded from ingestion for one stream or for all of them."""

    __tablename__ = "skip_blocks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)
    stream: Mapped[str] = mapped_column(String(10), nullable=False)  # all/launch/swap/lock/burn
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("block_number", "stream", name="uq_skip_blocks_block_stream"),
    )


class IngestionErrorModel(Base):
    """Per-log ingestion errors (skipped units are recorded, never silent)."""

    __tablename__ = "ingestion_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(10), nullable=False)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_type: Mapped[str] = mapped_column(String(80), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_ingestion_errors_stream_block", "stream", "block_number"),)


class DisplayRateModel(Base):
    """Historical display-currency rate per native unit."""

    __tablename__ = "display_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    source: Mapped[str] = mapped_column(String(40), nullable=False, default="manual")

    __table_args__ = (UniqueConstraint("observed_at", name="uq_display_rates_observed_at"),)


class IndexerRunModel(Base):
    """Summary of one ingestion run."""

    __tablename__ = "indexer_runs"

    run_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tier: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # completed/timed_out/busy/failed
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    tokens_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocks_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    events_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    swaps_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorg_rollbacks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_indexer_runs_tier_started", "tier", "started_at"),)

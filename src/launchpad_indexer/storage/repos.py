"""Repository pattern implementations for data access.

This module provides data access abstractions for tokens, ledger events,
price snapshots and indexer bookkeeping. Every write that can be repeated by
an overlapping run goes through an ``INSERT ... ON CONFLICT`` keyed by the
row's natural identity.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from launchpad_indexer.storage.models import (
    BlockCheckpointModel,
    BurnModel,
    DisplayRateModel,
    IndexerRunModel,
    IndexerStateModel,
    IngestionErrorModel,
    LockRecordModel,
    PriceSnapshotModel,
    SkipBlockModel,
    SwapModel,
    TokenModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def ensure_utc(ts: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _optional_utc(ts: datetime | None) -> datetime | None:
    return ensure_utc(ts) if ts is not None else None


def dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


# ============================================================================
# Tokens
# ============================================================================


@dataclass
class TokenDTO:
    """Data transfer object for launched tokens."""

    token_address: str
    amm_address: str
    creator_address: str
    name: str
    symbol: str
    liquidity_percent: Decimal
    initial_liquidity_eth: Decimal
    launch_price_eth: Decimal
    launch_display_rate: Decimal
    block_number: int
    block_hash: str
    tx_hash: str
    created_at: datetime
    last_swap_at: datetime | None = None
    swap_count_24h: int = 0
    activity_tier: str = "dormant"
    last_tier_update: datetime | None = None
    last_checked_block: int = 0

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(
            token_address=model.token_address,
            amm_address=model.amm_address,
            creator_address=model.creator_address,
            name=model.name,
            symbol=model.symbol,
            liquidity_percent=model.liquidity_percent,
            initial_liquidity_eth=model.initial_liquidity_eth,
            launch_price_eth=model.launch_price_eth,
            launch_display_rate=model.launch_display_rate,
            block_number=model.block_number,
            block_hash=model.block_hash,
            tx_hash=model.tx_hash,
            created_at=ensure_utc(model.created_at),
            last_swap_at=_optional_utc(model.last_swap_at),
            swap_count_24h=model.swap_count_24h,
            activity_tier=model.activity_tier,
            last_tier_update=_optional_utc(model.last_tier_update),
            last_checked_block=model.last_checked_block,
        )


class TokenRepository:
    """Repository for launched tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_address: str) -> TokenDTO | None:
        result = await self.session.execute(
            select(TokenModel).where(TokenModel.token_address == token_address.lower())
        )
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def insert_if_absent(self, dto: TokenDTO) -> bool:
        """Insert a token keyed by address; an existing row is left untouched.

        Returns:
            True if a new row was written.
        """
        stmt = dialect_insert(self.session, TokenModel).values(
            token_address=dto.token_address.lower(),
            amm_address=dto.amm_address.lower(),
            creator_address=dto.creator_address.lower(),
            name=dto.name,
            symbol=dto.symbol,
            liquidity_percent=dto.liquidity_percent,
            initial_liquidity_eth=dto.initial_liquidity_eth,
            launch_price_eth=dto.launch_price_eth,
            launch_display_rate=dto.launch_display_rate,
            block_number=dto.block_number,
            block_hash=dto.block_hash,
            tx_hash=dto.tx_hash,
            created_at=dto.created_at,
            last_swap_at=dto.last_swap_at,
            swap_count_24h=dto.swap_count_24h,
            activity_tier=dto.activity_tier,
            last_tier_update=dto.last_tier_update,
            last_checked_block=dto.last_checked_block,
            indexed_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["token_address"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_by_tier(self, tier: str, *, limit: int) -> list[TokenDTO]:
        """Priority-ordered batch: busiest first, then least recently checked."""
        result = await self.session.execute(
            select(TokenModel)
            .where(TokenModel.activity_tier == tier)
            .order_by(
                TokenModel.swap_count_24h.desc(),
                TokenModel.last_checked_block.asc(),
                TokenModel.token_address.asc(),
            )
            .limit(limit)
        )
        return [TokenDTO.from_model(m) for m in result.scalars().all()]

    async def list_stale_tiers(self, *, cutoff: datetime, limit: int) -> list[TokenDTO]:
        result = await self.session.execute(
            select(TokenModel)
            .where(sa.or_(TokenModel.last_tier_update.is_(None), TokenModel.last_tier_update < cutoff))
            .order_by(TokenModel.last_tier_update.asc().nulls_first())
            .limit(limit)
        )
        return [TokenDTO.from_model(m) for m in result.scalars().all()]

    async def list_addresses(self) -> list[str]:
        result = await self.session.execute(
            select(TokenModel.token_address).order_by(TokenModel.block_number.asc())
        )
        return list(result.scalars().all())

    async def update_activity(
        self,
        token_address: str,
        *,
        tier: str,
        swap_count_24h: int,
        last_swap_at: datetime | None,
        updated_at: datetime,
    ) -> None:
        await self.session.execute(
            update(TokenModel)
            .where(TokenModel.token_address == token_address.lower())
            .values(
                activity_tier=tier,
                swap_count_24h=swap_count_24h,
                last_swap_at=last_swap_at,
                last_tier_update=updated_at,
            )
        )
        await self.session.flush()

    async def advance_last_checked_block(
        self,
        token_address: str,
        block_number: int,
        *,
        expected: int | None = None,
    ) -> bool:
        """Move the per-token swap cursor forward (never backward).

        With ``expected`` the write only happens while the cursor still holds
        that value, so a concurrent rollback that clamped it wins.

        Returns:
            True if the row was updated.
        """
        stmt = (
            update(TokenModel)
            .where(TokenModel.token_address == token_address.lower())
            .where(TokenModel.last_checked_block < block_number)
            .values(last_checked_block=block_number)
        )
        if expected is not None:
            stmt = stmt.where(TokenModel.last_checked_block == expected)
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def delete_created_after(self, block_number: int) -> list[str]:
        """Delete tokens launched after a block; returns their addresses."""
        result = await self.session.execute(
            select(TokenModel.token_address).where(TokenModel.block_number > block_number)
        )
        addresses = list(result.scalars().all())
        if addresses:
            await self.session.execute(delete(TokenModel).where(TokenModel.token_address.in_(addresses)))
            await self.session.flush()
        return addresses

    async def clamp_last_checked_block(self, block_number: int) -> int:
        result = await self.session.execute(
            update(TokenModel)
            .where(TokenModel.last_checked_block > block_number)
            .values(last_checked_block=block_number)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Swaps
# ============================================================================


@dataclass
class SwapDTO:
    token_address: str
    amm_address: str
    trader_address: str
    eth_in: Decimal
    token_in: Decimal
    eth_out: Decimal
    token_out: Decimal
    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    timestamp: datetime

    @classmethod
    def from_model(cls, model: SwapModel) -> SwapDTO:
        return cls(
            token_address=model.token_address,
            amm_address=model.amm_address,
            trader_address=model.trader_address,
            eth_in=model.eth_in,
            token_in=model.token_in,
            eth_out=model.eth_out,
            token_out=model.token_out,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_hash=model.block_hash,
            timestamp=ensure_utc(model.timestamp),
        )


class SwapRepository:
    """Repository for swap events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: SwapDTO) -> bool:
        """Insert a swap keyed by transaction hash; re-ingestion is a no-op.

        Returns:
            True if a new row was written.
        """
        stmt = dialect_insert(self.session, SwapModel).values(
            token_address=dto.token_address.lower(),
            amm_address=dto.amm_address.lower(),
            trader_address=dto.trader_address.lower(),
            eth_in=dto.eth_in,
            token_in=dto.token_in,
            eth_out=dto.eth_out,
            token_out=dto.token_out,
            tx_hash=dto.tx_hash.lower(),
            log_index=dto.log_index,
            block_number=dto.block_number,
            block_hash=dto.block_hash,
            timestamp=dto.timestamp,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_for_token(self, token_address: str, *, limit: int = 1000) -> list[SwapDTO]:
        result = await self.session.execute(
            select(SwapModel)
            .where(SwapModel.token_address == token_address.lower())
            .order_by(SwapModel.block_number.asc(), SwapModel.log_index.asc())
            .limit(limit)
        )
        return [SwapDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_tx_hash(self, tx_hash: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(SwapModel).where(SwapModel.tx_hash == tx_hash.lower())
        )
        return int(result.scalar_one())

    async def count_since(self, token_address: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(SwapModel)
            .where(SwapModel.token_address == token_address.lower())
            .where(SwapModel.timestamp >= since)
        )
        return int(result.scalar_one())

    async def count_in_block_range(self, token_address: str, from_block: int, to_block: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(SwapModel)
            .where(SwapModel.token_address == token_address.lower())
            .where(SwapModel.block_number >= from_block)
            .where(SwapModel.block_number <= to_block)
        )
        return int(result.scalar_one())

    async def latest_swap_at(self, token_address: str) -> datetime | None:
        result = await self.session.execute(
            select(func.max(SwapModel.timestamp)).where(SwapModel.token_address == token_address.lower())
        )
        return _optional_utc(result.scalar_one_or_none())

    async def delete_after(self, block_number: int) -> tuple[int, set[str]]:
        """Delete swaps after a block.

        Returns:
            Number of deleted rows and the affected token addresses.
        """
        result = await self.session.execute(
            select(SwapModel.token_address).where(SwapModel.block_number > block_number).distinct()
        )
        affected = set(result.scalars().all())
        deleted = await self.session.execute(delete(SwapModel).where(SwapModel.block_number > block_number))
        await self.session.flush()
        return int(deleted.rowcount or 0), affected


# ============================================================================
# Locks and burns
# ============================================================================


@dataclass
class LockRecordDTO:
    lock_id: int
    owner_address: str
    token_address: str
    amount: Decimal
    lock_duration_seconds: int
    locked_at: datetime
    unlock_time: datetime
    lock_tx_hash: str
    block_number: int
    withdrawn: bool = False
    withdrawn_at: datetime | None = None
    withdraw_tx_hash: str | None = None
    withdraw_block_number: int | None = None

    @classmethod
    def from_model(cls, model: LockRecordModel) -> LockRecordDTO:
        return cls(
            lock_id=model.lock_id,
            owner_address=model.owner_address,
            token_address=model.token_address,
            amount=model.amount,
            lock_duration_seconds=model.lock_duration_seconds,
            locked_at=ensure_utc(model.locked_at),
            unlock_time=ensure_utc(model.unlock_time),
            lock_tx_hash=model.lock_tx_hash,
            block_number=model.block_number,
            withdrawn=model.withdrawn,
            withdrawn_at=_optional_utc(model.withdrawn_at),
            withdraw_tx_hash=model.withdraw_tx_hash,
            withdraw_block_number=model.withdraw_block_number,
        )


class LockRecordRepository:
    """Repository for time-locked deposits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_lock_id(self, lock_id: int) -> LockRecordDTO | None:
        result = await self.session.execute(select(LockRecordModel).where(LockRecordModel.lock_id == lock_id))
        model = result.scalar_one_or_none()
        return LockRecordDTO.from_model(model) if model else None

    async def upsert_lock(self, dto: LockRecordDTO) -> bool:
        """Insert a lock keyed by its transaction hash; duplicates are ignored."""
        stmt = dialect_insert(self.session, LockRecordModel).values(
            lock_id=dto.lock_id,
            owner_address=dto.owner_address.lower(),
            token_address=dto.token_address.lower(),
            amount=dto.amount,
            lock_duration_seconds=dto.lock_duration_seconds,
            locked_at=dto.locked_at,
            unlock_time=dto.unlock_time,
            withdrawn=False,
            lock_tx_hash=dto.lock_tx_hash.lower(),
            block_number=dto.block_number,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["lock_tx_hash"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_withdrawn(
        self,
        lock_id: int,
        *,
        withdrawn_at: datetime,
        withdraw_tx_hash: str,
        withdraw_block_number: int,
    ) -> bool:
        """Flip an active lock to withdrawn; already-withdrawn locks are untouched."""
        result = await self.session.execute(
            update(LockRecordModel)
            .where(LockRecordModel.lock_id == lock_id)
            .where(LockRecordModel.withdrawn.is_(False))
            .values(
                withdrawn=True,
                withdrawn_at=withdrawn_at,
                withdraw_tx_hash=withdraw_tx_hash.lower(),
                withdraw_block_number=withdraw_block_number,
            )
        )
        await self.session.flush()
        return bool(result.rowcount)

    async def delete_after(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(LockRecordModel).where(LockRecordModel.block_number > block_number)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def revert_withdrawals_after(self, block_number: int) -> int:
        result = await self.session.execute(
            update(LockRecordModel)
            .where(LockRecordModel.withdraw_block_number > block_number)
            .values(
                withdrawn=False,
                withdrawn_at=None,
                withdraw_tx_hash=None,
                withdraw_block_number=None,
            )
        )
        await self.session.flush()
        return int(result.rowcount or 0)


@dataclass
class BurnDTO:
    token_address: str
    from_address: str
    amount: Decimal
    display_rate: Decimal
    tx_hash: str
    block_number: int
    timestamp: datetime

    @classmethod
    def from_model(cls, model: BurnModel) -> BurnDTO:
        return cls(
            token_address=model.token_address,
            from_address=model.from_address,
            amount=model.amount,
            display_rate=model.display_rate,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            timestamp=ensure_utc(model.timestamp),
        )


class BurnRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: BurnDTO) -> bool:
        stmt = dialect_insert(self.session, BurnModel).values(
            token_address=dto.token_address.lower(),
            from_address=dto.from_address.lower(),
            amount=dto.amount,
            display_rate=dto.display_rate,
            tx_hash=dto.tx_hash.lower(),
            block_number=dto.block_number,
            timestamp=dto.timestamp,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["token_address", "tx_hash"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def list_for_token(self, token_address: str) -> list[BurnDTO]:
        result = await self.session.execute(
            select(BurnModel)
            .where(BurnModel.token_address == token_address.lower())
            .order_by(BurnModel.block_number.asc())
        )
        return [BurnDTO.from_model(m) for m in result.scalars().all()]

    async def delete_after(self, block_number: int) -> int:
        result = await self.session.execute(delete(BurnModel).where(BurnModel.block_number > block_number))
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Price snapshots
# ============================================================================


@dataclass
class PriceSnapshotDTO:
    token_address: str
    price_eth: Decimal
    reserve_eth: Decimal
    reserve_token: Decimal
    display_rate: Decimal
    block_number: int
    timestamp: datetime
    interpolated: bool = False

    @classmethod
    def from_model(cls, model: PriceSnapshotModel) -> PriceSnapshotDTO:
        return cls(
            token_address=model.token_address,
            price_eth=model.price_eth,
            reserve_eth=model.reserve_eth,
            reserve_token=model.reserve_token,
            display_rate=model.display_rate,
            block_number=model.block_number,
            timestamp=ensure_utc(model.timestamp),
            interpolated=model.interpolated,
        )


class PriceSnapshotRepository:
    """Append-only price history with a (token, block) uniqueness contract."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: PriceSnapshotDTO) -> bool:
        """Insert a snapshot; an existing (token, block) row wins.

        An observed snapshot replaces an interpolated row at the same block;
        interpolated rows never replace anything.

        Returns:
            True if a new row was written.
        """
        stmt = dialect_insert(self.session, PriceSnapshotModel).values(
            token_address=dto.token_address.lower(),
            price_eth=dto.price_eth,
            reserve_eth=dto.reserve_eth,
            reserve_token=dto.reserve_token,
            display_rate=dto.display_rate,
            interpolated=dto.interpolated,
            block_number=dto.block_number,
            timestamp=dto.timestamp,
            created_at=datetime.now(UTC),
        )
        if dto.interpolated:
            stmt = stmt.on_conflict_do_nothing(index_elements=["token_address", "block_number"])
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["token_address", "block_number"],
                set_={
                    "price_eth": stmt.excluded.price_eth,
                    "reserve_eth": stmt.excluded.reserve_eth,
                    "reserve_token": stmt.excluded.reserve_token,
                    "display_rate": stmt.excluded.display_rate,
                    "timestamp": stmt.excluded.timestamp,
                    "interpolated": False,
                },
                where=PriceSnapshotModel.interpolated.is_(True),
            )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def first_observed(self, token_address: str, *, start: datetime, end: datetime) -> PriceSnapshotDTO | None:
        """Earliest non-interpolated snapshot in ``[start, end]``."""
        result = await self.session.execute(
            select(PriceSnapshotModel)
            .where(PriceSnapshotModel.token_address == token_address.lower())
            .where(PriceSnapshotModel.interpolated.is_(False))
            .where(PriceSnapshotModel.timestamp >= start)
            .where(PriceSnapshotModel.timestamp <= end)
            .order_by(PriceSnapshotModel.timestamp.asc(), PriceSnapshotModel.block_number.asc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return PriceSnapshotDTO.from_model(model) if model else None

    async def list_observed(self, token_address: str, *, start: datetime, end: datetime) -> list[PriceSnapshotDTO]:
        """Non-interpolated snapshots in a window, in block order."""
        result = await self.session.execute(
            select(PriceSnapshotModel)
            .where(PriceSnapshotModel.token_address == token_address.lower())
            .where(PriceSnapshotModel.interpolated.is_(False))
            .where(PriceSnapshotModel.timestamp >= start)
            .where(PriceSnapshotModel.timestamp <= end)
            .order_by(PriceSnapshotModel.block_number.asc())
        )
        return [PriceSnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def tokens_in_window(self, *, start: datetime, end: datetime) -> list[str]:
        result = await self.session.execute(
            select(PriceSnapshotModel.token_address)
            .where(PriceSnapshotModel.interpolated.is_(False))
            .where(PriceSnapshotModel.timestamp >= start)
            .where(PriceSnapshotModel.timestamp <= end)
            .group_by(PriceSnapshotModel.token_address)
        )
        return [str(row[0]) for row in result.all()]

    async def count_in_window(self, token_address: str, *, start: datetime, end: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PriceSnapshotModel)
            .where(PriceSnapshotModel.token_address == token_address.lower())
            .where(PriceSnapshotModel.timestamp >= start)
            .where(PriceSnapshotModel.timestamp <= end)
        )
        return int(result.scalar_one())

    async def list_in_window(
        self,
        token_address: str,
        *,
        start: datetime,
        end: datetime,
    ) -> list[PriceSnapshotDTO]:
        """Snapshots in a window, chronological (block breaks timestamp ties)."""
        result = await self.session.execute(
            select(PriceSnapshotModel)
            .where(PriceSnapshotModel.token_address == token_address.lower())
            .where(PriceSnapshotModel.timestamp >= start)
            .where(PriceSnapshotModel.timestamp <= end)
            .order_by(PriceSnapshotModel.timestamp.asc(), PriceSnapshotModel.block_number.asc())
        )
        return [PriceSnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_token(self, token_address: str) -> list[PriceSnapshotDTO]:
        result = await self.session.execute(
            select(PriceSnapshotModel)
            .where(PriceSnapshotModel.token_address == token_address.lower())
            .order_by(PriceSnapshotModel.block_number.asc())
        )
        return [PriceSnapshotDTO.from_model(m) for m in result.scalars().all()]

    async def delete_after(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(PriceSnapshotModel).where(PriceSnapshotModel.block_number > block_number)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def delete_for_tokens(self, token_addresses: Sequence[str]) -> int:
        if not token_addresses:
            return 0
        normalized = [t.lower() for t in token_addresses]
        result = await self.session.execute(
            delete(PriceSnapshotModel).where(PriceSnapshotModel.token_address.in_(normalized))
        )
        await self.session.flush()
        return int(result.rowcount or 0)


# ============================================================================
# Display rates
# ============================================================================


class DisplayRateRepository:
    """Historical display-currency rate book."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, rate: Decimal, *, observed_at: datetime, source: str = "manual") -> None:
        if rate <= 0:
            raise ValueError("display rate must be > 0")
        stmt = dialect_insert(self.session, DisplayRateModel).values(
            observed_at=observed_at,
            rate=rate,
            source=source,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["observed_at"],
            set_={"rate": stmt.excluded.rate, "source": stmt.excluded.source},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def rate_at(self, ts: datetime) -> Decimal | None:
        """Latest recorded rate at or before ``ts``."""
        result = await self.session.execute(
            select(DisplayRateModel.rate)
            .where(DisplayRateModel.observed_at <= ts)
            .order_by(DisplayRateModel.observed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


# ============================================================================
# Indexer bookkeeping
# ============================================================================


@dataclass
class IndexerStateDTO:
    partition: str
    last_block: int
    last_block_hash: str | None
    confirmation_depth: int
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IndexerStateModel) -> IndexerStateDTO:
        return cls(
            partition=model.partition,
            last_block=model.last_block,
            last_block_hash=model.last_block_hash,
            confirmation_depth=model.confirmation_depth,
            updated_at=_optional_utc(model.updated_at),
        )


class IndexerStateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, partition: str, *, for_update: bool = False) -> IndexerStateDTO | None:
        """Fetch a cursor row; ``for_update`` locks it until the transaction ends."""
        stmt = select(IndexerStateModel).where(IndexerStateModel.partition == partition)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return IndexerStateDTO.from_model(model) if model else None

    async def get_or_create(
        self,
        partition: str,
        *,
        confirmation_depth: int,
        for_update: bool = False,
    ) -> IndexerStateDTO:
        state = await self.get(partition, for_update=for_update)
        if state is not None:
            return state

        stmt = dialect_insert(self.session, IndexerStateModel).values(
            partition=partition,
            last_block=0,
            last_block_hash=None,
            confirmation_depth=confirmation_depth,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["partition"])
        await self.session.execute(stmt)
        await self.session.flush()
        state = await self.get(partition, for_update=for_update)
        if state is None:
            raise RuntimeError(f"indexer_state row for {partition!r} vanished after insert")
        return state

    async def list_all(self, *, for_update: bool = False) -> list[IndexerStateDTO]:
        stmt = select(IndexerStateModel).order_by(IndexerStateModel.partition)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return [IndexerStateDTO.from_model(m) for m in result.scalars().all()]

    async def compare_and_set_cursor(
        self,
        partition: str,
        *,
        expected_block: int,
        expected_hash: str | None,
        block_number: int,
        block_hash: str,
    ) -> bool:
        """Move the cursor only if it still points at ``expected_block``/``expected_hash``.

        Returns:
            False if another writer (a rollback) changed the row first.
        """
        stmt = (
            update(IndexerStateModel)
            .where(IndexerStateModel.partition == partition)
            .where(IndexerStateModel.last_block == expected_block)
            .values(last_block=block_number, last_block_hash=block_hash, updated_at=datetime.now(UTC))
        )
        if expected_hash is None:
            stmt = stmt.where(IndexerStateModel.last_block_hash.is_(None))
        else:
            stmt = stmt.where(IndexerStateModel.last_block_hash == expected_hash)
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def set_cursor(self, partition: str, *, block_number: int, block_hash: str | None) -> None:
        await self.session.execute(
            update(IndexerStateModel)
            .where(IndexerStateModel.partition == partition)
            .values(last_block=block_number, last_block_hash=block_hash, updated_at=datetime.now(UTC))
        )
        await self.session.flush()

    async def set_confirmation_depth(self, partition: str, depth: int) -> None:
        await self.session.execute(
            update(IndexerStateModel)
            .where(IndexerStateModel.partition == partition)
            .values(confirmation_depth=depth, updated_at=datetime.now(UTC))
        )
        await self.session.flush()


class BlockCheckpointRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_many(self, hashes: dict[int, str]) -> None:
        if not hashes:
            return
        now = datetime.now(UTC)
        for block_number, block_hash in sorted(hashes.items()):
            stmt = dialect_insert(self.session, BlockCheckpointModel).values(
                block_number=block_number,
                block_hash=block_hash,
                recorded_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["block_number"],
                set_={"block_hash": stmt.excluded.block_hash, "recorded_at": stmt.excluded.recorded_at},
            )
            await self.session.execute(stmt)
        await self.session.flush()

    async def get(self, block_number: int) -> str | None:
        result = await self.session.execute(
            select(BlockCheckpointModel.block_hash).where(BlockCheckpointModel.block_number == block_number)
        )
        return result.scalar_one_or_none()

    async def list_descending(self, *, below: int, floor: int) -> list[tuple[int, str]]:
        """Checkpoints in ``[floor, below)``, newest first."""
        result = await self.session.execute(
            select(BlockCheckpointModel.block_number, BlockCheckpointModel.block_hash)
            .where(BlockCheckpointModel.block_number < below)
            .where(BlockCheckpointModel.block_number >= floor)
            .order_by(BlockCheckpointModel.block_number.desc())
        )
        return [(int(row[0]), str(row[1])) for row in result.all()]

    async def delete_after(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(BlockCheckpointModel).where(BlockCheckpointModel.block_number > block_number)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def prune_before(self, block_number: int) -> int:
        result = await self.session.execute(
            delete(BlockCheckpointModel).where(BlockCheckpointModel.block_number < block_number)
        )
        await self.session.flush()
        return int(result.rowcount or 0)


class SkipBlockRepository:
    """Persistent exclusion list of known-bad blocks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, block_number: int, *, stream: str, reason: str, created_by: str = "manual") -> bool:
        stmt = dialect_insert(self.session, SkipBlockModel).values(
            block_number=block_number,
            stream=stream,
            reason=reason,
            created_by=created_by,
            created_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["block_number", "stream"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return bool(result.rowcount)

    async def blocks_for(self, stream: str, *, from_block: int, to_block: int) -> set[int]:
        """Blocks in range skipped for this stream (or for all streams)."""
        result = await self.session.execute(
            select(SkipBlockModel.block_number)
            .where(SkipBlockModel.stream.in_([stream, "all"]))
            .where(SkipBlockModel.block_number >= from_block)
            .where(SkipBlockModel.block_number <= to_block)
        )
        return {int(b) for b in result.scalars().all()}


@dataclass
class IngestionErrorDTO:
    stream: str
    error_type: str
    message: str
    block_number: int | None = None
    tx_hash: str | None = None
    created_at: datetime | None = None


class IngestionErrorRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, errors: list[IngestionErrorDTO]) -> None:
        if not errors:
            return
        rows = [
            {
                "stream": e.stream,
                "block_number": e.block_number,
                "tx_hash": e.tx_hash,
                "error_type": e.error_type,
                "message": e.message,
                "created_at": e.created_at or datetime.now(UTC),
            }
            for e in errors
        ]
        await self.session.execute(sa.insert(IngestionErrorModel), rows)
        await self.session.flush()

    async def count(self, *, stream: str | None = None) -> int:
        stmt = select(func.count()).select_from(IngestionErrorModel)
        if stream is not None:
            stmt = stmt.where(IngestionErrorModel.stream == stream)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


@dataclass
class IndexerRunDTO:
    run_id: str
    tier: str
    status: str
    started_at: datetime
    finished_at: datetime
    tokens_processed: int = 0
    blocks_scanned: int = 0
    events_processed: int = 0
    swaps_found: int = 0
    errors_count: int = 0
    reorg_rollbacks: int = 0


class IndexerRunRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: IndexerRunDTO) -> None:
        self.session.add(
            IndexerRunModel(
                run_id=dto.run_id,
                tier=dto.tier,
                status=dto.status,
                started_at=dto.started_at,
                finished_at=dto.finished_at,
                tokens_processed=dto.tokens_processed,
                blocks_scanned=dto.blocks_scanned,
                events_processed=dto.events_processed,
                swaps_found=dto.swaps_found,
                errors_count=dto.errors_count,
                reorg_rollbacks=dto.reorg_rollbacks,
            )
        )
        await self.session.flush()

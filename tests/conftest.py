"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode as abi_encode
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from launchpad_indexer.ledger.events import (
    SWAP_TOPIC,
    TOKEN_LAUNCHED_TOPIC,
    TOKENS_LOCKED_TOPIC,
    TOKENS_UNLOCKED_TOPIC,
    TRANSFER_TOPIC,
    ZERO_ADDRESS,
    pad_topic_address,
)
from launchpad_indexer.storage.models import Base
from launchpad_indexer.storage.repos import TokenDTO

TOKEN = "0x1111111111111111111111111111111111111111"
AMM = "0x2222222222222222222222222222222222222222"
CREATOR = "0x3333333333333333333333333333333333333333"
TRADER = "0x4444444444444444444444444444444444444444"
FACTORY = "0x5555555555555555555555555555555555555555"
LOCKER = "0x6666666666666666666666666666666666666666"

GENESIS_TIME = datetime(2026, 1, 1, tzinfo=UTC)
BLOCK_TIME_SECONDS = 12


def canonical_hash(block_number: int) -> str:
    return "0x" + format(block_number, "064x")


def forked_hash(block_number: int) -> str:
    return "0x" + "f" + format(block_number, "063x")


def block_time(block_number: int) -> datetime:
    return GENESIS_TIME + timedelta(seconds=block_number * BLOCK_TIME_SECONDS)


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def session_factory(tmp_path):
    """File-backed SQLite so several sessions (and tasks) see the same data."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


# ============================================================================
# Domain fixtures
# ============================================================================


@pytest.fixture
def make_token():
    """Factory for token DTOs with sensible launch defaults."""

    def _make(**overrides: Any) -> TokenDTO:
        values: dict[str, Any] = {
            "token_address": TOKEN,
            "amm_address": AMM,
            "creator_address": CREATOR,
            "name": "Test Token",
            "symbol": "TEST",
            "liquidity_percent": Decimal("50"),
            "initial_liquidity_eth": Decimal("0.1"),
            "launch_price_eth": Decimal("0.0000002"),
            "launch_display_rate": Decimal("3000"),
            "block_number": 100,
            "block_hash": canonical_hash(100),
            "tx_hash": "0x" + "ab" * 32,
            "created_at": block_time(100),
            "last_checked_block": 99,
        }
        values.update(overrides)
        return TokenDTO(**values)

    return _make


class LogBuilder:
    """Builds raw ``eth_getLogs`` entries with ABI-encoded data."""

    def __init__(self) -> None:
        self._tx_counter = 0

    def _position(self, block_number: int, log_index: int, address: str, tx_hash: str | None) -> dict[str, Any]:
        if tx_hash is None:
            self._tx_counter += 1
            tx_hash = "0x" + format(self._tx_counter, "064x")
        return {
            "address": address,
            "blockNumber": block_number,
            "blockHash": canonical_hash(block_number),
            "transactionHash": tx_hash,
            "logIndex": log_index,
        }

    def launch(
        self,
        block_number: int,
        *,
        token: str = TOKEN,
        amm: str = AMM,
        creator: str = CREATOR,
        name: str = "Test Token",
        symbol: str = "TEST",
        liquidity_percent: int = 50,
        initial_liquidity_wei: int = 10**17,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return {
            **self._position(block_number, log_index, FACTORY, tx_hash),
            "topics": [
                TOKEN_LAUNCHED_TOPIC,
                pad_topic_address(token),
                pad_topic_address(amm),
                pad_topic_address(creator),
            ],
            "data": abi_encode(
                ["string", "string", "uint256", "uint256"],
                [name, symbol, liquidity_percent, initial_liquidity_wei],
            ),
        }

    def swap(
        self,
        block_number: int,
        *,
        eth_in: int = 10**16,
        token_in: int = 0,
        eth_out: int = 0,
        token_out: int = 5 * 10**21,
        trader: str = TRADER,
        amm: str = AMM,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return {
            **self._position(block_number, log_index, amm, tx_hash),
            "topics": [SWAP_TOPIC, pad_topic_address(trader)],
            "data": abi_encode(["uint256"] * 4, [eth_in, token_in, eth_out, token_out]),
        }

    def lock(
        self,
        block_number: int,
        *,
        lock_id: int,
        amount: int = 10**20,
        unlock_time: datetime | None = None,
        owner: str = CREATOR,
        token: str = TOKEN,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        unlock_at = unlock_time or block_time(block_number) + timedelta(days=30)
        return {
            **self._position(block_number, log_index, LOCKER, tx_hash),
            "topics": [
                TOKENS_LOCKED_TOPIC,
                "0x" + format(lock_id, "064x"),
                pad_topic_address(owner),
                pad_topic_address(token),
            ],
            "data": abi_encode(["uint256", "uint256"], [amount, int(unlock_at.timestamp())]),
        }

    def unlock(
        self,
        block_number: int,
        *,
        lock_id: int,
        amount: int = 10**20,
        owner: str = CREATOR,
        token: str = TOKEN,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return {
            **self._position(block_number, log_index, LOCKER, tx_hash),
            "topics": [
                TOKENS_UNLOCKED_TOPIC,
                "0x" + format(lock_id, "064x"),
                pad_topic_address(owner),
                pad_topic_address(token),
            ],
            "data": abi_encode(["uint256"], [amount]),
        }

    def burn(
        self,
        block_number: int,
        *,
        amount: int = 10**18,
        sender: str = CREATOR,
        token: str = TOKEN,
        log_index: int = 0,
        tx_hash: str | None = None,
    ) -> dict[str, Any]:
        return {
            **self._position(block_number, log_index, token, tx_hash),
            "topics": [TRANSFER_TOPIC, pad_topic_address(sender), pad_topic_address(ZERO_ADDRESS)],
            "data": abi_encode(["uint256"], [amount]),
        }


@pytest.fixture
def logs() -> LogBuilder:
    return LogBuilder()


@pytest.fixture
def chain() -> SimpleNamespace:
    """Addresses and the synthetic chain's hash/time functions."""
    return SimpleNamespace(
        token=TOKEN,
        amm=AMM,
        creator=CREATOR,
        trader=TRADER,
        factory=FACTORY,
        locker=LOCKER,
        canonical_hash=canonical_hash,
        forked_hash=forked_hash,
        block_time=block_time,
    )


@pytest.fixture
def mock_ledger() -> MagicMock:
    """Ledger stub on the canonical chain: hash and time derive from the height."""
    ledger = MagicMock()
    ledger.head_number = 1_000

    async def get_head() -> Any:
        ref = MagicMock()
        ref.number = ledger.head_number
        ref.hash = canonical_hash(ledger.head_number)
        ref.timestamp = block_time(ledger.head_number)
        return ref

    ledger.get_head = AsyncMock(side_effect=get_head)
    ledger.get_block_hash = AsyncMock(side_effect=canonical_hash)
    ledger.get_block_timestamp = AsyncMock(side_effect=block_time)
    ledger.get_logs = AsyncMock(return_value=[])
    ledger.get_reserves = AsyncMock(return_value=(10**18, 5 * 10**24))
    return ledger

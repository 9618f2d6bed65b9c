"""Tests for launch-price derivation and display-rate lookup."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from launchpad_indexer.indexer.pricing import (
    DisplayRateBook,
    PricingError,
    build_token_from_launch,
    launch_price_eth,
    reserve_price_eth,
    wei_to_eth,
)
from launchpad_indexer.ledger.events import LogPosition, TokenLaunchedEvent
from launchpad_indexer.storage.repos import DisplayRateRepository


def _launch_event(chain, *, liquidity_percent: int = 50, initial_liquidity_wei: int = 10**17) -> TokenLaunchedEvent:
    return TokenLaunchedEvent(
        position=LogPosition(
            block_number=100,
            block_hash=chain.canonical_hash(100),
            tx_hash="0x" + "ab" * 32,
            log_index=0,
            address=chain.factory,
        ),
        token_address=chain.token,
        amm_address=chain.amm,
        creator_address=chain.creator,
        name="Test Token",
        symbol="TEST",
        liquidity_percent=liquidity_percent,
        initial_liquidity_wei=initial_liquidity_wei,
    )


class TestLaunchPrice:
    def test_wei_to_eth(self):
        assert wei_to_eth(10**17) == Decimal("0.1")

    def test_price_from_seeded_pool(self):
        # 0.1 ETH against half of a 1M supply
        price = launch_price_eth(initial_liquidity_eth=Decimal("0.1"), liquidity_percent=50)
        assert price == Decimal("0.0000002")

    def test_zero_percent_rejected(self):
        with pytest.raises(PricingError):
            launch_price_eth(initial_liquidity_eth=Decimal("0.1"), liquidity_percent=0)

    def test_reserve_price(self):
        assert reserve_price_eth(10**18, 5 * 10**24) == Decimal("0.0000002")

    def test_empty_token_reserve_rejected(self):
        with pytest.raises(PricingError):
            reserve_price_eth(10**18, 0)


class TestBuildTokenFromLaunch:
    def test_derives_price_and_pins_rate(self, chain):
        created_at = chain.block_time(100)
        token = build_token_from_launch(_launch_event(chain), created_at=created_at, display_rate=Decimal("3000"))

        assert token.launch_price_eth == Decimal("0.0000002")
        assert token.launch_display_rate == Decimal("3000")
        assert token.initial_liquidity_eth == Decimal("0.1")
        assert token.created_at == created_at
        assert token.activity_tier == "dormant"

    def test_swaps_in_launch_block_are_scanned(self, chain):
        token = build_token_from_launch(
            _launch_event(chain), created_at=chain.block_time(100), display_rate=Decimal("3000")
        )
        assert token.last_checked_block == 99


class TestDisplayRateBook:
    @pytest.mark.asyncio
    async def test_falls_back_to_default(self, async_session):
        book = DisplayRateBook(default_rate=Decimal("2500"))
        assert await book.rate_at(async_session, datetime.now(UTC)) == Decimal("2500")

    @pytest.mark.asyncio
    async def test_historical_rate(self, async_session):
        t0 = datetime(2026, 1, 1, tzinfo=UTC)
        repo = DisplayRateRepository(async_session)
        await repo.record(Decimal("3000"), observed_at=t0)
        await repo.record(Decimal("3600"), observed_at=t0 + timedelta(hours=2))

        book = DisplayRateBook()
        assert await book.rate_at(async_session, t0 + timedelta(minutes=30)) == Decimal("3000")
        assert await book.rate_at(async_session, t0 + timedelta(hours=2)) == Decimal("3600")

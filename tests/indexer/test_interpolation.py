"""Tests for snapshot gap interpolation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from launchpad_indexer.indexer.interpolation import SnapshotInterpolator, gap_positions
from launchpad_indexer.indexer.pricing import DisplayRateBook
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import DisplayRateRepository, PriceSnapshotDTO, PriceSnapshotRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
T0 = NOW - timedelta(minutes=10)


def _observed(block: int, at: datetime, price: str = "0.0000002", token: str | None = None) -> PriceSnapshotDTO:
    return PriceSnapshotDTO(
        token_address=token or "0x1111111111111111111111111111111111111111",
        price_eth=Decimal(price),
        reserve_eth=Decimal(1),
        reserve_token=Decimal(1) / Decimal(price),
        display_rate=Decimal("3000"),
        block_number=block,
        timestamp=at,
    )


async def _rows(session_factory, token_address: str) -> list[PriceSnapshotDTO]:
    async with session_scope(session_factory) as session:
        return await PriceSnapshotRepository(session).list_for_token(token_address)


@pytest.fixture
def interpolator(session_factory) -> SnapshotInterpolator:
    return SnapshotInterpolator(session_factory, rates=DisplayRateBook(default_rate=Decimal("3000")))


# ============================================================================
# Gap position Tests
# ============================================================================


class TestGapPositions:
    def test_steps_map_proportionally_to_blocks(self):
        positions = gap_positions(_observed(100, T0), _observed(105, T0 + timedelta(seconds=60)))

        assert positions == [
            (T0 + timedelta(seconds=15), 101),
            (T0 + timedelta(seconds=30), 102),
            (T0 + timedelta(seconds=45), 103),
        ]

    def test_short_gap_is_left_alone(self):
        assert gap_positions(_observed(100, T0), _observed(110, T0 + timedelta(seconds=30))) == []

    def test_adjacent_blocks_have_no_room(self):
        assert gap_positions(_observed(100, T0), _observed(101, T0 + timedelta(minutes=5))) == []

    def test_each_block_used_once(self):
        positions = gap_positions(_observed(100, T0), _observed(102, T0 + timedelta(seconds=120)))

        assert positions == [(T0 + timedelta(seconds=60), 101)]

    def test_custom_thresholds(self):
        positions = gap_positions(
            _observed(100, T0),
            _observed(200, T0 + timedelta(seconds=100)),
            gap_seconds=60,
            step_seconds=40,
        )

        assert [block for _, block in positions] == [140, 180]


# ============================================================================
# Interpolation run Tests
# ============================================================================


class TestSnapshotInterpolator:
    @pytest.mark.asyncio
    async def test_gap_is_filled_with_carried_price(self, interpolator, session_factory, chain):
        async with session_scope(session_factory) as session:
            snapshots = PriceSnapshotRepository(session)
            await snapshots.upsert(_observed(100, T0, price="0.0000002"))
            await snapshots.upsert(_observed(105, T0 + timedelta(seconds=60), price="0.0000004"))
            rates = DisplayRateRepository(session)
            await rates.record(Decimal("3000"), observed_at=T0 - timedelta(hours=1), source="test")
            await rates.record(Decimal("3300"), observed_at=T0 + timedelta(seconds=40), source="test")

        result = await interpolator.run(now=NOW)

        assert result.tokens_considered == 1
        assert result.gaps_found == 1
        assert result.snapshots_inserted == 3
        rows = await _rows(session_factory, chain.token)
        filled = [r for r in rows if r.interpolated]
        assert [r.block_number for r in filled] == [101, 102, 103]
        assert all(r.price_eth == pytest.approx(Decimal("0.0000002")) for r in filled)
        assert [float(r.display_rate) for r in filled] == pytest.approx([3000, 3000, 3300])

    @pytest.mark.asyncio
    async def test_rerun_adds_nothing(self, interpolator, session_factory, chain):
        async with session_scope(session_factory) as session:
            snapshots = PriceSnapshotRepository(session)
            await snapshots.upsert(_observed(100, T0))
            await snapshots.upsert(_observed(105, T0 + timedelta(seconds=60)))

        await interpolator.run(now=NOW)
        again = await interpolator.run(now=NOW)

        assert again.snapshots_inserted == 0
        assert len(await _rows(session_factory, chain.token)) == 5

    @pytest.mark.asyncio
    async def test_observed_snapshot_replaces_synthetic_one(self, interpolator, session_factory, chain):
        async with session_scope(session_factory) as session:
            snapshots = PriceSnapshotRepository(session)
            await snapshots.upsert(_observed(100, T0))
            await snapshots.upsert(_observed(105, T0 + timedelta(seconds=60)))
        await interpolator.run(now=NOW)

        async with session_scope(session_factory) as session:
            replaced = await PriceSnapshotRepository(session).upsert(
                _observed(102, T0 + timedelta(seconds=25), price="0.0000003")
            )

        assert replaced
        by_block = {r.block_number: r for r in await _rows(session_factory, chain.token)}
        assert not by_block[102].interpolated
        assert by_block[102].price_eth == pytest.approx(Decimal("0.0000003"))
        assert by_block[101].interpolated

    @pytest.mark.asyncio
    async def test_synthetic_row_never_overwrites(self, session_factory, chain):
        async with session_scope(session_factory) as session:
            snapshots = PriceSnapshotRepository(session)
            await snapshots.upsert(_observed(100, T0))
            synthetic = PriceSnapshotDTO(
                token_address=chain.token,
                price_eth=Decimal("0.0000009"),
                reserve_eth=Decimal(1),
                reserve_token=Decimal(1),
                display_rate=Decimal("3000"),
                block_number=100,
                timestamp=T0,
                interpolated=True,
            )

            assert not await snapshots.upsert(synthetic)

        rows = await _rows(session_factory, chain.token)
        assert len(rows) == 1
        assert not rows[0].interpolated

    @pytest.mark.asyncio
    async def test_single_token_and_lookback(self, session_factory, chain):
        other = "0x" + "7a" * 20
        async with session_scope(session_factory) as session:
            snapshots = PriceSnapshotRepository(session)
            await snapshots.upsert(_observed(100, T0))
            await snapshots.upsert(_observed(105, T0 + timedelta(seconds=60)))
            await snapshots.upsert(_observed(100, T0, token=other))
            await snapshots.upsert(_observed(105, T0 + timedelta(seconds=60), token=other))
            await snapshots.upsert(_observed(10, NOW - timedelta(days=3), token=other))
        interpolator = SnapshotInterpolator(session_factory, lookback=timedelta(hours=1))

        result = await interpolator.run(token_address=other, now=NOW)

        assert result.tokens_considered == 1
        assert result.snapshots_inserted == 3
        assert len(await _rows(session_factory, chain.token)) == 2
        assert min(r.block_number for r in await _rows(session_factory, other) if r.interpolated) == 101

    def test_step_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            SnapshotInterpolator(session_factory, step_seconds=0)

"""Tests for the chart query."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from launchpad_indexer.chart import (
    ChartPoint,
    ChartQuery,
    ChartQueryError,
    TokenNotFoundError,
    anchor_point,
    downsample,
    filter_noise,
)
from launchpad_indexer.storage.repos import (
    DisplayRateRepository,
    PriceSnapshotDTO,
    PriceSnapshotRepository,
    TokenRepository,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _point(minute: int, price: str, *, interpolated: bool = False) -> ChartPoint:
    value = Decimal(price)
    return ChartPoint(
        time=NOW + timedelta(minutes=minute), price_display=value, price_eth=value, interpolated=interpolated
    )


async def _snapshot(
    session,
    token_address: str,
    *,
    at: datetime,
    block: int,
    price: str,
    rate: str = "3000",
    interpolated: bool = False,
) -> None:
    await PriceSnapshotRepository(session).upsert(
        PriceSnapshotDTO(
            token_address=token_address,
            price_eth=Decimal(price),
            reserve_eth=Decimal(1),
            reserve_token=Decimal(1) / Decimal(price),
            display_rate=Decimal(rate),
            block_number=block,
            timestamp=at,
            interpolated=interpolated,
        )
    )


# ============================================================================
# Downsampling Tests
# ============================================================================


class TestDownsample:
    def test_ten_thousand_to_five_hundred(self):
        rows = list(range(10_000))

        sampled = downsample(rows, 500)

        assert len(sampled) == 500
        assert sampled[0] == 0
        assert sampled[-1] == 9_999
        assert sampled[1] - sampled[0] == 20

    def test_small_input_returned_whole(self):
        assert downsample([1, 2, 3], 5) == [1, 2, 3]

    def test_last_point_appended_within_budget(self):
        assert downsample(list(range(10)), 4) == [0, 3, 6, 9]
        assert downsample(list(range(11)), 4) == [0, 3, 6, 10]

    def test_degenerate_budgets(self):
        assert downsample([1, 2, 3], 1) == [3]
        assert downsample([1, 2, 3], 0) == []

    @pytest.mark.parametrize("n", [2, 7, 99, 1000, 1001])
    @pytest.mark.parametrize("budget", [2, 3, 10, 64])
    def test_bound_and_endpoints(self, n, budget):
        rows = list(range(n))
        sampled = downsample(rows, budget)
        assert len(sampled) <= budget
        assert sampled[0] == 0
        assert sampled[-1] == n - 1


class TestFilterNoise:
    def test_drops_near_duplicates_keeps_endpoints(self):
        points = [_point(0, "1"), _point(1, "1.0001"), _point(2, "1.01"), _point(3, "1.01001"), _point(4, "1.01")]

        kept = filter_noise(points, threshold=0.001)

        assert [p.price_display for p in kept] == [Decimal("1"), Decimal("1.01"), Decimal("1.01")]
        assert kept[-1].time == points[-1].time

    def test_zero_previous_price(self):
        points = [_point(0, "0"), _point(1, "0"), _point(2, "0.5"), _point(3, "0.5")]

        kept = filter_noise(points)

        assert [p.price_display for p in kept] == [Decimal("0"), Decimal("0.5"), Decimal("0.5")]

    def test_short_series_untouched(self):
        points = [_point(0, "1"), _point(1, "1")]
        assert filter_noise(points) == points


# ============================================================================
# Query Tests
# ============================================================================


class TestChartQuery:
    @pytest.mark.asyncio
    async def test_young_token_baseline_is_pinned_to_launch_rate(self, async_session, make_token, chain):
        """Launch at 2e-7 ETH and 3000; two hours later the rate is 3600."""
        created = NOW - timedelta(hours=2)
        await TokenRepository(async_session).insert_if_absent(
            make_token(created_at=created, launch_price_eth=Decimal("0.0000002"), launch_display_rate=Decimal("3000"))
        )
        await DisplayRateRepository(async_session).record(Decimal("3600"), observed_at=NOW, source="test")
        await _snapshot(
            async_session, chain.token, at=NOW - timedelta(minutes=5), block=700, price="0.0000002", rate="3600"
        )

        series = await ChartQuery().sample(async_session, chain.token, now=NOW)

        assert series.baseline is not None
        assert series.baseline.interpolated
        assert series.baseline.time == created
        assert series.baseline.price_display == pytest.approx(Decimal("0.0006"))
        assert series.points[0] == series.baseline
        assert series.latest is not None
        assert series.latest.price_display == pytest.approx(Decimal("0.00072"))
        assert series.change_percent == pytest.approx(Decimal("20"))

    @pytest.mark.asyncio
    async def test_old_token_baseline_is_first_point_in_last_day(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(days=10)))
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=30), block=600, price="0.0000001")
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=20), block=700, price="0.0000004")
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=1), block=800, price="0.0000005")

        series = await ChartQuery().sample(async_session, chain.token, hours_back=48, now=NOW)

        assert [p.block_number for p in series.points] == [600, 700, 800]
        assert series.baseline is not None
        assert series.baseline.block_number == 700
        assert series.change_percent == pytest.approx(Decimal("25"))

    @pytest.mark.asyncio
    async def test_short_window_keeps_a_day_baseline(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(days=10)))
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=20), block=700, price="0.0000004")
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=3), block=750, price="0.0000008")
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=1), block=800, price="0.0000005")

        series = await ChartQuery().sample(async_session, chain.token, hours_back=6, now=NOW)

        assert [p.block_number for p in series.points] == [750, 800]
        assert series.baseline is not None
        assert series.baseline.block_number == 700
        assert series.change_percent == pytest.approx(Decimal("25"))

    @pytest.mark.asyncio
    async def test_day_baseline_skips_interpolated_rows(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(days=10)))
        await _snapshot(
            async_session,
            chain.token,
            at=NOW - timedelta(hours=23),
            block=690,
            price="0.0000001",
            interpolated=True,
        )
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=20), block=700, price="0.0000004")
        await _snapshot(async_session, chain.token, at=NOW - timedelta(hours=1), block=800, price="0.0000005")

        series = await ChartQuery().sample(async_session, chain.token, now=NOW)

        assert series.baseline is not None
        assert series.baseline.block_number == 700
        assert not series.baseline.interpolated

    @pytest.mark.asyncio
    async def test_output_bounded_and_endpoints_kept(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(days=10)))
        start = NOW - timedelta(hours=10)
        for i in range(200):
            price = Decimal("0.0000002") * (1 + Decimal(i) / 50)
            at = start + timedelta(minutes=3 * i)
            await _snapshot(async_session, chain.token, at=at, block=1000 + i, price=str(price))

        series = await ChartQuery().sample(async_session, chain.token, max_points=20, now=NOW)

        assert series.raw_count == 200
        assert series.stride == 10
        assert len(series.points) <= 20
        assert series.points[0].block_number == 1000
        assert series.points[-1].block_number == 1199
        assert [p.time for p in series.points] == sorted(p.time for p in series.points)

    @pytest.mark.asyncio
    async def test_anchor_counts_against_budget(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(hours=3)))
        for i in range(10):
            price = Decimal("0.0000002") * (1 + Decimal(i) / 10)
            at = NOW - timedelta(minutes=100 - 10 * i)
            await _snapshot(async_session, chain.token, at=at, block=900 + i, price=str(price))

        series = await ChartQuery().sample(async_session, chain.token, max_points=5, now=NOW)

        assert len(series.points) <= 5
        assert series.points[0].interpolated
        assert series.points[-1].block_number == 909

    @pytest.mark.asyncio
    async def test_empty_window_for_old_token(self, async_session, make_token, chain):
        await TokenRepository(async_session).insert_if_absent(make_token(created_at=NOW - timedelta(days=10)))

        series = await ChartQuery().sample(async_session, chain.token, now=NOW)

        assert series.points == []
        assert series.baseline is None
        assert series.change_percent is None

    @pytest.mark.asyncio
    async def test_unknown_token(self, async_session):
        with pytest.raises(TokenNotFoundError):
            await ChartQuery().sample(async_session, "0x" + "99" * 20, now=NOW)

    @pytest.mark.asyncio
    async def test_budget_must_be_positive(self, async_session, make_token):
        await TokenRepository(async_session).insert_if_absent(make_token())

        with pytest.raises(ChartQueryError):
            await ChartQuery().sample(async_session, make_token().token_address, max_points=0, now=NOW)

    def test_anchor_point(self, make_token):
        anchor = anchor_point(make_token(launch_price_eth=Decimal("0.0000002"), launch_display_rate=Decimal("3000")))

        assert anchor.interpolated
        assert anchor.price_display == Decimal("0.0006000")
        assert anchor.block_number == 100

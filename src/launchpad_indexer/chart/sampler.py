"""Bounded price series for chart consumers.

Raw snapshots are strided down to a point budget, near-duplicate interior
points are dropped, and a synthetic anchor at the token's creation time pins
"change since launch" to the display rate recorded at launch.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, TypeVar

from launchpad_indexer.storage.repos import PriceSnapshotRepository, TokenRepository, ensure_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from launchpad_indexer.storage.repos import PriceSnapshotDTO, TokenDTO

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 500
DEFAULT_NOISE_THRESHOLD = 0.001
BASELINE_SWITCH_AGE = timedelta(hours=24)

T = TypeVar("T")


class ChartQueryError(Exception):
    """Base error for chart queries."""


class TokenNotFoundError(ChartQueryError):
    def __init__(self, token_address: str) -> None:
        super().__init__(f"Token not found: {token_address}")
        self.token_address = token_address


@dataclass(frozen=True)
class ChartPoint:
    time: datetime
    price_display: Decimal
    price_eth: Decimal
    interpolated: bool = False
    block_number: int | None = None


@dataclass
class ChartSeries:
    token_address: str
    points: list[ChartPoint] = field(default_factory=list)
    baseline: ChartPoint | None = None
    raw_count: int = 0
    stride: int = 1

    @property
    def latest(self) -> ChartPoint | None:
        return self.points[-1] if self.points else None

    @property
    def change_percent(self) -> Decimal | None:
        """Percent change from the baseline to the latest point."""
        if self.baseline is None or self.latest is None or self.baseline.price_display == 0:
            return None
        return (self.latest.price_display - self.baseline.price_display) / self.baseline.price_display * 100


def downsample(rows: Sequence[T], max_points: int) -> list[T]:
    """Keep every ``ceil(n / max_points)``-th row plus the last one, within budget."""
    if max_points <= 0:
        return []
    n = len(rows)
    if n <= max_points:
        return list(rows)
    if max_points == 1:
        return [rows[-1]]

    stride = math.ceil(n / max_points)
    indices = list(range(0, n, stride))
    if indices[-1] != n - 1:
        if len(indices) >= max_points:
            indices[-1] = n - 1
        else:
            indices.append(n - 1)
    return [rows[i] for i in indices]


def filter_noise(points: Sequence[ChartPoint], threshold: float = DEFAULT_NOISE_THRESHOLD) -> list[ChartPoint]:
    """Drop interior points within ``threshold`` relative change of the last kept point."""
    if len(points) <= 2:
        return list(points)
    limit = Decimal(str(threshold))
    kept = [points[0]]
    for point in points[1:-1]:
        previous = kept[-1].price_display
        if previous == 0:
            if point.price_display != 0:
                kept.append(point)
            continue
        if abs(point.price_display - previous) / abs(previous) >= limit:
            kept.append(point)
    kept.append(points[-1])
    return kept


def anchor_point(token: TokenDTO) -> ChartPoint:
    """Launch price at creation, valued at the display rate recorded then."""
    return ChartPoint(
        time=ensure_utc(token.created_at),
        price_display=Decimal(token.launch_price_eth) * Decimal(token.launch_display_rate),
        price_eth=Decimal(token.launch_price_eth),
        interpolated=True,
        block_number=token.block_number,
    )


def _to_point(row: PriceSnapshotDTO) -> ChartPoint:
    return ChartPoint(
        time=row.timestamp,
        price_display=Decimal(row.price_eth) * Decimal(row.display_rate),
        price_eth=Decimal(row.price_eth),
        interpolated=row.interpolated,
        block_number=row.block_number,
    )


class ChartQuery:
    """Read side of the snapshot store."""

    def __init__(
        self,
        *,
        max_points: int = DEFAULT_MAX_POINTS,
        noise_threshold: float = DEFAULT_NOISE_THRESHOLD,
    ) -> None:
        self._max_points = max_points
        self._noise_threshold = noise_threshold

    async def sample(
        self,
        session: AsyncSession,
        token_address: str,
        *,
        hours_back: float = 24,
        max_points: int | None = None,
        now: datetime | None = None,
    ) -> ChartSeries:
        """Return at most ``max_points`` chronologically ordered points.

        Raises:
            TokenNotFoundError: If the token is not indexed.
        """
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        budget = self._max_points if max_points is None else max_points
        if budget < 1:
            raise ChartQueryError("max_points must be >= 1")

        token = await TokenRepository(session).get(token_address)
        if token is None:
            raise TokenNotFoundError(token_address)

        start = now - timedelta(hours=hours_back)
        anchor = anchor_point(token)
        with_anchor = start <= anchor.time <= now
        row_budget = budget - 1 if with_anchor else budget

        snapshots = PriceSnapshotRepository(session)
        raw_count = await snapshots.count_in_window(token.token_address, start=start, end=now)
        rows = await snapshots.list_in_window(token.token_address, start=start, end=now)
        sampled = downsample(rows, row_budget)
        points = filter_noise([_to_point(r) for r in sampled], self._noise_threshold)

        if with_anchor:
            points = sorted([anchor, *points], key=lambda p: p.time)

        series = ChartSeries(
            token_address=token.token_address,
            points=points,
            raw_count=raw_count,
            stride=math.ceil(raw_count / row_budget) if row_budget and raw_count > row_budget else 1,
        )
        series.baseline = await self._baseline(snapshots, token, anchor, points, now)
        logger.debug(
            "Chart %s: %d rows in window, %d points (stride %d)",
            token.token_address,
            raw_count,
            len(points),
            series.stride,
        )
        return series

    @staticmethod
    async def _baseline(
        snapshots: PriceSnapshotRepository,
        token: TokenDTO,
        anchor: ChartPoint,
        points: list[ChartPoint],
        now: datetime,
    ) -> ChartPoint | None:
        """Launch anchor for young tokens, else the first observed price of the last 24h.

        The 24h baseline is read from the store, not from the sampled window,
        so it does not depend on ``hours_back`` or on which rows survived
        downsampling.
        """
        if now - ensure_utc(token.created_at) < BASELINE_SWITCH_AGE:
            return anchor
        first = await snapshots.first_observed(token.token_address, start=now - BASELINE_SWITCH_AGE, end=now)
        if first is not None:
            return _to_point(first)
        return points[0] if points else None

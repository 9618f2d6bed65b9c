"""Fill long gaps in a token's price history with synthetic snapshots.

Quiet tokens can go minutes between observed snapshots, which leaves charts
with long flat jumps. Between two consecutive observed snapshots more than
``gap_seconds`` apart, points are added every ``step_seconds``. Each one
carries the earlier observation's price and reserves, is valued at the
display rate in force at its own time, and sits at a block strictly between
the two observations.

Synthetic rows are flagged ``interpolated``. They never overwrite a stored
row, and an observed snapshot arriving later at the same block replaces
them, so a pass can be repeated at any time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from launchpad_indexer.indexer.pricing import DisplayRateBook
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import PriceSnapshotDTO, PriceSnapshotRepository, ensure_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_GAP_SECONDS = 30
DEFAULT_STEP_SECONDS = 15
DEFAULT_LOOKBACK = timedelta(hours=24)


@dataclass(frozen=True)
class InterpolationResult:
    tokens_considered: int
    gaps_found: int
    snapshots_inserted: int
    window_start: datetime
    window_end: datetime


def gap_positions(
    before: PriceSnapshotDTO,
    after: PriceSnapshotDTO,
    *,
    gap_seconds: float = DEFAULT_GAP_SECONDS,
    step_seconds: float = DEFAULT_STEP_SECONDS,
) -> list[tuple[datetime, int]]:
    """Times and blocks of the synthetic points between two observations.

    Blocks are mapped proportionally to time and must fall strictly between
    the two observed blocks; steps that map onto an already used block are
    skipped.
    """
    span = (after.timestamp - before.timestamp).total_seconds()
    span_blocks = after.block_number - before.block_number
    if span <= gap_seconds or span_blocks < 2:
        return []

    positions: list[tuple[datetime, int]] = []
    used: set[int] = set()
    offset = step_seconds
    while offset < span:
        block = before.block_number + int(span_blocks * offset / span)
        if before.block_number < block < after.block_number and block not in used:
            used.add(block)
            positions.append((before.timestamp + timedelta(seconds=offset), block))
        offset += step_seconds
    return positions


class SnapshotInterpolator:
    """Periodic gap filler over the observed snapshot history."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        rates: DisplayRateBook | None = None,
        gap_seconds: float = DEFAULT_GAP_SECONDS,
        step_seconds: float = DEFAULT_STEP_SECONDS,
        lookback: timedelta = DEFAULT_LOOKBACK,
    ) -> None:
        if step_seconds <= 0:
            raise ValueError("step_seconds must be > 0")
        self._session_factory = session_factory
        self._rates = rates or DisplayRateBook()
        self._gap_seconds = gap_seconds
        self._step_seconds = step_seconds
        self._lookback = lookback

    async def run(self, *, token_address: str | None = None, now: datetime | None = None) -> InterpolationResult:
        """Fill gaps inside the lookback window, for one token or all tokens with snapshots."""
        window_end = ensure_utc(now) if now is not None else datetime.now(UTC)
        window_start = window_end - self._lookback

        if token_address is not None:
            tokens = [token_address.lower()]
        else:
            async with session_scope(self._session_factory) as session:
                tokens = await PriceSnapshotRepository(session).tokens_in_window(start=window_start, end=window_end)

        gaps = 0
        inserted = 0
        for token in tokens:
            async with session_scope(self._session_factory) as session:
                token_gaps, token_inserted = await self._fill_token(session, token, window_start, window_end)
            gaps += token_gaps
            inserted += token_inserted

        result = InterpolationResult(
            tokens_considered=len(tokens),
            gaps_found=gaps,
            snapshots_inserted=inserted,
            window_start=window_start,
            window_end=window_end,
        )
        if inserted:
            logger.info(
                "Interpolated %d snapshots across %d gaps in %d tokens",
                inserted,
                gaps,
                len(tokens),
            )
        return result

    async def _fill_token(
        self,
        session: AsyncSession,
        token_address: str,
        start: datetime,
        end: datetime,
    ) -> tuple[int, int]:
        snapshots = PriceSnapshotRepository(session)
        observed = await snapshots.list_observed(token_address, start=start, end=end)
        gaps = 0
        inserted = 0
        for before, after in zip(observed, observed[1:]):
            positions = gap_positions(
                before,
                after,
                gap_seconds=self._gap_seconds,
                step_seconds=self._step_seconds,
            )
            if not positions:
                continue
            gaps += 1
            for ts, block_number in positions:
                written = await snapshots.upsert(
                    PriceSnapshotDTO(
                        token_address=token_address,
                        price_eth=before.price_eth,
                        reserve_eth=before.reserve_eth,
                        reserve_token=before.reserve_token,
                        display_rate=await self._rates.rate_at(session, ts),
                        block_number=block_number,
                        timestamp=ts,
                        interpolated=True,
                    )
                )
                inserted += int(written)
        return gaps, inserted

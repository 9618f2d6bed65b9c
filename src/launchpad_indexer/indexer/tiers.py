"""Activity tier classification.

Tokens are bucketed by how recently they traded. The tier decides how often
the scheduler re-checks a token for new swaps.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from launchpad_indexer.storage.repos import SwapRepository, TokenDTO, TokenRepository, ensure_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

HOT_WINDOW = timedelta(hours=1)
WARM_WINDOW = timedelta(hours=24)
COLD_WINDOW = timedelta(days=7)
SWAP_COUNT_WINDOW = timedelta(hours=24)
DEFAULT_STALE_AFTER = timedelta(minutes=5)


class ActivityTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    DORMANT = "dormant"


TIER_CADENCE_SECONDS: dict[ActivityTier, int] = {
    ActivityTier.HOT: 10,
    ActivityTier.WARM: 120,
    ActivityTier.COLD: 600,
    ActivityTier.DORMANT: 3600,
}


def classify_tier(last_swap_at: datetime | None, now: datetime) -> ActivityTier:
    """Map the time since the last swap to a tier (never traded -> dormant)."""
    if last_swap_at is None:
        return ActivityTier.DORMANT
    age = now - ensure_utc(last_swap_at)
    if age < HOT_WINDOW:
        return ActivityTier.HOT
    if age < WARM_WINDOW:
        return ActivityTier.WARM
    if age < COLD_WINDOW:
        return ActivityTier.COLD
    return ActivityTier.DORMANT


class TierClassifier:
    """Keeps ``tokens.activity_tier`` and the 24h swap counter current."""

    def __init__(self, *, stale_after: timedelta = DEFAULT_STALE_AFTER, batch_size: int = 500) -> None:
        self._stale_after = stale_after
        self._batch_size = batch_size

    async def recompute_stale(self, session: AsyncSession, now: datetime | None = None) -> int:
        """Batch path: recompute tokens whose tier was last updated too long ago.

        Returns:
            Number of tokens whose tier changed.
        """
        now = now or datetime.now(UTC)
        tokens = TokenRepository(session)
        swaps = SwapRepository(session)

        stale = await tokens.list_stale_tiers(cutoff=now - self._stale_after, limit=self._batch_size)
        changed = 0
        for token in stale:
            last_swap_at = token.last_swap_at or await swaps.latest_swap_at(token.token_address)
            tier = classify_tier(last_swap_at, now)
            count = await swaps.count_since(token.token_address, now - SWAP_COUNT_WINDOW)
            if tier.value != token.activity_tier:
                changed += 1
                logger.debug("Token %s tier %s -> %s", token.token_address, token.activity_tier, tier.value)
            await tokens.update_activity(
                token.token_address,
                tier=tier.value,
                swap_count_24h=count,
                last_swap_at=last_swap_at,
                updated_at=now,
            )
        if stale:
            logger.info("Recomputed tiers for %d tokens (%d changed)", len(stale), changed)
        return changed

    async def promote_on_swap(
        self,
        session: AsyncSession,
        token_address: str,
        swap_at: datetime,
        now: datetime | None = None,
    ) -> ActivityTier:
        """Immediate path: record a swap and reclassify without waiting for the batch."""
        now = now or datetime.now(UTC)
        tokens = TokenRepository(session)
        token = await tokens.get(token_address)
        if token is None:
            logger.warning("Swap for unknown token %s; tier not updated", token_address)
            return ActivityTier.DORMANT

        swap_at = ensure_utc(swap_at)
        last_swap_at = max(swap_at, token.last_swap_at) if token.last_swap_at else swap_at
        tier = classify_tier(last_swap_at, now)
        count = await SwapRepository(session).count_since(token_address, now - SWAP_COUNT_WINDOW)
        await tokens.update_activity(
            token_address,
            tier=tier.value,
            swap_count_24h=count,
            last_swap_at=last_swap_at,
            updated_at=now,
        )
        return tier

    async def refresh_counters(
        self,
        session: AsyncSession,
        token_addresses: set[str],
        now: datetime | None = None,
    ) -> None:
        """Recompute last-swap time, counter and tier from the stored swaps."""
        now = now or datetime.now(UTC)
        tokens = TokenRepository(session)
        swaps = SwapRepository(session)
        for address in sorted(token_addresses):
            last_swap_at = await swaps.latest_swap_at(address)
            count = await swaps.count_since(address, now - SWAP_COUNT_WINDOW)
            await tokens.update_activity(
                address,
                tier=classify_tier(last_swap_at, now).value,
                swap_count_24h=count,
                last_swap_at=last_swap_at,
                updated_at=now,
            )

    async def get_by_tier(self, session: AsyncSession, tier: ActivityTier | str, limit: int) -> list[TokenDTO]:
        """Bounded batch, busiest first, then least recently checked."""
        return await TokenRepository(session).list_by_tier(ActivityTier(tier).value, limit=limit)

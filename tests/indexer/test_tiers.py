"""Tests for activity tier classification."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from launchpad_indexer.indexer.tiers import ActivityTier, TierClassifier, classify_tier
from launchpad_indexer.storage.repos import SwapDTO, SwapRepository, TokenRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestClassifyTier:
    @pytest.mark.parametrize(
        ("age", "expected"),
        [
            (timedelta(minutes=5), ActivityTier.HOT),
            (timedelta(hours=3), ActivityTier.WARM),
            (timedelta(days=2), ActivityTier.COLD),
            (timedelta(days=30), ActivityTier.DORMANT),
        ],
    )
    def test_age_buckets(self, age, expected):
        assert classify_tier(NOW - age, NOW) == expected

    def test_never_traded_is_dormant(self):
        assert classify_tier(None, NOW) == ActivityTier.DORMANT

    def test_naive_timestamp_treated_as_utc(self):
        assert classify_tier((NOW - timedelta(minutes=1)).replace(tzinfo=None), NOW) == ActivityTier.HOT


class TestTierClassifier:
    async def _add_swap(self, session, chain, tx_hash: str, ts: datetime) -> None:
        await SwapRepository(session).upsert(
            SwapDTO(
                token_address=chain.token,
                amm_address=chain.amm,
                trader_address=chain.trader,
                eth_in=Decimal(1),
                token_in=Decimal(0),
                eth_out=Decimal(0),
                token_out=Decimal(1),
                tx_hash=tx_hash,
                log_index=0,
                block_number=200,
                block_hash=chain.canonical_hash(200),
                timestamp=ts,
            )
        )

    @pytest.mark.asyncio
    async def test_promote_on_swap(self, async_session, make_token, chain):
        tokens = TokenRepository(async_session)
        await tokens.insert_if_absent(make_token(activity_tier="dormant"))
        await self._add_swap(async_session, chain, "0x01", NOW - timedelta(minutes=2))

        tier = await TierClassifier().promote_on_swap(
            async_session, chain.token, NOW - timedelta(minutes=2), now=NOW
        )

        assert tier == ActivityTier.HOT
        token = await tokens.get(chain.token)
        assert token is not None
        assert token.activity_tier == "hot"
        assert token.swap_count_24h == 1
        assert token.last_swap_at == NOW - timedelta(minutes=2)
        assert token.last_tier_update == NOW

    @pytest.mark.asyncio
    async def test_promote_keeps_newest_swap_time(self, async_session, make_token, chain):
        tokens = TokenRepository(async_session)
        await tokens.insert_if_absent(make_token(last_swap_at=NOW - timedelta(minutes=1)))

        await TierClassifier().promote_on_swap(async_session, chain.token, NOW - timedelta(hours=5), now=NOW)

        token = await tokens.get(chain.token)
        assert token is not None
        assert token.last_swap_at == NOW - timedelta(minutes=1)
        assert token.activity_tier == "hot"

    @pytest.mark.asyncio
    async def test_promote_unknown_token(self, async_session):
        tier = await TierClassifier().promote_on_swap(async_session, "0x" + "9" * 40, NOW, now=NOW)
        assert tier == ActivityTier.DORMANT

    @pytest.mark.asyncio
    async def test_recompute_stale_demotes(self, async_session, make_token, chain):
        tokens = TokenRepository(async_session)
        await tokens.insert_if_absent(
            make_token(
                activity_tier="hot",
                last_swap_at=NOW - timedelta(hours=3),
                last_tier_update=NOW - timedelta(hours=1),
            )
        )
        fresh = "0x" + "ab" * 20
        await tokens.insert_if_absent(
            make_token(token_address=fresh, activity_tier="hot", last_tier_update=NOW - timedelta(seconds=30))
        )

        changed = await TierClassifier(stale_after=timedelta(minutes=5)).recompute_stale(async_session, now=NOW)

        assert changed == 1
        demoted = await tokens.get(chain.token)
        untouched = await tokens.get(fresh)
        assert demoted is not None and demoted.activity_tier == "warm"
        assert untouched is not None and untouched.activity_tier == "hot"

    @pytest.mark.asyncio
    async def test_refresh_counters_from_stored_swaps(self, async_session, make_token, chain):
        tokens = TokenRepository(async_session)
        await tokens.insert_if_absent(make_token(activity_tier="hot", last_swap_at=NOW, swap_count_24h=10))
        await self._add_swap(async_session, chain, "0x01", NOW - timedelta(days=2))

        await TierClassifier().refresh_counters(async_session, {chain.token}, now=NOW)

        token = await tokens.get(chain.token)
        assert token is not None
        assert token.activity_tier == "cold"
        assert token.swap_count_24h == 0
        assert token.last_swap_at == NOW - timedelta(days=2)

    @pytest.mark.asyncio
    async def test_get_by_tier(self, async_session, make_token):
        await TokenRepository(async_session).insert_if_absent(make_token(activity_tier="warm"))

        assert len(await TierClassifier().get_by_tier(async_session, "warm", 10)) == 1
        assert await TierClassifier().get_by_tier(async_session, ActivityTier.HOT, 10) == []

"""Tests for display-rate tracking."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from aiohttp import test_utils, web

from launchpad_indexer.indexer.rates import RATE_SOURCE, DisplayRateTracker, RateFetchError, parse_rate_payload
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import DisplayRateRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _serve(handler) -> test_utils.TestServer:
    app = web.Application()
    app.router.add_get("/simple/price", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


# ============================================================================
# Payload Tests
# ============================================================================


class TestParseRatePayload:
    def test_simple_price_payload(self):
        assert parse_rate_payload({"ethereum": {"usd": 3123.45}}) == Decimal("3123.45")

    def test_other_asset_and_currency(self):
        assert parse_rate_payload({"bitcoin": {"eur": "61000"}}, asset="bitcoin", currency="eur") == Decimal("61000")

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"ethereum": {}},
            {"ethereum": {"usd": None}},
            {"ethereum": {"usd": "n/a"}},
            {"ethereum": {"usd": 0}},
            {"ethereum": {"usd": -5}},
            {"ethereum": {"usd": True}},
            [],
            None,
        ],
    )
    def test_unusable_payloads(self, payload):
        with pytest.raises(RateFetchError):
            parse_rate_payload(payload)


# ============================================================================
# Tracker Tests
# ============================================================================


class TestDisplayRateTracker:
    @pytest.mark.asyncio
    async def test_track_records_rate(self, session_factory):
        tracker = DisplayRateTracker(session_factory)
        tracker.fetch_rate = AsyncMock(return_value=Decimal("3250.5"))

        rate = await tracker.track(now=NOW)

        assert rate == Decimal("3250.5")
        async with session_scope(session_factory) as session:
            stored = await DisplayRateRepository(session).rate_at(NOW)
        assert stored == pytest.approx(Decimal("3250.5"))

    @pytest.mark.asyncio
    async def test_failed_fetch_records_nothing(self, session_factory):
        tracker = DisplayRateTracker(session_factory)
        tracker.fetch_rate = AsyncMock(side_effect=RateFetchError("rate request failed: HTTP 429"))

        with pytest.raises(RateFetchError):
            await tracker.track(now=NOW)

        async with session_scope(session_factory) as session:
            assert await DisplayRateRepository(session).rate_at(NOW) is None

    @pytest.mark.asyncio
    async def test_fetch_from_http_endpoint(self, session_factory):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"ethereum": {"usd": 2999.99}})

        server = await _serve(handler)
        try:
            tracker = DisplayRateTracker(session_factory, url=str(server.make_url("/simple/price")))
            assert await tracker.fetch_rate() == Decimal("2999.99")
        finally:
            await server.close()

    @pytest.mark.asyncio
    async def test_http_error_status(self, session_factory):
        async def handler(request: web.Request) -> web.Response:
            return web.json_response({"status": {"error_code": 429}}, status=429)

        server = await _serve(handler)
        try:
            tracker = DisplayRateTracker(session_factory, url=str(server.make_url("/simple/price")))
            with pytest.raises(RateFetchError, match="HTTP 429"):
                await tracker.fetch_rate()
        finally:
            await server.close()

    def test_source_label(self):
        assert RATE_SOURCE == "coingecko"

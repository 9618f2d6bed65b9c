"""Display-currency rate tracking.

Polls a simple-price endpoint (CoinGecko by default) and appends the rate to
the rate history, which launch pricing and snapshots read through
``DisplayRateBook``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import aiohttp

from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import DisplayRateRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_RATE_URL = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
RATE_SOURCE = "coingecko"


class RateFetchError(Exception):
    """The rate provider returned no usable rate."""


def parse_rate_payload(payload: Any, *, asset: str = "ethereum", currency: str = "usd") -> Decimal:
    """Extract ``payload[asset][currency]`` as a positive Decimal.

    Raises:
        RateFetchError: If the entry is missing, malformed or not positive.
    """
    try:
        raw = payload[asset][currency]
    except (KeyError, TypeError) as e:
        raise RateFetchError(f"payload has no {asset}/{currency} rate") from e
    if isinstance(raw, bool):
        raise RateFetchError(f"invalid {asset}/{currency} rate: {raw!r}")
    try:
        rate = Decimal(str(raw))
    except InvalidOperation as e:
        raise RateFetchError(f"invalid {asset}/{currency} rate: {raw!r}") from e
    if not rate.is_finite() or rate <= 0:
        raise RateFetchError(f"invalid {asset}/{currency} rate: {raw!r}")
    return rate


class DisplayRateTracker:
    """Fetches the current rate and records it with its observation time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        url: str = DEFAULT_RATE_URL,
        asset: str = "ethereum",
        currency: str = "usd",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._url = url
        self._asset = asset
        self._currency = currency
        self._timeout = timeout_seconds

    async def fetch_rate(self) -> Decimal:
        """Request the current rate.

        Raises:
            RateFetchError: On HTTP errors or an unusable payload.
        """
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout)) as http:
                async with http.get(self._url, headers={"Accept": "application/json"}) as response:
                    if response.status != 200:
                        raise RateFetchError(f"rate request failed: HTTP {response.status}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            raise RateFetchError(f"rate request failed: {e}") from e
        return parse_rate_payload(payload, asset=self._asset, currency=self._currency)

    async def track(self, *, now: datetime | None = None) -> Decimal:
        """Fetch and record one rate; returns the recorded value."""
        rate = await self.fetch_rate()
        observed_at = now or datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            await DisplayRateRepository(session).record(rate, observed_at=observed_at, source=RATE_SOURCE)
        logger.info("Recorded display rate %s at %s", rate, observed_at.isoformat())
        return rate

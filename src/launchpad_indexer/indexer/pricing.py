"""Launch-price derivation and display-rate lookup.

The launch price is computed when the Token entity is built from its launch
event, never by a database trigger, so the derivation is explicit and
testable. The display rate at creation time is pinned on the token as well.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from launchpad_indexer.storage.repos import DisplayRateRepository, TokenDTO

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from launchpad_indexer.ledger.events import TokenLaunchedEvent

TOTAL_SUPPLY_TOKENS = Decimal(1_000_000)
WEI_PER_ETH = Decimal(10) ** 18
DEFAULT_DISPLAY_RATE = Decimal("3000")


class PricingError(ValueError):
    """Raised when a price cannot be derived from the given quantities."""


def wei_to_eth(amount_wei: int | Decimal) -> Decimal:
    return Decimal(amount_wei) / WEI_PER_ETH


def launch_price_eth(*, initial_liquidity_eth: Decimal, liquidity_percent: Decimal | int) -> Decimal:
    """Price per token implied by the initial pool: ETH / tokens seeded into the pool."""
    initial_token_reserve = TOTAL_SUPPLY_TOKENS * Decimal(liquidity_percent) / Decimal(100)
    if initial_token_reserve <= 0:
        raise PricingError(f"liquidity percent {liquidity_percent} leaves no tokens in the pool")
    return initial_liquidity_eth / initial_token_reserve


def reserve_price_eth(reserve_eth: int | Decimal, reserve_token: int | Decimal) -> Decimal:
    """``price = ethReserve / tokenReserve`` (both reserves in 18-decimal base units)."""
    try:
        reserve_token_dec = Decimal(reserve_token)
        if reserve_token_dec <= 0:
            raise PricingError("token reserve is empty")
        return Decimal(reserve_eth) / reserve_token_dec
    except InvalidOperation as e:
        raise PricingError(f"invalid reserves ({reserve_eth}, {reserve_token}): {e}") from e


def build_token_from_launch(
    event: TokenLaunchedEvent,
    *,
    created_at: datetime,
    display_rate: Decimal,
) -> TokenDTO:
    """Token factory: derives launch price and pins the creation-time display rate."""
    initial_liquidity_eth = wei_to_eth(event.initial_liquidity_wei)
    return TokenDTO(
        token_address=event.token_address,
        amm_address=event.amm_address,
        creator_address=event.creator_address,
        name=event.name,
        symbol=event.symbol,
        liquidity_percent=Decimal(event.liquidity_percent),
        initial_liquidity_eth=initial_liquidity_eth,
        launch_price_eth=launch_price_eth(
            initial_liquidity_eth=initial_liquidity_eth,
            liquidity_percent=event.liquidity_percent,
        ),
        launch_display_rate=display_rate,
        block_number=event.position.block_number,
        block_hash=event.position.block_hash,
        tx_hash=event.position.tx_hash,
        created_at=created_at,
        # Swaps can land in the launch block itself.
        last_checked_block=event.position.block_number - 1,
    )


class DisplayRateBook:
    """Historical display-currency rate with a configured fallback."""

    def __init__(self, *, default_rate: Decimal = DEFAULT_DISPLAY_RATE) -> None:
        self._default_rate = default_rate

    async def rate_at(self, session: AsyncSession, ts: datetime) -> Decimal:
        rate = await DisplayRateRepository(session).rate_at(ts)
        return Decimal(rate) if rate is not None else self._default_rate

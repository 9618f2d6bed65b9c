"""Event ingestion: fetch, decode, normalize and upsert ledger events.

Every write is keyed by the event's natural identity (token address, swap
transaction hash, lock transaction hash, (token, tx) for burns, (token,
block) for snapshots), so re-ingesting a range is a no-op. A log that cannot
be decoded is skipped and recorded; the rest of the batch proceeds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from web3 import AsyncWeb3

from launchpad_indexer.indexer.pricing import (
    DisplayRateBook,
    PricingError,
    build_token_from_launch,
    reserve_price_eth,
)
from launchpad_indexer.indexer.reorg import CursorMovedError
from launchpad_indexer.indexer.tiers import TierClassifier
from launchpad_indexer.ledger.client import LedgerClientError, to_hex
from launchpad_indexer.ledger.events import (
    SWAP_TOPIC,
    TOKEN_LAUNCHED_TOPIC,
    TOKENS_LOCKED_TOPIC,
    TOKENS_UNLOCKED_TOPIC,
    TRANSFER_TOPIC,
    ZERO_ADDRESS,
    EventDecodeError,
    LogPosition,
    TokensLockedEvent,
    TokensUnlockedEvent,
    decode_burn,
    decode_swap,
    decode_token_launched,
    decode_tokens_locked,
    decode_tokens_unlocked,
    pad_topic_address,
)
from launchpad_indexer.storage.repos import (
    BurnDTO,
    BurnRepository,
    IngestionErrorDTO,
    IngestionErrorRepository,
    LockRecordDTO,
    LockRecordRepository,
    PriceSnapshotDTO,
    PriceSnapshotRepository,
    SkipBlockRepository,
    SwapDTO,
    SwapRepository,
    TokenDTO,
    TokenRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from launchpad_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

BURN_ADDRESS_BATCH = 50

E = TypeVar("E")


@dataclass
class StreamResult:
    """Counters for one stream over one block range."""

    stream: str
    from_block: int
    to_block: int
    logs_seen: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    snapshots: int = 0
    errors: list[IngestionErrorDTO] = field(default_factory=list)
    block_hashes: dict[int, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.inserted + self.duplicates

    @property
    def blocks_scanned(self) -> int:
        return max(0, self.to_block - self.from_block + 1)

    def record_error(
        self,
        error_type: str,
        message: str,
        *,
        block_number: int | None = None,
        tx_hash: str | None = None,
    ) -> None:
        self.errors.append(
            IngestionErrorDTO(
                stream=self.stream,
                error_type=error_type,
                message=message,
                block_number=block_number,
                tx_hash=tx_hash,
            )
        )


class EventIngestor:
    """Normalizes launchpad events into rows and writes them through upserts."""

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        factory_address: str | None,
        locker_address: str | None = None,
        rate_book: DisplayRateBook | None = None,
        classifier: TierClassifier | None = None,
        auto_skip_malformed_blocks: bool = False,
    ) -> None:
        self._ledger = ledger
        self._factory_address = factory_address.lower() if factory_address else None
        self._locker_address = locker_address.lower() if locker_address else None
        self._rate_book = rate_book or DisplayRateBook()
        self._classifier = classifier or TierClassifier()
        self._auto_skip = auto_skip_malformed_blocks

    @property
    def locker_configured(self) -> bool:
        return self._locker_address is not None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _decode_batch(
        self,
        session: AsyncSession,
        result: StreamResult,
        logs: Sequence[dict[str, Any]],
        decode: Callable[[dict[str, Any]], E],
    ) -> list[E]:
        """Decode logs, drop skip-listed blocks, record malformed ones, sort causally."""
        skip_blocks = await SkipBlockRepository(session).blocks_for(
            result.stream, from_block=result.from_block, to_block=result.to_block
        )
        decoded: list[tuple[tuple[int, int], E]] = []
        for log in logs:
            result.logs_seen += 1
            block_number = _log_block_number(log)
            if block_number is not None and block_number in skip_blocks:
                result.skipped += 1
                continue
            try:
                event = decode(log)
            except EventDecodeError as e:
                result.skipped += 1
                tx_hash = _log_tx_hash(log)
                result.record_error("EventDecodeError", str(e), block_number=block_number, tx_hash=tx_hash)
                logger.warning(
                    "Skipping malformed %s log (block=%s tx=%s): %s", result.stream, block_number, tx_hash, e
                )
                if self._auto_skip and block_number is not None:
                    await SkipBlockRepository(session).add(
                        block_number, stream=result.stream, reason=str(e), created_by="auto"
                    )
                continue
            position: LogPosition = event.position  # type: ignore[attr-defined]
            result.block_hashes[position.block_number] = position.block_hash
            decoded.append((position.sort_key, event))
        decoded.sort(key=lambda item: item[0])
        return [event for _, event in decoded]

    async def _block_time(self, cache: dict[int, datetime], block_number: int) -> datetime:
        if block_number not in cache:
            cache[block_number] = await self._ledger.get_block_timestamp(block_number)
        return cache[block_number]

    async def flush_errors(self, session: AsyncSession, result: StreamResult) -> None:
        await IngestionErrorRepository(session).insert_many(result.errors)

    # ------------------------------------------------------------------
    # Launches
    # ------------------------------------------------------------------

    async def ingest_launches(self, session: AsyncSession, from_block: int, to_block: int) -> StreamResult:
        """Index ``TokenLaunched`` events from the factory into ``tokens``."""
        result = StreamResult(stream="launch", from_block=from_block, to_block=to_block)
        if self._factory_address is None:
            raise ValueError("factory address is not configured")

        logs = await self._ledger.get_logs(
            {
                "address": AsyncWeb3.to_checksum_address(self._factory_address),
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [TOKEN_LAUNCHED_TOPIC],
            }
        )
        events = await self._decode_batch(session, result, logs, decode_token_launched)

        tokens = TokenRepository(session)
        times: dict[int, datetime] = {}
        for event in events:
            created_at = await self._block_time(times, event.position.block_number)
            rate = await self._rate_book.rate_at(session, created_at)
            try:
                dto = build_token_from_launch(event, created_at=created_at, display_rate=rate)
            except PricingError as e:
                result.skipped += 1
                result.record_error(
                    "PricingError", str(e), block_number=event.position.block_number, tx_hash=event.position.tx_hash
                )
                continue
            if await tokens.insert_if_absent(dto):
                result.inserted += 1
                logger.info("Indexed launch of %s (%s) at block %d", dto.symbol, dto.token_address, dto.block_number)
            else:
                result.duplicates += 1

        await self.flush_errors(session, result)
        return result

    # ------------------------------------------------------------------
    # Swaps and snapshots
    # ------------------------------------------------------------------

    async def ingest_swaps(
        self,
        session: AsyncSession,
        token: TokenDTO,
        from_block: int,
        to_block: int,
        *,
        logs: Sequence[dict[str, Any]] | None = None,
        advance_cursor: bool = True,
        expected_last_checked: int | None = None,
    ) -> StreamResult:
        """Index pool ``Swap`` events for one token and snapshot its price per block.

        Args:
            session: Open session; the caller commits.
            token: Token whose pool is scanned.
            from_block: First block (inclusive).
            to_block: Last block (inclusive).
            logs: Pre-fetched logs for the same range (skips the fetch).
            advance_cursor: Move the token's ``last_checked_block`` to
                ``to_block``. Out-of-order scans (backfill) leave it alone.
            expected_last_checked: Only advance while the stored cursor still
                has this value.

        Raises:
            CursorMovedError: ``expected_last_checked`` no longer matches.
        """
        result = StreamResult(stream="swap", from_block=from_block, to_block=to_block)
        if logs is None:
            logs = await self._ledger.get_logs(
                {
                    "address": AsyncWeb3.to_checksum_address(token.amm_address),
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [SWAP_TOPIC],
                }
            )
        events = await self._decode_batch(session, result, logs, decode_swap)

        swaps = SwapRepository(session)
        times: dict[int, datetime] = {}
        last_swap_at: datetime | None = None
        blocks_with_swaps: list[int] = []
        for event in events:
            ts = await self._block_time(times, event.position.block_number)
            inserted = await swaps.upsert(
                SwapDTO(
                    token_address=token.token_address,
                    amm_address=token.amm_address,
                    trader_address=event.trader_address,
                    eth_in=Decimal(event.eth_in),
                    token_in=Decimal(event.token_in),
                    eth_out=Decimal(event.eth_out),
                    token_out=Decimal(event.token_out),
                    tx_hash=event.position.tx_hash,
                    log_index=event.position.log_index,
                    block_number=event.position.block_number,
                    block_hash=event.position.block_hash,
                    timestamp=ts,
                )
            )
            if inserted:
                result.inserted += 1
            else:
                result.duplicates += 1
            last_swap_at = ts
            if not blocks_with_swaps or blocks_with_swaps[-1] != event.position.block_number:
                blocks_with_swaps.append(event.position.block_number)

        for block_number in blocks_with_swaps:
            await self._snapshot_block(session, result, token, block_number, times[block_number])

        if last_swap_at is not None:
            await self._classifier.promote_on_swap(session, token.token_address, last_swap_at)
        if advance_cursor:
            advanced = await TokenRepository(session).advance_last_checked_block(
                token.token_address, to_block, expected=expected_last_checked
            )
            if expected_last_checked is not None and not advanced:
                raise CursorMovedError(f"swap:{token.token_address}", expected_last_checked)
        await self.flush_errors(session, result)
        if result.inserted:
            logger.info(
                "Token %s: %d new swaps in blocks %d-%d", token.token_address, result.inserted, from_block, to_block
            )
        return result

    async def _snapshot_block(
        self,
        session: AsyncSession,
        result: StreamResult,
        token: TokenDTO,
        block_number: int,
        ts: datetime,
        *,
        skip_empty: bool = False,
    ) -> None:
        """One snapshot per (token, block) from the pool reserves after that block."""
        try:
            reserve_eth, reserve_token = await self._ledger.get_reserves(token.amm_address, block_number=block_number)
            if skip_empty and (reserve_eth == 0 or reserve_token == 0):
                logger.debug("Pool of %s is empty at block %d", token.token_address, block_number)
                return
            price = reserve_price_eth(reserve_eth, reserve_token)
        except (LedgerClientError, PricingError) as e:
            result.record_error(type(e).__name__, f"snapshot failed: {e}", block_number=block_number)
            logger.warning("Snapshot for %s at block %d failed: %s", token.token_address, block_number, e)
            return

        rate = await self._rate_book.rate_at(session, ts)
        written = await PriceSnapshotRepository(session).upsert(
            PriceSnapshotDTO(
                token_address=token.token_address,
                price_eth=price,
                reserve_eth=Decimal(reserve_eth),
                reserve_token=Decimal(reserve_token),
                display_rate=rate,
                block_number=block_number,
                timestamp=ts,
            )
        )
        if written:
            result.snapshots += 1

    async def snapshot_reserves(self, session: AsyncSession, token: TokenDTO, block_number: int) -> StreamResult:
        """Snapshot a pool's reserves at ``block_number`` whether or not it traded there.

        Empty pools are skipped without recording an error.
        """
        result = StreamResult(stream="swap", from_block=block_number, to_block=block_number)
        ts = await self._ledger.get_block_timestamp(block_number)
        await self._snapshot_block(session, result, token, block_number, ts, skip_empty=True)
        await self.flush_errors(session, result)
        return result

    # ------------------------------------------------------------------
    # Locks
    # ------------------------------------------------------------------

    async def ingest_locks(self, session: AsyncSession, from_block: int, to_block: int) -> StreamResult:
        """Index ``TokensLocked``/``TokensUnlocked`` from the locker, in chain order."""
        result = StreamResult(stream="lock", from_block=from_block, to_block=to_block)
        if self._locker_address is None:
            raise ValueError("locker address is not configured")

        logs = await self._ledger.get_logs(
            {
                "address": AsyncWeb3.to_checksum_address(self._locker_address),
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [[TOKENS_LOCKED_TOPIC, TOKENS_UNLOCKED_TOPIC]],
            }
        )
        events = await self._decode_batch(session, result, logs, _decode_lock_log)

        locks = LockRecordRepository(session)
        times: dict[int, datetime] = {}
        for event in events:
            ts = await self._block_time(times, event.position.block_number)
            if isinstance(event, TokensLockedEvent):
                unlock_time = datetime.fromtimestamp(event.unlock_time, tz=ts.tzinfo)
                inserted = await locks.upsert_lock(
                    LockRecordDTO(
                        lock_id=event.lock_id,
                        owner_address=event.owner_address,
                        token_address=event.token_address,
                        amount=Decimal(event.amount),
                        lock_duration_seconds=max(0, int((unlock_time - ts) / timedelta(seconds=1))),
                        locked_at=ts,
                        unlock_time=unlock_time,
                        lock_tx_hash=event.position.tx_hash,
                        block_number=event.position.block_number,
                    )
                )
            else:
                inserted = await locks.mark_withdrawn(
                    event.lock_id,
                    withdrawn_at=ts,
                    withdraw_tx_hash=event.position.tx_hash,
                    withdraw_block_number=event.position.block_number,
                )
                if not inserted and await locks.get_by_lock_id(event.lock_id) is None:
                    result.skipped += 1
                    result.record_error(
                        "UnknownLock",
                        f"unlock for unknown lock id {event.lock_id}",
                        block_number=event.position.block_number,
                        tx_hash=event.position.tx_hash,
                    )
                    continue
            if inserted:
                result.inserted += 1
            else:
                result.duplicates += 1

        await self.flush_errors(session, result)
        return result

    # ------------------------------------------------------------------
    # Burns
    # ------------------------------------------------------------------

    async def ingest_burns(
        self,
        session: AsyncSession,
        token_addresses: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> StreamResult:
        """Index ERC20 transfers to the zero address for the given tokens."""
        result = StreamResult(stream="burn", from_block=from_block, to_block=to_block)
        logs: list[dict[str, Any]] = []
        for i in range(0, len(token_addresses), BURN_ADDRESS_BATCH):
            batch = token_addresses[i : i + BURN_ADDRESS_BATCH]
            logs.extend(
                await self._ledger.get_logs(
                    {
                        "address": [AsyncWeb3.to_checksum_address(a) for a in batch],
                        "fromBlock": from_block,
                        "toBlock": to_block,
                        "topics": [TRANSFER_TOPIC, None, pad_topic_address(ZERO_ADDRESS)],
                    }
                )
            )
        events = await self._decode_batch(session, result, logs, decode_burn)

        burns = BurnRepository(session)
        times: dict[int, datetime] = {}
        for event in events:
            ts = await self._block_time(times, event.position.block_number)
            rate = await self._rate_book.rate_at(session, ts)
            inserted = await burns.upsert(
                BurnDTO(
                    token_address=event.token_address,
                    from_address=event.from_address,
                    amount=Decimal(event.amount),
                    display_rate=rate,
                    tx_hash=event.position.tx_hash,
                    block_number=event.position.block_number,
                    timestamp=ts,
                )
            )
            if inserted:
                result.inserted += 1
            else:
                result.duplicates += 1

        await self.flush_errors(session, result)
        return result


def _decode_lock_log(log: dict[str, Any]) -> TokensLockedEvent | TokensUnlockedEvent:
    topics = log.get("topics") or []
    if not topics:
        raise EventDecodeError("log has no topics")
    if to_hex(topics[0]) == TOKENS_UNLOCKED_TOPIC:
        return decode_tokens_unlocked(log)
    return decode_tokens_locked(log)


def _log_block_number(log: dict[str, Any]) -> int | None:
    try:
        return int(log["blockNumber"])
    except (KeyError, TypeError, ValueError):
        return None


def _log_tx_hash(log: dict[str, Any]) -> str | None:
    value = log.get("transactionHash")
    return to_hex(value) if value is not None else None

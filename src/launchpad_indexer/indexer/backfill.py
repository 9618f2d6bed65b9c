"""Swap gap detection and backfill for a single token.

Compares the number of ``Swap`` logs on chain with the stored swaps, chunk by
chunk, and re-ingests only the chunks where the store is short. Runs under
its own coordinator lock so two operators cannot backfill concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from web3 import AsyncWeb3

from launchpad_indexer.indexer.ingestor import EventIngestor
from launchpad_indexer.ledger.events import SWAP_TOPIC
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import SwapRepository, TokenRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.coordinator import LockCoordinator
    from launchpad_indexer.indexer.reorg import ReorgGuard
    from launchpad_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

BACKFILL_LOCK_KEY = "backfill:swaps"
DEFAULT_CHUNK_BLOCKS = 2000


@dataclass
class BackfillResult:
    token_address: str
    from_block: int
    to_block: int
    chunks_scanned: int = 0
    gaps: list[tuple[int, int]] = field(default_factory=list)
    swaps_recovered: int = 0


class TokenNotIndexedError(LookupError):
    pass


class SwapBackfill:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerClient,
        coordinator: LockCoordinator,
        guard: ReorgGuard,
        ingestor: EventIngestor,
        *,
        chunk_blocks: int = DEFAULT_CHUNK_BLOCKS,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._coordinator = coordinator
        self._guard = guard
        self._ingestor = ingestor
        self._chunk_blocks = chunk_blocks

    async def run(
        self,
        token_address: str,
        *,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> BackfillResult:
        """Scan ``[from_block, to_block]`` (defaults: launch block to safe head) and fill gaps.

        Raises:
            TokenNotIndexedError: If the token has not been indexed.
            LockBusyError: If another backfill holds the lock.
        """
        async with self._coordinator.hold(BACKFILL_LOCK_KEY, auto_renew=True):
            async with session_scope(self._session_factory) as session:
                token = await TokenRepository(session).get(token_address)
                state = await self._guard.load_state(session, "swap")
            if token is None:
                raise TokenNotIndexedError(f"token {token_address} is not indexed")

            if to_block is None:
                head = await self._ledger.get_head()
                to_block = self._guard.safe_head(head.number, state)
            start = from_block if from_block is not None else token.block_number
            result = BackfillResult(token_address=token.token_address, from_block=start, to_block=to_block)

            for chunk_start in range(start, to_block + 1, self._chunk_blocks):
                chunk_end = min(to_block, chunk_start + self._chunk_blocks - 1)
                result.chunks_scanned += 1
                logs = await self._ledger.get_logs(
                    {
                        "address": AsyncWeb3.to_checksum_address(token.amm_address),
                        "fromBlock": chunk_start,
                        "toBlock": chunk_end,
                        "topics": [SWAP_TOPIC],
                    }
                )
                async with session_scope(self._session_factory) as session:
                    stored = await SwapRepository(session).count_in_block_range(
                        token.token_address, chunk_start, chunk_end
                    )
                    if len(logs) <= stored:
                        continue
                    logger.info(
                        "Gap in %s swaps at blocks %d-%d: %d on chain, %d stored",
                        token.token_address,
                        chunk_start,
                        chunk_end,
                        len(logs),
                        stored,
                    )
                    result.gaps.append((chunk_start, chunk_end))
                    stream = await self._ingestor.ingest_swaps(
                        session, token, chunk_start, chunk_end, logs=logs, advance_cursor=False
                    )
                    await self._guard.confirm_canonical(stream.block_hashes)
                    await self._guard.record_checkpoints(session, stream.block_hashes)
                    result.swaps_recovered += stream.inserted

        logger.info(
            "Backfill of %s done: %d chunks, %d gaps, %d swaps recovered",
            result.token_address,
            result.chunks_scanned,
            len(result.gaps),
            result.swaps_recovered,
        )
        return result

"""Chain reorg detection and rollback.

Each partition cursor stores the last confirmed block and its hash. Before a
run ingests anything the guard compares that hash with the canonical chain.
On divergence it walks stored checkpoints backwards to the newest block that
still agrees, deletes everything derived from later blocks and rewinds every
cursor to the agreement point. The whole repair is a function of the stored
rows and the canonical chain, so an interrupted rollback converges on retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from launchpad_indexer.indexer.tiers import TierClassifier
from launchpad_indexer.ledger.client import LedgerClientError
from launchpad_indexer.storage.repos import (
    BlockCheckpointRepository,
    BurnRepository,
    IndexerStateDTO,
    IndexerStateRepository,
    LockRecordRepository,
    PriceSnapshotRepository,
    SwapRepository,
    TokenRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from launchpad_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIRMATION_DEPTH = 3
DEFAULT_MAX_ROLLBACK_BLOCKS = 100

PARTITIONS = ("launch", "swap", "lock", "burn")


class ReorgState(str, Enum):
    SYNCED = "synced"
    ROLLED_BACK = "rolled_back"


class ReorgDepthExceededError(Exception):
    """No stored block within the rollback window agrees with the canonical chain.

    Retrying will not change the outcome; an operator has to intervene.
    """


class NonCanonicalBlockError(LedgerClientError):
    """Events were read from a block the canonical chain no longer contains.

    Raised before a range commits, so the range is discarded and re-read on a
    later tick.
    """

    def __init__(self, block_number: int, seen_hash: str, canonical_hash: str | None) -> None:
        super().__init__(f"block {block_number}: events carry {seen_hash}, canonical is {canonical_hash}")
        self.block_number = block_number
        self.seen_hash = seen_hash
        self.canonical_hash = canonical_hash


class CursorMovedError(Exception):
    """A cursor changed between reading a range and committing it (a rollback won)."""

    def __init__(self, partition: str, expected_block: int) -> None:
        super().__init__(f"{partition} cursor moved away from block {expected_block} during the range")
        self.partition = partition
        self.expected_block = expected_block


@dataclass(frozen=True)
class RollbackStats:
    agreement_block: int
    tokens_deleted: int
    swaps_deleted: int
    locks_deleted: int
    withdrawals_reverted: int
    burns_deleted: int
    snapshots_deleted: int


@dataclass(frozen=True)
class ReorgStatus:
    state: ReorgState
    partition: str
    last_block: int
    rollback: RollbackStats | None = None


class ReorgGuard:
    """Owns every write to ``indexer_state``; callers hold the reorg lock."""

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        confirmation_depth: int = DEFAULT_CONFIRMATION_DEPTH,
        max_rollback_blocks: int = DEFAULT_MAX_ROLLBACK_BLOCKS,
        classifier: TierClassifier | None = None,
    ) -> None:
        if confirmation_depth < 0:
            raise ValueError("confirmation_depth must be >= 0")
        self._ledger = ledger
        self._confirmation_depth = confirmation_depth
        self._max_rollback_blocks = max_rollback_blocks
        self._classifier = classifier or TierClassifier()

    async def load_state(self, session: AsyncSession, partition: str, *, for_update: bool = False) -> IndexerStateDTO:
        """Read (creating on first use) a partition cursor.

        ``for_update`` row-locks the cursor for the rest of the transaction so
        a rollback and a range commit on the same partition serialize.
        """
        return await IndexerStateRepository(session).get_or_create(
            partition, confirmation_depth=self._confirmation_depth, for_update=for_update
        )

    def safe_head(self, head_number: int, state: IndexerStateDTO) -> int:
        """Newest block treated as final for this partition."""
        return max(0, head_number - state.confirmation_depth)

    async def verify(self, session: AsyncSession, partition: str) -> ReorgStatus:
        """Compare the partition cursor with the canonical chain, rolling back on divergence.

        Raises:
            ReorgDepthExceededError: If no agreement point exists in the window.
        """
        state = await self.load_state(session, partition)
        if state.last_block == 0 or state.last_block_hash is None:
            return ReorgStatus(state=ReorgState.SYNCED, partition=partition, last_block=state.last_block)

        canonical = await self._ledger.get_block_hash(state.last_block)
        if canonical == state.last_block_hash:
            return ReorgStatus(state=ReorgState.SYNCED, partition=partition, last_block=state.last_block)

        logger.warning(
            "Reorg detected on %s at block %d: stored %s, canonical %s",
            partition,
            state.last_block,
            state.last_block_hash,
            canonical,
        )
        agreement = await self.find_agreement_point(session, state.last_block)
        stats = await self.rollback(session, agreement)
        return ReorgStatus(
            state=ReorgState.ROLLED_BACK,
            partition=partition,
            last_block=agreement,
            rollback=stats,
        )

    async def verify_all(self, session: AsyncSession) -> list[ReorgStatus]:
        """Verify every partition; a rollback triggered by one rewinds the others too."""
        return [await self.verify(session, partition) for partition in PARTITIONS]

    async def find_agreement_point(self, session: AsyncSession, diverged_block: int) -> int:
        """Newest stored checkpoint below ``diverged_block`` that matches the ledger."""
        floor = max(0, diverged_block - self._max_rollback_blocks)
        checkpoints = await BlockCheckpointRepository(session).list_descending(
            below=diverged_block, floor=floor
        )
        for block_number, stored_hash in checkpoints:
            canonical = await self._ledger.get_block_hash(block_number)
            if canonical == stored_hash:
                logger.info("Agreement point for divergence at %d is block %d", diverged_block, block_number)
                return block_number
        raise ReorgDepthExceededError(
            f"No agreement point within {self._max_rollback_blocks} blocks below {diverged_block} "
            f"({len(checkpoints)} checkpoints compared)"
        )

    async def rollback(self, session: AsyncSession, agreement_block: int) -> RollbackStats:
        """Delete every row derived from blocks after ``agreement_block`` and rewind cursors.

        Cursors are rewound before any row is deleted. A range committing
        concurrently either lands first (and its rows are then visible to the
        deletes below) or finds its cursor moved and discards itself.
        """
        tokens = TokenRepository(session)
        snapshots = PriceSnapshotRepository(session)
        swaps = SwapRepository(session)
        locks = LockRecordRepository(session)
        checkpoints = BlockCheckpointRepository(session)
        agreement_hash = await checkpoints.get(agreement_block)

        states = IndexerStateRepository(session)
        for state in await states.list_all(for_update=True):
            if state.last_block > agreement_block:
                await states.set_cursor(state.partition, block_number=agreement_block, block_hash=agreement_hash)
        await tokens.clamp_last_checked_block(agreement_block)

        deleted_tokens = await tokens.delete_created_after(agreement_block)
        snapshots_deleted = await snapshots.delete_for_tokens(deleted_tokens)
        snapshots_deleted += await snapshots.delete_after(agreement_block)
        swaps_deleted, affected = await swaps.delete_after(agreement_block)
        locks_deleted = await locks.delete_after(agreement_block)
        withdrawals_reverted = await locks.revert_withdrawals_after(agreement_block)
        burns_deleted = await BurnRepository(session).delete_after(agreement_block)

        surviving = affected - set(deleted_tokens)
        if surviving:
            await self._classifier.refresh_counters(session, surviving)
        await checkpoints.delete_after(agreement_block)

        stats = RollbackStats(
            agreement_block=agreement_block,
            tokens_deleted=len(deleted_tokens),
            swaps_deleted=swaps_deleted,
            locks_deleted=locks_deleted,
            withdrawals_reverted=withdrawals_reverted,
            burns_deleted=burns_deleted,
            snapshots_deleted=snapshots_deleted,
        )
        logger.warning("Rolled back to block %d: %s", agreement_block, stats)
        return stats

    async def seed(self, session: AsyncSession, partition: str, *, block_number: int, block_hash: str) -> None:
        """Initialize a fresh partition cursor just before its first range."""
        await IndexerStateRepository(session).set_cursor(partition, block_number=block_number, block_hash=block_hash)
        await BlockCheckpointRepository(session).upsert_many({block_number: block_hash})

    async def advance(
        self,
        session: AsyncSession,
        partition: str,
        *,
        block_number: int,
        block_hash: str,
        expected: IndexerStateDTO | None = None,
    ) -> bool:
        """Move a cursor forward after its range was fully ingested.

        The write is a compare-and-set against ``expected``, the state the
        range was computed from (the current row when omitted).

        Returns:
            False if the cursor was already at or past ``block_number``.

        Raises:
            CursorMovedError: The cursor no longer matches ``expected``; the
                caller must discard its transaction.
        """
        states = IndexerStateRepository(session)
        if expected is None:
            expected = await self.load_state(session, partition)
        if block_number <= expected.last_block:
            return False
        moved = await states.compare_and_set_cursor(
            partition,
            expected_block=expected.last_block,
            expected_hash=expected.last_block_hash,
            block_number=block_number,
            block_hash=block_hash,
        )
        if not moved:
            raise CursorMovedError(partition, expected.last_block)

        checkpoints = BlockCheckpointRepository(session)
        await checkpoints.upsert_many({block_number: block_hash})
        started = [s.last_block for s in await states.list_all() if s.last_block > 0]
        if started:
            await checkpoints.prune_before(min(started) - self._max_rollback_blocks)
        return True

    async def confirm_canonical(self, hashes: dict[int, str]) -> None:
        """Check that every block events were read from is still on the canonical chain.

        Raises:
            NonCanonicalBlockError: On the first block whose hash differs.
        """
        for block_number, seen_hash in sorted(hashes.items()):
            canonical = await self._ledger.get_block_hash(block_number)
            if canonical != seen_hash:
                logger.warning(
                    "Discarding range: block %d was read as %s, canonical is %s", block_number, seen_hash, canonical
                )
                raise NonCanonicalBlockError(block_number, seen_hash, canonical)

    async def record_checkpoints(self, session: AsyncSession, hashes: dict[int, str]) -> None:
        await BlockCheckpointRepository(session).upsert_many(hashes)

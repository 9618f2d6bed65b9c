"""One bounded ingestion run.

A run verifies the chain under the reorg lock, then ingests each requested
stream from its cursor up to the safe head. It stops issuing new work when
its time budget is spent; a range that did not finish leaves its cursor
where it was, so the next run repeats it and the upserts absorb the overlap.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from launchpad_indexer.coordinator import LockBusyError, LockCoordinator
from launchpad_indexer.indexer.ingestor import EventIngestor, StreamResult
from launchpad_indexer.indexer.reorg import CursorMovedError, ReorgDepthExceededError, ReorgGuard, ReorgState
from launchpad_indexer.indexer.tiers import ActivityTier, TierClassifier
from launchpad_indexer.ledger.client import BlockRef, LedgerClientError
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.repos import (
    IndexerRunDTO,
    IndexerRunRepository,
    TokenDTO,
    TokenRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.ledger.client import LedgerClient

logger = logging.getLogger(__name__)

REORG_LOCK_KEY = "reorg_scan"


def cursor_lock_key(partition: str) -> str:
    return f"cursor:{partition}"


def block_range_for(blocks_behind: int, *, min_range: int = 100, max_range: int = 2000) -> int:
    """Adaptive range size: larger steps the further a cursor lags."""
    if blocks_behind > 10_000:
        size = 2000
    elif blocks_behind > 5_000:
        size = 1000
    elif blocks_behind > 1_000:
        size = 500
    elif blocks_behind > 500:
        size = 300
    else:
        size = 100
    return max(min_range, min(size, max_range))


class RunStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    BUSY = "busy"
    FAILED = "failed"


@dataclass(frozen=True)
class RunRequest:
    """Which streams a run indexes, and which swap tier it polls."""

    tier: ActivityTier = ActivityTier.HOT
    index_launches: bool = True
    index_swaps: bool = True
    index_locks: bool = False
    index_burns: bool = False
    snapshot_reserves: bool = False


@dataclass
class RunResult:
    run_id: str
    tier: str
    status: RunStatus = RunStatus.COMPLETED
    processed: int = 0
    errors: list[str] = field(default_factory=list)
    tokens_processed: int = 0
    blocks_scanned: int = 0
    swaps_found: int = 0
    snapshots_taken: int = 0
    reorg_rollbacks: int = 0
    queue_position: int | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def absorb(self, stream: StreamResult) -> None:
        self.processed += stream.processed
        self.blocks_scanned += stream.blocks_scanned
        if stream.stream == "swap":
            self.swaps_found += stream.inserted
        self.snapshots_taken += stream.snapshots
        self.errors.extend(f"{e.stream}: {e.error_type}: {e.message}" for e in stream.errors)


StreamFn = Callable[["AsyncSession", int, int], Awaitable[StreamResult]]


class IngestionRunner:
    """Executes ingestion runs against the shared coordinator and stores."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerClient,
        coordinator: LockCoordinator,
        guard: ReorgGuard,
        ingestor: EventIngestor,
        *,
        classifier: TierClassifier | None = None,
        run_budget_seconds: float = 25.0,
        lock_wait_seconds: float = 5.0,
        parallel_tokens: int = 6,
        tier_batch_size: int = 50,
        min_block_range: int = 100,
        max_block_range: int = 2000,
        initial_lookback_blocks: int = 10_000,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._coordinator = coordinator
        self._guard = guard
        self._ingestor = ingestor
        self._classifier = classifier or TierClassifier()
        self._budget = run_budget_seconds
        self._lock_wait = lock_wait_seconds
        self._parallel_tokens = parallel_tokens
        self._tier_batch_size = tier_batch_size
        self._min_range = min_block_range
        self._max_range = max_block_range
        self._initial_lookback = initial_lookback_blocks

    async def run_ingestion(self, request: RunRequest) -> RunResult:
        """Run one bounded ingestion pass.

        Raises:
            ReorgDepthExceededError: The chain diverged beyond the rollback
                window. Nothing is ingested; an operator must intervene.
        """
        result = RunResult(run_id=str(uuid.uuid4()), tier=ActivityTier(request.tier).value)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._budget

        try:
            head = await self._ledger.get_head()
            await self._verify_chain(result)
        except LockBusyError as e:
            logger.info("Run %s skipped: %s", result.run_id, e)
            result.status = RunStatus.BUSY
            result.queue_position = e.queue_position
            return await self._finish(result)
        except LedgerClientError as e:
            logger.warning("Run %s could not verify the chain: %s", result.run_id, e)
            result.status = RunStatus.FAILED
            result.errors.append(f"ledger: {e}")
            return await self._finish(result)
        except ReorgDepthExceededError as e:
            logger.error("Run %s aborted, manual intervention required: %s", result.run_id, e)
            result.status = RunStatus.FAILED
            result.errors.append(f"reorg: {e}")
            await self._finish(result)
            raise

        if request.index_launches:
            await self._run_cursor_stream(result, "launch", head, deadline, self._ingestor.ingest_launches)
        if request.index_swaps:
            await self._run_swaps(result, request, head, deadline)
        if request.index_locks and self._ingestor.locker_configured:
            await self._run_cursor_stream(result, "lock", head, deadline, self._ingestor.ingest_locks)
        if request.index_burns:
            await self._run_cursor_stream(result, "burn", head, deadline, self._ingest_burns)

        if result.status == RunStatus.COMPLETED and loop.time() >= deadline:
            result.status = RunStatus.TIMED_OUT
        return await self._finish(result)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _verify_chain(self, result: RunResult) -> None:
        async with self._coordinator.hold(REORG_LOCK_KEY, wait_seconds=self._lock_wait):
            async with session_scope(self._session_factory) as session:
                statuses = await self._guard.verify_all(session)
        result.reorg_rollbacks = sum(1 for s in statuses if s.state == ReorgState.ROLLED_BACK)

    async def _run_cursor_stream(
        self,
        result: RunResult,
        partition: str,
        head: BlockRef,
        deadline: float,
        ingest: StreamFn,
    ) -> None:
        """Walk one partition forward range by range until caught up or out of time."""
        loop = asyncio.get_running_loop()
        try:
            async with self._coordinator.hold(cursor_lock_key(partition), wait_seconds=self._lock_wait):
                while True:
                    if loop.time() >= deadline:
                        result.status = RunStatus.TIMED_OUT
                        logger.info("Run %s out of time on %s; cursor left in place", result.run_id, partition)
                        return
                    try:
                        async with session_scope(self._session_factory) as session:
                            stream = await self._ingest_next_range(session, partition, head, ingest)
                    except CursorMovedError as e:
                        logger.warning("Run %s discarded a %s range: %s", result.run_id, partition, e)
                        continue
                    if stream is None:
                        return
                    result.absorb(stream)
        except LockBusyError:
            logger.info("Partition %s is being indexed by another run", partition)
        except LedgerClientError as e:
            logger.warning("Partition %s stopped on ledger error: %s", partition, e)
            result.errors.append(f"{partition}: ledger: {e}")

    async def _ingest_next_range(
        self,
        session: AsyncSession,
        partition: str,
        head: BlockRef,
        ingest: StreamFn,
    ) -> StreamResult | None:
        """Ingest one range and move the cursor past it, all in ``session``.

        The end block's hash is read before the events, and every block the
        events came from is re-checked against the canonical chain before the
        cursor moves, so a range read from a replaced branch is discarded.
        """
        state = await self._guard.load_state(session, partition, for_update=True)
        safe = self._guard.safe_head(head.number, state)

        if state.last_block_hash is None:
            seed_block = max(0, safe - self._initial_lookback - 1)
            seed_hash = await self._ledger.get_block_hash(seed_block)
            if seed_hash is None:
                raise LedgerClientError(f"block {seed_block} not available to seed {partition}")
            await self._guard.seed(session, partition, block_number=seed_block, block_hash=seed_hash)
            logger.info("Seeded %s cursor at block %d", partition, seed_block)
            state = await self._guard.load_state(session, partition)

        from_block = state.last_block + 1
        if from_block > safe:
            return None
        size = block_range_for(safe - state.last_block, min_range=self._min_range, max_range=self._max_range)
        to_block = min(safe, from_block + size - 1)
        to_hash = await self._ledger.get_block_hash(to_block)
        if to_hash is None:
            raise LedgerClientError(f"block {to_block} not available")

        stream = await ingest(session, from_block, to_block)
        await self._guard.confirm_canonical(stream.block_hashes)
        await self._guard.advance(session, partition, block_number=to_block, block_hash=to_hash, expected=state)
        await self._guard.record_checkpoints(session, stream.block_hashes)
        logger.debug(
            "%s: blocks %d-%d, %d processed, %d skipped",
            partition,
            from_block,
            to_block,
            stream.processed,
            stream.skipped,
        )
        return stream

    async def _ingest_burns(self, session: AsyncSession, from_block: int, to_block: int) -> StreamResult:
        addresses = await TokenRepository(session).list_addresses()
        return await self._ingestor.ingest_burns(session, addresses, from_block, to_block)

    async def _run_swaps(
        self,
        result: RunResult,
        request: RunRequest,
        head: BlockRef,
        deadline: float,
    ) -> None:
        """Poll one tier's batch of tokens with bounded parallelism."""
        async with session_scope(self._session_factory) as session:
            tokens = await self._classifier.get_by_tier(session, request.tier, self._tier_batch_size)
            state = await self._guard.load_state(session, "swap")
        safe = self._guard.safe_head(head.number, state)
        if not tokens:
            return

        semaphore = asyncio.Semaphore(self._parallel_tokens)
        loop = asyncio.get_running_loop()

        async def index_token(token: TokenDTO) -> StreamResult | None:
            async with semaphore:
                if loop.time() >= deadline:
                    return None
                return await self._index_token_swaps(result, token, safe, snapshot=request.snapshot_reserves)

        outcomes = await asyncio.gather(*(index_token(t) for t in tokens), return_exceptions=True)

        reached: StreamResult | None = None
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                continue
            result.tokens_processed += 1
            result.absorb(outcome)
            if outcome.to_block in outcome.block_hashes and (reached is None or outcome.to_block > reached.to_block):
                reached = outcome

        if any(o is None for o in outcomes) and loop.time() >= deadline:
            result.status = RunStatus.TIMED_OUT
        if reached is not None:
            await self._advance_swap_cursor(reached.to_block, reached.block_hashes[reached.to_block])

    async def _index_token_swaps(
        self,
        result: RunResult,
        token: TokenDTO,
        safe: int,
        *,
        snapshot: bool = False,
    ) -> StreamResult | None:
        from_block = token.last_checked_block + 1
        if from_block > safe:
            return StreamResult(stream="swap", from_block=from_block, to_block=from_block - 1)
        size = block_range_for(safe - token.last_checked_block, min_range=self._min_range, max_range=self._max_range)
        to_block = min(safe, from_block + size - 1)
        try:
            to_hash = await self._ledger.get_block_hash(to_block)
            if to_hash is None:
                raise LedgerClientError(f"block {to_block} not available")
            async with session_scope(self._session_factory) as session:
                stream = await self._ingestor.ingest_swaps(
                    session, token, from_block, to_block, expected_last_checked=token.last_checked_block
                )
                if snapshot:
                    tail = await self._ingestor.snapshot_reserves(session, token, to_block)
                    stream.snapshots += tail.snapshots
                    stream.errors.extend(tail.errors)
                await self._guard.confirm_canonical(stream.block_hashes)
                stream.block_hashes.setdefault(to_block, to_hash)
                await self._guard.record_checkpoints(session, stream.block_hashes)
            return stream
        except CursorMovedError as e:
            logger.warning("Swaps for %s discarded: %s", token.token_address, e)
            return None
        except LedgerClientError as e:
            logger.warning("Swaps for %s failed: %s", token.token_address, e)
            result.errors.append(f"swap {token.token_address}: ledger: {e}")
            return None

    async def _advance_swap_cursor(self, block_number: int, block_hash: str) -> None:
        """Move the swap partition cursor to the furthest block a token reached this run."""
        try:
            async with self._coordinator.hold(cursor_lock_key("swap"), wait_seconds=self._lock_wait):
                async with session_scope(self._session_factory) as session:
                    state = await self._guard.load_state(session, "swap", for_update=True)
                    if state.last_block_hash is None:
                        await self._guard.seed(session, "swap", block_number=block_number, block_hash=block_hash)
                    else:
                        await self._guard.advance(
                            session, "swap", block_number=block_number, block_hash=block_hash, expected=state
                        )
        except LockBusyError:
            logger.debug("Swap cursor busy; another run will advance it")
        except CursorMovedError as e:
            logger.warning("Swap cursor not advanced: %s", e)

    async def _finish(self, result: RunResult) -> RunResult:
        result.finished_at = datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            await IndexerRunRepository(session).insert(
                IndexerRunDTO(
                    run_id=result.run_id,
                    tier=result.tier,
                    status=result.status.value,
                    started_at=result.started_at,
                    finished_at=result.finished_at,
                    tokens_processed=result.tokens_processed,
                    blocks_scanned=result.blocks_scanned,
                    events_processed=result.processed,
                    swaps_found=result.swaps_found,
                    errors_count=len(result.errors),
                    reorg_rollbacks=result.reorg_rollbacks,
                )
            )
        logger.info(
            "Run %s (%s) %s: %d processed, %d swaps, %d errors",
            result.run_id,
            result.tier,
            result.status.value,
            result.processed,
            result.swaps_found,
            len(result.errors),
        )
        return result

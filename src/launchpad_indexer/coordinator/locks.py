"""Database-backed lease locks with a FIFO wait queue.

A resource key has at most one holder (enforced by the ``coordinator_locks``
primary key). Callers that find the resource busy are appended to
``coordinator_queue`` and poll ``check_ready`` until they reach the head of
the queue and the lease is free. Leases expire, so a crashed holder is
recovered passively once its expiry elapses.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update

from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.models import CoordinatorLockModel, CoordinatorQueueModel
from launchpad_indexer.storage.repos import dialect_insert, ensure_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300
DEFAULT_RETENTION_SECONDS = 3600
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_RENEW_INTERVAL_SECONDS = 30.0


class QueueStatus(str, Enum):
    """Lifecycle of a queue entry."""

    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    TIMEOUT = "timeout"


_LIVE_STATUSES = (QueueStatus.WAITING.value, QueueStatus.PROCESSING.value)
_TERMINAL_STATUSES = (QueueStatus.COMPLETED.value, QueueStatus.TIMEOUT.value)


class CoordinatorError(Exception):
    """Base exception for lock coordinator errors."""


class UnknownLockRequestError(CoordinatorError):
    """Raised when a request id has no queue entry (never issued or already evicted)."""


class LockBusyError(CoordinatorError):
    """Raised by ``hold`` when the resource stays busy for the whole wait."""

    def __init__(self, resource_key: str, queue_position: int) -> None:
        super().__init__(f"Resource {resource_key!r} is busy (queue position {queue_position})")
        self.resource_key = resource_key
        self.queue_position = queue_position


@dataclass(frozen=True)
class AcquireResult:
    acquired: bool
    request_id: str
    queue_position: int


@dataclass(frozen=True)
class ReadyResult:
    acquired: bool
    timed_out: bool
    queue_position: int


@dataclass(frozen=True)
class ReapStats:
    timed_out: int
    evicted: int
    expired_locks: int


@dataclass(frozen=True)
class LockHandle:
    """Returned by ``hold`` to the critical section."""

    resource_key: str
    request_id: str


class LockCoordinator:
    """Mutual exclusion for runs that touch shared, non-idempotent state.

    Example:
        ```python
        coordinator = LockCoordinator(db.session_factory)
        async with coordinator.hold("reorg_scan", wait_seconds=5):
            ...  # exclusive section, released even on error
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        renew_interval_seconds: float = DEFAULT_RENEW_INTERVAL_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=lease_seconds)
        self._retention = timedelta(seconds=retention_seconds)
        self._poll_interval = poll_interval_seconds
        self._renew_interval = renew_interval_seconds

    # ------------------------------------------------------------------
    # Lock API
    # ------------------------------------------------------------------

    async def acquire(self, resource_key: str, timeout: float | None = None) -> AcquireResult:
        """Take the lock if it is free and nobody is queued, otherwise enqueue.

        Args:
            resource_key: Logical resource to serialize on.
            timeout: Seconds until the lease (holder) or queue entry (waiter)
                expires. Defaults to the configured lease.

        Returns:
            AcquireResult with ``queue_position`` 0 when acquired, else the
            1-based FIFO position.
        """
        request_id = str(uuid.uuid4())
        ttl = timedelta(seconds=timeout) if timeout is not None else self._lease
        now = datetime.now(UTC)

        async with session_scope(self._session_factory) as session:
            await self._drop_expired_lock(session, resource_key, now)
            waiting = await self._count_live_waiters(session, resource_key, now)
            if waiting == 0 and await self._try_take_lock(session, resource_key, request_id, now, ttl):
                session.add(
                    CoordinatorQueueModel(
                        resource_key=resource_key,
                        request_id=request_id,
                        status=QueueStatus.PROCESSING.value,
                        requested_at=now,
                        expires_at=now + ttl,
                        acquired_at=now,
                    )
                )
                await session.flush()
                logger.debug("Lock %s acquired immediately by %s", resource_key, request_id)
                return AcquireResult(acquired=True, request_id=request_id, queue_position=0)

            entry = CoordinatorQueueModel(
                resource_key=resource_key,
                request_id=request_id,
                status=QueueStatus.WAITING.value,
                requested_at=now,
                expires_at=now + ttl,
            )
            session.add(entry)
            await session.flush()
            position = await self._queue_position(session, entry, now)

        logger.info("Lock %s busy; request %s queued at position %d", resource_key, request_id, position)
        return AcquireResult(acquired=False, request_id=request_id, queue_position=position)

    async def check_ready(self, request_id: str) -> ReadyResult:
        """Poll a queued request; the head of the queue takes a free lock.

        Raises:
            UnknownLockRequestError: If the request id is not known.
        """
        now = datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            entry = await self._get_entry(session, request_id)

            if entry.status == QueueStatus.TIMEOUT.value:
                return ReadyResult(acquired=False, timed_out=True, queue_position=0)
            if entry.status == QueueStatus.COMPLETED.value:
                return ReadyResult(acquired=False, timed_out=False, queue_position=0)

            if ensure_utc(entry.expires_at) <= now:
                entry.status = QueueStatus.TIMEOUT.value
                entry.released_at = now
                await self._release_lock_row(session, entry.resource_key, request_id)
                await session.flush()
                logger.info("Lock request %s on %s timed out", request_id, entry.resource_key)
                return ReadyResult(acquired=False, timed_out=True, queue_position=0)

            if entry.status == QueueStatus.PROCESSING.value:
                return ReadyResult(acquired=True, timed_out=False, queue_position=0)

            position = await self._queue_position(session, entry, now)
            if position == 1:
                await self._drop_expired_lock(session, entry.resource_key, now)
                ttl = ensure_utc(entry.expires_at) - now
                if await self._try_take_lock(session, entry.resource_key, request_id, now, ttl):
                    entry.status = QueueStatus.PROCESSING.value
                    entry.acquired_at = now
                    await session.flush()
                    logger.debug("Lock %s handed to queued request %s", entry.resource_key, request_id)
                    return ReadyResult(acquired=True, timed_out=False, queue_position=0)

            return ReadyResult(acquired=False, timed_out=False, queue_position=position)

    async def renew(self, request_id: str, extension_seconds: float) -> bool:
        """Extend a held lease; the queue entry gets twice the extension.

        Returns:
            False if the request does not currently hold the lock.
        """
        now = datetime.now(UTC)
        extension = timedelta(seconds=extension_seconds)
        async with session_scope(self._session_factory) as session:
            entry = await self._get_entry(session, request_id)
            if entry.status != QueueStatus.PROCESSING.value:
                return False
            result = await session.execute(
                update(CoordinatorLockModel)
                .where(CoordinatorLockModel.resource_key == entry.resource_key)
                .where(CoordinatorLockModel.holder_request_id == request_id)
                .values(expires_at=now + extension)
            )
            if not result.rowcount:
                logger.warning("Renew failed: %s no longer holds %s", request_id, entry.resource_key)
                return False
            entry.expires_at = now + 2 * extension
            await session.flush()
        return True

    async def release(self, request_id: str | None = None, *, resource_key: str | None = None) -> bool:
        """Release by request id (holder or waiter) or force-clear a resource.

        Returns:
            True if a held lock row was removed.
        """
        if request_id is None:
            if resource_key is None:
                raise ValueError("release() needs a request_id or a resource_key")
            return await self._force_release(resource_key)

        now = datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            entry = await self._get_entry(session, request_id)
            if entry.status in _LIVE_STATUSES:
                entry.status = QueueStatus.COMPLETED.value
                entry.released_at = now
            released = await self._release_lock_row(session, entry.resource_key, request_id)
            await session.flush()
        return released

    async def _force_release(self, resource_key: str) -> bool:
        """Operator path: clear the lease whoever holds it."""
        now = datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(CoordinatorLockModel).where(CoordinatorLockModel.resource_key == resource_key)
            )
            released = bool(result.rowcount)
            await session.execute(
                update(CoordinatorQueueModel)
                .where(CoordinatorQueueModel.resource_key == resource_key)
                .where(CoordinatorQueueModel.status == QueueStatus.PROCESSING.value)
                .values(status=QueueStatus.COMPLETED.value, released_at=now)
            )
        if released:
            logger.warning("Lock %s force-released", resource_key)
        return released

    async def reap(self, now: datetime | None = None) -> ReapStats:
        """Time out expired entries, drop expired leases, evict old terminal entries."""
        now = now or datetime.now(UTC)
        async with session_scope(self._session_factory) as session:
            timed_out = await session.execute(
                update(CoordinatorQueueModel)
                .where(CoordinatorQueueModel.status.in_(_LIVE_STATUSES))
                .where(CoordinatorQueueModel.expires_at < now)
                .values(status=QueueStatus.TIMEOUT.value, released_at=now)
            )
            expired_locks = await session.execute(
                delete(CoordinatorLockModel).where(CoordinatorLockModel.expires_at < now)
            )
            evicted = await session.execute(
                delete(CoordinatorQueueModel)
                .where(CoordinatorQueueModel.status.in_(_TERMINAL_STATUSES))
                .where(CoordinatorQueueModel.released_at < now - self._retention)
            )
        stats = ReapStats(
            timed_out=int(timed_out.rowcount or 0),
            evicted=int(evicted.rowcount or 0),
            expired_locks=int(expired_locks.rowcount or 0),
        )
        if stats.timed_out or stats.expired_locks:
            logger.info(
                "Reaped queue: %d timed out, %d expired leases, %d evicted",
                stats.timed_out,
                stats.expired_locks,
                stats.evicted,
            )
        return stats

    @asynccontextmanager
    async def hold(
        self,
        resource_key: str,
        *,
        wait_seconds: float = 0.0,
        timeout: float | None = None,
        auto_renew: bool = False,
    ) -> AsyncIterator[LockHandle]:
        """Scoped acquisition; the lock is always released on exit.

        Raises:
            LockBusyError: If the lock was not obtained within ``wait_seconds``.
                The queue entry is withdrawn before raising.
        """
        result = await self.acquire(resource_key, timeout=timeout)
        request_id = result.request_id
        acquired = result.acquired
        position = result.queue_position

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while not acquired and loop.time() < deadline:
            await asyncio.sleep(min(self._poll_interval, max(0.0, deadline - loop.time())))
            ready = await self.check_ready(request_id)
            if ready.timed_out:
                break
            acquired = ready.acquired
            position = ready.queue_position

        if not acquired:
            await self.release(request_id)
            raise LockBusyError(resource_key, position)

        renew_task: asyncio.Task[None] | None = None
        if auto_renew:
            extension = timeout if timeout is not None else self._lease.total_seconds()
            renew_task = asyncio.create_task(self._renew_loop(request_id, extension))

        try:
            yield LockHandle(resource_key=resource_key, request_id=request_id)
        finally:
            if renew_task is not None:
                renew_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await renew_task
            await self.release(request_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _renew_loop(self, request_id: str, extension_seconds: float) -> None:
        while True:
            await asyncio.sleep(self._renew_interval)
            try:
                if not await self.renew(request_id, extension_seconds):
                    logger.warning("Auto-renew stopped: request %s lost its lease", request_id)
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Auto-renew for %s failed: %s", request_id, e)

    async def _get_entry(self, session: AsyncSession, request_id: str) -> CoordinatorQueueModel:
        result = await session.execute(
            select(CoordinatorQueueModel).where(CoordinatorQueueModel.request_id == request_id)
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise UnknownLockRequestError(f"Unknown lock request: {request_id}")
        return entry

    async def _try_take_lock(
        self,
        session: AsyncSession,
        resource_key: str,
        request_id: str,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        stmt = dialect_insert(session, CoordinatorLockModel).values(
            resource_key=resource_key,
            holder_request_id=request_id,
            acquired_at=now,
            expires_at=now + ttl,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["resource_key"])
        result = await session.execute(stmt)
        return bool(result.rowcount)

    async def _drop_expired_lock(self, session: AsyncSession, resource_key: str, now: datetime) -> None:
        result = await session.execute(
            select(CoordinatorLockModel.holder_request_id)
            .where(CoordinatorLockModel.resource_key == resource_key)
            .where(CoordinatorLockModel.expires_at <= now)
        )
        stale_holder = result.scalar_one_or_none()
        if stale_holder is None:
            return
        await session.execute(
            delete(CoordinatorLockModel)
            .where(CoordinatorLockModel.resource_key == resource_key)
            .where(CoordinatorLockModel.expires_at <= now)
        )
        await session.execute(
            update(CoordinatorQueueModel)
            .where(CoordinatorQueueModel.request_id == stale_holder)
            .where(CoordinatorQueueModel.status == QueueStatus.PROCESSING.value)
            .values(status=QueueStatus.TIMEOUT.value, released_at=now)
        )
        logger.warning("Lease on %s held by %s expired; recovered", resource_key, stale_holder)

    async def _release_lock_row(self, session: AsyncSession, resource_key: str, request_id: str) -> bool:
        result = await session.execute(
            delete(CoordinatorLockModel)
            .where(CoordinatorLockModel.resource_key == resource_key)
            .where(CoordinatorLockModel.holder_request_id == request_id)
        )
        return bool(result.rowcount)

    async def _count_live_waiters(self, session: AsyncSession, resource_key: str, now: datetime) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(CoordinatorQueueModel)
            .where(CoordinatorQueueModel.resource_key == resource_key)
            .where(CoordinatorQueueModel.status == QueueStatus.WAITING.value)
            .where(CoordinatorQueueModel.expires_at > now)
        )
        return int(result.scalar_one())

    async def _queue_position(
        self,
        session: AsyncSession,
        entry: CoordinatorQueueModel,
        now: datetime,
    ) -> int:
        # queue_id is assigned in request order, so it is the FIFO key.
        result = await session.execute(
            select(func.count())
            .select_from(CoordinatorQueueModel)
            .where(CoordinatorQueueModel.resource_key == entry.resource_key)
            .where(CoordinatorQueueModel.status == QueueStatus.WAITING.value)
            .where(CoordinatorQueueModel.expires_at > now)
            .where(CoordinatorQueueModel.queue_id <= entry.queue_id)
        )
        return int(result.scalar_one())

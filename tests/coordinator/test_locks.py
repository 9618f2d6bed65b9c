"""Tests for the database-backed lock coordinator."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from launchpad_indexer.coordinator import (
    LockBusyError,
    LockCoordinator,
    QueueStatus,
    UnknownLockRequestError,
)
from launchpad_indexer.storage.database import session_scope
from launchpad_indexer.storage.models import CoordinatorQueueModel


@pytest.fixture
def coordinator(session_factory) -> LockCoordinator:
    return LockCoordinator(
        session_factory,
        lease_seconds=60,
        retention_seconds=60,
        poll_interval_seconds=0.01,
        renew_interval_seconds=0.01,
    )


async def _entry_status(session_factory, request_id: str) -> str:
    async with session_scope(session_factory) as session:
        result = await session.execute(
            select(CoordinatorQueueModel.status).where(CoordinatorQueueModel.request_id == request_id)
        )
        return result.scalar_one()


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_free_resource_is_acquired(self, coordinator, session_factory):
        result = await coordinator.acquire("reorg_scan")

        assert result.acquired
        assert result.queue_position == 0
        assert await _entry_status(session_factory, result.request_id) == QueueStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self, coordinator):
        """Run A holds reorg_scan, B queues at 1 and acquires once A releases."""
        a = await coordinator.acquire("reorg_scan")
        b = await coordinator.acquire("reorg_scan")

        assert not b.acquired
        assert b.queue_position == 1

        not_yet = await coordinator.check_ready(b.request_id)
        assert not not_yet.acquired
        assert not_yet.queue_position == 1

        assert await coordinator.release(a.request_id)
        ready = await coordinator.check_ready(b.request_id)

        assert ready.acquired
        assert not ready.timed_out

    @pytest.mark.asyncio
    async def test_resources_are_independent(self, coordinator):
        a = await coordinator.acquire("cursor:launch")
        b = await coordinator.acquire("cursor:swap")

        assert a.acquired
        assert b.acquired

    @pytest.mark.asyncio
    async def test_queue_is_fifo(self, coordinator):
        a = await coordinator.acquire("reorg_scan")
        b = await coordinator.acquire("reorg_scan")
        c = await coordinator.acquire("reorg_scan")
        assert (b.queue_position, c.queue_position) == (1, 2)

        await coordinator.release(a.request_id)

        c_ready = await coordinator.check_ready(c.request_id)
        assert not c_ready.acquired
        assert c_ready.queue_position == 2

        assert (await coordinator.check_ready(b.request_id)).acquired
        c_ready = await coordinator.check_ready(c.request_id)
        assert not c_ready.acquired
        assert c_ready.queue_position == 1

    @pytest.mark.asyncio
    async def test_new_request_does_not_jump_queue(self, coordinator):
        a = await coordinator.acquire("reorg_scan")
        b = await coordinator.acquire("reorg_scan")
        await coordinator.release(a.request_id)

        late = await coordinator.acquire("reorg_scan")

        assert not late.acquired
        assert late.queue_position == 2
        assert (await coordinator.check_ready(b.request_id)).acquired

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_holder(self, coordinator):
        results = await asyncio.gather(*(coordinator.acquire("reorg_scan") for _ in range(5)))

        holders = [r for r in results if r.acquired]
        assert len(holders) == 1
        assert holders[0].queue_position == 0
        assert sorted(r.queue_position for r in results if not r.acquired) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrent_acquire_then_drain(self, coordinator):
        results = await asyncio.gather(*(coordinator.acquire("cursor:swap") for _ in range(3)))
        holder = next(r for r in results if r.acquired)
        waiters = sorted((r for r in results if not r.acquired), key=lambda r: r.queue_position)

        await coordinator.release(holder.request_id)

        assert (await coordinator.check_ready(waiters[0].request_id)).acquired
        assert not (await coordinator.check_ready(waiters[1].request_id)).acquired

    @pytest.mark.asyncio
    async def test_unknown_request(self, coordinator):
        with pytest.raises(UnknownLockRequestError):
            await coordinator.check_ready("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_release_needs_an_identifier(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.release()

    @pytest.mark.asyncio
    async def test_force_release_by_resource(self, coordinator, session_factory):
        a = await coordinator.acquire("backfill:swaps")

        assert await coordinator.release(resource_key="backfill:swaps")
        assert await _entry_status(session_factory, a.request_id) == QueueStatus.COMPLETED.value
        assert (await coordinator.acquire("backfill:swaps")).acquired


class TestExpiry:
    @pytest.mark.asyncio
    async def test_waiter_times_out(self, coordinator, session_factory):
        await coordinator.acquire("reorg_scan")
        b = await coordinator.acquire("reorg_scan", timeout=0.05)

        await asyncio.sleep(0.1)
        ready = await coordinator.check_ready(b.request_id)

        assert ready.timed_out
        assert not ready.acquired
        assert await _entry_status(session_factory, b.request_id) == QueueStatus.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_expired_lease_is_recovered(self, coordinator, session_factory):
        crashed = await coordinator.acquire("reorg_scan", timeout=0.05)
        await asyncio.sleep(0.1)

        successor = await coordinator.acquire("reorg_scan")

        assert successor.acquired
        assert await _entry_status(session_factory, crashed.request_id) == QueueStatus.TIMEOUT.value

    @pytest.mark.asyncio
    async def test_reap(self, coordinator):
        await coordinator.acquire("reorg_scan", timeout=0.05)
        waiter = await coordinator.acquire("reorg_scan", timeout=0.05)
        await asyncio.sleep(0.1)

        stats = await coordinator.reap()
        assert stats.timed_out == 2
        assert stats.expired_locks == 1

        later = await coordinator.reap(now=datetime.now(UTC) + timedelta(hours=1))
        assert later.evicted == 2
        with pytest.raises(UnknownLockRequestError):
            await coordinator.check_ready(waiter.request_id)

    @pytest.mark.asyncio
    async def test_renew_extends_holder_only(self, coordinator):
        holder = await coordinator.acquire("reorg_scan", timeout=0.05)
        waiter = await coordinator.acquire("reorg_scan")

        assert await coordinator.renew(holder.request_id, 60)
        assert not await coordinator.renew(waiter.request_id, 60)
        await coordinator.release(waiter.request_id)

        await asyncio.sleep(0.1)
        assert not (await coordinator.acquire("reorg_scan")).acquired


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, coordinator):
        with pytest.raises(RuntimeError):
            async with coordinator.hold("reorg_scan"):
                raise RuntimeError("boom")

        assert (await coordinator.acquire("reorg_scan")).acquired

    @pytest.mark.asyncio
    async def test_hold_raises_when_busy(self, coordinator, session_factory):
        await coordinator.acquire("reorg_scan")

        with pytest.raises(LockBusyError) as exc_info:
            async with coordinator.hold("reorg_scan", wait_seconds=0.05):
                pytest.fail("critical section must not run")

        assert exc_info.value.queue_position == 1
        # The withdrawn waiter no longer holds a queue slot.
        assert (await coordinator.acquire("reorg_scan")).queue_position == 1

    @pytest.mark.asyncio
    async def test_hold_waits_for_release(self, coordinator):
        a = await coordinator.acquire("reorg_scan")

        async def release_soon() -> None:
            await asyncio.sleep(0.05)
            await coordinator.release(a.request_id)

        releaser = asyncio.create_task(release_soon())
        async with coordinator.hold("reorg_scan", wait_seconds=2.0) as handle:
            assert handle.resource_key == "reorg_scan"
        await releaser

    @pytest.mark.asyncio
    async def test_auto_renew_keeps_lease(self, coordinator):
        async with coordinator.hold("backfill:swaps", timeout=0.2, auto_renew=True):
            await asyncio.sleep(0.4)
            assert not (await coordinator.acquire("backfill:swaps")).acquired

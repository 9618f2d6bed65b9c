"""Tests for the tier scheduler."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from launchpad_indexer.indexer.reorg import ReorgDepthExceededError
from launchpad_indexer.indexer.runner import RunResult
from launchpad_indexer.indexer.scheduler import PeriodicJob, TierScheduler, default_request
from launchpad_indexer.indexer.tiers import ActivityTier


@pytest.fixture
def runner() -> MagicMock:
    runner = MagicMock()
    runner.run_ingestion = AsyncMock(side_effect=lambda request: RunResult(run_id="r", tier=request.tier.value))
    return runner


@pytest.fixture
def coordinator() -> MagicMock:
    coordinator = MagicMock()
    coordinator.reap = AsyncMock()
    return coordinator


@pytest.fixture
def scheduler(runner, coordinator, session_factory) -> TierScheduler:
    return TierScheduler(
        runner,
        coordinator,
        session_factory,
        cadences={"hot": 0.01},
        maintenance_interval_seconds=0.01,
    )


class TestDefaultRequest:
    def test_hot_indexes_everything(self):
        request = default_request(ActivityTier.HOT)
        assert request.index_launches
        assert request.index_swaps
        assert request.index_locks
        assert request.index_burns
        assert request.snapshot_reserves

    @pytest.mark.parametrize("tier", [ActivityTier.WARM, ActivityTier.COLD, ActivityTier.DORMANT])
    def test_slower_tiers_only_poll_swaps(self, tier):
        request = default_request(tier)
        assert request.tier == tier
        assert request.index_swaps
        assert not (request.index_launches or request.index_locks or request.index_burns)
        assert request.snapshot_reserves


class TestTierScheduler:
    @pytest.mark.asyncio
    async def test_run_once(self, scheduler, runner):
        result = await scheduler.run_once(ActivityTier.WARM)

        assert result.tier == "warm"
        assert scheduler.stats.runs_started == 1
        assert scheduler.stats.last_run_at is not None
        runner.run_ingestion.assert_awaited_once_with(default_request(ActivityTier.WARM))

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, runner, coordinator):
        await scheduler.start()
        assert scheduler.is_running
        with pytest.raises(RuntimeError):
            await scheduler.start()

        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert not scheduler.is_running
        assert runner.run_ingestion.await_count >= 2
        coordinator.reap.assert_awaited()

    @pytest.mark.asyncio
    async def test_failed_run_keeps_loop_alive(self, scheduler, runner):
        runner.run_ingestion.side_effect = RuntimeError("database unavailable")

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.stats.runs_failed >= 2
        assert scheduler.stats.last_error == "database unavailable"

    @pytest.mark.asyncio
    async def test_deep_reorg_stops_scheduler(self, scheduler, runner):
        runner.run_ingestion.side_effect = ReorgDepthExceededError("no agreement point")

        await scheduler.start()
        with pytest.raises(ReorgDepthExceededError):
            await asyncio.wait_for(scheduler.wait(), timeout=1.0)
        await scheduler.stop()

        assert scheduler.stats.last_error == "no agreement point"

    @pytest.mark.asyncio
    async def test_wait_without_start_returns(self, scheduler):
        await scheduler.wait()

    @pytest.mark.asyncio
    async def test_loops_return_before_start(self, scheduler, runner, coordinator):
        await scheduler._run_tier_loop(ActivityTier.HOT, 0.01)
        await scheduler._run_maintenance_loop()

        runner.run_ingestion.assert_not_awaited()
        coordinator.reap.assert_not_awaited()


class TestPeriodicJobs:
    @pytest.mark.asyncio
    async def test_jobs_run_on_their_interval(self, runner, coordinator, session_factory):
        track = AsyncMock()
        interpolate = AsyncMock()
        scheduler = TierScheduler(
            runner,
            coordinator,
            session_factory,
            cadences={"hot": 60},
            maintenance_interval_seconds=60,
            jobs=[PeriodicJob("display-rate", 0.01, track), PeriodicJob("interpolation", 60, interpolate)],
        )

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert track.await_count >= 2
        interpolate.assert_awaited_once()
        assert scheduler.stats.job_runs["display-rate"] == track.await_count
        assert scheduler.stats.job_runs["interpolation"] == 1

    @pytest.mark.asyncio
    async def test_failing_job_keeps_looping(self, runner, coordinator, session_factory):
        track = AsyncMock(side_effect=RuntimeError("rate provider down"))
        scheduler = TierScheduler(
            runner,
            coordinator,
            session_factory,
            cadences={"hot": 60},
            jobs=[PeriodicJob("display-rate", 0.01, track)],
        )

        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert track.await_count >= 2
        assert scheduler.stats.last_error == "rate provider down"
        assert "display-rate" not in scheduler.stats.job_runs

"""Tier-driven polling loops.

Each activity tier gets its own loop, firing an ingestion run at the tier's
cadence. A maintenance loop reaps the coordination queue and recomputes
stale tiers. Periodic jobs (display-rate tracking, snapshot interpolation)
run in loops of their own. Overlapping runs are safe: the coordinator
serializes cursor work and every write is idempotent.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from launchpad_indexer.indexer.reorg import ReorgDepthExceededError
from launchpad_indexer.indexer.runner import IngestionRunner, RunRequest, RunResult
from launchpad_indexer.indexer.tiers import TIER_CADENCE_SECONDS, ActivityTier, TierClassifier
from launchpad_indexer.storage.database import session_scope

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from launchpad_indexer.coordinator import LockCoordinator

logger = logging.getLogger(__name__)


def default_request(tier: ActivityTier) -> RunRequest:
    """Hot runs also pick up launches, locks and burns; slower tiers only poll swaps.

    Every tier snapshots reserves for the tokens it polls, so chart density
    follows token activity.
    """
    if tier == ActivityTier.HOT:
        return RunRequest(
            tier=tier,
            index_launches=True,
            index_swaps=True,
            index_locks=True,
            index_burns=True,
            snapshot_reserves=True,
        )
    return RunRequest(tier=tier, index_launches=False, index_swaps=True, snapshot_reserves=True)


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval_seconds: float
    action: Callable[[], Awaitable[object]]


@dataclass
class SchedulerStats:
    runs_started: int = 0
    runs_failed: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    job_runs: dict[str, int] = field(default_factory=dict)


class TierScheduler:
    """Runs one polling loop per tier until stopped."""

    def __init__(
        self,
        runner: IngestionRunner,
        coordinator: LockCoordinator,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        classifier: TierClassifier | None = None,
        cadences: Mapping[str, int] | None = None,
        maintenance_interval_seconds: float = 60.0,
        request_factory: Callable[[ActivityTier], RunRequest] = default_request,
        jobs: Sequence[PeriodicJob] = (),
    ) -> None:
        self._runner = runner
        self._coordinator = coordinator
        self._session_factory = session_factory
        self._classifier = classifier or TierClassifier()
        self._cadences = {ActivityTier(k): float(v) for k, v in (cadences or TIER_CADENCE_SECONDS).items()}
        self._maintenance_interval = maintenance_interval_seconds
        self._request_factory = request_factory
        self._jobs = list(jobs)
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._fatal: BaseException | None = None
        self.stats = SchedulerStats()

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Scheduler already running")
        self._stop_event = asyncio.Event()
        self._fatal = None
        for tier, interval in self._cadences.items():
            self._tasks.append(asyncio.create_task(self._run_tier_loop(tier, interval), name=f"tier-{tier.value}"))
        self._tasks.append(asyncio.create_task(self._run_maintenance_loop(), name="maintenance"))
        for job in self._jobs:
            self._tasks.append(asyncio.create_task(self._run_job_loop(job), name=f"job-{job.name}"))
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{tier.value}={interval:g}s" for tier, interval in self._cadences.items()),
        )

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        tasks = [*self._tasks, *self._inflight]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self._inflight.clear()
        logger.info("Scheduler stopped")

    async def wait(self) -> None:
        """Block until stopped; re-raises a fatal run error."""
        if self._stop_event is None:
            return
        await self._stop_event.wait()
        if self._fatal is not None:
            raise self._fatal

    async def run_once(self, tier: ActivityTier) -> RunResult:
        self.stats.runs_started += 1
        self.stats.last_run_at = datetime.now(UTC)
        return await self._runner.run_ingestion(self._request_factory(tier))

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, interval: float) -> bool:
        """Wait for ``interval`` or until stopped; returns True when stopping."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            return True
        except TimeoutError:
            return False

    async def _run_tier_loop(self, tier: ActivityTier, interval: float) -> None:
        """Fire a run every ``interval`` seconds; a slow run does not delay the next tick."""
        stop_event = self._stop_event
        if not stop_event:
            return
        while not stop_event.is_set():
            task = asyncio.create_task(self._fire(tier, stop_event), name=f"run-{tier.value}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            if await self._sleep(stop_event, interval):
                break

    async def _fire(self, tier: ActivityTier, stop_event: asyncio.Event) -> None:
        try:
            await self.run_once(tier)
        except ReorgDepthExceededError as e:
            self._fatal = e
            self.stats.last_error = str(e)
            logger.critical("Stopping scheduler: %s", e)
            stop_event.set()
        except Exception as e:
            self.stats.runs_failed += 1
            self.stats.last_error = str(e)
            logger.exception("%s run failed", tier.value)

    async def _run_maintenance_loop(self) -> None:
        stop_event = self._stop_event
        if not stop_event:
            return
        while not stop_event.is_set():
            if await self._sleep(stop_event, self._maintenance_interval):
                break
            try:
                await self._coordinator.reap()
                async with session_scope(self._session_factory) as session:
                    await self._classifier.recompute_stale(session)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Maintenance loop error: %s", e)

    async def _run_job_loop(self, job: PeriodicJob) -> None:
        """Run ``job`` immediately, then every ``job.interval_seconds``."""
        stop_event = self._stop_event
        if not stop_event:
            return
        while not stop_event.is_set():
            try:
                await job.action()
                self.stats.job_runs[job.name] = self.stats.job_runs.get(job.name, 0) + 1
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.stats.last_error = str(e)
                logger.warning("%s job error: %s", job.name, e)
            if await self._sleep(stop_event, job.interval_seconds):
                break

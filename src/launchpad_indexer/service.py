"""Service wiring for the launchpad indexer.

This module provides the IndexerService class that builds every component
from Settings and owns their lifecycle: Redis cache, database, ledger client,
coordinator, reorg guard, ingestor, runner, scheduler, periodic jobs and chart
query.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import TypeVar

from redis.asyncio import Redis

from launchpad_indexer.chart import ChartQuery
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.coordinator import LockCoordinator
from launchpad_indexer.indexer.backfill import SwapBackfill
from launchpad_indexer.indexer.ingestor import EventIngestor
from launchpad_indexer.indexer.interpolation import SnapshotInterpolator
from launchpad_indexer.indexer.pricing import DisplayRateBook
from launchpad_indexer.indexer.rates import DisplayRateTracker
from launchpad_indexer.indexer.reorg import ReorgGuard
from launchpad_indexer.indexer.runner import IngestionRunner
from launchpad_indexer.indexer.scheduler import PeriodicJob, TierScheduler
from launchpad_indexer.indexer.tiers import TierClassifier
from launchpad_indexer.ledger import LedgerClient
from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

C = TypeVar("C")


class ServiceState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class IndexerService:
    """Builds the component graph and tears it down.

    Example:
        ```python
        service = IndexerService(get_settings())
        await service.start()
        result = await service.runner.run_ingestion(RunRequest(tier=ActivityTier.HOT))
        await service.stop()
        ```
    """

    def __init__(self, settings: Settings | None = None, *, with_scheduler: bool = False) -> None:
        self._settings = settings or get_settings()
        self._with_scheduler = with_scheduler
        self._state = ServiceState.STOPPED

        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._ledger: LedgerClient | None = None
        self._coordinator: LockCoordinator | None = None
        self._classifier: TierClassifier | None = None
        self._guard: ReorgGuard | None = None
        self._ingestor: EventIngestor | None = None
        self._runner: IngestionRunner | None = None
        self._scheduler: TierScheduler | None = None
        self._backfill: SwapBackfill | None = None
        self._interpolator: SnapshotInterpolator | None = None
        self._rate_tracker: DisplayRateTracker | None = None
        self._chart: ChartQuery | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def db(self) -> DatabaseManager:
        return self._require(self._db_manager, "database")

    @property
    def ledger(self) -> LedgerClient:
        return self._require(self._ledger, "ledger client")

    @property
    def coordinator(self) -> LockCoordinator:
        return self._require(self._coordinator, "coordinator")

    @property
    def classifier(self) -> TierClassifier:
        return self._require(self._classifier, "classifier")

    @property
    def runner(self) -> IngestionRunner:
        return self._require(self._runner, "runner")

    @property
    def scheduler(self) -> TierScheduler:
        return self._require(self._scheduler, "scheduler")

    @property
    def backfill(self) -> SwapBackfill:
        return self._require(self._backfill, "backfill")

    @property
    def interpolator(self) -> SnapshotInterpolator:
        return self._require(self._interpolator, "interpolator")

    @property
    def rate_tracker(self) -> DisplayRateTracker:
        return self._require(self._rate_tracker, "rate tracker")

    @property
    def chart(self) -> ChartQuery:
        return self._require(self._chart, "chart query")

    @staticmethod
    def _require(component: C | None, name: str) -> C:
        if component is None:
            raise RuntimeError(f"Service not started: {name} unavailable")
        return component

    async def start(self) -> None:
        """Initialize components (and the scheduler loops when requested).

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting indexer service...")
        try:
            self._initialize_components()
            if self._with_scheduler and self._scheduler:
                await self._scheduler.start()
            self._state = ServiceState.RUNNING
            logger.info("Indexer service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            logger.error("Failed to start indexer service: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        if self._state == ServiceState.STOPPED:
            return
        self._state = ServiceState.STOPPING
        logger.info("Stopping indexer service...")
        if self._scheduler and self._scheduler.is_running:
            await self._scheduler.stop()
        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Indexer service stopped")

    def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
        session_factory = self._db_manager.session_factory

        logger.debug("Initializing ledger client...")
        self._ledger = LedgerClient(
            settings.ledger.rpc_url,
            fallback_rpc_url=settings.ledger.fallback_rpc_url,
            redis=self._redis,
            max_requests_per_second=settings.ledger.max_requests_per_second,
            max_retries=settings.ledger.max_retries,
            retry_delay_seconds=settings.ledger.retry_delay_seconds,
            poa=settings.ledger.poa_middleware,
        )

        self._coordinator = LockCoordinator(
            session_factory,
            lease_seconds=settings.coordinator.lease_seconds,
            retention_seconds=settings.coordinator.retention_seconds,
            poll_interval_seconds=settings.coordinator.poll_interval_seconds,
            renew_interval_seconds=settings.coordinator.renew_interval_seconds,
        )
        self._classifier = TierClassifier(stale_after=timedelta(seconds=settings.indexer.stale_tier_seconds))
        self._guard = ReorgGuard(
            self._ledger,
            confirmation_depth=settings.indexer.confirmation_depth,
            max_rollback_blocks=settings.indexer.max_rollback_blocks,
            classifier=self._classifier,
        )
        rate_book = DisplayRateBook(default_rate=settings.chart.default_display_rate)
        self._ingestor = EventIngestor(
            self._ledger,
            factory_address=settings.ledger.factory_address,
            locker_address=settings.ledger.locker_address,
            rate_book=rate_book,
            classifier=self._classifier,
            auto_skip_malformed_blocks=settings.indexer.auto_skip_malformed_blocks,
        )
        self._runner = IngestionRunner(
            session_factory,
            self._ledger,
            self._coordinator,
            self._guard,
            self._ingestor,
            classifier=self._classifier,
            run_budget_seconds=settings.indexer.run_budget_seconds,
            lock_wait_seconds=settings.indexer.lock_wait_seconds,
            parallel_tokens=settings.indexer.parallel_tokens,
            tier_batch_size=settings.indexer.tier_batch_size,
            min_block_range=settings.indexer.min_block_range,
            max_block_range=settings.indexer.max_block_range,
            initial_lookback_blocks=settings.indexer.initial_lookback_blocks,
        )
        self._interpolator = SnapshotInterpolator(
            session_factory,
            rates=rate_book,
            gap_seconds=settings.chart.interpolation_gap_seconds,
            step_seconds=settings.chart.interpolation_step_seconds,
            lookback=timedelta(hours=settings.chart.interpolation_lookback_hours),
        )
        self._rate_tracker = DisplayRateTracker(
            session_factory,
            url=settings.display_rate.url,
            asset=settings.display_rate.asset,
            currency=settings.display_rate.currency,
            timeout_seconds=settings.display_rate.timeout_seconds,
        )
        self._scheduler = TierScheduler(
            self._runner,
            self._coordinator,
            session_factory,
            classifier=self._classifier,
            cadences=settings.tiers.cadence_table(),
            maintenance_interval_seconds=settings.tiers.maintenance_interval_seconds,
            jobs=self._periodic_jobs(),
        )
        self._backfill = SwapBackfill(
            session_factory,
            self._ledger,
            self._coordinator,
            self._guard,
            self._ingestor,
            chunk_blocks=settings.indexer.max_block_range,
        )
        self._chart = ChartQuery(
            max_points=settings.chart.max_points,
            noise_threshold=settings.chart.noise_threshold,
        )

    def _periodic_jobs(self) -> list[PeriodicJob]:
        settings = self._settings
        jobs: list[PeriodicJob] = []
        if settings.display_rate.enabled and self._rate_tracker:
            jobs.append(PeriodicJob("display-rate", settings.display_rate.interval_seconds, self._rate_tracker.track))
        if self._interpolator:
            jobs.append(
                PeriodicJob("interpolation", settings.chart.interpolation_interval_seconds, self._interpolator.run)
            )
        return jobs

    async def _cleanup(self) -> None:
        if self._ledger:
            await self._ledger.aclose()
            self._ledger = None
        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        logger.debug("Resources cleaned up")

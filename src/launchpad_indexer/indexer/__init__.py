"""Indexing core - tiers, reorg guard, ingestion, runs and scheduling."""

from launchpad_indexer.indexer.backfill import BackfillResult, SwapBackfill, TokenNotIndexedError
from launchpad_indexer.indexer.ingestor import EventIngestor, StreamResult
from launchpad_indexer.indexer.interpolation import InterpolationResult, SnapshotInterpolator
from launchpad_indexer.indexer.pricing import DisplayRateBook, PricingError, build_token_from_launch
from launchpad_indexer.indexer.rates import DisplayRateTracker, RateFetchError
from launchpad_indexer.indexer.reorg import (
    CursorMovedError,
    NonCanonicalBlockError,
    ReorgDepthExceededError,
    ReorgGuard,
    ReorgState,
    ReorgStatus,
    RollbackStats,
)
from launchpad_indexer.indexer.runner import IngestionRunner, RunRequest, RunResult, RunStatus
from launchpad_indexer.indexer.scheduler import PeriodicJob, TierScheduler, default_request
from launchpad_indexer.indexer.tiers import ActivityTier, TierClassifier, classify_tier

__all__ = [
    "ActivityTier",
    "BackfillResult",
    "CursorMovedError",
    "DisplayRateBook",
    "DisplayRateTracker",
    "EventIngestor",
    "IngestionRunner",
    "InterpolationResult",
    "NonCanonicalBlockError",
    "PeriodicJob",
    "PricingError",
    "RateFetchError",
    "ReorgDepthExceededError",
    "ReorgGuard",
    "ReorgState",
    "ReorgStatus",
    "RollbackStats",
    "RunRequest",
    "RunResult",
    "RunStatus",
    "SnapshotInterpolator",
    "StreamResult",
    "SwapBackfill",
    "TierClassifier",
    "TierScheduler",
    "TokenNotIndexedError",
    "build_token_from_launch",
    "classify_tier",
    "default_request",
]

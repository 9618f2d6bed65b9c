"""Lock & queue coordinator - leases that serialize conflicting runs."""

from launchpad_indexer.coordinator.locks import (
    AcquireResult,
    CoordinatorError,
    LockBusyError,
    LockCoordinator,
    LockHandle,
    QueueStatus,
    ReadyResult,
    ReapStats,
    UnknownLockRequestError,
)

__all__ = [
    "AcquireResult",
    "CoordinatorError",
    "LockBusyError",
    "LockCoordinator",
    "LockHandle",
    "QueueStatus",
    "ReadyResult",
    "ReapStats",
    "UnknownLockRequestError",
]

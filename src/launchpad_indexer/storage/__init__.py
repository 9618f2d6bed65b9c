"""Storage layer - Database schemas and repositories."""

from launchpad_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    session_scope,
)
from launchpad_indexer.storage.models import (
    Base,
    PriceSnapshotModel,
    SwapModel,
    TokenModel,
)
from launchpad_indexer.storage.repos import (
    PriceSnapshotDTO,
    PriceSnapshotRepository,
    SwapDTO,
    SwapRepository,
    TokenDTO,
    TokenRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "PriceSnapshotDTO",
    "PriceSnapshotModel",
    "PriceSnapshotRepository",
    "SwapDTO",
    "SwapModel",
    "SwapRepository",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "session_scope",
]

"""Ledger RPC boundary and launchpad event decoding."""

from launchpad_indexer.ledger.client import (
    BlockRef,
    LedgerClient,
    LedgerClientError,
    RateLimitError,
    RPCError,
)
from launchpad_indexer.ledger.events import EventDecodeError

__all__ = [
    "BlockRef",
    "EventDecodeError",
    "LedgerClient",
    "LedgerClientError",
    "RPCError",
    "RateLimitError",
]

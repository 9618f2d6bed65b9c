"""EVM ledger client with retry, failover and finality-aware caching.

This module provides the RPC boundary used by the indexer with:
- Retry logic with exponential backoff (longer waits when rate limited)
- Rate limiting to respect provider limits
- Failover to a secondary RPC URL with periodic primary recovery
- Redis and in-process caching of blocks, restricted to blocks deep enough
  that a reorg cannot replace them
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, cast

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_FINALITY_BLOCKS = 64
DEFAULT_LOCAL_CACHE_SIZE = 4096

# Cache TTL for the chain head (fast-changing)
HEAD_CACHE_TTL_SECONDS = 2

RATE_LIMIT_BACKOFF_MULTIPLIER = 3

AMM_RESERVES_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "reserveETH",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "reserveToken",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    OSError,
    TimeoutError,
)


def to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str values to a lowercase 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _json_default(value: object) -> object:
    """Serialize Web3 RPC objects that stdlib json can't encode."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return to_hex(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _is_rate_limited(error: BaseException) -> bool:
    if isinstance(error, aiohttp.ClientResponseError) and error.status == 429:
        return True
    message = str(error).lower()
    return "429" in message or "-32005" in message or "rate limit" in message or "too many requests" in message


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""


class RPCError(LedgerClientError):
    """Raised when an RPC call fails after all retries."""


class RateLimitError(RPCError):
    """Raised when the provider kept rate limiting until retries ran out."""


@dataclass(frozen=True)
class BlockRef:
    """Height, hash and timestamp of a block."""

    number: int
    hash: str
    timestamp: datetime


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class LedgerClient:
    """Ledger RPC boundary: chain head, hash lookups, logs and pool reserves.

    Example:
        ```python
        client = LedgerClient(
            "https://ethereum-sepolia-rpc.publicnode.com",
            fallback_rpc_url="https://rpc.sepolia.org",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        head = await client.get_head()
        logs = await client.get_logs({"fromBlock": head.number - 100, "toBlock": head.number})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        finality_blocks: int = DEFAULT_FINALITY_BLOCKS,
        poa: bool = False,
    ) -> None:
        """Initialize the ledger client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching.
            cache_ttl_seconds: Cache TTL for finalized blocks.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            finality_blocks: Blocks behind the head after which block data is cached.
            poa: Inject the extra-data middleware for proof-of-authority chains.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._finality_blocks = finality_blocks
        self._poa = poa

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._cache_prefix = "ledger:"
        self._last_head_number: int | None = None
        self._local_blocks: OrderedDict[int, dict[str, Any]] = OrderedDict()
        self._local_cache_size = DEFAULT_LOCAL_CACHE_SIZE
        self.rpc_calls = 0

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        if self._poa:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    def _is_final(self, block_number: int) -> bool:
        if self._last_head_number is None:
            return False
        return block_number <= self._last_head_number - self._finality_blocks

    async def _attempt(
        self,
        label: str,
        endpoint: str,
        w3: AsyncWeb3[AsyncHTTPProvider],
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]],
    ) -> tuple[bool, Any, BaseException | None]:
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_retries):
            await self._rate_limiter.acquire()
            self.rpc_calls += 1
            try:
                return True, await call(w3), None
            except BlockNotFound:
                raise
            except _RETRYABLE_ERRORS as e:
                last_error = e
                rate_limited = _is_rate_limited(e)
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d%s): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    ", rate limited" if rate_limited else "",
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay * (RATE_LIMIT_BACKOFF_MULTIPLIER if rate_limited else 1))
                    delay *= 2
        return False, None, last_error

    async def _with_failover(
        self,
        label: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[Any]],
    ) -> Any:
        """Run ``call`` against the primary, then the fallback endpoint.

        Raises:
            BlockNotFound: Passed through untouched (not a transport failure).
            RateLimitError: If the last failure was a rate limit.
            RPCError: If all retries and failover fail.
        """
        last_error: BaseException | None = None

        if self._should_try_primary():
            ok, result, last_error = await self._attempt(label, "Primary", self._w3, call)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback is not None:
            ok, result, fallback_error = await self._attempt(label, "Fallback", self._w3_fallback, call)
            if ok:
                logger.info("Fallback RPC succeeded for %s", label)
                return result
            last_error = fallback_error

        if last_error is not None and _is_rate_limited(last_error):
            raise RateLimitError(f"RPC call {label} rate limited after all retries: {last_error}")
        raise RPCError(f"RPC call {label} failed after all retries: {last_error}")

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Call ``web3.eth.<func_name>`` with retry and failover."""

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            return await getattr(w3.eth, func_name)(*args, **kwargs)

        return await self._with_failover(func_name, call)

    @staticmethod
    def _block_dict(block: Any) -> dict[str, Any]:
        block_dict = dict(block)
        return {
            "number": int(block_dict["number"]),
            "hash": to_hex(block_dict["hash"]),
            "parentHash": to_hex(block_dict["parentHash"]),
            "timestamp": int(block_dict["timestamp"]),
        }

    async def get_head(self) -> BlockRef:
        """Latest block, cached very briefly."""
        cache_key = f"{self._cache_prefix}block:latest"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            block_dict = cast(dict[str, Any], json.loads(cached))
        else:
            block_dict = self._block_dict(await self._execute_with_retry("get_block", "latest"))
            await self._set_cached(
                cache_key,
                json.dumps(block_dict, default=_json_default),
                ttl=HEAD_CACHE_TTL_SECONDS,
            )
        self._last_head_number = max(self._last_head_number or 0, int(block_dict["number"]))
        return BlockRef(
            number=int(block_dict["number"]),
            hash=str(block_dict["hash"]),
            timestamp=datetime.fromtimestamp(int(block_dict["timestamp"]), tz=UTC),
        )

    async def get_block(self, block_number: int) -> dict[str, Any] | None:
        """Block header fields by number, or None if the ledger has no such block.

        Only blocks deeper than the finality margin are cached; hashes near
        the head must always be read fresh so reorgs are visible.
        """
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        if block_number in self._local_blocks:
            self._local_blocks.move_to_end(block_number)
            return self._local_blocks[block_number]

        final = self._is_final(block_number)
        cache_key = f"{self._cache_prefix}block:{block_number}"
        if final:
            cached = await self._get_cached(cache_key)
            if cached is not None:
                block_dict = cast(dict[str, Any], json.loads(cached))
                self._remember(block_number, block_dict)
                return block_dict

        try:
            block = await self._execute_with_retry("get_block", block_number)
        except BlockNotFound:
            return None
        if block is None:
            return None

        block_dict = self._block_dict(block)
        if final:
            self._remember(block_number, block_dict)
            await self._set_cached(cache_key, json.dumps(block_dict, default=_json_default))
        return block_dict

    def _remember(self, block_number: int, block_dict: dict[str, Any]) -> None:
        self._local_blocks[block_number] = block_dict
        while len(self._local_blocks) > self._local_cache_size:
            self._local_blocks.popitem(last=False)

    async def get_block_hash(self, block_number: int) -> str | None:
        block = await self.get_block(block_number)
        return str(block["hash"]) if block else None

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self.get_block(block_number)
        if block is None:
            raise RPCError(f"Block {block_number} not found")
        return datetime.fromtimestamp(int(block["timestamp"]), tz=UTC)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_reserves(self, amm_address: str, *, block_number: int) -> tuple[int, int]:
        """Pool reserves ``(reserveETH, reserveToken)`` as of a block."""
        address = AsyncWeb3.to_checksum_address(amm_address)

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> tuple[int, int]:
            contract = w3.eth.contract(address=address, abi=AMM_RESERVES_ABI)
            reserve_eth = await contract.functions.reserveETH().call(block_identifier=block_number)
            reserve_token = await contract.functions.reserveToken().call(block_identifier=block_number)
            return int(reserve_eth), int(reserve_token)

        return cast(tuple[int, int], await self._with_failover("reserves", call))

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC."""
        try:
            await self._execute_with_retry("block_number")
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)

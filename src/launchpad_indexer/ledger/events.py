"""Launchpad event signatures and raw log decoding.

Raw ``eth_getLogs`` entries are decoded into frozen dataclasses. Anything
that does not match the expected layout raises ``EventDecodeError`` so the
ingestor can skip and record that single log.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from launchpad_indexer.ledger.client import to_hex

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _topic(signature: str) -> str:
    return to_hex(AsyncWeb3.keccak(text=signature))


TOKEN_LAUNCHED_TOPIC = _topic("TokenLaunched(address,address,string,string,address,uint256,uint256)")
SWAP_TOPIC = _topic("Swap(address,uint256,uint256,uint256,uint256)")
TOKENS_LOCKED_TOPIC = _topic("TokensLocked(uint256,address,address,uint256,uint256)")
TOKENS_UNLOCKED_TOPIC = _topic("TokensUnlocked(uint256,address,address,uint256)")
TRANSFER_TOPIC = _topic("Transfer(address,address,uint256)")


class EventDecodeError(Exception):
    """Raised when a log does not match the layout of its event."""


def pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def topic_to_address(topic: Any) -> str:
    hexed = to_hex(topic)[2:]
    if len(hexed) != 64:
        raise EventDecodeError(f"address topic has {len(hexed)} hex chars, expected 64")
    return ("0x" + hexed[-40:]).lower()


def topic_to_int(topic: Any) -> int:
    return int(to_hex(topic), 16)


def _data_bytes(log: dict[str, Any]) -> bytes:
    data = log.get("data", b"")
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    text = str(data)
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


@dataclass(frozen=True)
class LogPosition:
    """Where a log sits on the chain; orders events causally."""

    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int
    address: str

    @classmethod
    def from_log(cls, log: dict[str, Any]) -> LogPosition:
        try:
            return cls(
                block_number=int(log["blockNumber"]),
                block_hash=to_hex(log["blockHash"]),
                tx_hash=to_hex(log["transactionHash"]),
                log_index=int(log["logIndex"]),
                address=str(log.get("address", "")).lower(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EventDecodeError(f"log is missing position fields: {e}") from e

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class TokenLaunchedEvent:
    position: LogPosition
    token_address: str
    amm_address: str
    creator_address: str
    name: str
    symbol: str
    liquidity_percent: int
    initial_liquidity_wei: int


@dataclass(frozen=True)
class SwapLogEvent:
    position: LogPosition
    trader_address: str
    eth_in: int
    token_in: int
    eth_out: int
    token_out: int


@dataclass(frozen=True)
class TokensLockedEvent:
    position: LogPosition
    lock_id: int
    owner_address: str
    token_address: str
    amount: int
    unlock_time: int


@dataclass(frozen=True)
class TokensUnlockedEvent:
    position: LogPosition
    lock_id: int
    owner_address: str
    token_address: str
    amount: int


@dataclass(frozen=True)
class BurnLogEvent:
    position: LogPosition
    token_address: str
    from_address: str
    amount: int


def _check_topics(log: dict[str, Any], expected_topic: str, count: int) -> list[Any]:
    topics = list(log.get("topics") or [])
    if len(topics) != count:
        raise EventDecodeError(f"expected {count} topics, got {len(topics)}")
    if to_hex(topics[0]) != expected_topic:
        raise EventDecodeError(f"unexpected event topic {to_hex(topics[0])}")
    return topics


def _decode_data(types: list[str], log: dict[str, Any]) -> tuple[Any, ...]:
    try:
        return tuple(abi_decode(types, _data_bytes(log)))
    except (DecodingError, ValueError, TypeError) as e:
        raise EventDecodeError(f"cannot decode data as {types}: {e}") from e


def decode_token_launched(log: dict[str, Any]) -> TokenLaunchedEvent:
    topics = _check_topics(log, TOKEN_LAUNCHED_TOPIC, 4)
    name, symbol, liquidity_percent, initial_liquidity = _decode_data(
        ["string", "string", "uint256", "uint256"], log
    )
    if not 0 < liquidity_percent <= 100:
        raise EventDecodeError(f"liquidity percent {liquidity_percent} out of range")
    return TokenLaunchedEvent(
        position=LogPosition.from_log(log),
        token_address=topic_to_address(topics[1]),
        amm_address=topic_to_address(topics[2]),
        creator_address=topic_to_address(topics[3]),
        name=name,
        symbol=symbol,
        liquidity_percent=int(liquidity_percent),
        initial_liquidity_wei=int(initial_liquidity),
    )


def decode_swap(log: dict[str, Any]) -> SwapLogEvent:
    topics = _check_topics(log, SWAP_TOPIC, 2)
    eth_in, token_in, eth_out, token_out = _decode_data(["uint256"] * 4, log)
    return SwapLogEvent(
        position=LogPosition.from_log(log),
        trader_address=topic_to_address(topics[1]),
        eth_in=int(eth_in),
        token_in=int(token_in),
        eth_out=int(eth_out),
        token_out=int(token_out),
    )


def decode_tokens_locked(log: dict[str, Any]) -> TokensLockedEvent:
    topics = _check_topics(log, TOKENS_LOCKED_TOPIC, 4)
    amount, unlock_time = _decode_data(["uint256", "uint256"], log)
    return TokensLockedEvent(
        position=LogPosition.from_log(log),
        lock_id=topic_to_int(topics[1]),
        owner_address=topic_to_address(topics[2]),
        token_address=topic_to_address(topics[3]),
        amount=int(amount),
        unlock_time=int(unlock_time),
    )


def decode_tokens_unlocked(log: dict[str, Any]) -> TokensUnlockedEvent:
    topics = _check_topics(log, TOKENS_UNLOCKED_TOPIC, 4)
    (amount,) = _decode_data(["uint256"], log)
    return TokensUnlockedEvent(
        position=LogPosition.from_log(log),
        lock_id=topic_to_int(topics[1]),
        owner_address=topic_to_address(topics[2]),
        token_address=topic_to_address(topics[3]),
        amount=int(amount),
    )


def decode_burn(log: dict[str, Any]) -> BurnLogEvent:
    topics = _check_topics(log, TRANSFER_TOPIC, 3)
    to_address = topic_to_address(topics[2])
    if to_address != ZERO_ADDRESS:
        raise EventDecodeError(f"transfer to {to_address} is not a burn")
    (amount,) = _decode_data(["uint256"], log)
    position = LogPosition.from_log(log)
    return BurnLogEvent(
        position=position,
        token_address=position.address,
        from_address=topic_to_address(topics[1]),
        amount=int(amount),
    )

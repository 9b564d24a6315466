from __future__ import annotations

from typing import Any, Mapping

from eth_abi.abi import default_codec
from eth_abi.exceptions import DecodingError
from loguru import logger
from web3._utils.events import get_event_data
from web3.exceptions import LogTopicError, MismatchedABI

from app.domain import ChainEvent, EventName, MalformedEventError

from .abi import EVENT_ABIS, TOPIC_TO_EVENT


def _hex(value: Any) -> str:
    if isinstance(value, str):
        lowered = value.lower()
        return lowered if lowered.startswith("0x") else "0x" + lowered
    return "0x" + bytes(value).hex()


def _normalize_value(value: Any) -> Any:
    """Lower-case addresses and hex-encode raw bytes so args compare stably."""

    if isinstance(value, str):
        if len(value) == 42 and value.startswith("0x"):
            return value.lower()
        return value
    if isinstance(value, (bytes, bytearray)):
        return _hex(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_value(item) for item in value]
    return value


def build_event(
    name: EventName,
    *,
    contract_address: str,
    block_number: int,
    tx_hash: Any,
    log_index: int,
    args: Mapping[str, Any],
) -> ChainEvent:
    return ChainEvent(
        name=name,
        contract_address=contract_address.lower(),
        block_number=int(block_number),
        tx_hash=_hex(tx_hash),
        log_index=int(log_index),
        args={key: _normalize_value(value) for key, value in args.items()},
    )


def decode_log(log: Mapping[str, Any], codec=None) -> ChainEvent | None:
    """Decode a raw ``eth_getLogs`` entry; return None for topics we do not index."""

    topics = log.get("topics") or []
    if not topics:
        return None
    name = TOPIC_TO_EVENT.get(_hex(topics[0]))
    if name is None:
        logger.debug("Ignoring log with unknown topic {}", _hex(topics[0]))
        return None

    if log.get("removed"):
        logger.warning(
            "Node reported removed log {}:{}; reorgs are not unwound",
            _hex(log.get("transactionHash", b"")),
            log.get("logIndex"),
        )

    try:
        data = get_event_data(codec or default_codec, EVENT_ABIS[name], log)
    except (DecodingError, LogTopicError, MismatchedABI, ValueError, TypeError) as exc:
        raise MalformedEventError(
            f"Could not decode {name.value} log {_hex(log.get('transactionHash', b''))}:"
            f"{log.get('logIndex')}: {exc}"
        ) from exc

    return build_event(
        name,
        contract_address=str(data["address"]),
        block_number=data["blockNumber"],
        tx_hash=data["transactionHash"],
        log_index=data["logIndex"],
        args=dict(data["args"]),
    )


__all__ = ["build_event", "decode_log"]

"""Event ABIs of the market factory and market contracts."""

from __future__ import annotations

from typing import Any

from eth_utils import event_abi_to_log_topic

from app.domain import EventName


def _event(name: EventName, *inputs: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name.value,
        "anonymous": False,
        "inputs": [
            {"name": arg_name, "type": arg_type, "indexed": indexed}
            for arg_name, arg_type, indexed in inputs
        ],
    }


MARKET_FACTORY_ABI: list[dict[str, Any]] = [
    _event(
        EventName.MARKET_CREATED,
        ("marketAddress", "address", True),
        ("creator", "address", True),
        ("question", "string", False),
        ("outcomes", "string[]", False),
        ("endTime", "uint256", False),
    ),
]

MARKET_ABI: list[dict[str, Any]] = [
    _event(
        EventName.TOKENS_PURCHASED,
        ("user", "address", True),
        ("outcome", "uint256", True),
        ("collateralAmount", "uint256", False),
        ("tokensReceived", "uint256", False),
        ("fee", "uint256", False),
    ),
    _event(
        EventName.TOKENS_SOLD,
        ("user", "address", True),
        ("outcome", "uint256", True),
        ("tokensAmount", "uint256", False),
        ("collateralReceived", "uint256", False),
        ("fee", "uint256", False),
    ),
    _event(
        EventName.LIQUIDITY_ADDED,
        ("provider", "address", True),
        ("collateralAmount", "uint256", False),
        ("lpTokens", "uint256", False),
    ),
    _event(
        EventName.LIQUIDITY_REMOVED,
        ("provider", "address", True),
        ("lpTokens", "uint256", False),
        ("collateralAmount", "uint256", False),
    ),
    _event(
        EventName.WINNINGS_CLAIMED,
        ("user", "address", True),
        ("amount", "uint256", False),
        ("totalClaimed", "uint256", False),
    ),
    _event(
        EventName.MARKET_RESOLVED,
        ("winningOutcome", "uint256", True),
        ("resolver", "address", True),
    ),
    _event(EventName.MARKET_CANCELED, ("reason", "string", False)),
    _event(EventName.MARKET_FINALIZED, ("unclaimedReservesDistributed", "uint256", False)),
]

EVENT_ABIS: dict[EventName, dict[str, Any]] = {
    EventName(item["name"]): item for item in MARKET_FACTORY_ABI + MARKET_ABI
}

EVENT_TOPICS: dict[EventName, str] = {
    name: "0x" + event_abi_to_log_topic(abi).hex() for name, abi in EVENT_ABIS.items()
}

TOPIC_TO_EVENT: dict[str, EventName] = {topic: name for name, topic in EVENT_TOPICS.items()}


__all__ = [
    "EVENT_ABIS",
    "EVENT_TOPICS",
    "MARKET_ABI",
    "MARKET_FACTORY_ABI",
    "TOPIC_TO_EVENT",
]

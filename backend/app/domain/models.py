"""Typed domain representations shared by ingestion, projection, and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventName(str, Enum):
    MARKET_CREATED = "MarketCreated"
    TOKENS_PURCHASED = "TokensPurchased"
    TOKENS_SOLD = "TokensSold"
    LIQUIDITY_ADDED = "LiquidityAdded"
    LIQUIDITY_REMOVED = "LiquidityRemoved"
    WINNINGS_CLAIMED = "WinningsClaimed"
    MARKET_RESOLVED = "MarketResolved"
    MARKET_CANCELED = "MarketCanceled"
    MARKET_FINALIZED = "MarketFinalized"


FACTORY_EVENTS: tuple[EventName, ...] = (EventName.MARKET_CREATED,)

# Order doubles as the within-block application precedence for market events.
# Settlement precedes claims and finalization precedes LP exits.
MARKET_EVENTS: tuple[EventName, ...] = (
    EventName.TOKENS_PURCHASED,
    EventName.TOKENS_SOLD,
    EventName.LIQUIDITY_ADDED,
    EventName.MARKET_RESOLVED,
    EventName.MARKET_CANCELED,
    EventName.WINNINGS_CLAIMED,
    EventName.MARKET_FINALIZED,
    EventName.LIQUIDITY_REMOVED,
)

EVENT_PRECEDENCE: dict[EventName, int] = {
    name: index for index, name in enumerate(FACTORY_EVENTS + MARKET_EVENTS)
}


class ApplyResult(str, Enum):
    """Outcome of feeding one chain event through the processor."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    UNKNOWN_MARKET = "unknown_market"


@dataclass(slots=True)
class ChainEvent:
    """A decoded contract log, keyed by ``(tx_hash, log_index)``."""

    name: EventName
    contract_address: str
    block_number: int
    tx_hash: str
    log_index: int
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def market_address(self) -> str:
        if self.name is EventName.MARKET_CREATED:
            return str(self.args.get("marketAddress", "")).lower()
        return self.contract_address

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.block_number, EVENT_PRECEDENCE[self.name], self.log_index)


@dataclass(slots=True)
class LogWindow:
    """Events observed for an inclusive block range by the live subscription."""

    from_block: int
    to_block: int
    head: int
    events: list[ChainEvent] = field(default_factory=list)


@dataclass(slots=True)
class WindowResult:
    """Counters for one committed block window."""

    from_block: int
    to_block: int
    applied: int = 0
    duplicates: int = 0
    unknown_market: int = 0

    def record(self, result: ApplyResult) -> None:
        if result is ApplyResult.APPLIED:
            self.applied += 1
        elif result is ApplyResult.ALREADY_APPLIED:
            self.duplicates += 1
        else:
            self.unknown_market += 1

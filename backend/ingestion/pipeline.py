"""Shared order and apply stages used by both the historical and live paths."""

from __future__ import annotations

from typing import Iterable

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.db import session_scope
from app.domain import ChainEvent, EventName, WindowResult
from app.repositories import SyncStateRepository
from app.services.event_processor import EventProcessor

from .registry import MarketRegistry


def order_events(events: Iterable[ChainEvent], registry: MarketRegistry) -> list[ChainEvent]:
    """Return ``events`` in deterministic application order.

    Factory creations come first, then each market's events in discovery
    order. Within a group events sort by ``(block, type precedence,
    log_index)``. Repeated deliveries of the same log are collapsed.
    """

    unique: dict[tuple[str, int], ChainEvent] = {}
    for event in events:
        unique.setdefault(event.key, event)

    creations: list[ChainEvent] = []
    by_market: dict[str, list[ChainEvent]] = {}
    for event in unique.values():
        if event.name is EventName.MARKET_CREATED:
            creations.append(event)
        else:
            by_market.setdefault(event.market_address, []).append(event)

    ordered = sorted(creations, key=lambda event: event.sort_key)
    for address in registry.market_addresses():
        ordered.extend(sorted(by_market.pop(address, []), key=lambda event: event.sort_key))
    # Unregistered contracts still reach the processor, which drops them.
    for address in sorted(by_market):
        ordered.extend(sorted(by_market[address], key=lambda event: event.sort_key))
    return ordered


def commit_window(
    session_factory: sessionmaker[Session],
    processor: EventProcessor,
    *,
    contract_name: str,
    events: Iterable[ChainEvent],
    from_block: int,
    to_block: int,
    head: int,
) -> WindowResult:
    """Apply ``events`` and advance the checkpoint to ``to_block`` in one transaction."""

    result = WindowResult(from_block=from_block, to_block=to_block)
    with session_scope(session_factory) as session:
        for event in events:
            result.record(processor.apply(session, event))
        SyncStateRepository(session).set(contract_name, to_block, head=head)

    logger.info(
        "Committed blocks {}-{}: {} applied, {} duplicates, {} unknown market",
        from_block,
        to_block,
        result.applied,
        result.duplicates,
        result.unknown_market,
    )
    return result


__all__ = ["commit_window", "order_events"]

"""Steady-state follower of the factory and every registered market."""

from __future__ import annotations

import asyncio
from typing import Sequence

from loguru import logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import backoff_delay
from app.domain import (
    BatchProcessingError,
    ChainClientError,
    EventName,
    EventProcessingError,
    LogWindow,
    WindowResult,
)
from app.services.event_processor import EventProcessor

from .client import ChainClient
from .pipeline import commit_window, order_events
from .registry import MarketRegistry


class LiveListener:
    """Apply subscription windows through the same stages as the backfill.

    A market created inside a window was not yet part of that window's
    subscription filter, so its own events for the window are fetched
    explicitly before the window is committed. Transient RPC or database
    failures retry the window; markets discovered by a window that does not
    commit are dropped from the registry again.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: MarketRegistry,
        processor: EventProcessor,
        *,
        session_factory: sessionmaker[Session],
        contract_name: str,
        retry_attempts: int = 3,
        backoff: Sequence[float] = (1.0,),
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.processor = processor
        self.session_factory = session_factory
        self.contract_name = contract_name
        self.retry_attempts = retry_attempts
        self.backoff = tuple(backoff)
        self.stop_event = stop_event or asyncio.Event()
        self.windows_committed = 0

    async def run(self, from_block: int) -> int:
        logger.info(
            "Live listener following {} contracts from block {}",
            len(self.registry.watched_addresses()),
            from_block,
        )
        async for window in self.client.subscribe(
            self.registry.watched_addresses,
            from_block=from_block,
            stop_event=self.stop_event,
        ):
            await self.handle_window(window)
            if self.stop_event.is_set():
                break
        logger.info("Live listener stopped after {} windows", self.windows_committed)
        return self.windows_committed

    async def handle_window(self, window: LogWindow) -> WindowResult:
        for attempt in range(1, self.retry_attempts + 1):
            known = self.registry.snapshot()
            try:
                result = await self._commit(window)
            except EventProcessingError as exc:
                self.registry.restore(known)
                logger.error("Live window {}-{} failed to apply: {}", window.from_block, window.to_block, exc)
                raise BatchProcessingError(window.from_block, window.to_block, str(exc)) from exc
            except (ChainClientError, OperationalError) as exc:
                self.registry.restore(known)
                if attempt >= self.retry_attempts:
                    logger.error(
                        "Live window {}-{} failed after {} attempts: {}",
                        window.from_block,
                        window.to_block,
                        attempt,
                        exc,
                    )
                    raise BatchProcessingError(window.from_block, window.to_block, str(exc)) from exc
                delay = backoff_delay(self.backoff, attempt)
                logger.warning(
                    "Live window {}-{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
                    window.from_block,
                    window.to_block,
                    attempt,
                    self.retry_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            self.windows_committed += 1
            return result
        raise BatchProcessingError(window.from_block, window.to_block, "window was never attempted")

    async def _commit(self, window: LogWindow) -> WindowResult:
        events = list(window.events)
        creations = sorted(
            (event for event in events if event.name is EventName.MARKET_CREATED),
            key=lambda event: event.sort_key,
        )
        discovered = [event.market_address for event in creations if self.registry.register_created(event)]

        if discovered:
            backfilled = await asyncio.gather(
                *(
                    self.client.fetch_market_events(address, window.from_block, window.to_block)
                    for address in discovered
                )
            )
            for batch in backfilled:
                events.extend(batch)

        return commit_window(
            self.session_factory,
            self.processor,
            contract_name=self.contract_name,
            events=order_events(events, self.registry),
            from_block=window.from_block,
            to_block=window.to_block,
            head=window.head,
        )


__all__ = ["LiveListener"]

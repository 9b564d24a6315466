"""Historical backfill from the last checkpoint to the confirmed chain head."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence

from loguru import logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import backoff_delay
from app.db import session_scope
from app.domain import (
    BatchProcessingError,
    ChainClientError,
    ChainEvent,
    CheckpointError,
    EventName,
    EventProcessingError,
    WindowResult,
)
from app.repositories import SyncStateRepository
from app.services.event_processor import EventProcessor

from .client import ChainClient
from .pipeline import commit_window, order_events
from .registry import MarketRegistry


@dataclass(slots=True)
class SyncReport:
    from_block: int
    to_block: int
    batches: int = 0
    applied: int = 0
    duplicates: int = 0
    unknown_market: int = 0
    stopped: bool = False

    def absorb(self, result: WindowResult) -> None:
        self.batches += 1
        self.applied += result.applied
        self.duplicates += result.duplicates
        self.unknown_market += result.unknown_market


class HistoricalSyncer:
    """Walk ``[start, head]`` in fixed block batches, committing each atomically.

    A batch is fetched, ordered, applied and checkpointed as a unit. Transient
    RPC or database failures retry the whole batch; a processing failure stops
    the sync with the checkpoint left at the previous batch.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: MarketRegistry,
        processor: EventProcessor,
        *,
        session_factory: sessionmaker[Session],
        contract_name: str,
        start_block: int,
        batch_size: int,
        retry_attempts: int,
        backoff: Sequence[float],
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.processor = processor
        self.session_factory = session_factory
        self.contract_name = contract_name
        self.start_block = start_block
        self.batch_size = batch_size
        self.retry_attempts = retry_attempts
        self.backoff = tuple(backoff)
        self.stop_event = stop_event or asyncio.Event()

    def _checkpoint(self) -> int | None:
        with session_scope(self.session_factory) as session:
            return SyncStateRepository(session).get(self.contract_name)

    def _resume_block(self) -> int:
        checkpoint = self._checkpoint()
        if checkpoint is None:
            return self.start_block
        return checkpoint + 1

    async def sync(self, *, from_block: int | None = None, to_block: int | None = None) -> SyncReport:
        head = await self.client.get_confirmed_head()
        target = head if to_block is None else min(to_block, head)
        resume = self._resume_block()
        if from_block is not None and from_block > resume:
            raise CheckpointError(
                f"Cannot start {self.contract_name} at block {from_block}: "
                f"blocks {resume}-{from_block - 1} have not been processed"
            )
        start = resume if from_block is None else from_block
        report = SyncReport(from_block=start, to_block=target)

        if start > target:
            logger.info("Historical sync up to date (next block {}, head {})", start, target)
            return report

        logger.info(
            "Historical sync of blocks {}-{} in batches of {} ({} known markets)",
            start,
            target,
            self.batch_size,
            len(self.registry),
        )
        batch_start = start
        while batch_start <= target:
            if self.stop_event.is_set():
                logger.info("Stop requested; historical sync halted before block {}", batch_start)
                report.stopped = True
                break
            batch_end = min(batch_start + self.batch_size - 1, target)
            report.absorb(await self._run_batch(batch_start, batch_end, head))
            batch_start = batch_end + 1

        logger.info(
            "Historical sync finished: {} batches, {} applied, {} duplicates",
            report.batches,
            report.applied,
            report.duplicates,
        )
        return report

    async def _run_batch(self, from_block: int, to_block: int, head: int) -> WindowResult:
        for attempt in range(1, self.retry_attempts + 1):
            known = self.registry.snapshot()
            try:
                events = await self._fetch_batch(from_block, to_block)
                return commit_window(
                    self.session_factory,
                    self.processor,
                    contract_name=self.contract_name,
                    events=events,
                    from_block=from_block,
                    to_block=to_block,
                    head=head,
                )
            except EventProcessingError as exc:
                self.registry.restore(known)
                logger.error("Batch {}-{} failed to apply: {}", from_block, to_block, exc)
                raise BatchProcessingError(from_block, to_block, str(exc)) from exc
            except (ChainClientError, OperationalError) as exc:
                self.registry.restore(known)
                if attempt >= self.retry_attempts:
                    logger.error(
                        "Batch {}-{} failed after {} attempts: {}", from_block, to_block, attempt, exc
                    )
                    raise BatchProcessingError(from_block, to_block, str(exc)) from exc
                delay = backoff_delay(self.backoff, attempt)
                logger.warning(
                    "Batch {}-{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
                    from_block,
                    to_block,
                    attempt,
                    self.retry_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
        raise BatchProcessingError(from_block, to_block, "batch was never attempted")

    async def _fetch_batch(self, from_block: int, to_block: int) -> list[ChainEvent]:
        creations = await self.client.fetch_events(
            self.registry.factory_address, EventName.MARKET_CREATED, from_block, to_block
        )
        for event in sorted(creations, key=lambda item: item.sort_key):
            self.registry.register_created(event)

        markets = self.registry.market_addresses()
        per_market = await asyncio.gather(
            *(self.client.fetch_market_events(address, from_block, to_block) for address in markets)
        )
        events = list(creations)
        for batch in per_market:
            events.extend(batch)
        logger.debug(
            "Fetched {} events for blocks {}-{} across {} markets",
            len(events),
            from_block,
            to_block,
            len(markets),
        )
        return order_events(events, self.registry)


__all__ = ["HistoricalSyncer", "SyncReport"]

from __future__ import annotations

import asyncio

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings, get_settings
from app.db import SessionLocal, session_scope
from app.domain import ChainClientError
from app.repositories import SyncStateRepository
from app.services.event_processor import EventProcessor

from .client import ChainClient
from .listener import LiveListener
from .registry import MarketRegistry
from .syncer import HistoricalSyncer, SyncReport


class IndexerService:
    """Wire the client, registry and processor into backfill and live stages."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: ChainClient | None = None,
        session_factory: sessionmaker[Session] | None = None,
        processor: EventProcessor | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or ChainClient.from_settings(self.settings)
        self.session_factory = session_factory or SessionLocal
        self.processor = processor or EventProcessor()
        self.registry = MarketRegistry(self.settings.market_factory_address)
        self.stop_event = asyncio.Event()
        self._registry_loaded = False

    @property
    def contract_name(self) -> str:
        return self.settings.factory_contract_name

    def load_registry(self) -> int:
        with session_scope(self.session_factory) as session:
            loaded = self.registry.load(session)
        self._registry_loaded = True
        return loaded

    def checkpoint(self) -> int | None:
        with session_scope(self.session_factory) as session:
            return SyncStateRepository(session).get(self.contract_name)

    async def verify_chain(self) -> None:
        chain_id = await self.client.get_chain_id()
        if chain_id != self.settings.chain_id:
            raise ChainClientError(
                f"RPC endpoint reports chain id {chain_id}, expected {self.settings.chain_id}"
            )

    def _syncer(self) -> HistoricalSyncer:
        return HistoricalSyncer(
            self.client,
            self.registry,
            self.processor,
            session_factory=self.session_factory,
            contract_name=self.contract_name,
            start_block=self.settings.start_block,
            batch_size=self.settings.sync_batch_size,
            retry_attempts=self.settings.sync_batch_retry_attempts,
            backoff=self.settings.retry_backoff_schedule,
            stop_event=self.stop_event,
        )

    def _listener(self) -> LiveListener:
        return LiveListener(
            self.client,
            self.registry,
            self.processor,
            session_factory=self.session_factory,
            contract_name=self.contract_name,
            retry_attempts=self.settings.sync_batch_retry_attempts,
            backoff=self.settings.retry_backoff_schedule,
            stop_event=self.stop_event,
        )

    async def backfill(
        self, *, from_block: int | None = None, to_block: int | None = None
    ) -> SyncReport:
        if not self._registry_loaded:
            self.load_registry()
        return await self._syncer().sync(from_block=from_block, to_block=to_block)

    async def run(self, *, follow: bool = True) -> SyncReport:
        """Resume from the checkpoint, backfill to head, then follow live until stopped."""

        await self.verify_chain()
        self.load_registry()
        report = await self.backfill()
        if not follow or self.stop_event.is_set():
            return report

        checkpoint = self.checkpoint()
        next_block = self.settings.start_block if checkpoint is None else checkpoint + 1
        await self._listener().run(next_block)
        return report

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stop requested; finishing the current window")
        self.stop_event.set()

    async def aclose(self) -> None:
        await self.client.close()


__all__ = ["IndexerService"]

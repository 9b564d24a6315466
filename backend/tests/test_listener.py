from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.core.config import Settings
from app.db import build_db_components, init_db, session_scope
from app.domain import BatchProcessingError, ChainClientError
from app.repositories import MarketRepository, SyncStateRepository
from app.services.event_processor import EventProcessor
from ingestion.listener import LiveListener
from ingestion.registry import MarketRegistry
from ingestion.service import IndexerService
from ingestion.syncer import HistoricalSyncer

from conftest import ALICE, BOB, FACTORY, MARKET_A, MARKET_B, MARKET_C, FakeChainClient, snapshot_state


def _chain(events):
    return [
        events.created(MARKET_A, block=1),
        events.buy(MARKET_A, ALICE, 0, 100, block=2),
        events.created(MARKET_C, block=4),
        events.buy(MARKET_C, ALICE, 0, 10, block=4),
        events.buy(MARKET_A, BOB, 0, 20, block=5),
        events.sell(MARKET_C, ALICE, 0, 4, block=6),
    ]


def _backfilled(client, session_factory, registry, processor, to_block):
    syncer = HistoricalSyncer(
        client,
        registry,
        processor,
        session_factory=session_factory,
        contract_name="MarketFactory",
        start_block=0,
        batch_size=10,
        retry_attempts=1,
        backoff=(0.001,),
    )
    asyncio.run(syncer.sync(to_block=to_block))


def _listener(client, session_factory, registry, processor, stop_event=None, retry_attempts=3):
    return LiveListener(
        client,
        registry,
        processor,
        session_factory=session_factory,
        contract_name="MarketFactory",
        retry_attempts=retry_attempts,
        backoff=(0.001,),
        stop_event=stop_event,
    )


class LockedOnceProcessor(EventProcessor):
    def __init__(self) -> None:
        super().__init__()
        self.locked = True

    def apply(self, session, event):
        if self.locked:
            self.locked = False
            raise OperationalError("UPDATE user_positions", {}, Exception("database is locked"))
        return super().apply(session, event)


def _checkpoint(session_factory):
    with session_scope(session_factory) as session:
        return SyncStateRepository(session).get("MarketFactory")


def test_new_market_is_watched_and_gap_filled(session_factory, events):
    """Verify a market created mid-stream gets its same-window events and later ones."""
    client = FakeChainClient(_chain(events), head=6)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=3)

    client.live_windows = [(4, 5), (4, 5), (6, 6)]
    listener = _listener(client, session_factory, registry, processor)
    windows = asyncio.run(listener.run(4))

    assert windows == 3
    assert ("fetch_market_events", MARKET_C, 4, 5) in client.calls
    assert registry.watched_addresses() == [FACTORY, MARKET_A, MARKET_C]
    assert _checkpoint(session_factory) == 6
    with session_scope(session_factory) as session:
        markets = MarketRepository(session)
        assert markets.get_position(ALICE, MARKET_C).outcome_balances == [6, 0]
        assert markets.get_position(BOB, MARKET_A).outcome_balances == [20, 0]
        assert markets.get_position(ALICE, MARKET_A).outcome_balances == [100, 0]


def test_redelivered_window_only_counts_duplicates(session_factory, events):
    """Verify a replayed live window changes nothing."""
    client = FakeChainClient(_chain(events), head=6)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=3)
    client.live_windows = [(4, 6)]
    asyncio.run(_listener(client, session_factory, registry, processor).run(4))
    before = snapshot_state(session_factory)

    client.live_windows = [(4, 6)]
    listener = _listener(client, session_factory, registry, processor)
    asyncio.run(listener.run(4))

    assert snapshot_state(session_factory) == before


def test_live_results_match_backfill(tmp_path, session_factory, events):
    """Verify backfilled and live-observed events produce the same ledger."""
    chain = _chain(events)
    backfill_client = FakeChainClient(chain, head=6)
    _backfilled(backfill_client, session_factory, MarketRegistry(FACTORY), EventProcessor(), to_block=6)
    expected = snapshot_state(session_factory)

    engine, live_factory = build_db_components(f"sqlite:///{tmp_path / 'live.db'}")
    init_db(bind=engine)
    live_client = FakeChainClient(chain, head=0)
    live_client.live_windows = [(0, 1), (2, 3), (4, 4), (5, 6)]
    asyncio.run(_listener(live_client, live_factory, MarketRegistry(FACTORY), EventProcessor()).run(0))

    assert snapshot_state(live_factory) == expected


def test_stop_request_ends_listener(session_factory, events):
    """Verify a set stop event tears the subscription down before more windows."""
    client = FakeChainClient(_chain(events), head=6)
    client.live_windows = [(0, 6)]
    stop_event = asyncio.Event()
    stop_event.set()

    windows = asyncio.run(
        _listener(client, session_factory, MarketRegistry(FACTORY), EventProcessor(), stop_event).run(0)
    )

    assert windows == 0
    assert _checkpoint(session_factory) is None


def test_processing_error_in_live_window_keeps_checkpoint(session_factory, events):
    """Verify a malformed live event is fatal and does not advance the checkpoint."""
    chain = _chain(events) + [events.resolved(MARKET_A, 9, block=7)]
    client = FakeChainClient(chain, head=7)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=6)

    client.live_windows = [(7, 7)]
    with pytest.raises(BatchProcessingError):
        asyncio.run(_listener(client, session_factory, registry, processor).run(7))

    assert _checkpoint(session_factory) == 6


def test_transient_gap_fill_failure_retries_window(tmp_path, session_factory, events):
    """Verify a failed fetch for a newly created market retries the window instead of stopping."""
    chain = _chain(events)
    client = FakeChainClient(chain, head=6)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=3)

    client.fail("fetch_market_events", times=1)
    client.live_windows = [(4, 5), (6, 6)]
    windows = asyncio.run(_listener(client, session_factory, registry, processor).run(4))

    assert windows == 2
    assert client.calls.count(("fetch_market_events", MARKET_C, 4, 5)) == 2
    assert registry.watched_addresses() == [FACTORY, MARKET_A, MARKET_C]

    engine, reference_factory = build_db_components(f"sqlite:///{tmp_path / 'reference.db'}")
    init_db(bind=engine)
    _backfilled(FakeChainClient(chain, head=6), reference_factory, MarketRegistry(FACTORY), EventProcessor(), to_block=6)
    assert snapshot_state(session_factory) == snapshot_state(reference_factory)


def test_database_error_retries_live_window(session_factory, events):
    """Verify a locked database during a live commit is retried and then succeeds."""
    client = FakeChainClient(_chain(events), head=6)
    client.live_windows = [(0, 6)]

    windows = asyncio.run(
        _listener(client, session_factory, MarketRegistry(FACTORY), LockedOnceProcessor()).run(0)
    )

    assert windows == 1
    assert _checkpoint(session_factory) == 6
    with session_scope(session_factory) as session:
        assert MarketRepository(session).get_position(ALICE, MARKET_C).outcome_balances == [6, 0]


def test_failed_live_window_unregisters_its_new_markets(session_factory, events):
    """Verify markets discovered by a window that never commits are not left watched."""
    client = FakeChainClient(_chain(events), head=6)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=3)

    client.fail("fetch_market_events", times=10)
    client.live_windows = [(4, 5)]
    with pytest.raises(BatchProcessingError) as excinfo:
        asyncio.run(_listener(client, session_factory, registry, processor, retry_attempts=2).run(4))

    assert (excinfo.value.from_block, excinfo.value.to_block) == (4, 5)
    assert registry.watched_addresses() == [FACTORY, MARKET_A]
    assert _checkpoint(session_factory) == 3


def test_malformed_creation_in_live_window_is_not_watched(session_factory, events):
    """Verify a creation whose payload fails to apply does not stay in the registry."""
    chain = _chain(events) + [events.created(MARKET_B, block=7, outcomes=())]
    client = FakeChainClient(chain, head=7)
    registry = MarketRegistry(FACTORY)
    processor = EventProcessor()
    _backfilled(client, session_factory, registry, processor, to_block=6)

    client.live_windows = [(7, 7)]
    with pytest.raises(BatchProcessingError):
        asyncio.run(_listener(client, session_factory, registry, processor).run(7))

    assert MARKET_B not in registry
    assert _checkpoint(session_factory) == 6


def _service_settings(**overrides) -> Settings:
    values = {
        "market_factory_address": FACTORY,
        "start_block": 0,
        "chain_id": 84532,
        "sync_batch_size": 2,
        "sync_batch_retry_attempts": 2,
        "rpc_retry_backoff_seconds": [0.001],
    }
    values.update(overrides)
    return Settings(**values)


def test_service_backfills_then_follows_live(tmp_path, session_factory, events):
    """Verify the service resumes, backfills to head, then hands over to the listener."""
    chain = _chain(events)
    client = FakeChainClient(chain, head=3)
    client.live_windows = [(4, 5), (6, 6)]
    service = IndexerService(_service_settings(), client=client, session_factory=session_factory)

    report = asyncio.run(service.run(follow=True))
    asyncio.run(service.aclose())

    assert (report.from_block, report.to_block) == (0, 3)
    assert service.checkpoint() == 6
    assert client.closed is True

    reference = FakeChainClient(chain, head=6)
    engine, reference_factory = build_db_components(f"sqlite:///{tmp_path / 'reference.db'}")
    init_db(bind=engine)
    _backfilled(reference, reference_factory, MarketRegistry(FACTORY), EventProcessor(), to_block=6)
    assert snapshot_state(session_factory) == snapshot_state(reference_factory)


def test_service_rejects_wrong_chain(session_factory):
    """Verify the service refuses to index an endpoint on another chain."""
    service = IndexerService(
        _service_settings(), client=FakeChainClient(chain_id=1), session_factory=session_factory
    )

    with pytest.raises(ChainClientError):
        asyncio.run(service.run())


def test_service_backfill_honours_block_range(session_factory, events):
    """Verify an explicit backfill range is respected and checkpointed."""
    client = FakeChainClient(_chain(events), head=6)
    service = IndexerService(_service_settings(), client=client, session_factory=session_factory)

    report = asyncio.run(service.backfill(from_block=0, to_block=2))

    assert report.batches == 2
    assert service.checkpoint() == 2
    assert len(service.registry) == 1

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from sqlalchemy import select

from app.db import build_db_components, init_db, session_scope
from app.domain import ChainClientError, ChainEvent, EventName, LogWindow, MARKET_EVENTS
from app.models import Claim, LPAction, Market, Notification, SyncState, Trade, UserPosition

FACTORY = "0x" + "f" * 40
MARKET_A = "0x" + "a" * 40
MARKET_B = "0x" + "b" * 40
MARKET_C = "0x" + "c" * 40
CREATOR = "0x" + "9" * 40
RESOLVER = "0x" + "8" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40
CAROL = "0x" + "3" * 40


@pytest.fixture
def session_factory(tmp_path):
    engine, factory = build_db_components(f"sqlite:///{tmp_path / 'indexer.db'}")
    init_db(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


class EventFactory:
    """Build decoded chain events with unique ``(tx_hash, log_index)`` keys."""

    def __init__(self) -> None:
        self._counter = 0

    def make(
        self,
        name: EventName,
        contract: str,
        *,
        block: int,
        log_index: int | None = None,
        tx_hash: str | None = None,
        **args,
    ) -> ChainEvent:
        self._counter += 1
        return ChainEvent(
            name=name,
            contract_address=contract,
            block_number=block,
            tx_hash=tx_hash or "0x%064x" % self._counter,
            log_index=self._counter if log_index is None else log_index,
            args=args,
        )

    def created(
        self,
        market: str,
        *,
        block: int,
        outcomes: Sequence[str] = ("Yes", "No"),
        question: str = "Will it rain tomorrow?",
        end_time: int = 1_900_000_000,
        **kwargs,
    ) -> ChainEvent:
        return self.make(
            EventName.MARKET_CREATED,
            FACTORY,
            block=block,
            marketAddress=market,
            creator=CREATOR,
            question=question,
            outcomes=list(outcomes),
            endTime=end_time,
            **kwargs,
        )

    def buy(self, market: str, user: str, outcome: int, tokens: int, *, block: int, collateral: int | None = None, fee: int = 0, **kwargs) -> ChainEvent:
        return self.make(
            EventName.TOKENS_PURCHASED,
            market,
            block=block,
            user=user,
            outcome=outcome,
            collateralAmount=tokens if collateral is None else collateral,
            tokensReceived=tokens,
            fee=fee,
            **kwargs,
        )

    def sell(self, market: str, user: str, outcome: int, tokens: int, *, block: int, collateral: int | None = None, fee: int = 0, **kwargs) -> ChainEvent:
        return self.make(
            EventName.TOKENS_SOLD,
            market,
            block=block,
            user=user,
            outcome=outcome,
            tokensAmount=tokens,
            collateralReceived=tokens if collateral is None else collateral,
            fee=fee,
            **kwargs,
        )

    def add_liquidity(self, market: str, provider: str, lp_tokens: int, *, block: int, collateral: int | None = None, **kwargs) -> ChainEvent:
        return self.make(
            EventName.LIQUIDITY_ADDED,
            market,
            block=block,
            provider=provider,
            collateralAmount=lp_tokens if collateral is None else collateral,
            lpTokens=lp_tokens,
            **kwargs,
        )

    def remove_liquidity(self, market: str, provider: str, lp_tokens: int, *, block: int, collateral: int | None = None, **kwargs) -> ChainEvent:
        return self.make(
            EventName.LIQUIDITY_REMOVED,
            market,
            block=block,
            provider=provider,
            lpTokens=lp_tokens,
            collateralAmount=lp_tokens if collateral is None else collateral,
            **kwargs,
        )

    def claim(self, market: str, user: str, amount: int, *, block: int, total_claimed: int | None = None, **kwargs) -> ChainEvent:
        return self.make(
            EventName.WINNINGS_CLAIMED,
            market,
            block=block,
            user=user,
            amount=amount,
            totalClaimed=amount if total_claimed is None else total_claimed,
            **kwargs,
        )

    def resolved(self, market: str, winning_outcome: int, *, block: int, **kwargs) -> ChainEvent:
        return self.make(
            EventName.MARKET_RESOLVED,
            market,
            block=block,
            winningOutcome=winning_outcome,
            resolver=RESOLVER,
            **kwargs,
        )

    def canceled(self, market: str, *, block: int, reason: str = "Ambiguous question", **kwargs) -> ChainEvent:
        return self.make(EventName.MARKET_CANCELED, market, block=block, reason=reason, **kwargs)

    def finalized(self, market: str, distributed: int, *, block: int, **kwargs) -> ChainEvent:
        return self.make(
            EventName.MARKET_FINALIZED,
            market,
            block=block,
            unclaimedReservesDistributed=distributed,
            **kwargs,
        )


@pytest.fixture
def events() -> EventFactory:
    return EventFactory()


class FakeChainClient:
    """In-memory stand-in for ``ChainClient`` serving a fixed event history."""

    def __init__(self, chain_events: Sequence[ChainEvent] = (), *, head: int = 0, chain_id: int = 84532) -> None:
        self.chain_events = list(chain_events)
        self.head = head
        self.chain_id = chain_id
        self.live_windows: list[tuple[int, int]] = []
        self.failures: dict[str, int] = {}
        self.calls: list[tuple] = []
        self.closed = False

    def fail(self, method: str, times: int = 1) -> None:
        self.failures[method] = self.failures.get(method, 0) + times

    def _maybe_fail(self, method: str) -> None:
        remaining = self.failures.get(method, 0)
        if remaining:
            self.failures[method] = remaining - 1
            raise ChainClientError(f"{method}: simulated timeout")

    def _select(self, addresses: Sequence[str], names: Sequence[EventName], from_block: int, to_block: int) -> list[ChainEvent]:
        wanted = {address.lower() for address in addresses}
        return sorted(
            (
                event
                for event in self.chain_events
                if event.contract_address in wanted
                and event.name in names
                and from_block <= event.block_number <= to_block
            ),
            key=lambda event: (event.block_number, event.log_index),
        )

    async def get_confirmed_head(self) -> int:
        self._maybe_fail("get_confirmed_head")
        return self.head

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def fetch_events(self, address: str, name: EventName, from_block: int, to_block: int) -> list[ChainEvent]:
        self.calls.append(("fetch_events", address, name, from_block, to_block))
        self._maybe_fail("fetch_events")
        return self._select([address], [name], from_block, to_block)

    async def fetch_market_events(self, address: str, from_block: int, to_block: int) -> list[ChainEvent]:
        self.calls.append(("fetch_market_events", address, from_block, to_block))
        self._maybe_fail("fetch_market_events")
        return self._select([address], MARKET_EVENTS, from_block, to_block)

    async def fetch_window(self, addresses: Sequence[str], from_block: int, to_block: int) -> list[ChainEvent]:
        return self._select(addresses, list(EventName), from_block, to_block)

    async def subscribe(self, addresses: Callable[[], Sequence[str]], *, from_block: int, stop_event: asyncio.Event):
        for window_start, window_end in self.live_windows:
            if stop_event.is_set():
                return
            self.head = max(self.head, window_end)
            events = await self.fetch_window(addresses(), window_start, window_end)
            yield LogWindow(from_block=window_start, to_block=window_end, head=self.head, events=events)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_client() -> Callable[..., FakeChainClient]:
    return FakeChainClient


def snapshot_state(session_factory) -> dict[str, object]:
    """Collect projected state in a comparable form, ignoring wall-clock columns."""

    with session_scope(session_factory) as db:
        markets = {
            market.address: (
                market.question,
                tuple(market.outcomes),
                market.status,
                market.winning_outcome,
                market.resolver,
                market.cancel_reason,
                market.finalized,
                market.unclaimed_reserves_distributed,
                market.total_volume,
                market.created_block,
            )
            for market in db.execute(select(Market)).scalars()
        }
        positions = {
            (position.user_address, position.market_address): (
                tuple(position.outcome_balances),
                position.lp_balance,
                position.total_claimed,
                position.has_outcome_tokens,
                position.has_lp_tokens,
                position.has_claimed,
            )
            for position in db.execute(select(UserPosition)).scalars()
        }
        trades = sorted(
            (trade.tx_hash, trade.log_index, trade.user_address, trade.outcome, trade.is_buy, trade.token_amount)
            for trade in db.execute(select(Trade)).scalars()
        )
        lp_actions = sorted(
            (action.tx_hash, action.log_index, action.is_add, action.lp_token_amount)
            for action in db.execute(select(LPAction)).scalars()
        )
        claims = sorted(
            (claim.tx_hash, claim.log_index, claim.outcome, claim.payout_amount, claim.total_claimed)
            for claim in db.execute(select(Claim)).scalars()
        )
        notifications = sorted(
            (note.user_address, note.market_address, note.type, note.title)
            for note in db.execute(select(Notification)).scalars()
        )
        checkpoints = {
            state.contract_name: state.last_processed_block
            for state in db.execute(select(SyncState)).scalars()
        }
    return {
        "markets": markets,
        "positions": positions,
        "trades": trades,
        "lp_actions": lp_actions,
        "claims": claims,
        "notifications": notifications,
        "checkpoints": checkpoints,
    }

"""Write-once activity records and the applied-event ledger."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain import ChainEvent
from app.models import AppliedEvent, Claim, LPAction, Trade


class ActivityRepository:
    """Persist trades, liquidity actions and claims keyed by chain log identity."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Idempotency ledger

    def is_applied(self, tx_hash: str, log_index: int) -> bool:
        return self._session.get(AppliedEvent, (tx_hash, log_index)) is not None

    def mark_applied(self, event: ChainEvent) -> AppliedEvent:
        record = AppliedEvent(
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            event_name=event.name.value,
            contract_address=event.contract_address,
            block_number=event.block_number,
        )
        self._session.add(record)
        self._session.flush()
        return record

    # ------------------------------------------------------------------
    # Activity rows

    def add_trade(
        self,
        event: ChainEvent,
        *,
        user_address: str,
        market_address: str,
        outcome: int,
        is_buy: bool,
        collateral_amount: int,
        token_amount: int,
        fee: int,
    ) -> Trade:
        trade = Trade(
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            user_address=user_address,
            market_address=market_address,
            outcome=outcome,
            is_buy=is_buy,
            collateral_amount=collateral_amount,
            token_amount=token_amount,
            fee=fee,
            price=None,
        )
        self._session.add(trade)
        return trade

    def add_lp_action(
        self,
        event: ChainEvent,
        *,
        user_address: str,
        market_address: str,
        is_add: bool,
        collateral_amount: int,
        lp_token_amount: int,
    ) -> LPAction:
        action = LPAction(
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            user_address=user_address,
            market_address=market_address,
            is_add=is_add,
            collateral_amount=collateral_amount,
            lp_token_amount=lp_token_amount,
        )
        self._session.add(action)
        return action

    def add_claim(
        self,
        event: ChainEvent,
        *,
        user_address: str,
        market_address: str,
        outcome: int | None,
        payout_amount: int,
        total_claimed: int,
    ) -> Claim:
        claim = Claim(
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            user_address=user_address,
            market_address=market_address,
            outcome=outcome,
            payout_amount=payout_amount,
            total_claimed=total_claimed,
        )
        self._session.add(claim)
        return claim

    def trades_for_market(self, market_address: str) -> list[Trade]:
        query = (
            select(Trade)
            .where(Trade.market_address == market_address.lower())
            .order_by(Trade.block_number.asc(), Trade.log_index.asc())
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["ActivityRepository"]

"""Market, user and position data access helpers."""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import Market, MarketStatus, User, UserPosition


class MarketRepository:
    """Encapsulate market, user and per-(user, market) position persistence."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Markets

    def get_market(self, address: str) -> Market | None:
        return self._session.get(Market, address.lower())

    def create_market(
        self,
        *,
        address: str,
        question: str,
        outcomes: Sequence[str],
        creator: str | None,
        end_time: datetime | None,
        created_block: int,
        created_log_index: int,
        created_tx_hash: str,
    ) -> Market:
        market = Market(
            address=address.lower(),
            question=question,
            outcomes=list(outcomes),
            creator=creator.lower() if creator else None,
            end_time=end_time,
            status=MarketStatus.ACTIVE.value,
            winning_outcome=None,
            finalized=False,
            total_volume=0,
            total_reserves=0,
            reserves=[0] * len(outcomes),
            accumulated_fees=0,
            accumulated_protocol_fees=0,
            created_block=created_block,
            created_log_index=created_log_index,
            created_tx_hash=created_tx_hash,
        )
        self._session.add(market)
        self._session.flush()
        return market

    def list_markets_in_discovery_order(self) -> list[Market]:
        query = select(Market).order_by(
            Market.created_block.asc(),
            Market.created_log_index.asc(),
            Market.address.asc(),
        )
        return list(self._session.execute(query).scalars().all())

    def count_markets(self) -> int:
        return self._session.execute(select(func.count(Market.address))).scalar_one()

    # ------------------------------------------------------------------
    # Users

    def ensure_user(self, address: str) -> User:
        normalized = address.lower()
        user = self._session.get(User, normalized)
        if user is None:
            user = User(address=normalized)
            self._session.add(user)
            self._session.flush()
        return user

    # ------------------------------------------------------------------
    # Positions

    def get_position(self, user_address: str, market_address: str) -> UserPosition | None:
        query = select(UserPosition).where(
            UserPosition.user_address == user_address.lower(),
            UserPosition.market_address == market_address.lower(),
        )
        return self._session.execute(query).scalar_one_or_none()

    def get_or_create_position(self, user_address: str, market: Market) -> UserPosition:
        user = self.ensure_user(user_address)
        position = self.get_position(user.address, market.address)
        if position is None:
            position = UserPosition(
                user_address=user.address,
                market_address=market.address,
                outcome_balances=[0] * len(market.outcomes),
                lp_balance=0,
                total_claimed=0,
                has_outcome_tokens=False,
                has_lp_tokens=False,
                has_claimed=False,
            )
            self._session.add(position)
            self._session.flush()
        return position

    def positions_with_outcome_tokens(self, market_address: str) -> list[UserPosition]:
        query = (
            select(UserPosition)
            .where(
                UserPosition.market_address == market_address.lower(),
                UserPosition.has_outcome_tokens.is_(True),
            )
            .order_by(UserPosition.user_address.asc())
        )
        return list(self._session.execute(query).scalars().all())

    def positions_with_lp_tokens(self, market_address: str) -> list[UserPosition]:
        query = (
            select(UserPosition)
            .where(
                UserPosition.market_address == market_address.lower(),
                UserPosition.has_lp_tokens.is_(True),
            )
            .order_by(UserPosition.user_address.asc())
        )
        return list(self._session.execute(query).scalars().all())


__all__ = ["MarketRepository"]

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from .db import Base


class MarketStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"
    CANCELED = "canceled"


class NotificationType(str, Enum):
    MARKET_RESOLVED = "market-resolved"
    MARKET_FINALIZED = "market-finalized"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BigIntString(TypeDecorator):
    """Arbitrary-precision integer persisted as a base-10 string."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> str | None:
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value: Any, dialect) -> int | None:
        if value is None:
            return None
        return int(value)


class BigIntList(TypeDecorator):
    """List of arbitrary-precision integers persisted as a JSON array of strings."""

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> list[str] | None:
        if value is None:
            return None
        return [str(int(item)) for item in value]

    def process_result_value(self, value: Any, dialect) -> list[int] | None:
        if value is None:
            return None
        return [int(item) for item in value]


class Market(Base):
    __tablename__ = "markets"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    outcomes: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    creator: Mapped[str | None] = mapped_column(String(42), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MarketStatus.ACTIVE.value)
    winning_outcome: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolver: Mapped[str | None] = mapped_column(String(42), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unclaimed_reserves_distributed: Mapped[int | None] = mapped_column(BigIntString, nullable=True)

    total_volume: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)
    total_reserves: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)
    reserves: Mapped[list[int]] = mapped_column(BigIntList, nullable=False, default=list)
    accumulated_fees: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)
    accumulated_protocol_fees: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)

    created_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    positions: Mapped[list[UserPosition]] = relationship("UserPosition", back_populates="market")


class User(Base):
    __tablename__ = "users"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    positions: Mapped[list[UserPosition]] = relationship("UserPosition", back_populates="user")


class UserPosition(Base):
    __tablename__ = "user_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_address: Mapped[str] = mapped_column(String(42), ForeignKey("users.address"), nullable=False)
    market_address: Mapped[str] = mapped_column(String(42), ForeignKey("markets.address"), nullable=False)
    outcome_balances: Mapped[list[int]] = mapped_column(BigIntList, nullable=False)
    lp_balance: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)
    total_claimed: Mapped[int] = mapped_column(BigIntString, nullable=False, default=0)
    has_outcome_tokens: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_lp_tokens: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    user: Mapped[User] = relationship("User", back_populates="positions")
    market: Mapped[Market] = relationship("Market", back_populates="positions")

    __table_args__ = (
        UniqueConstraint("user_address", "market_address", name="uq_user_position"),
    )


class Trade(Base):
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), ForeignKey("users.address"), nullable=False)
    market_address: Mapped[str] = mapped_column(String(42), ForeignKey("markets.address"), nullable=False)
    outcome: Mapped[int] = mapped_column(Integer, nullable=False)
    is_buy: Mapped[bool] = mapped_column(Boolean, nullable=False)
    collateral_amount: Mapped[int] = mapped_column(BigIntString, nullable=False)
    token_amount: Mapped[int] = mapped_column(BigIntString, nullable=False)
    fee: Mapped[int] = mapped_column(BigIntString, nullable=False)
    # Execution price is not derived here; it stays NULL until priced upstream.
    price: Mapped[Decimal | None] = mapped_column(Numeric(38, 18), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_trade_event"),)


class LPAction(Base):
    __tablename__ = "lp_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), ForeignKey("users.address"), nullable=False)
    market_address: Mapped[str] = mapped_column(String(42), ForeignKey("markets.address"), nullable=False)
    is_add: Mapped[bool] = mapped_column(Boolean, nullable=False)
    collateral_amount: Mapped[int] = mapped_column(BigIntString, nullable=False)
    lp_token_amount: Mapped[int] = mapped_column(BigIntString, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_lp_action_event"),)


class Claim(Base):
    __tablename__ = "claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_address: Mapped[str] = mapped_column(String(42), ForeignKey("users.address"), nullable=False)
    market_address: Mapped[str] = mapped_column(String(42), ForeignKey("markets.address"), nullable=False)
    outcome: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payout_amount: Mapped[int] = mapped_column(BigIntString, nullable=False)
    total_claimed: Mapped[int] = mapped_column(BigIntString, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_claim_event"),)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_address: Mapped[str] = mapped_column(String(42), ForeignKey("users.address"), nullable=False)
    market_address: Mapped[str] = mapped_column(String(42), ForeignKey("markets.address"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_address", "market_address", "type", name="uq_notification_key"),
    )


class SyncState(Base):
    __tablename__ = "sync_state"

    contract_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_processed_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AppliedEvent(Base):
    """Idempotency ledger: one row per chain log that mutated projected state."""

    __tablename__ = "applied_events"

    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_name: Mapped[str] = mapped_column(String(32), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

"""Map decoded chain events onto projected relational state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import ApplyResult, ChainEvent, EventName, MalformedEventError
from app.models import Market, MarketStatus, NotificationType, utcnow
from app.repositories import ActivityRepository, MarketRepository

from . import ledger
from .notifications import NotificationEmitter, finalization_message, resolution_message


def _arg(event: ChainEvent, name: str) -> Any:
    if name not in event.args:
        raise MalformedEventError(
            f"{event.name.value} {event.tx_hash}:{event.log_index} is missing argument '{name}'"
        )
    return event.args[name]


def _uint_arg(event: ChainEvent, name: str) -> int:
    value = _arg(event, name)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedEventError(
            f"{event.name.value} argument '{name}' must be an unsigned integer, got {value!r}"
        )
    return value


def _address_arg(event: ChainEvent, name: str) -> str:
    value = _arg(event, name)
    if not isinstance(value, str) or len(value) != 42 or not value.startswith("0x"):
        raise MalformedEventError(
            f"{event.name.value} argument '{name}' must be a hex address, got {value!r}"
        )
    return value.lower()


def _str_arg(event: ChainEvent, name: str) -> str:
    value = _arg(event, name)
    if not isinstance(value, str):
        raise MalformedEventError(f"{event.name.value} argument '{name}' must be a string")
    return value


def _outcome_labels(event: ChainEvent) -> list[str]:
    value = _arg(event, "outcomes")
    if not isinstance(value, (list, tuple)) or not value:
        raise MalformedEventError("MarketCreated argument 'outcomes' must be a non-empty list")
    if not all(isinstance(item, str) for item in value):
        raise MalformedEventError("MarketCreated outcome labels must be strings")
    return list(value)


def _timestamp(value: int) -> datetime | None:
    if value == 0:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedEventError(f"Unrepresentable end time {value}") from exc


Handler = Callable[[Session, ChainEvent], ApplyResult]


class EventProcessor:
    """Apply one event at a time, exactly once per ``(tx_hash, log_index)``.

    ``apply`` never suspends and never commits; callers own the transaction so
    that a whole block window and its checkpoint land atomically.
    """

    def __init__(self, notifier: NotificationEmitter | None = None) -> None:
        self._notifier = notifier or NotificationEmitter()
        self._handlers: dict[EventName, Handler] = {
            EventName.MARKET_CREATED: self._market_created,
            EventName.TOKENS_PURCHASED: self._tokens_purchased,
            EventName.TOKENS_SOLD: self._tokens_sold,
            EventName.LIQUIDITY_ADDED: self._liquidity_added,
            EventName.LIQUIDITY_REMOVED: self._liquidity_removed,
            EventName.WINNINGS_CLAIMED: self._winnings_claimed,
            EventName.MARKET_RESOLVED: self._market_resolved,
            EventName.MARKET_CANCELED: self._market_canceled,
            EventName.MARKET_FINALIZED: self._market_finalized,
        }

    def apply(self, session: Session, event: ChainEvent) -> ApplyResult:
        activity = ActivityRepository(session)
        if activity.is_applied(event.tx_hash, event.log_index):
            logger.debug(
                "Skipping already applied {} {}:{}", event.name.value, event.tx_hash, event.log_index
            )
            return ApplyResult.ALREADY_APPLIED

        handler = self._handlers.get(event.name)
        if handler is None:
            raise MalformedEventError(f"No handler registered for event {event.name!r}")

        result = handler(session, event)
        if result is ApplyResult.APPLIED:
            activity.mark_applied(event)
        return result

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _load_market(session: Session, event: ChainEvent) -> Market | None:
        market = MarketRepository(session).get_market(event.market_address)
        if market is None:
            logger.warning(
                "Dropping {} {}:{} at block {}: market {} is not indexed",
                event.name.value,
                event.tx_hash,
                event.log_index,
                event.block_number,
                event.market_address,
            )
        return market

    def _trade(self, session: Session, event: ChainEvent, *, is_buy: bool) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        user = _address_arg(event, "user")
        outcome = _uint_arg(event, "outcome")
        if is_buy:
            collateral = _uint_arg(event, "collateralAmount")
            tokens = _uint_arg(event, "tokensReceived")
        else:
            collateral = _uint_arg(event, "collateralReceived")
            tokens = _uint_arg(event, "tokensAmount")
        fee = _uint_arg(event, "fee")

        position = MarketRepository(session).get_or_create_position(user, market)
        balance = ledger.apply_outcome_delta(position, outcome, tokens if is_buy else -tokens)
        ActivityRepository(session).add_trade(
            event,
            user_address=user,
            market_address=market.address,
            outcome=outcome,
            is_buy=is_buy,
            collateral_amount=collateral,
            token_amount=tokens,
            fee=fee,
        )
        market.total_volume = market.total_volume + collateral

        logger.info(
            "{}: {} {} {} outcome-{} tokens in {} (balance {})",
            event.name.value,
            user,
            "bought" if is_buy else "sold",
            tokens,
            outcome,
            market.address,
            balance,
        )
        return ApplyResult.APPLIED

    def _liquidity(self, session: Session, event: ChainEvent, *, is_add: bool) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        provider = _address_arg(event, "provider")
        collateral = _uint_arg(event, "collateralAmount")
        lp_tokens = _uint_arg(event, "lpTokens")

        position = MarketRepository(session).get_or_create_position(provider, market)
        balance = ledger.apply_lp_delta(position, lp_tokens if is_add else -lp_tokens)
        ActivityRepository(session).add_lp_action(
            event,
            user_address=provider,
            market_address=market.address,
            is_add=is_add,
            collateral_amount=collateral,
            lp_token_amount=lp_tokens,
        )

        logger.info(
            "{}: {} {} {} LP tokens in {} (balance {})",
            event.name.value,
            provider,
            "added" if is_add else "removed",
            lp_tokens,
            market.address,
            balance,
        )
        return ApplyResult.APPLIED

    # ------------------------------------------------------------------
    # Handlers

    def _market_created(self, session: Session, event: ChainEvent) -> ApplyResult:
        address = _address_arg(event, "marketAddress")
        creator = _address_arg(event, "creator")
        question = _str_arg(event, "question")
        outcomes = _outcome_labels(event)
        end_time = _timestamp(_uint_arg(event, "endTime"))

        repo = MarketRepository(session)
        if repo.get_market(address) is not None:
            logger.debug("Market {} already indexed", address)
            return ApplyResult.APPLIED

        repo.create_market(
            address=address,
            question=question,
            outcomes=outcomes,
            creator=creator,
            end_time=end_time,
            created_block=event.block_number,
            created_log_index=event.log_index,
            created_tx_hash=event.tx_hash,
        )
        logger.info("MarketCreated: {} ({} outcomes) at block {}", address, len(outcomes), event.block_number)
        return ApplyResult.APPLIED

    def _tokens_purchased(self, session: Session, event: ChainEvent) -> ApplyResult:
        return self._trade(session, event, is_buy=True)

    def _tokens_sold(self, session: Session, event: ChainEvent) -> ApplyResult:
        return self._trade(session, event, is_buy=False)

    def _liquidity_added(self, session: Session, event: ChainEvent) -> ApplyResult:
        return self._liquidity(session, event, is_add=True)

    def _liquidity_removed(self, session: Session, event: ChainEvent) -> ApplyResult:
        return self._liquidity(session, event, is_add=False)

    def _winnings_claimed(self, session: Session, event: ChainEvent) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        user = _address_arg(event, "user")
        amount = _uint_arg(event, "amount")
        total_claimed = _uint_arg(event, "totalClaimed")

        position = MarketRepository(session).get_or_create_position(user, market)
        ledger.record_claim(position, total_claimed)
        ActivityRepository(session).add_claim(
            event,
            user_address=user,
            market_address=market.address,
            outcome=market.winning_outcome,
            payout_amount=amount,
            total_claimed=total_claimed,
        )

        logger.info("WinningsClaimed: {} claimed {} from {}", user, amount, market.address)
        return ApplyResult.APPLIED

    def _market_resolved(self, session: Session, event: ChainEvent) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        winning_outcome = _uint_arg(event, "winningOutcome")
        if winning_outcome >= len(market.outcomes):
            raise MalformedEventError(
                f"Winning outcome {winning_outcome} out of range for market {market.address}"
            )

        market.status = MarketStatus.RESOLVED.value
        market.winning_outcome = winning_outcome
        if "resolver" in event.args:
            market.resolver = _address_arg(event, "resolver")

        message = resolution_message(market)
        created = 0
        for position in MarketRepository(session).positions_with_outcome_tokens(market.address):
            if self._notifier.notify(
                session,
                position.user_address,
                market.address,
                NotificationType.MARKET_RESOLVED,
                message,
            ):
                created += 1

        logger.info(
            "MarketResolved: {} resolved with outcome {} ({} holders notified)",
            market.address,
            winning_outcome,
            created,
        )
        return ApplyResult.APPLIED

    def _market_canceled(self, session: Session, event: ChainEvent) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        market.status = MarketStatus.CANCELED.value
        if "reason" in event.args:
            market.cancel_reason = _str_arg(event, "reason")

        logger.info("MarketCanceled: {} ({})", market.address, market.cancel_reason or "no reason")
        return ApplyResult.APPLIED

    def _market_finalized(self, session: Session, event: ChainEvent) -> ApplyResult:
        market = self._load_market(session, event)
        if market is None:
            return ApplyResult.UNKNOWN_MARKET

        distributed = _uint_arg(event, "unclaimedReservesDistributed")
        market.finalized = True
        market.finalized_at = utcnow()
        market.unclaimed_reserves_distributed = distributed

        message = finalization_message(market)
        created = 0
        for position in MarketRepository(session).positions_with_lp_tokens(market.address):
            if self._notifier.notify(
                session,
                position.user_address,
                market.address,
                NotificationType.MARKET_FINALIZED,
                message,
            ):
                created += 1

        logger.info(
            "MarketFinalized: {} with {} distributed ({} LPs notified)",
            market.address,
            distributed,
            created,
        )
        return ApplyResult.APPLIED


__all__ = ["EventProcessor"]

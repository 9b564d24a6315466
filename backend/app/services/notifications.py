from __future__ import annotations

from loguru import logger
from sqlalchemy.orm import Session

from app.models import Market, NotificationType
from app.repositories import NotificationRepository


_TITLES = {
    NotificationType.MARKET_RESOLVED: "Market Resolved",
    NotificationType.MARKET_FINALIZED: "Unclaimed Reserves Available",
}


def resolution_message(market: Market) -> str:
    return (
        f'The market "{market.question}" has been resolved. '
        "Check if you have winnings to claim!"
    )


def finalization_message(market: Market) -> str:
    return (
        f'The market "{market.question}" has been finalized. Additional funds from '
        "unclaimed reserves are now available for LP withdrawal!"
    )


class NotificationEmitter:
    """Enqueue user-facing notices, at most one per (user, market, type)."""

    def notify(
        self,
        session: Session,
        user_address: str,
        market_address: str,
        type_: NotificationType,
        message: str,
        *,
        title: str | None = None,
    ) -> bool:
        """Create the notice and return True, or return False if it already exists."""

        repo = NotificationRepository(session)
        if repo.find(user_address, market_address, type_.value) is not None:
            logger.debug(
                "Notification {} for {} in {} already queued", type_.value, user_address, market_address
            )
            return False
        repo.create(
            user_address=user_address,
            market_address=market_address,
            type_=type_.value,
            title=title or _TITLES[type_],
            message=message,
        )
        return True

    def mark_read(self, session: Session, notification_id: int) -> bool:
        notification = NotificationRepository(session).get(notification_id)
        if notification is None:
            return False
        notification.is_read = True
        return True


__all__ = ["NotificationEmitter", "finalization_message", "resolution_message"]

"""Notification persistence helpers."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Notification


class NotificationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def find(self, user_address: str, market_address: str, type_: str) -> Notification | None:
        query = select(Notification).where(
            Notification.user_address == user_address.lower(),
            Notification.market_address == market_address.lower(),
            Notification.type == type_,
        )
        return self._session.execute(query).scalar_one_or_none()

    def create(
        self,
        *,
        user_address: str,
        market_address: str,
        type_: str,
        title: str,
        message: str,
    ) -> Notification:
        notification = Notification(
            user_address=user_address.lower(),
            market_address=market_address.lower(),
            type=type_,
            title=title,
            message=message,
            is_read=False,
        )
        self._session.add(notification)
        self._session.flush()
        return notification

    def get(self, notification_id: int) -> Notification | None:
        return self._session.get(Notification, notification_id)

    def list_for_user(self, user_address: str, *, unread_only: bool = False) -> list[Notification]:
        filters = [Notification.user_address == user_address.lower()]
        if unread_only:
            filters.append(Notification.is_read.is_(False))
        query = select(Notification).where(*filters).order_by(Notification.id.asc())
        return list(self._session.execute(query).scalars().all())


__all__ = ["NotificationRepository"]

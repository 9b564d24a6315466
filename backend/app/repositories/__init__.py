"""Repository abstractions for database interactions."""

from .activity_repository import ActivityRepository
from .market_repository import MarketRepository
from .notification_repository import NotificationRepository
from .sync_repository import SyncStateRepository

__all__ = [
    "ActivityRepository",
    "MarketRepository",
    "NotificationRepository",
    "SyncStateRepository",
]

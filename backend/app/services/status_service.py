"""Read-only snapshot of pipeline progress for operators."""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.repositories import MarketRepository, SyncStateRepository
from app.schemas import SyncStateOut, SyncStatus


class StatusService:
    """Report checkpoints and the watched market count from the projected store."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def sync_status(self) -> SyncStatus:
        checkpoints = [
            SyncStateOut.model_validate(record)
            for record in SyncStateRepository(self._session).list_all()
        ]
        return SyncStatus(
            checkpoints=checkpoints,
            watched_markets=MarketRepository(self._session).count_markets(),
        )


__all__ = ["StatusService"]

"""Checkpoint store: last fully committed block per watched contract."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain import CheckpointError
from app.models import SyncState


class SyncStateRepository:
    """Read and advance ``sync_state`` rows.

    Writes join the caller's transaction, so a checkpoint becomes durable in
    the same commit as the mutations of the window it covers. The stored
    block never regresses and never exceeds the confirmed head passed in.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, contract_name: str) -> int | None:
        record = self._session.get(SyncState, contract_name)
        return record.last_processed_block if record else None

    def set(self, contract_name: str, block: int, *, head: int) -> int:
        if block < 0:
            raise CheckpointError(f"Checkpoint for {contract_name} must be non-negative, got {block}")
        if block > head:
            raise CheckpointError(
                f"Checkpoint {block} for {contract_name} exceeds confirmed head {head}"
            )

        record = self._session.get(SyncState, contract_name)
        if record is None:
            record = SyncState(contract_name=contract_name, last_processed_block=block)
            self._session.add(record)
        elif block > record.last_processed_block:
            record.last_processed_block = block
        else:
            logger.debug(
                "Checkpoint for {} stays at {} (requested {})",
                contract_name,
                record.last_processed_block,
                block,
            )
        self._session.flush()
        return record.last_processed_block

    def list_all(self) -> list[SyncState]:
        query = select(SyncState).order_by(SyncState.contract_name.asc())
        return list(self._session.execute(query).scalars().all())


__all__ = ["SyncStateRepository"]

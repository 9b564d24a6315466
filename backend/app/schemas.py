from datetime import datetime

from pydantic import BaseModel, Field


class SyncStateOut(BaseModel):
    contract_name: str
    last_processed_block: int
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class SyncStatus(BaseModel):
    checkpoints: list[SyncStateOut] = Field(default_factory=list)
    watched_markets: int = 0

from __future__ import annotations

from fastapi import Depends, FastAPI

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .services.status_service import StatusService

app = FastAPI(title="Market Indexer API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _status_service(db=Depends(get_db)) -> StatusService:
    """Provide the status service wired with a SQLAlchemy session."""

    return StatusService(db)


@app.get("/sync-state", response_model=schemas.SyncStatus, tags=["system"])
def sync_state(service: StatusService = Depends(_status_service)):
    """Return per-contract checkpoints and the number of watched markets."""

    return service.sync_status()

"""Domain types and errors for the chain projection pipeline."""

from .errors import (
    BatchProcessingError,
    ChainClientError,
    CheckpointError,
    EventProcessingError,
    IndexerError,
    MalformedEventError,
)
from .models import (
    EVENT_PRECEDENCE,
    FACTORY_EVENTS,
    MARKET_EVENTS,
    ApplyResult,
    ChainEvent,
    EventName,
    LogWindow,
    WindowResult,
)

__all__ = [
    "ApplyResult",
    "BatchProcessingError",
    "ChainClientError",
    "ChainEvent",
    "CheckpointError",
    "EVENT_PRECEDENCE",
    "EventName",
    "EventProcessingError",
    "FACTORY_EVENTS",
    "IndexerError",
    "LogWindow",
    "MARKET_EVENTS",
    "MalformedEventError",
    "WindowResult",
]

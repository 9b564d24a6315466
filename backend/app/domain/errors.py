"""Exception taxonomy for the ingestion pipeline."""

from __future__ import annotations


class IndexerError(Exception):
    """Base class for ingestion failures."""


class ChainClientError(IndexerError):
    """Transient RPC failure (timeout, disconnect, node error) after client retries."""


class EventProcessingError(IndexerError):
    """An event could not be applied to the projected state."""


class MalformedEventError(EventProcessingError):
    """An event payload is missing arguments or carries values of the wrong shape."""


class CheckpointError(IndexerError):
    """A checkpoint would skip unprocessed blocks or pass the confirmed head."""


class BatchProcessingError(IndexerError):
    """A block window could not be committed; its checkpoint was not advanced."""

    def __init__(self, from_block: int, to_block: int, message: str) -> None:
        super().__init__(f"blocks {from_block}-{to_block}: {message}")
        self.from_block = from_block
        self.to_block = to_block

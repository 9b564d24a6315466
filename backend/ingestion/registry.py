"""In-memory registry of the contracts the pipeline watches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import ChainEvent, EventName
from app.repositories import MarketRepository


@dataclass(slots=True, frozen=True)
class WatchedMarket:
    address: str
    created_block: int
    created_log_index: int


class MarketRegistry:
    """Known market addresses in discovery order, plus the factory.

    Discovery order is ``(created_block, created_log_index)`` of the factory's
    creation event, which keeps per-market processing deterministic across
    restarts regardless of which component first saw a market.
    """

    def __init__(self, factory_address: str) -> None:
        self._factory_address = factory_address.lower()
        self._markets: dict[str, WatchedMarket] = {}

    @property
    def factory_address(self) -> str:
        return self._factory_address

    def load(self, session: Session) -> int:
        loaded = 0
        for market in MarketRepository(session).list_markets_in_discovery_order():
            if self.register(
                market.address,
                block=market.created_block,
                log_index=market.created_log_index,
            ):
                loaded += 1
        logger.info("Loaded {} known markets into the registry", loaded)
        return loaded

    def register(self, address: str, *, block: int, log_index: int) -> bool:
        normalized = address.lower()
        if normalized in self._markets:
            return False
        self._markets[normalized] = WatchedMarket(normalized, block, log_index)
        return True

    def register_created(self, event: ChainEvent) -> bool:
        if event.name is not EventName.MARKET_CREATED:
            return False
        address = event.market_address
        if not address:
            return False
        added = self.register(address, block=event.block_number, log_index=event.log_index)
        if added:
            logger.info("Watching new market {} (created at block {})", address, event.block_number)
        return added

    def _ordered(self) -> list[WatchedMarket]:
        return sorted(
            self._markets.values(),
            key=lambda item: (item.created_block, item.created_log_index, item.address),
        )

    def market_addresses(self) -> list[str]:
        return [item.address for item in self._ordered()]

    def watched_addresses(self) -> list[str]:
        return [self._factory_address, *self.market_addresses()]

    def snapshot(self) -> dict[str, WatchedMarket]:
        return dict(self._markets)

    def restore(self, markets: dict[str, WatchedMarket]) -> None:
        """Forget markets registered after ``markets`` was taken."""

        dropped = [address for address in self._markets if address not in markets]
        if dropped:
            logger.info("Unwatching {} uncommitted markets: {}", len(dropped), ", ".join(dropped))
        self._markets = dict(markets)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._markets

    def __len__(self) -> int:
        return len(self._markets)

    def __iter__(self) -> Iterator[str]:
        return iter(self.market_addresses())


__all__ = ["MarketRegistry", "WatchedMarket"]

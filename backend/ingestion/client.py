from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, TypeVar

import aiohttp
from loguru import logger
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from app.core.config import Settings, backoff_delay, settings
from app.domain import (
    BatchProcessingError,
    ChainClientError,
    ChainEvent,
    EventName,
    EventProcessingError,
    LogWindow,
    MARKET_EVENTS,
)

from .abi import EVENT_TOPICS
from .decode import decode_log

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    ValueError,
    OSError,
    asyncio.TimeoutError,
    aiohttp.ClientError,
)

_RANGE_ERROR_MARKERS = (
    "query returned more than",
    "too many results",
    "response size exceeded",
    "block range",
    "range is too large",
    "range too large",
)


class LogRangeTooLargeError(ChainClientError):
    """The node refused an ``eth_getLogs`` range; the caller should split it."""


def _is_range_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _RANGE_ERROR_MARKERS)


async def _wait_for_stop(stop_event: asyncio.Event, timeout: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        pass


class ChainClient:
    """Read-only async JSON-RPC client for the factory and market contracts.

    Every call is retried on transient failures with the configured backoff
    schedule and funnelled through a semaphore that caps concurrent requests.
    """

    def __init__(
        self,
        *,
        rpc_url: str | None = None,
        confirmations: int | None = None,
        timeout: float | None = None,
        retry_attempts: int | None = None,
        backoff: Sequence[float] | None = None,
        max_concurrency: int | None = None,
        poll_interval: float | None = None,
        max_window_blocks: int | None = None,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self.rpc_url = rpc_url or settings.rpc_url
        self.confirmations = settings.sync_confirmations if confirmations is None else confirmations
        self.timeout = timeout or settings.rpc_timeout_seconds
        self.retry_attempts = retry_attempts or settings.rpc_retry_attempts
        self.backoff = tuple(backoff) if backoff is not None else settings.retry_backoff_schedule
        self.poll_interval = poll_interval or settings.live_poll_interval_seconds
        self.max_window_blocks = max_window_blocks or settings.live_max_window_blocks
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.rpc_max_concurrent_requests)
        self._w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self.timeout)},
            )
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "ChainClient":
        return cls(
            rpc_url=config.rpc_url,
            confirmations=config.sync_confirmations,
            timeout=config.rpc_timeout_seconds,
            retry_attempts=config.rpc_retry_attempts,
            backoff=config.retry_backoff_schedule,
            max_concurrency=config.rpc_max_concurrent_requests,
            poll_interval=config.live_poll_interval_seconds,
            max_window_blocks=config.live_max_window_blocks,
        )

    # ------------------------------------------------------------------
    # Transport

    async def _call(self, description: str, request: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self._semaphore:
                    return await request()
            except TRANSIENT_ERRORS as exc:
                if _is_range_error(exc):
                    raise LogRangeTooLargeError(f"{description}: {exc}") from exc
                if attempt >= self.retry_attempts:
                    raise ChainClientError(
                        f"{description} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = backoff_delay(self.backoff, attempt)
                logger.warning(
                    "{} failed (attempt {}/{}): {}; retrying in {:.1f}s",
                    description,
                    attempt,
                    self.retry_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ChainClientError(f"{description} was never attempted")

    async def _get_logs(
        self,
        addresses: Sequence[str],
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[Any]:
        params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": [AsyncWeb3.to_checksum_address(address) for address in addresses],
            "topics": [list(topics)],
        }
        try:
            return list(
                await self._call(
                    f"eth_getLogs {from_block}-{to_block}",
                    lambda: self._w3.eth.get_logs(params),
                )
            )
        except LogRangeTooLargeError:
            if from_block >= to_block:
                raise
            middle = (from_block + to_block) // 2
            logger.warning(
                "eth_getLogs range {}-{} too large; splitting at {}", from_block, to_block, middle
            )
            lower = await self._get_logs(addresses, topics, from_block, middle)
            upper = await self._get_logs(addresses, topics, middle + 1, to_block)
            return lower + upper

    def _decode(self, raw_logs: Sequence[Any]) -> list[ChainEvent]:
        events = [event for event in (decode_log(log, self._w3.codec) for log in raw_logs) if event]
        events.sort(key=lambda event: (event.block_number, event.log_index))
        return events

    # ------------------------------------------------------------------
    # Queries

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", lambda: self._w3.eth.block_number))

    async def get_confirmed_head(self) -> int:
        return max(await self.get_block_number() - self.confirmations, 0)

    async def get_chain_id(self) -> int:
        return int(await self._call("eth_chainId", lambda: self._w3.eth.chain_id))

    async def fetch_events(
        self, address: str, name: EventName, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        raw = await self._get_logs([address], [EVENT_TOPICS[name]], from_block, to_block)
        return self._decode(raw)

    async def fetch_market_events(
        self, address: str, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        """Fetch every market event type for ``address`` concurrently, one query per type."""

        batches = await asyncio.gather(
            *(self.fetch_events(address, name, from_block, to_block) for name in MARKET_EVENTS)
        )
        return [event for batch in batches for event in batch]

    async def fetch_window(
        self, addresses: Sequence[str], from_block: int, to_block: int
    ) -> list[ChainEvent]:
        if not addresses:
            return []
        raw = await self._get_logs(addresses, list(EVENT_TOPICS.values()), from_block, to_block)
        return self._decode(raw)

    # ------------------------------------------------------------------
    # Live subscription

    async def subscribe(
        self,
        addresses: Callable[[], Sequence[str]],
        *,
        from_block: int,
        stop_event: asyncio.Event,
    ) -> AsyncIterator[LogWindow]:
        """Yield consecutive block windows of events for the watched addresses.

        ``addresses`` is re-read on every poll so newly registered markets join
        the subscription immediately. Transient failures re-subscribe from the
        first undelivered block; a window may therefore be delivered again after
        a failure, which consumers must tolerate. A window whose logs cannot be
        decoded raises ``BatchProcessingError`` for that window.
        """

        next_block = from_block
        failures = 0
        while not stop_event.is_set():
            try:
                head = await self.get_confirmed_head()
                if head >= next_block:
                    to_block = min(head, next_block + self.max_window_blocks - 1)
                    try:
                        events = await self.fetch_window(addresses(), next_block, to_block)
                    except EventProcessingError as exc:
                        logger.error("Live window {}-{} could not be decoded: {}", next_block, to_block, exc)
                        raise BatchProcessingError(next_block, to_block, str(exc)) from exc
                    window = LogWindow(from_block=next_block, to_block=to_block, head=head, events=events)
                else:
                    window = None
            except ChainClientError as exc:
                failures += 1
                delay = backoff_delay(self.backoff, failures)
                logger.warning(
                    "Live subscription interrupted ({}); resubscribing from block {} in {:.1f}s",
                    exc,
                    next_block,
                    delay,
                )
                await _wait_for_stop(stop_event, delay)
                continue

            failures = 0
            if window is None:
                await _wait_for_stop(stop_event, self.poll_interval)
                continue

            yield window
            next_block = window.to_block + 1

    async def close(self) -> None:
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def __aenter__(self) -> "ChainClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["ChainClient", "LogRangeTooLargeError", "TRANSIENT_ERRORS"]

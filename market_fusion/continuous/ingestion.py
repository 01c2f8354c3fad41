"""
Ingestion Layer - the engine's single inbound entry point.

Producers run at their own cadence and push raw payloads into an
`IngestQueue`; the engine drains it in arrival order on its task runner.

Queue semantics per (exchange, instrument, family):
- ticks and whale snapshots coalesce: a newer message supersedes the older one
- trade batches merge into one pending batch
- a message older than its max age at drain time is discarded
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp

from .data_types import SourceStatus, WhaleConsensus
from .scheduler import SystemClock

logger = logging.getLogger(__name__)


class MessageKind(Enum):
    TICK = "tick"
    TRADES = "trades"
    WHALES = "whales"


@dataclass
class IngestMessage:
    kind: MessageKind
    exchange: str
    instrument: str
    payload: Any
    received_ms: int
    max_age_ms: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str, MessageKind]:
        return (self.exchange, self.instrument, self.kind)

    def is_overdue(self, now_ms: int) -> bool:
        return self.max_age_ms is not None and now_ms - self.received_ms > self.max_age_ms


@dataclass
class QueueStats:
    enqueued: int = 0
    coalesced: int = 0
    merged: int = 0
    discarded: int = 0
    drained: int = 0


class IngestQueue:
    """
    Coalescing queue between producers and the engine.

    Usage:
        queue = IngestQueue(clock)
        queue.put_tick("binance", "BTC", raw, max_age_ms=5000)
        for message in queue.drain():
            ...
    """

    def __init__(self, clock=None):
        self._clock = clock or SystemClock()
        self._pending: "OrderedDict[Tuple[str, str, MessageKind], IngestMessage]" = OrderedDict()
        self.stats = QueueStats()

    def __len__(self) -> int:
        return len(self._pending)

    def _put(self, message: IngestMessage) -> None:
        self.stats.enqueued += 1
        if message.key in self._pending:
            del self._pending[message.key]
            self.stats.coalesced += 1
        self._pending[message.key] = message

    def put_tick(
        self,
        exchange: str,
        instrument: str,
        raw: Mapping[str, Any],
        max_age_ms: Optional[int] = None,
    ) -> None:
        self._put(IngestMessage(MessageKind.TICK, exchange, instrument.upper(), raw, self._clock.now(), max_age_ms))

    def put_whale_consensus(self, consensus: WhaleConsensus, exchange: str, max_age_ms: Optional[int] = None) -> None:
        self._put(
            IngestMessage(
                MessageKind.WHALES, exchange, consensus.instrument.upper(), consensus, self._clock.now(), max_age_ms
            )
        )

    def put_trades(
        self,
        exchange: str,
        instrument: str,
        raw_trades: List[Mapping[str, Any]],
        max_age_ms: Optional[int] = None,
    ) -> None:
        """Queue a trade batch, merging into a pending batch for the same key."""
        if not raw_trades:
            return
        instrument = instrument.upper()
        key = (exchange, instrument, MessageKind.TRADES)
        self.stats.enqueued += 1
        pending = self._pending.get(key)
        if pending is not None:
            pending.payload.extend(raw_trades)
            pending.received_ms = self._clock.now()
            pending.max_age_ms = max_age_ms
            self.stats.merged += 1
            return
        self._pending[key] = IngestMessage(
            MessageKind.TRADES, exchange, instrument, list(raw_trades), self._clock.now(), max_age_ms
        )

    def drain(self) -> List[IngestMessage]:
        """Remove and return pending messages in arrival order, minus overdue ones."""
        now = self._clock.now()
        messages = []
        while self._pending:
            _, message = self._pending.popitem(last=False)
            if message.is_overdue(now):
                self.stats.discarded += 1
                logger.debug(
                    f"Discarded overdue {message.kind.value} for {message.exchange}/{message.instrument}"
                )
                continue
            messages.append(message)
        self.stats.drained += len(messages)
        return messages


@dataclass
class FetchResult:
    """What one producer fetch delivers for one exchange."""

    exchange: str
    ticks: Dict[str, Mapping[str, Any]] = field(default_factory=dict)
    trades: Dict[str, List[Mapping[str, Any]]] = field(default_factory=dict)
    whales: List[WhaleConsensus] = field(default_factory=list)


FetchFn = Callable[[Optional[aiohttp.ClientSession]], Awaitable[FetchResult]]


async def http_json_fetch(
    session: aiohttp.ClientSession,
    url: str,
    method: str = "GET",
    payload: Optional[Any] = None,
    timeout_ms: Optional[int] = None,
) -> Any:
    """
    Fetch a JSON document.

    Raises aiohttp.ClientError (including ClientResponseError on a non-2xx
    status) or asyncio.TimeoutError.
    """
    timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000) if timeout_ms else None
    async with session.request(method.upper(), url, json=payload, timeout=timeout) as resp:
        resp.raise_for_status()
        return await resp.json(content_type=None)


class PollingProducer:
    """
    Polls an injected fetch coroutine at a fixed interval and queues the result.

    Results carry the interval as their max age. Failures are recorded on the
    producer's status and the next interval is simply waited out.

    Usage:
        async def fetch(session):
            data = await http_json_fetch(session, url, "POST", {"type": "metaAndAssetCtxs"})
            return FetchResult(exchange="hyperliquid", ticks=parse(data))

        producer = PollingProducer("tick.hyperliquid", 60_000, fetch, queue)
        await producer.start()
    """

    def __init__(
        self,
        name: str,
        interval_ms: int,
        fetch: FetchFn,
        queue: IngestQueue,
        clock=None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.name = name
        self.interval_ms = interval_ms
        self._fetch = fetch
        self._queue = queue
        self._clock = clock or SystemClock()
        self._session = session
        self._owns_session = False
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self.status = SourceStatus(name=name)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started producer {self.name} every {self.interval_ms}ms")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def run_once(self) -> bool:
        """Fetch once and queue the result. Returns False on failure."""
        now = self._clock.now()
        try:
            result = await asyncio.wait_for(self._fetch(self._session), timeout=self.interval_ms / 1000)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.status.record_error(str(e) or type(e).__name__, now)
            logger.warning(f"Producer {self.name} fetch failed: {e!r}")
            return False

        self._push(result)
        self.status.record_success(self._clock.now())
        return True

    def _push(self, result: FetchResult) -> None:
        for instrument, raw in result.ticks.items():
            self._queue.put_tick(result.exchange, instrument, raw, self.interval_ms)
        for instrument, raw_trades in result.trades.items():
            self._queue.put_trades(result.exchange, instrument, raw_trades, self.interval_ms)
        for consensus in result.whales:
            self._queue.put_whale_consensus(consensus, result.exchange, self.interval_ms)

    async def _run(self) -> None:
        while self._running:
            try:
                started = self._clock.now()
                await self.run_once()
                elapsed = self._clock.now() - started
                await self._clock.sleep(max(0, self.interval_ms - elapsed))
            except asyncio.CancelledError:
                break

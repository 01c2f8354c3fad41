"""
CVD Accumulator.

Turns trade batches into cumulative volume delta:

    recentBuy   = Σ(price·size) over BUY trades in the batch
    recentSell  = Σ(price·size) over SELL trades in the batch
    recentDelta = recentBuy - recentSell

Each batch appends one `{delta, timestamp}` increment to the CVD ledger (a
rolling series in the history registry) and updates the running scalars.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .data_types import Side, TradeEvent
from .history_registry import HistoryFamily, HistoryRegistry

logger = logging.getLogger(__name__)


@dataclass
class CvdState:
    """Running scalars for one (exchange, instrument)."""

    session_delta: float = 0.0
    total_buy: float = 0.0
    total_sell: float = 0.0
    recent_delta: float = 0.0
    last_increment: float = 0.0  # recent_delta of the previous batch
    batches: int = 0

    @property
    def trend(self) -> float:
        """Change of the latest increment versus the one before it."""
        return self.recent_delta - self.last_increment


@dataclass
class CvdUpdate:
    """Result of one applied batch."""

    exchange: str
    instrument: str
    timestamp_ms: int
    recent_buy: float
    recent_sell: float
    recent_delta: float
    trades: int
    duplicates: int
    fresh_trades: List[TradeEvent] = field(default_factory=list)


class TradeDeduplicator:
    """Bounded memory of seen (exchange, trade_id) keys."""

    def __init__(self, max_keys: int = 50_000):
        self._seen: "OrderedDict[Tuple[str, str], None]" = OrderedDict()
        self._max_keys = max_keys

    def is_new(self, key: Tuple[str, str]) -> bool:
        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > self._max_keys:
            self._seen.popitem(last=False)
        return True

    def __len__(self) -> int:
        return len(self._seen)


class CvdAccumulator:
    """
    Per-(exchange, instrument) CVD tracking backed by the history registry.

    Usage:
        acc = CvdAccumulator(registry)
        acc.apply_trades("hyperliquid", "BTC", trades, now_ms)
        acc.rolling_delta("hyperliquid", "BTC", 5 * 60_000, now_ms)
    """

    def __init__(self, registry: HistoryRegistry, dedupe_max_keys: int = 50_000):
        self._registry = registry
        self._states: Dict[Tuple[str, str], CvdState] = {}
        self._dedupe = TradeDeduplicator(dedupe_max_keys)

    def state(self, exchange: str, instrument: str) -> CvdState:
        key = (exchange, instrument)
        if key not in self._states:
            self._states[key] = CvdState()
        return self._states[key]

    def has_state(self, exchange: str, instrument: str) -> bool:
        return (exchange, instrument) in self._states

    def apply_trades(
        self,
        exchange: str,
        instrument: str,
        trades: Iterable[TradeEvent],
        now_ms: int,
    ) -> Optional[CvdUpdate]:
        """
        Apply one trade batch.

        Duplicate trades are skipped. A batch with no new trades leaves the
        ledger and scalars untouched and returns None.
        """
        recent_buy = 0.0
        recent_sell = 0.0
        fresh: List[TradeEvent] = []
        duplicates = 0
        for trade in trades:
            if not self._dedupe.is_new(trade.key):
                duplicates += 1
                continue
            fresh.append(trade)
            if trade.side is Side.BUY:
                recent_buy += trade.notional
            else:
                recent_sell += trade.notional

        if duplicates:
            logger.debug(f"Skipped {duplicates} duplicate trades for {exchange}/{instrument}")
        if not fresh:
            return None

        recent_delta = recent_buy - recent_sell
        series = self._registry.series(exchange, instrument, HistoryFamily.CVD)
        newest = series.newest()
        # Two batches in the same millisecond still get distinct ledger slots.
        timestamp_ms = now_ms if newest is None or now_ms > newest.timestamp_ms else newest.timestamp_ms + 1
        series.append(timestamp_ms, recent_delta, now_ms)

        state = self.state(exchange, instrument)
        state.last_increment = state.recent_delta
        state.recent_delta = recent_delta
        state.session_delta += recent_delta
        state.total_buy += recent_buy
        state.total_sell += recent_sell
        state.batches += 1

        return CvdUpdate(
            exchange=exchange,
            instrument=instrument,
            timestamp_ms=timestamp_ms,
            recent_buy=recent_buy,
            recent_sell=recent_sell,
            recent_delta=recent_delta,
            trades=len(fresh),
            duplicates=duplicates,
            fresh_trades=fresh,
        )

    def ledger(self, exchange: str, instrument: str) -> List[Tuple[int, float]]:
        return self._registry.snapshot(exchange, instrument, HistoryFamily.CVD)

    def rolling_delta(self, exchange: str, instrument: str, window_ms: int, now_ms: int) -> float:
        """Σ of ledger increments newer than now - window."""
        cutoff = now_ms - window_ms
        return sum(delta for ts, delta in self.ledger(exchange, instrument) if ts > cutoff)

    def timeframe_delta(self, exchange: str, instrument: str, timeframe_minutes: int, now_ms: int) -> float:
        return self.rolling_delta(exchange, instrument, timeframe_minutes * 60_000, now_ms)

    def trend(self, exchange: str, instrument: str) -> float:
        return self.state(exchange, instrument).trend

    def reset(self) -> None:
        self._states.clear()

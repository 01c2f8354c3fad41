"""
Rolling History Registry.

Lazily creates one RollingSeries per (exchange, instrument, family) and
tracks which exchanges hold unflushed changes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .rolling_series import RollingSeries


class HistoryFamily(Enum):
    """Metric families kept per (exchange, instrument)."""

    PRICE = "price"
    OI = "oi"
    ORDERBOOK = "orderbook"
    FUNDING = "funding"
    CVD = "cvd"


@dataclass(frozen=True)
class FamilyBounds:
    ttl_ms: int
    max_entries: int


SeriesKey = Tuple[str, str, HistoryFamily]


class HistoryRegistry:
    """
    Registry of rolling series.

    Example:
        registry = HistoryRegistry(bounds)
        registry.append("binance", "BTC", HistoryFamily.PRICE, ts, 100.0)
        registry.snapshot("binance", "BTC", HistoryFamily.PRICE)
    """

    def __init__(self, bounds: Dict[HistoryFamily, FamilyBounds]):
        missing = [f for f in HistoryFamily if f not in bounds]
        if missing:
            raise ValueError(f"Missing bounds for families: {[f.value for f in missing]}")
        self._bounds = dict(bounds)
        self._series: Dict[SeriesKey, RollingSeries[float]] = {}
        self._dirty: Set[str] = set()

    def series(self, exchange: str, instrument: str, family: HistoryFamily) -> RollingSeries[float]:
        """Get or lazily create a series."""
        key = (exchange, instrument, family)
        series = self._series.get(key)
        if series is None:
            bounds = self._bounds[family]
            series = RollingSeries(
                name=f"{exchange}/{instrument}/{family.value}",
                ttl_ms=bounds.ttl_ms,
                max_entries=bounds.max_entries,
                on_dirty=lambda _name, ex=exchange: self._dirty.add(ex),
            )
            self._series[key] = series
        return series

    def get(self, exchange: str, instrument: str, family: HistoryFamily) -> Optional[RollingSeries[float]]:
        return self._series.get((exchange, instrument, family))

    def append(
        self,
        exchange: str,
        instrument: str,
        family: HistoryFamily,
        timestamp_ms: int,
        value: float,
        now_ms: Optional[int] = None,
    ) -> bool:
        return self.series(exchange, instrument, family).append(timestamp_ms, value, now_ms)

    def snapshot(self, exchange: str, instrument: str, family: HistoryFamily) -> List[Tuple[int, float]]:
        series = self._series.get((exchange, instrument, family))
        return series.snapshot() if series is not None else []

    def keys(self) -> Iterable[SeriesKey]:
        return list(self._series.keys())

    def exchanges(self) -> Set[str]:
        return {key[0] for key in self._series}

    def instruments(self, exchange: str) -> Set[str]:
        return {key[1] for key in self._series if key[0] == exchange}

    def evict_all(self, now_ms: int) -> int:
        """Age-trim every series. Returns entries dropped."""
        return sum(series.evict(now_ms) for series in self._series.values())

    # === Dirty tracking ===

    def dirty_exchanges(self) -> Set[str]:
        return set(self._dirty)

    def mark_dirty(self, exchange: str) -> None:
        self._dirty.add(exchange)

    def clear_dirty(self, exchange: Optional[str] = None) -> None:
        if exchange is None:
            self._dirty.clear()
        else:
            self._dirty.discard(exchange)

    def reset(self, exchange: Optional[str] = None) -> None:
        """Drop series (all, or one exchange)."""
        if exchange is None:
            self._series.clear()
            self._dirty.clear()
            return
        for key in [k for k in self._series if k[0] == exchange]:
            del self._series[key]
        self._dirty.add(exchange)

    def stats(self) -> Dict[str, int]:
        return {
            "/".join((k[0], k[1], k[2].value)): len(series)
            for k, series in self._series.items()
        }

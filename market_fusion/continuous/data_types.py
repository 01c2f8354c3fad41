"""
Core data types for the fusion engine.

These are the atomic units flowing from producers into the engine.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# =============================================================================
# EXCHANGE REGISTRY
# =============================================================================


class ExchangeStatus(Enum):
    """Integration status of an exchange."""

    ACTIVE = "active"
    API_REQUIRED = "api_required"
    COMING_SOON = "coming_soon"


@dataclass(frozen=True)
class ExchangeInfo:
    """
    Static per-exchange profile.

    `oi_in_base_units`: raw OI is quoted in contracts/base asset and must be
    multiplied by the mark price to reach quote notional.
    `value_scale`: fixed-point divisor applied to raw prices and funding rates.
    """

    id: str
    name: str
    status: ExchangeStatus
    features: Tuple[str, ...] = ()
    orderbook_levels: int = 10
    oi_in_base_units: bool = True
    value_scale: float = 1.0
    funding_periods_per_day: int = 3

    @property
    def is_active(self) -> bool:
        return self.status is ExchangeStatus.ACTIVE


EXCHANGES: Dict[str, ExchangeInfo] = {
    "hyperliquid": ExchangeInfo(
        id="hyperliquid",
        name="Hyperliquid",
        status=ExchangeStatus.ACTIVE,
        features=("market", "orderbook", "funding", "leaderboard", "whales", "cvd"),
    ),
    "binance": ExchangeInfo(
        id="binance",
        name="Binance",
        status=ExchangeStatus.ACTIVE,
        features=("market", "orderbook", "funding", "cvd"),
    ),
    "bybit": ExchangeInfo(
        id="bybit",
        name="Bybit",
        status=ExchangeStatus.ACTIVE,
        features=("market", "orderbook", "funding", "cvd"),
    ),
    "nado": ExchangeInfo(
        id="nado",
        name="Nado",
        status=ExchangeStatus.ACTIVE,
        features=("market", "orderbook", "funding"),
        value_scale=1e18,
    ),
    "asterdex": ExchangeInfo(
        id="asterdex",
        name="AsterDex",
        status=ExchangeStatus.ACTIVE,
        features=("market", "orderbook", "funding"),
    ),
    "lighter": ExchangeInfo(
        id="lighter",
        name="Lighter",
        status=ExchangeStatus.API_REQUIRED,
        features=("market", "orderbook", "funding", "trades"),
    ),
    "variational": ExchangeInfo(
        id="variational",
        name="Variational",
        status=ExchangeStatus.COMING_SOON,
    ),
}

DEFAULT_EXCHANGE = "hyperliquid"


def get_exchange(exchange_id: str) -> Optional[ExchangeInfo]:
    return EXCHANGES.get(exchange_id.lower()) if exchange_id else None


def active_exchanges() -> List[str]:
    return [e.id for e in EXCHANGES.values() if e.is_active]


# =============================================================================
# NORMALIZED EVENTS
# =============================================================================


class Side(Enum):
    """Aggressor side of a trade."""

    BUY = "BUY"
    SELL = "SELL"


@dataclass(slots=True)
class OrderbookTop:
    """Aggregated top-N orderbook, depths in quote currency."""

    bid_depth: float
    ask_depth: float

    @property
    def imbalance(self) -> float:
        """(bid - ask) / (bid + ask) * 100, 0 for an empty book."""
        total = self.bid_depth + self.ask_depth
        if total <= 0:
            return 0.0
        return (self.bid_depth - self.ask_depth) / total * 100


@dataclass(slots=True)
class InstrumentTick:
    """One normalized snapshot per (exchange, instrument)."""

    exchange: str
    instrument: str
    timestamp_ms: int
    price: float
    open_interest: float  # quote notional
    funding_rate: Optional[float] = None
    orderbook: Optional[OrderbookTop] = None

    @property
    def has_funding(self) -> bool:
        return self.funding_rate is not None

    @property
    def has_orderbook(self) -> bool:
        return self.orderbook is not None


@dataclass(slots=True)
class TradeEvent:
    """Single normalized trade; deduplicated by (exchange, trade_id)."""

    exchange: str
    instrument: str
    timestamp_ms: int
    price: float
    size: float  # base units
    side: Side
    trade_id: str

    @property
    def is_buy(self) -> bool:
        return self.side is Side.BUY

    @property
    def notional(self) -> float:
        """Trade value in quote currency."""
        return self.price * self.size

    @property
    def key(self) -> Tuple[str, str]:
        return (self.exchange, self.trade_id)


@dataclass
class WhalePosition:
    """A top trader's position on an instrument."""

    address: str
    size: float
    notional: float = 0.0
    entry_price: Optional[float] = None
    is_consistent: bool = False  # flagged as a consistent winner upstream


@dataclass
class WhaleConsensus:
    """Top-K long/short positions for one instrument on the primary exchange."""

    instrument: str
    longs: List[WhalePosition] = field(default_factory=list)
    shorts: List[WhalePosition] = field(default_factory=list)
    total_notional: float = 0.0
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def total(self) -> int:
        return len(self.longs) + len(self.shorts)


@dataclass
class WhaleTrade:
    """A trade above the whale notional threshold."""

    trade: TradeEvent
    threshold: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange": self.trade.exchange,
            "instrument": self.trade.instrument,
            "side": self.trade.side.value,
            "price": self.trade.price,
            "size": self.trade.size,
            "notional": self.trade.notional,
            "timestamp": self.trade.timestamp_ms,
            "tradeId": self.trade.trade_id,
        }


# =============================================================================
# STATUS
# =============================================================================


@dataclass
class SourceStatus:
    """Health of one producer or data source."""

    name: str
    messages_received: int = 0
    dropped: int = 0
    error_count: int = 0
    last_message_time: Optional[int] = None
    last_success_ms: Optional[int] = None
    last_error: Optional[str] = None

    def record_success(self, now_ms: int) -> None:
        self.messages_received += 1
        self.last_message_time = now_ms
        self.last_success_ms = now_ms

    def record_error(self, error: str, now_ms: Optional[int] = None) -> None:
        self.error_count += 1
        self.last_error = error
        if now_ms is not None:
            self.last_message_time = now_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "messages_received": self.messages_received,
            "dropped": self.dropped,
            "error_count": self.error_count,
            "last_message_time": self.last_message_time,
            "last_success_ms": self.last_success_ms,
            "last_error": self.last_error,
        }

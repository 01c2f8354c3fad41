"""
Snapshot Normalizer.

Converts raw per-exchange payloads into `InstrumentTick` / `TradeEvent`.

Raw tick payload (keys accepted in either spelling):

    {
        "timestamp_ms": 1700000000000,          # optional, defaults to now
        "price": "43000.5",                     # mark price ("markPx", "mark_price")
        "open_interest": "1234.5",              # base units unless the exchange
                                                # profile says quote ("openInterest")
        "funding_rate": "0.0001",               # optional ("funding", "fundingRate")
        "bids": [[px, sz], ...],                # or [{"px": .., "sz": ..}, ...]
        "asks": [[px, sz], ...],
    }

Raw trade payload:

    {"px": "43000", "sz": "0.5", "side": "B" | "A" | "BUY" | "SELL",
     "time": 1700000000000, "tid": 123}
    Binance-style {"p", "q", "m", "T", "a"} is also accepted
    (m = buyer is maker -> SELL aggression).

Invalid fields never raise out of this module: the tick is dropped, a
warning is logged and the drop is counted on the exchange's SourceStatus.
"""

import logging
import math
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import InvalidInputError
from .data_types import (
    EXCHANGES,
    ExchangeInfo,
    InstrumentTick,
    OrderbookTop,
    Side,
    SourceStatus,
    TradeEvent,
)

logger = logging.getLogger(__name__)

_PRICE_KEYS = ("price", "markPx", "mark_price", "markPrice")
_OI_KEYS = ("open_interest", "openInterest", "oi")
_FUNDING_KEYS = ("funding_rate", "fundingRate", "funding", "lastFundingRate")
_TIMESTAMP_KEYS = ("timestamp_ms", "timestamp", "time", "T")

_BUY_SIDES = {"B", "BUY", "BID"}
_SELL_SIDES = {"A", "S", "SELL", "ASK"}


def _first(raw: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _to_float(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(name, value, "not a number") from exc
    if not math.isfinite(number):
        raise InvalidInputError(name, value, "not finite")
    return number


def _positive(name: str, value: Any) -> float:
    number = _to_float(name, value)
    if number <= 0:
        raise InvalidInputError(name, value, "must be positive")
    return number


def _timestamp(raw: Mapping[str, Any], now_ms: int) -> int:
    value = _first(raw, _TIMESTAMP_KEYS)
    if value is None:
        return now_ms
    ts = _to_float("timestamp_ms", value)
    if ts <= 0:
        raise InvalidInputError("timestamp_ms", value, "must be positive")
    return int(ts)


def _level(side: str, level: Any, scale: float) -> tuple:
    if isinstance(level, Mapping):
        px, sz = level.get("px", level.get("price")), level.get("sz", level.get("size"))
    else:
        try:
            px, sz = level[0], level[1]
        except (TypeError, IndexError, KeyError) as exc:
            raise InvalidInputError(f"{side}.level", level, "malformed level") from exc
    return _positive(f"{side}.px", px) / scale, _positive(f"{side}.sz", sz)


def aggregate_levels(levels: Optional[Iterable[Any]], side: str, depth: int, scale: float = 1.0) -> float:
    """Σ(price × size) over the top `depth` levels."""
    if not levels:
        return 0.0
    total = 0.0
    for i, level in enumerate(levels):
        if i >= depth:
            break
        px, sz = _level(side, level, scale)
        total += px * sz
    return total


def parse_side(raw: Mapping[str, Any]) -> Side:
    if "m" in raw and "side" not in raw:
        # Binance aggTrade: buyer is maker -> seller aggressed
        return Side.SELL if raw["m"] else Side.BUY
    value = str(raw.get("side", "")).strip().upper()
    if value in _BUY_SIDES:
        return Side.BUY
    if value in _SELL_SIDES:
        return Side.SELL
    raise InvalidInputError("side", raw.get("side"), "unknown side")


class SnapshotNormalizer:
    """
    Normalizes raw producer payloads for a closed set of exchanges.

    Usage:
        normalizer = SnapshotNormalizer()
        tick = normalizer.normalize_tick("binance", "BTC", raw)
        if tick is None:
            ...  # dropped, warning already logged
    """

    def __init__(self, exchanges: Optional[Dict[str, ExchangeInfo]] = None, clock=None):
        self._exchanges = exchanges if exchanges is not None else EXCHANGES
        self._clock = clock
        self._status: Dict[str, SourceStatus] = {}

    def _now(self) -> int:
        if self._clock is not None:
            return self._clock.now()
        return int(time.time() * 1000)

    def status(self, exchange: str) -> SourceStatus:
        if exchange not in self._status:
            self._status[exchange] = SourceStatus(name=f"normalizer.{exchange}")
        return self._status[exchange]

    def all_status(self) -> Dict[str, SourceStatus]:
        return dict(self._status)

    def profile(self, exchange: str) -> ExchangeInfo:
        info = self._exchanges.get(exchange)
        if info is None:
            raise InvalidInputError("exchange", exchange, "unknown exchange")
        if not info.is_active:
            raise InvalidInputError("exchange", exchange, f"exchange status is {info.status.value}")
        return info

    def _drop(self, exchange: str, what: str, error: InvalidInputError) -> None:
        status = self.status(exchange)
        status.dropped += 1
        status.last_error = str(error)
        logger.warning(f"Dropped {what} from {exchange}: {error}")

    # === Ticks ===

    def normalize_tick(
        self,
        exchange: str,
        instrument: str,
        raw: Mapping[str, Any],
        now_ms: Optional[int] = None,
    ) -> Optional[InstrumentTick]:
        """Normalize a raw snapshot; returns None when the tick is dropped."""
        now_ms = self._now() if now_ms is None else now_ms
        try:
            tick = self._build_tick(exchange, instrument.upper(), raw, now_ms)
        except InvalidInputError as e:
            self._drop(exchange, f"{instrument} tick", e)
            return None
        self.status(exchange).record_success(now_ms)
        return tick

    def _build_tick(
        self,
        exchange: str,
        instrument: str,
        raw: Mapping[str, Any],
        now_ms: int,
    ) -> InstrumentTick:
        if not isinstance(raw, Mapping):
            raise InvalidInputError("payload", type(raw).__name__, "expected a mapping")
        info = self.profile(exchange)
        scale = info.value_scale

        price = _positive("price", _first(raw, _PRICE_KEYS)) / scale
        oi_raw = _positive("open_interest", _first(raw, _OI_KEYS))
        open_interest = oi_raw * price if info.oi_in_base_units else oi_raw

        funding_rate = None
        funding_value = _first(raw, _FUNDING_KEYS)
        if funding_value is not None:
            funding_rate = _to_float("funding_rate", funding_value) / scale

        orderbook = None
        if raw.get("bids") is not None or raw.get("asks") is not None:
            orderbook = OrderbookTop(
                bid_depth=aggregate_levels(raw.get("bids"), "bids", info.orderbook_levels, scale),
                ask_depth=aggregate_levels(raw.get("asks"), "asks", info.orderbook_levels, scale),
            )

        return InstrumentTick(
            exchange=exchange,
            instrument=instrument,
            timestamp_ms=_timestamp(raw, now_ms),
            price=price,
            open_interest=open_interest,
            funding_rate=funding_rate,
            orderbook=orderbook,
        )

    # === Trades ===

    def normalize_trades(
        self,
        exchange: str,
        instrument: str,
        raw_trades: Optional[Iterable[Mapping[str, Any]]],
        now_ms: Optional[int] = None,
    ) -> List[TradeEvent]:
        """Normalize a trade batch; invalid trades are dropped individually."""
        now_ms = self._now() if now_ms is None else now_ms
        instrument = instrument.upper()
        try:
            info = self.profile(exchange)
        except InvalidInputError as e:
            self._drop(exchange, f"{instrument} trade batch", e)
            return []

        trades: List[TradeEvent] = []
        for raw in raw_trades or []:
            try:
                trades.append(self._build_trade(info, instrument, raw, now_ms))
            except InvalidInputError as e:
                self._drop(exchange, f"{instrument} trade", e)
        if trades:
            self.status(exchange).record_success(now_ms)
        return trades

    def _build_trade(
        self,
        info: ExchangeInfo,
        instrument: str,
        raw: Mapping[str, Any],
        now_ms: int,
    ) -> TradeEvent:
        if not isinstance(raw, Mapping):
            raise InvalidInputError("trade", type(raw).__name__, "expected a mapping")
        price = _positive("px", _first(raw, ("px", "p", "price"))) / info.value_scale
        size = _positive("sz", _first(raw, ("sz", "q", "size", "qty")))
        trade_id = _first(raw, ("tid", "a", "trade_id", "id", "hash"))
        if trade_id is None:
            raise InvalidInputError("tid", None, "missing trade id")
        return TradeEvent(
            exchange=info.id,
            instrument=instrument,
            timestamp_ms=_timestamp(raw, now_ms),
            price=price,
            size=size,
            side=parse_side(raw),
            trade_id=str(trade_id),
        )

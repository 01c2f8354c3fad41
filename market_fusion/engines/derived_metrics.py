"""
Derived Metrics Layer

Pure transformations from rolling-series snapshots to a Timeframe Projection:

    price / oi      -> change over the window (falls back to session change)
    orderbook       -> mean imbalance over the window
    cvd             -> summed delta over the window
    funding         -> current rate + 1h trend

Inputs are plain `(timestamp_ms, value)` sequences so the functions never
touch mutable engine state.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .fusion_config import (
    MINUTE_MS,
    TIMEFRAME_LABELS,
    ClassifierConfig,
    DEFAULT_CONFIG,
    pct_change,
)
from .signals import Direction, sign_of

Entry = Tuple[int, float]


# =============================================================================
# PROJECTION TYPES
# =============================================================================


@dataclass
class MetricProjection:
    """A scalar metric (price or OI) projected onto a window."""
    current: float
    session_start: Optional[float]
    session_change: float
    timeframe_change: Optional[float] = None
    has_timeframe_data: bool = False
    reference: Optional[float] = None  # oldest value inside the window
    reason: str = ""

    @property
    def change(self) -> float:
        """Timeframe change when available, else session change."""
        if self.has_timeframe_data and self.timeframe_change is not None:
            return self.timeframe_change
        return self.session_change


@dataclass
class OrderbookProjection:
    imbalance: float = 0.0
    avg_imbalance: float = 0.0
    bid_depth: float = 0.0
    ask_depth: float = 0.0
    has_timeframe_data: bool = False
    sample_count: int = 0


@dataclass
class CvdProjection:
    timeframe_delta: float = 0.0
    session_delta: float = 0.0
    recent_delta: float = 0.0
    trend: float = 0.0
    total_buy: float = 0.0
    total_sell: float = 0.0
    has_timeframe_data: bool = False


@dataclass
class FundingTrend:
    """Funding rate drift over the trend window."""
    delta: float = 0.0  # raw rate difference
    trend: float = 0.0  # delta scaled by 1e4
    label: str = "stable"
    direction: Direction = Direction.FLAT


@dataclass
class FundingProjection:
    rate: float = 0.0
    annualized_pct: float = 0.0
    trend: FundingTrend = field(default_factory=FundingTrend)
    available: bool = False


@dataclass
class OIVelocity:
    velocity: float = 0.0
    label: str = "stable"
    direction: Direction = Direction.FLAT
    has_timeframe_data: bool = False


@dataclass
class TimeframeProjection:
    """Everything the classifiers need for one (instrument, timeframe)."""
    instrument: str
    timeframe: Optional[int]  # minutes; None = session based
    timestamp_ms: int
    price: MetricProjection
    oi: MetricProjection
    orderbook: OrderbookProjection
    cvd: CvdProjection
    funding: FundingProjection
    oi_velocity: OIVelocity = field(default_factory=OIVelocity)

    @property
    def label(self) -> str:
        if self.timeframe is None:
            return "session"
        return TIMEFRAME_LABELS.get(self.timeframe, f"{self.timeframe}m")

    @property
    def has_timeframe_data(self) -> bool:
        return self.price.has_timeframe_data and self.oi.has_timeframe_data

    @property
    def price_change(self) -> float:
        return self.price.change

    @property
    def oi_change(self) -> float:
        return self.oi.change

    @property
    def cvd_delta(self) -> float:
        return self.cvd.timeframe_delta

    def missing_data(self) -> Dict[str, bool]:
        return {
            "price": not self.price.has_timeframe_data,
            "oi": not self.oi.has_timeframe_data,
            "orderbook": not self.orderbook.has_timeframe_data,
            "cvd": not self.cvd.has_timeframe_data,
        }


# =============================================================================
# WINDOW RESOLUTION
# =============================================================================


def oldest_in_window(entries: Sequence[Entry], now_ms: int, window_ms: int) -> Optional[Entry]:
    """
    Oldest entry within [now - window, now] that predates the newest entry.

    The newest entry is the current tick, so a window holding only that tick
    has no reference point.
    """
    if len(entries) < 2:
        return None
    cutoff = now_ms - window_ms
    newest_ts = entries[-1][0]
    for ts, value in entries:
        if ts > now_ms:
            break
        if ts >= cutoff:
            return (ts, value) if ts < newest_ts else None
    return None


def timeframe_change(
    entries: Sequence[Entry],
    current: float,
    now_ms: int,
    window_ms: int,
) -> Optional[float]:
    """Percent change from the oldest in-window value to current, None if unavailable."""
    reference = oldest_in_window(entries, now_ms, window_ms)
    if reference is None:
        return None
    return pct_change(current, reference[1])


def project_metric(
    entries: Sequence[Entry],
    session_start: Optional[float],
    now_ms: int,
    window_ms: Optional[int],
) -> MetricProjection:
    """Project a price/OI series; `window_ms=None` gives a session-only projection."""
    current = entries[-1][1] if entries else 0.0
    session_change = pct_change(current, session_start) if entries else None
    projection = MetricProjection(
        current=current,
        session_start=session_start,
        session_change=session_change or 0.0,
    )
    if not entries:
        projection.reason = "No data"
        return projection
    if window_ms is None:
        projection.reason = "Session based"
        return projection

    reference = oldest_in_window(entries, now_ms, window_ms)
    change = pct_change(current, reference[1]) if reference else None
    if change is None:
        projection.reason = "Insufficient data in window, using session change"
        return projection

    projection.timeframe_change = change
    projection.has_timeframe_data = True
    projection.reference = reference[1]
    return projection


def average_imbalance(entries: Sequence[Entry], now_ms: int, window_ms: int) -> Optional[float]:
    """Mean imbalance of samples within the window, None if the window is empty."""
    cutoff = now_ms - window_ms
    values = [v for ts, v in entries if cutoff <= ts <= now_ms]
    if not values:
        return None
    return sum(values) / len(values)


def recent_average(entries: Sequence[Entry], count: int) -> float:
    """Mean of the last `count` samples, 0 if empty."""
    tail = entries[-count:] if count > 0 else []
    if not tail:
        return 0.0
    return sum(v for _, v in tail) / len(tail)


def project_orderbook(
    entries: Sequence[Entry],
    bid_depth: float,
    ask_depth: float,
    now_ms: int,
    window_ms: Optional[int],
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> OrderbookProjection:
    """Window average when available, otherwise the last-N sample average."""
    projection = OrderbookProjection(bid_depth=bid_depth, ask_depth=ask_depth)
    if not entries:
        return projection
    projection.imbalance = entries[-1][1]

    avg = average_imbalance(entries, now_ms, window_ms) if window_ms is not None else None
    if avg is not None:
        cutoff = now_ms - window_ms
        projection.avg_imbalance = avg
        projection.has_timeframe_data = True
        projection.sample_count = sum(1 for ts, _ in entries if cutoff <= ts <= now_ms)
    else:
        samples = config.orderbook.fallback_samples
        projection.avg_imbalance = recent_average(entries, samples)
        projection.sample_count = min(samples, len(entries))
    return projection


def rolling_sum(entries: Sequence[Entry], now_ms: int, window_ms: int) -> Tuple[float, int]:
    """Sum of values strictly newer than now - window, plus the count summed."""
    cutoff = now_ms - window_ms
    total = 0.0
    count = 0
    for ts, value in entries:
        if ts > cutoff:
            total += value
            count += 1
    return total, count


# =============================================================================
# VELOCITY / TREND
# =============================================================================


def oi_velocity(
    entries: Sequence[Entry],
    current: float,
    now_ms: int,
    timeframe_minutes: int,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> OIVelocity:
    """
    OI rate of change over the timeframe.

    |v| > 1      accelerating
    0.3 < |v|    rising / falling
    otherwise    stable
    """
    change = timeframe_change(entries, current, now_ms, timeframe_minutes * MINUTE_MS)
    if change is None:
        return OIVelocity()

    thresholds = config.velocity
    magnitude = abs(change)
    if magnitude > thresholds.accelerating_pct:
        label = "accelerating"
    elif magnitude > thresholds.moving_pct:
        label = "rising" if change > 0 else "falling"
    else:
        label = "stable"

    if label == "stable":
        direction = Direction.FLAT
    else:
        direction = Direction.UP if sign_of(change) > 0 else Direction.DOWN
    return OIVelocity(velocity=change, label=label, direction=direction, has_timeframe_data=True)


def funding_trend(
    entries: Sequence[Entry],
    current_rate: float,
    now_ms: int,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> FundingTrend:
    """Funding drift against the oldest sample of the last hour."""
    thresholds = config.funding
    cutoff = now_ms - thresholds.trend_window_ms
    recent = [(ts, v) for ts, v in entries if cutoff <= ts <= now_ms]
    if len(recent) < 2:
        return FundingTrend()

    delta = current_rate - recent[0][1]
    scaled = delta * thresholds.trend_scale
    if scaled > thresholds.trend_spike:
        return FundingTrend(delta, scaled, "spiking", Direction.UP)
    if scaled > thresholds.trend_move:
        return FundingTrend(delta, scaled, "rising", Direction.UP)
    if scaled < -thresholds.trend_spike:
        return FundingTrend(delta, scaled, "dropping", Direction.DOWN)
    if scaled < -thresholds.trend_move:
        return FundingTrend(delta, scaled, "falling", Direction.DOWN)
    return FundingTrend(delta, scaled, "stable", Direction.FLAT)


def project_funding(
    entries: Sequence[Entry],
    now_ms: int,
    config: ClassifierConfig = DEFAULT_CONFIG,
    periods_per_day: int = 3,
) -> FundingProjection:
    if not entries:
        return FundingProjection()
    rate = entries[-1][1]
    return FundingProjection(
        rate=rate,
        annualized_pct=rate * periods_per_day * 365 * 100,
        trend=funding_trend(entries, rate, now_ms, config),
        available=True,
    )


# =============================================================================
# FULL PROJECTION
# =============================================================================


@dataclass
class SeriesView:
    """Read-only inputs for one instrument, gathered by the coordinator."""
    price: List[Entry] = field(default_factory=list)
    oi: List[Entry] = field(default_factory=list)
    orderbook: List[Entry] = field(default_factory=list)
    funding: List[Entry] = field(default_factory=list)
    cvd_ledger: List[Entry] = field(default_factory=list)
    price_session_start: Optional[float] = None
    oi_session_start: Optional[float] = None
    bid_depth: float = 0.0
    ask_depth: float = 0.0
    cvd_session_delta: float = 0.0
    cvd_recent_delta: float = 0.0
    cvd_trend: float = 0.0
    cvd_total_buy: float = 0.0
    cvd_total_sell: float = 0.0


def build_projection(
    instrument: str,
    view: SeriesView,
    now_ms: int,
    timeframe_minutes: Optional[int],
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> TimeframeProjection:
    """
    Build a Timeframe Projection.

    With `timeframe_minutes=None` the projection is session based: price and OI
    use their session change, CVD uses the short rolling window and the
    orderbook uses the recent-sample average.
    """
    window_ms = timeframe_minutes * MINUTE_MS if timeframe_minutes is not None else None

    cvd_window = window_ms if window_ms is not None else config.cvd_bias.rolling_window_ms
    cvd_delta, cvd_count = rolling_sum(view.cvd_ledger, now_ms, cvd_window)
    cvd = CvdProjection(
        timeframe_delta=cvd_delta,
        session_delta=view.cvd_session_delta,
        recent_delta=view.cvd_recent_delta,
        trend=view.cvd_trend,
        total_buy=view.cvd_total_buy,
        total_sell=view.cvd_total_sell,
        has_timeframe_data=window_ms is not None and cvd_count > 0,
    )

    oi = project_metric(view.oi, view.oi_session_start, now_ms, window_ms)
    velocity = OIVelocity()
    if timeframe_minutes is not None and view.oi:
        velocity = oi_velocity(view.oi, oi.current, now_ms, timeframe_minutes, config)

    return TimeframeProjection(
        instrument=instrument,
        timeframe=timeframe_minutes,
        timestamp_ms=now_ms,
        price=project_metric(view.price, view.price_session_start, now_ms, window_ms),
        oi=oi,
        orderbook=project_orderbook(
            view.orderbook, view.bid_depth, view.ask_depth, now_ms, window_ms, config
        ),
        cvd=cvd,
        funding=project_funding(view.funding, now_ms, config),
        oi_velocity=velocity,
    )

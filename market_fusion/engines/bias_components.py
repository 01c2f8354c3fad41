"""
Component bias scorers.

Each scorer returns an integer score plus human-readable reasons. Funding,
orderbook and whale bias feed the composite; OI and CVD bias are reported
alongside it for context.

Scores:
    funding     [-5, +5]   contrarian on extremes, trend adjusted
    orderbook   [-7, +7]   sustained imbalance, adjusted by current vs average
    whale       [-10, +10] top-trader long/short split, consistency adjusted
    oi          [-8, +8]   OI move read against funding and price
    cvd         [-9, +9]   rolling delta with trend and price divergence
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from .derived_metrics import CvdProjection, FundingProjection, OrderbookProjection, TimeframeProjection
from .fusion_config import ClassifierConfig, DEFAULT_CONFIG
from .signals import Signal

if TYPE_CHECKING:
    from ..continuous.data_types import WhaleConsensus


@dataclass
class BiasComponent:
    """Score of one composite component."""
    name: str
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)
    available: bool = True

    @property
    def reason(self) -> str:
        return " • ".join(self.reasons)

    @property
    def signal(self) -> Signal:
        if self.score > 0:
            return Signal.BULLISH
        if self.score < 0:
            return Signal.BEARISH
        return Signal.NEUTRAL


@dataclass
class WhaleBias(BiasComponent):
    long_pct: Optional[float] = None
    consistent_longs: int = 0
    consistent_shorts: int = 0
    total: int = 0


def calculate_funding_bias(
    funding: FundingProjection,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> BiasComponent:
    """
    Funding bias: extreme rates are crowded trades (contrarian), moderate
    rates follow sentiment. Trend adds +/-1 when the rate moved more than
    1e-4 over the trend window.
    """
    result = BiasComponent(name="funding")
    if not funding.available:
        result.available = False
        result.reasons.append("No funding data")
        return result

    t = config.funding
    rate = funding.rate
    if rate > t.extreme_rate:
        result.score = -t.extreme_score
        result.reasons.append(f"Extremely crowded longs ({funding.annualized_pct:.0f}% APR)")
    elif rate > t.elevated_rate:
        result.score = t.elevated_score
        result.reasons.append("Bullish sentiment")
    elif rate < -t.extreme_rate:
        result.score = t.extreme_score
        result.reasons.append(f"Extremely crowded shorts ({funding.annualized_pct:.0f}% APR)")
    elif rate < -t.elevated_rate:
        result.score = -t.elevated_score
        result.reasons.append("Bearish sentiment")
    else:
        result.reasons.append("Neutral funding")

    delta = funding.trend.delta
    if delta > t.trend_delta:
        result.score += 1
        result.reasons.append("Funding rising")
    elif delta < -t.trend_delta:
        result.score -= 1
        result.reasons.append("Funding falling")
    return result


def calculate_orderbook_bias(
    orderbook: OrderbookProjection,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> BiasComponent:
    """Sustained imbalance matters more than the instantaneous snapshot."""
    t = config.orderbook
    result = BiasComponent(name="ob")
    avg = orderbook.avg_imbalance
    current = orderbook.imbalance

    if avg > t.strong_imbalance:
        result.score = t.strong_score
        result.reasons.append("Strong sustained bid wall")
    elif avg > t.moderate_imbalance:
        result.score = t.moderate_score
        result.reasons.append("Bid heavy orderbook")
    elif avg < -t.strong_imbalance:
        result.score = -t.strong_score
        result.reasons.append("Strong sustained ask wall")
    elif avg < -t.moderate_imbalance:
        result.score = -t.moderate_score
        result.reasons.append("Ask heavy orderbook")
    else:
        result.reasons.append("Balanced orderbook")

    if current >= avg + t.divergence_from_avg:
        result.score += 1
        result.reasons.append("Bids strengthening")
    elif current <= avg - t.divergence_from_avg:
        result.score -= 1
        result.reasons.append("Asks strengthening")
    return result


def calculate_whale_bias(
    consensus: Optional["WhaleConsensus"],
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> WhaleBias:
    """
    Whale consensus bias from top-K positions.

    Fewer than two positions is not a consensus: score 0, "Insufficient data".
    """
    t = config.whale
    if consensus is None:
        return WhaleBias(name="whale", available=False, reasons=["No whale data"])

    longs = len(consensus.longs)
    shorts = len(consensus.shorts)
    total = longs + shorts
    if total < t.min_positions:
        return WhaleBias(name="whale", available=False, reasons=["Insufficient data"], total=total)

    long_pct = longs / total
    consistent_longs = sum(1 for p in consensus.longs if p.is_consistent)
    consistent_shorts = sum(1 for p in consensus.shorts if p.is_consistent)
    result = WhaleBias(
        name="whale",
        long_pct=long_pct,
        consistent_longs=consistent_longs,
        consistent_shorts=consistent_shorts,
        total=total,
    )

    if long_pct >= t.strong_long_pct:
        result.score = t.strong_score
        result.reasons.append(f"{round(long_pct * 100)}% long")
    elif long_pct >= t.lean_long_pct:
        result.score = t.lean_score
        result.reasons.append(f"{round(long_pct * 100)}% long")
    elif long_pct <= t.strong_short_pct:
        result.score = -t.strong_score
        result.reasons.append(f"{round((1 - long_pct) * 100)}% short")
    elif long_pct <= t.lean_short_pct:
        result.score = -t.lean_score
        result.reasons.append(f"{round((1 - long_pct) * 100)}% short")
    else:
        result.reasons.append("Mixed positioning")

    if consistent_longs > consistent_shorts:
        result.score += t.consistency_bonus
        result.reasons.append(f"{consistent_longs} consistent winners long")
    elif consistent_shorts > consistent_longs:
        result.score -= t.consistency_bonus
        result.reasons.append(f"{consistent_shorts} consistent winners short")
    return result


def calculate_oi_bias(
    projection: TimeframeProjection,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> BiasComponent:
    """OI move read against funding sign and price direction."""
    result = BiasComponent(name="oi")
    oi_change = projection.oi_change
    price_change = projection.price_change
    rate = projection.funding.rate
    threshold = config.oi_bias.significant_change_pct

    if oi_change > threshold:
        if rate > 0 and price_change > 0:
            result.score = 8
            result.reasons.append("New longs entering aggressively")
        elif rate > 0 and price_change < 0:
            result.score = -6
            result.reasons.append("Aggressive shorting / bulls trapped")
        elif rate < 0 and price_change < 0:
            result.score = -8
            result.reasons.append("New shorts entering aggressively")
        elif rate < 0 and price_change > 0:
            result.score = -3
            result.reasons.append("Shorts building on rally")
    elif oi_change < -threshold:
        if rate > 0 and price_change < 0:
            result.score = -6
            result.reasons.append("Long liquidations / exits")
        elif rate < 0 and price_change > 0:
            result.score = 6
            result.reasons.append("Short squeeze in progress")
        elif rate > 0 and price_change > 0:
            result.score = 2
            result.reasons.append("Profit taking by longs")
        else:
            result.score = -2
            result.reasons.append("Shorts covering")
    else:
        result.reasons.append("OI stable - no strong flow")
    return result


def calculate_cvd_bias(
    cvd: CvdProjection,
    price_change: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> BiasComponent:
    """Rolling delta direction, confirmed by trend, penalized on price divergence."""
    t = config.cvd_bias
    result = BiasComponent(name="cvd")
    rolling = cvd.timeframe_delta
    trend = cvd.trend

    if rolling > 0:
        if trend > 0:
            result.score = t.strong_score
            result.reasons.append("Buyers dominating flow")
        else:
            result.score = t.moderate_score
            result.reasons.append("Buyers in control")
    elif rolling < 0:
        if trend < 0:
            result.score = -t.strong_score
            result.reasons.append("Sellers dominating flow")
        else:
            result.score = -t.moderate_score
            result.reasons.append("Sellers in control")

    if price_change > t.divergence_price_pct and rolling < 0:
        result.score -= t.divergence_penalty
        result.reasons.append("Divergence: price rising into selling")
    elif price_change < -t.divergence_price_pct and rolling > 0:
        result.score += t.divergence_penalty
        result.reasons.append("Divergence: price dropping into buying")
    return result

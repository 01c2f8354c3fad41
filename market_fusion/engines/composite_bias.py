"""
Composite Bias Aggregator

Weighted blend of component scores:

    weightedScore   = Σ(w·s) / Σw
    normalizedScore = weightedScore / 9   (max flow confluence score), clamped to [-1, 1]

The whale weight drops out of both sums when whale consensus is unavailable.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .bias_components import (
    BiasComponent,
    WhaleBias,
    calculate_cvd_bias,
    calculate_funding_bias,
    calculate_oi_bias,
    calculate_orderbook_bias,
    calculate_whale_bias,
)
from .derived_metrics import TimeframeProjection
from .flow_confluence import FlowConfluenceResult, calculate_flow_confluence
from .fusion_config import BiasWeights, ClassifierConfig, DEFAULT_CONFIG, safe_divide
from .signals import BiasLabel, Grade, Signal, clip


@dataclass
class CompositeBias:
    """Composite bias for one instrument."""
    instrument: str
    score: float
    normalized_score: float
    grade: Grade
    label: BiasLabel
    signal: Signal
    flow: FlowConfluenceResult
    components: Dict[str, BiasComponent] = field(default_factory=dict)
    weights_used: Dict[str, float] = field(default_factory=dict)
    absent: List[str] = field(default_factory=list)
    timeframe: Optional[int] = None
    timestamp_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "score": self.score,
            "normalizedScore": self.normalized_score,
            "grade": self.grade.value,
            "label": self.label.value,
            "signal": self.signal.value,
            "flow": self.flow.flow_type.value,
            "components": {
                name: {"score": c.score, "reason": c.reason, "available": c.available}
                for name, c in self.components.items()
            },
            "absent": list(self.absent),
            "timeframe": self.timeframe,
            "timestamp": self.timestamp_ms,
        }


def grade_for(normalized: float, config: ClassifierConfig = DEFAULT_CONFIG) -> Grade:
    t = config.composite
    if normalized >= t.grade_a_plus:
        return Grade.A_PLUS
    if normalized >= t.grade_a:
        return Grade.A
    if normalized >= t.grade_b:
        return Grade.B
    if normalized >= t.grade_c:
        return Grade.C
    if normalized >= t.grade_d:
        return Grade.D
    return Grade.F


def bias_label_for(normalized: float, config: ClassifierConfig = DEFAULT_CONFIG) -> BiasLabel:
    """Label buckets; the bearish side uses strict comparisons."""
    t = config.composite
    if normalized >= t.label_strong_bull:
        return BiasLabel.STRONG_BULL
    if normalized >= t.label_bullish:
        return BiasLabel.BULLISH
    if normalized >= t.label_lean_bull:
        return BiasLabel.LEAN_BULL
    if normalized >= t.label_neutral:
        return BiasLabel.NEUTRAL
    if normalized > t.label_lean_bear:
        return BiasLabel.LEAN_BEAR
    if normalized > t.label_bearish:
        return BiasLabel.BEARISH
    return BiasLabel.STRONG_BEAR


def signal_for(label: BiasLabel) -> Signal:
    if label in (BiasLabel.STRONG_BULL, BiasLabel.BULLISH, BiasLabel.LEAN_BULL):
        return Signal.BULLISH
    if label in (BiasLabel.STRONG_BEAR, BiasLabel.BEARISH, BiasLabel.LEAN_BEAR):
        return Signal.BEARISH
    return Signal.NEUTRAL


def aggregate(
    instrument: str,
    flow: FlowConfluenceResult,
    funding: BiasComponent,
    orderbook: BiasComponent,
    whale: WhaleBias,
    weights: Optional[BiasWeights] = None,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> CompositeBias:
    """Blend component scores into a composite bias."""
    weights = weights or BiasWeights()
    scores = {
        "flow": float(flow.score),
        "whale": float(whale.score),
        "ob": float(orderbook.score),
        "funding": float(funding.score),
    }
    weights_used = weights.as_dict()
    absent = []
    if not whale.available:
        weights_used.pop("whale")
        absent.append("whale")

    total_weight = sum(weights_used.values())
    weighted = safe_divide(sum(scores[k] * w for k, w in weights_used.items()), total_weight)
    normalized = clip(safe_divide(weighted, config.composite.max_flow_score), -1.0, 1.0)
    label = bias_label_for(normalized, config)

    return CompositeBias(
        instrument=instrument,
        score=weighted,
        normalized_score=normalized,
        grade=grade_for(normalized, config),
        label=label,
        signal=signal_for(label),
        flow=flow,
        components={"flow": _flow_component(flow), "whale": whale, "ob": orderbook, "funding": funding},
        weights_used=weights_used,
        absent=absent,
    )


def _flow_component(flow: FlowConfluenceResult) -> BiasComponent:
    return BiasComponent(name="flow", score=flow.score, reasons=[flow.reason])


def calculate_composite_bias(
    projection: TimeframeProjection,
    whale_consensus=None,
    weights: Optional[BiasWeights] = None,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> CompositeBias:
    """Run every classifier over a projection and aggregate."""
    flow = calculate_flow_confluence(projection, config)
    composite = aggregate(
        projection.instrument,
        flow,
        calculate_funding_bias(projection.funding, config),
        calculate_orderbook_bias(projection.orderbook, config),
        calculate_whale_bias(whale_consensus, config),
        weights,
        config,
    )
    composite.components["oi"] = calculate_oi_bias(projection, config)
    composite.components["cvd"] = calculate_cvd_bias(projection.cvd, projection.price_change, config)
    composite.timeframe = projection.timeframe
    composite.timestamp_ms = projection.timestamp_ms
    return composite

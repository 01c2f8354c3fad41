"""
Flow Confluence & Edge Signals

Joint price / OI / CVD classification over a window, plus the three edge
patterns derived from the same inputs:

    Flow Confluence:  (priceDir, oiDir, cvdDir) -> label + score
    Divergence:       price and CVD pointing opposite ways
    Absorption:       heavy CVD with price pinned flat
    OI/Price pattern: what the OI move says about the price move

Rows of the confluence table are evaluated in order and the first match
wins, so the broad BULLISH / BEARISH rows only fire once every more specific
row has been ruled out.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .derived_metrics import TimeframeProjection
from .fusion_config import ClassifierConfig, DEFAULT_CONFIG
from .signals import Direction, FlowType, Signal, Strength, direction_of, sign_of

UP = Direction.UP
DOWN = Direction.DOWN
FLAT = Direction.FLAT


@dataclass
class FlowDivergence:
    """Divergence note attached to a confluence row."""
    type: Signal
    message: str


@dataclass
class FlowConfluenceResult:
    """Result of flow confluence classification."""
    flow_type: FlowType
    signal: Signal
    score: int
    strength: Strength
    price_dir: Direction
    oi_dir: Direction
    cvd_dir: Direction
    price_change: float
    oi_change: float
    cvd_delta: float
    divergence: Optional[FlowDivergence] = None
    reason: str = ""
    has_timeframe_data: bool = False


# (price, oi, cvd) -> (type, signal, score sign * magnitude key, strength, divergence, reason)
# None in a key position matches any direction.
_CONFLUENCE_TABLE = (
    ((UP, UP, UP), FlowType.STRONG_BULL, Signal.BULLISH, "strong", Strength.STRONG, None,
     "New longs + aggressive buying backing the move"),
    ((DOWN, UP, DOWN), FlowType.STRONG_BEAR, Signal.BEARISH, "-strong", Strength.STRONG, None,
     "New shorts + aggressive selling pressuring price"),
    ((UP, DOWN, DOWN), FlowType.WEAK_BULL, Signal.BULLISH, "weak", Strength.WEAK,
     (Signal.BEARISH, "Price up but flow weakening"),
     "Shorts covering, sellers absorbing - watch for reversal"),
    ((DOWN, DOWN, UP), FlowType.WEAK_BEAR, Signal.BEARISH, "-weak", Strength.WEAK,
     (Signal.BULLISH, "Price down but buyers stepping in"),
     "Longs exiting, buyers absorbing - watch for bounce"),
    ((UP, UP, DOWN), FlowType.DIVERGENCE, Signal.NEUTRAL, "divergence", Strength.WEAK,
     (Signal.BEARISH, "Hidden selling into rally"),
     "Price up, OI up, but CVD negative - distribution possible"),
    ((DOWN, UP, UP), FlowType.DIVERGENCE, Signal.NEUTRAL, "-divergence", Strength.WEAK,
     (Signal.BULLISH, "Hidden buying into dip"),
     "Price down, OI up, but CVD positive - accumulation possible"),
    ((UP, None, UP), FlowType.BULLISH, Signal.BULLISH, "moderate", Strength.MODERATE, None,
     "Price rising with buy flow support"),
    ((DOWN, None, DOWN), FlowType.BEARISH, Signal.BEARISH, "-moderate", Strength.MODERATE, None,
     "Price falling with sell flow pressure"),
)


def _row_score(key: str, config: ClassifierConfig) -> int:
    negative = key.startswith("-")
    name = key.lstrip("-")
    magnitude = getattr(config.flow, f"{name}_score")
    return -magnitude if negative else magnitude


def flow_directions(
    price_change: float,
    oi_change: float,
    cvd_delta: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> tuple[Direction, Direction, Direction]:
    """Thresholded directions; values exactly on a threshold are FLAT."""
    flow = config.flow
    return (
        direction_of(price_change, flow.price_pct),
        direction_of(oi_change, flow.oi_pct),
        direction_of(cvd_delta, flow.cvd_quote),
    )


def classify_flow(
    price_change: float,
    oi_change: float,
    cvd_delta: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> FlowConfluenceResult:
    """Map (price, OI, CVD) directions onto the confluence table."""
    price_dir, oi_dir, cvd_dir = flow_directions(price_change, oi_change, cvd_delta, config)

    for (p, o, c), flow_type, signal, score_key, strength, divergence, reason in _CONFLUENCE_TABLE:
        if p is not price_dir or c is not cvd_dir:
            continue
        if o is not None and o is not oi_dir:
            continue
        return FlowConfluenceResult(
            flow_type=flow_type,
            signal=signal,
            score=_row_score(score_key, config),
            strength=strength,
            price_dir=price_dir,
            oi_dir=oi_dir,
            cvd_dir=cvd_dir,
            price_change=price_change,
            oi_change=oi_change,
            cvd_delta=cvd_delta,
            divergence=FlowDivergence(*divergence) if divergence else None,
            reason=reason,
        )

    return FlowConfluenceResult(
        flow_type=FlowType.NEUTRAL,
        signal=Signal.NEUTRAL,
        score=0,
        strength=Strength.WEAK,
        price_dir=price_dir,
        oi_dir=oi_dir,
        cvd_dir=cvd_dir,
        price_change=price_change,
        oi_change=oi_change,
        cvd_delta=cvd_delta,
        reason="No clear flow confluence",
    )


def calculate_flow_confluence(
    projection: TimeframeProjection,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> FlowConfluenceResult:
    """Flow confluence over a projection (falls back to session changes)."""
    result = classify_flow(
        projection.price_change, projection.oi_change, projection.cvd_delta, config
    )
    result.has_timeframe_data = projection.has_timeframe_data
    if not projection.price.has_timeframe_data and projection.timeframe is not None:
        result.reason = f"{result.reason} (session fallback: insufficient {projection.label} data)"
    return result


# =============================================================================
# EDGE SIGNALS
# =============================================================================


@dataclass
class EdgeSignal:
    """A detected edge pattern, tagged by category for priority selection."""
    category: str  # divergence | absorption | oi_pattern
    type: Signal
    name: str
    description: str
    implication: str
    strength: float = 0.0
    strength_label: Strength = Strength.WEAK
    is_strong: bool = False


@dataclass
class DivergenceResult(EdgeSignal):
    pass


@dataclass
class AbsorptionResult(EdgeSignal):
    pass


@dataclass
class OIPricePattern(EdgeSignal):
    pattern: str = ""


def calculate_divergence_strength(
    price_change: float,
    cvd_delta: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> Optional[DivergenceResult]:
    """
    Divergence strength (0-100) between price and CVD.

    Defined only when both are non-zero and point in opposite directions:
    bearish when price rises into net selling, bullish when price falls into
    net buying.
    """
    price_sign = sign_of(price_change)
    cvd_sign = sign_of(cvd_delta)
    if price_sign == 0 or cvd_sign == 0 or price_sign == cvd_sign:
        return None

    t = config.divergence
    strength = min(
        t.max_strength,
        abs(price_change) * t.price_multiplier + abs(cvd_delta) / t.cvd_divisor,
    )
    if strength > t.strong_above:
        label = Strength.STRONG
    elif strength > t.moderate_above:
        label = Strength.MODERATE
    else:
        label = Strength.WEAK

    if price_sign > 0:
        return DivergenceResult(
            category="divergence",
            type=Signal.BEARISH,
            name="BEARISH DIVERGENCE",
            description="Price rising but selling pressure underneath",
            implication="Hidden distribution - watch for reversal",
            strength=strength,
            strength_label=label,
            is_strong=label is Strength.STRONG,
        )
    return DivergenceResult(
        category="divergence",
        type=Signal.BULLISH,
        name="BULLISH DIVERGENCE",
        description="Price falling but buying pressure underneath",
        implication="Hidden accumulation - watch for bounce",
        strength=strength,
        strength_label=label,
        is_strong=label is Strength.STRONG,
    )


def detect_absorption(
    price_change: float,
    cvd_delta: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> Optional[AbsorptionResult]:
    """Heavy net flow absorbed while price stays flat."""
    t = config.absorption
    if abs(price_change) >= t.price_flat_pct or abs(cvd_delta) <= t.cvd_quote:
        return None

    raw_strength = abs(cvd_delta) / t.strength_divisor
    is_strong = raw_strength > t.strong_above
    common = dict(
        category="absorption",
        strength=min(100.0, raw_strength),
        strength_label=Strength.STRONG if is_strong else Strength.MODERATE,
        is_strong=is_strong,
    )
    if cvd_delta < 0:
        return AbsorptionResult(
            type=Signal.BULLISH,
            name="SELLING ABSORBED",
            description=f"${abs(cvd_delta):,.0f} net selling absorbed",
            implication="Strong buyers defending - potential bounce",
            **common,
        )
    return AbsorptionResult(
        type=Signal.BEARISH,
        name="BUYING ABSORBED",
        description=f"${cvd_delta:,.0f} net buying absorbed",
        implication="Strong sellers capping - potential drop",
        **common,
    )


_OI_PATTERNS = {
    (FLAT, UP): ("COIL_FORMING", Signal.NEUTRAL, "OI building while price consolidates",
                 "Breakout incoming - direction unclear"),
    (UP, DOWN): ("SHORT_COVERING", Signal.BEARISH, "Shorts closing, not new longs entering",
                 "Weak rally - may fade after squeeze"),
    (DOWN, DOWN): ("LONGS_EXITING", Signal.NEUTRAL, "Positions closing on the sell-off",
                   "Capitulation may = bottom forming"),
    (UP, UP): ("STRONG_FLOW_BULL", Signal.BULLISH, "New longs entering on the rally",
               "Healthy trend - momentum supported"),
    (DOWN, UP): ("STRONG_FLOW_BEAR", Signal.BEARISH, "New shorts entering on the drop",
                 "Strong selling pressure - trend intact"),
}


def detect_oi_price_pattern(
    oi_change: float,
    price_change: float,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> Optional[OIPricePattern]:
    """Look up the (price, OI) direction pair; unmatched cells return None."""
    price_dir = direction_of(price_change, config.flow.price_pct)
    oi_dir = direction_of(oi_change, config.flow.oi_pct)
    match = _OI_PATTERNS.get((price_dir, oi_dir))
    if match is None:
        return None
    pattern, signal, description, implication = match
    return OIPricePattern(
        category="oi_pattern",
        type=signal,
        name=pattern.replace("_", " "),
        description=description,
        implication=implication,
        pattern=pattern,
    )


@dataclass
class EdgeSignals:
    """All edge signals present for one projection."""
    divergence: Optional[DivergenceResult] = None
    absorption: Optional[AbsorptionResult] = None
    oi_pattern: Optional[OIPricePattern] = None
    signals: List[EdgeSignal] = field(default_factory=list)

    @property
    def priority(self) -> Optional[EdgeSignal]:
        return select_priority_signal(self.signals)


def detect_edge_signals(
    projection: TimeframeProjection,
    config: ClassifierConfig = DEFAULT_CONFIG,
) -> EdgeSignals:
    """Run all edge detectors over a projection."""
    price_change = projection.price_change
    cvd_delta = projection.cvd_delta

    result = EdgeSignals(
        divergence=calculate_divergence_strength(price_change, cvd_delta, config),
        absorption=detect_absorption(price_change, cvd_delta, config),
        oi_pattern=detect_oi_price_pattern(projection.oi_change, price_change, config),
    )
    result.signals = [s for s in (result.divergence, result.absorption, result.oi_pattern) if s]
    return result


PRIORITY_ORDER = ("divergence", "absorption", "oi_pattern")


def select_priority_signal(signals: List[EdgeSignal]) -> Optional[EdgeSignal]:
    """First strong signal by category priority, else first signal by the same order."""
    if not signals:
        return None
    for category in PRIORITY_ORDER:
        for signal in signals:
            if signal.category == category and signal.is_strong:
                return signal
    for category in PRIORITY_ORDER:
        for signal in signals:
            if signal.category == category:
                return signal
    return signals[0]

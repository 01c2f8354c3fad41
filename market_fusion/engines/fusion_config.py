"""
Fusion Engine Configuration Module
Centralizes all magic numbers and thresholds used by the fusion engine.

Classifier thresholds live in small dataclasses grouped under `ClassifierConfig`;
runtime options (windows, bounds, intervals, weights) live in `FusionConfig`.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import ConfigError

# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

EPSILON = 1e-9

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

SUPPORTED_TIMEFRAMES = (5, 15, 30, 60)
TIMEFRAME_LABELS = {5: "5m", 15: "15m", 30: "30m", 60: "1h"}


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is near zero.

    Args:
        numerator: The numerator
        denominator: The denominator
        default: Value to return if division is unsafe (default: 0.0)

    Returns:
        numerator / denominator if safe, otherwise default
    """
    return numerator / denominator if abs(denominator) > EPSILON else default


def pct_change(current: float, reference: float) -> Optional[float]:
    """Percent change from reference to current, None if reference is not positive."""
    if reference is None or reference <= 0:
        return None
    return (current - reference) / reference * 100


def parse_timeframe(value) -> int:
    """Accept 5, "5", "5m", "1h" and return minutes."""
    if isinstance(value, int):
        minutes = value
    else:
        text = str(value).strip().lower()
        if text.endswith("h"):
            minutes = int(text[:-1]) * 60
        elif text.endswith("m"):
            minutes = int(text[:-1])
        else:
            minutes = int(text)
    if minutes not in SUPPORTED_TIMEFRAMES:
        raise ConfigError(f"Unsupported timeframe: {value} (expected one of {SUPPORTED_TIMEFRAMES})")
    return minutes


# =============================================================================
# CLASSIFIER THRESHOLDS
# =============================================================================


@dataclass
class FlowThresholds:
    """Direction thresholds for price / OI / CVD over a window."""

    price_pct: float = 0.3  # |priceChange| above this is directional
    oi_pct: float = 1.0  # |oiChange| above this is directional
    cvd_quote: float = 1000.0  # |cvdDelta| above this is directional

    strong_score: int = 9
    moderate_score: int = 5
    weak_score: int = 3
    divergence_score: int = 2


@dataclass
class DivergenceThresholds:
    """Price vs CVD divergence strength buckets."""

    price_multiplier: float = 20.0
    cvd_divisor: float = 100_000.0
    max_strength: float = 100.0
    strong_above: float = 60.0
    moderate_above: float = 30.0


@dataclass
class AbsorptionThresholds:
    """Heavy CVD without price movement."""

    cvd_quote: float = 50_000.0
    price_flat_pct: float = 0.3
    strength_divisor: float = 1000.0
    strong_above: float = 100.0


@dataclass
class FundingBiasThresholds:
    """Funding rate magnitude and trend thresholds (per funding period)."""

    extreme_rate: float = 5e-4
    elevated_rate: float = 2e-4
    extreme_score: int = 4
    elevated_score: int = 2
    trend_delta: float = 1e-4

    # Trend labelling, on (rate delta * 1e4)
    trend_window_ms: int = HOUR_MS
    trend_scale: float = 10_000.0
    trend_spike: float = 1.0
    trend_move: float = 0.3


@dataclass
class OrderbookBiasThresholds:
    """Sustained orderbook imbalance thresholds (percent)."""

    strong_imbalance: float = 20.0
    moderate_imbalance: float = 10.0
    strong_score: int = 6
    moderate_score: int = 3
    divergence_from_avg: float = 10.0
    fallback_samples: int = 10


@dataclass
class WhaleBiasThresholds:
    """Top-trader long/short consensus thresholds."""

    min_positions: int = 2
    strong_long_pct: float = 0.8
    lean_long_pct: float = 0.6
    strong_short_pct: float = 0.2
    lean_short_pct: float = 0.4
    strong_score: int = 8
    lean_score: int = 4
    consistency_bonus: int = 2


@dataclass
class OIBiasThresholds:
    """OI change combined with funding and price sign."""

    significant_change_pct: float = 2.0


@dataclass
class CVDBiasThresholds:
    """Rolling delta bias with price divergence adjustment."""

    strong_score: int = 6
    moderate_score: int = 3
    divergence_price_pct: float = 0.5
    divergence_penalty: int = 3
    rolling_window_ms: int = 5 * MINUTE_MS


@dataclass
class VelocityThresholds:
    """OI velocity labels (percent over the timeframe)."""

    accelerating_pct: float = 1.0
    moving_pct: float = 0.3


@dataclass
class CompositeThresholds:
    """Grade and label buckets on the normalized composite score."""

    max_flow_score: float = 9.0

    grade_a_plus: float = 0.6
    grade_a: float = 0.4
    grade_b: float = 0.2
    grade_c: float = -0.2
    grade_d: float = -0.4

    label_strong_bull: float = 0.6
    label_bullish: float = 0.3
    label_lean_bull: float = 0.1
    label_neutral: float = -0.1
    label_lean_bear: float = -0.3
    label_bearish: float = -0.6


@dataclass
class ClassifierConfig:
    """Master configuration for all classifier thresholds."""

    flow: FlowThresholds = field(default_factory=FlowThresholds)
    divergence: DivergenceThresholds = field(default_factory=DivergenceThresholds)
    absorption: AbsorptionThresholds = field(default_factory=AbsorptionThresholds)
    funding: FundingBiasThresholds = field(default_factory=FundingBiasThresholds)
    orderbook: OrderbookBiasThresholds = field(default_factory=OrderbookBiasThresholds)
    whale: WhaleBiasThresholds = field(default_factory=WhaleBiasThresholds)
    oi_bias: OIBiasThresholds = field(default_factory=OIBiasThresholds)
    cvd_bias: CVDBiasThresholds = field(default_factory=CVDBiasThresholds)
    velocity: VelocityThresholds = field(default_factory=VelocityThresholds)
    composite: CompositeThresholds = field(default_factory=CompositeThresholds)


DEFAULT_CONFIG = ClassifierConfig()


def get_config() -> ClassifierConfig:
    """Get the default classifier configuration."""
    return DEFAULT_CONFIG


# =============================================================================
# RUNTIME CONFIGURATION
# =============================================================================


@dataclass
class BiasWeights:
    """Composite weights per component."""

    flow: float = 5.0
    whale: float = 3.0
    ob: float = 1.0
    funding: float = 1.0

    def as_dict(self) -> Dict[str, float]:
        return {"flow": self.flow, "whale": self.whale, "ob": self.ob, "funding": self.funding}


@dataclass
class FusionConfig:
    """Runtime options for the fusion engine."""

    instruments: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    primary_exchange: str = "hyperliquid"
    timeframes: List[int] = field(default_factory=lambda: list(SUPPORTED_TIMEFRAMES))

    # Whale trade events
    whale_threshold_quote: float = 1e7

    # Signal outcome tracking
    evaluation_window_ms: int = 15 * MINUTE_MS
    evaluation_grace_ms: int = 2 * MINUTE_MS
    min_signal_gap_ms: int = MINUTE_MS
    win_threshold_pct: float = 0.3
    signal_log_ttl_ms: int = 7 * DAY_MS
    signal_log_max_entries: int = 500

    # Rolling series bounds
    rolling_ttl_ms: int = 4 * HOUR_MS
    rolling_max_entries: int = 2880
    cvd_max_entries: int = 5000
    bias_history_ttl_ms: int = 15 * MINUTE_MS
    bias_history_max_entries: int = 15
    bias_history_min_gap_ms: int = 30 * 1000

    # Scheduler intervals
    recompute_interval_ms: int = 5000
    bias_sample_interval_ms: int = MINUTE_MS
    evaluate_interval_ms: int = MINUTE_MS
    flush_interval_ms: int = 5000

    # Composite emission: None = session-based projection, else minutes
    emission_timeframe: Optional[int] = None

    weights: BiasWeights = field(default_factory=BiasWeights)
    classifiers: ClassifierConfig = field(default_factory=ClassifierConfig)

    # Persistence
    state_dir: str = "~/.market_fusion"

    def __post_init__(self):
        if isinstance(self.weights, dict):
            self.weights = BiasWeights(**self.weights)
        self.timeframes = [parse_timeframe(tf) for tf in self.timeframes]
        if self.emission_timeframe is not None:
            self.emission_timeframe = parse_timeframe(self.emission_timeframe)
        self.instruments = [inst.upper() for inst in self.instruments]
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError on inconsistent settings."""
        if not self.instruments:
            raise ConfigError("At least one instrument is required")
        if not self.timeframes:
            raise ConfigError("At least one timeframe is required")
        positive = {
            "evaluation_window_ms": self.evaluation_window_ms,
            "min_signal_gap_ms": self.min_signal_gap_ms,
            "rolling_ttl_ms": self.rolling_ttl_ms,
            "rolling_max_entries": self.rolling_max_entries,
            "cvd_max_entries": self.cvd_max_entries,
            "bias_history_ttl_ms": self.bias_history_ttl_ms,
            "bias_history_max_entries": self.bias_history_max_entries,
            "signal_log_max_entries": self.signal_log_max_entries,
            "recompute_interval_ms": self.recompute_interval_ms,
            "bias_sample_interval_ms": self.bias_sample_interval_ms,
            "evaluate_interval_ms": self.evaluate_interval_ms,
            "flush_interval_ms": self.flush_interval_ms,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if self.evaluation_grace_ms < 0:
            raise ConfigError("evaluation_grace_ms must not be negative")
        if self.win_threshold_pct < 0:
            raise ConfigError("win_threshold_pct must not be negative")
        weights = self.weights.as_dict()
        if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
            raise ConfigError(f"Invalid composite weights: {weights}")

    @classmethod
    def from_env(cls, **overrides) -> "FusionConfig":
        """
        Build a config from environment variables, then apply overrides.

        Reads:
        - FUSION_TIMEFRAMES: comma separated, e.g. "5m,15m,1h"
        - FUSION_STATE_DIR: persistence directory
        - FUSION_PRIMARY_EXCHANGE: exchange id
        - FUSION_WHALE_THRESHOLD: whale trade notional
        """
        kwargs = {}
        timeframes = os.getenv("FUSION_TIMEFRAMES")
        if timeframes:
            kwargs["timeframes"] = [tf for tf in timeframes.split(",") if tf.strip()]
        state_dir = os.getenv("FUSION_STATE_DIR")
        if state_dir:
            kwargs["state_dir"] = state_dir
        primary = os.getenv("FUSION_PRIMARY_EXCHANGE")
        if primary:
            kwargs["primary_exchange"] = primary.lower()
        whale = os.getenv("FUSION_WHALE_THRESHOLD")
        if whale:
            try:
                kwargs["whale_threshold_quote"] = float(whale)
            except ValueError as exc:
                raise ConfigError(f"Invalid FUSION_WHALE_THRESHOLD: {whale}") from exc
        kwargs.update(overrides)
        return cls(**kwargs)

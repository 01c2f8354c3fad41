"""Pure computation: derived metrics, classifiers and composite bias."""

from .bias_components import (
    BiasComponent,
    WhaleBias,
    calculate_cvd_bias,
    calculate_funding_bias,
    calculate_oi_bias,
    calculate_orderbook_bias,
    calculate_whale_bias,
)
from .composite_bias import CompositeBias, calculate_composite_bias
from .derived_metrics import SeriesView, TimeframeProjection, build_projection
from .flow_confluence import (
    FlowConfluenceResult,
    calculate_divergence_strength,
    calculate_flow_confluence,
    detect_absorption,
    detect_edge_signals,
    detect_oi_price_pattern,
    select_priority_signal,
)
from .fusion_config import DEFAULT_CONFIG, BiasWeights, ClassifierConfig, FusionConfig, get_config
from .signals import BiasLabel, Direction, FlowType, Grade, Signal

__all__ = [
    "BiasComponent",
    "BiasLabel",
    "BiasWeights",
    "ClassifierConfig",
    "CompositeBias",
    "DEFAULT_CONFIG",
    "Direction",
    "FlowConfluenceResult",
    "FlowType",
    "FusionConfig",
    "Grade",
    "SeriesView",
    "Signal",
    "TimeframeProjection",
    "WhaleBias",
    "build_projection",
    "calculate_composite_bias",
    "calculate_cvd_bias",
    "calculate_divergence_strength",
    "calculate_flow_confluence",
    "calculate_funding_bias",
    "calculate_oi_bias",
    "calculate_orderbook_bias",
    "calculate_whale_bias",
    "detect_absorption",
    "detect_edge_signals",
    "detect_oi_price_pattern",
    "get_config",
    "select_priority_signal",
]

"""
Tests for flow confluence and edge signals.
"""

import pytest

from market_fusion.engines.derived_metrics import SeriesView, build_projection
from market_fusion.engines.flow_confluence import (
    calculate_divergence_strength,
    calculate_flow_confluence,
    classify_flow,
    detect_absorption,
    detect_edge_signals,
    detect_oi_price_pattern,
    select_priority_signal,
)
from market_fusion.engines.signals import Direction, FlowType, Signal, Strength

NOW = 1_700_000_000_000
MIN = 60_000


class TestConfluenceTable:
    """(price, OI, CVD) directions -> flow type and score."""

    def test_strong_bull(self):
        result = classify_flow(0.6, 2.0, 5000)
        assert result.flow_type is FlowType.STRONG_BULL
        assert result.score == 9
        assert result.signal is Signal.BULLISH

    def test_strong_bear(self):
        result = classify_flow(-0.6, 2.0, -5000)
        assert result.flow_type is FlowType.STRONG_BEAR
        assert result.score == -9

    def test_distribution_divergence(self):
        result = classify_flow(0.5, 1.5, -6000)
        assert result.flow_type is FlowType.DIVERGENCE
        assert result.score == 2
        assert result.divergence.type is Signal.BEARISH

    def test_accumulation_divergence(self):
        result = classify_flow(-0.5, 1.5, 6000)
        assert result.flow_type is FlowType.DIVERGENCE
        assert result.score == -2
        assert result.divergence.type is Signal.BULLISH

    def test_weak_bull_and_bear(self):
        assert classify_flow(0.5, -1.5, -2000).flow_type is FlowType.WEAK_BULL
        assert classify_flow(0.5, -1.5, -2000).score == 3
        assert classify_flow(-0.5, -1.5, 2000).flow_type is FlowType.WEAK_BEAR
        assert classify_flow(-0.5, -1.5, 2000).score == -3

    @pytest.mark.parametrize("oi", [-2.0, 0.0])
    def test_bullish_with_any_oi(self, oi):
        result = classify_flow(0.5, oi, 2000)
        assert result.flow_type is FlowType.BULLISH
        assert result.score == 5

    def test_bearish_with_flat_oi(self):
        assert classify_flow(-0.5, 0.0, -2000).flow_type is FlowType.BEARISH

    def test_specific_rows_win_over_broad_rows(self):
        # (UP, UP, UP) also matches the BULLISH row
        assert classify_flow(0.5, 1.5, 2000).flow_type is FlowType.STRONG_BULL

    def test_threshold_values_are_flat(self):
        result = classify_flow(0.3, 1.0, 1000)
        assert (result.price_dir, result.oi_dir, result.cvd_dir) == (Direction.FLAT,) * 3
        assert result.flow_type is FlowType.NEUTRAL
        assert result.score == 0

    def test_just_over_threshold(self):
        result = classify_flow(0.31, 1.01, 1001)
        assert result.flow_type is FlowType.STRONG_BULL


class TestEdgeSignals:
    def test_bearish_divergence_strength(self):
        result = calculate_divergence_strength(0.5, -6000)
        assert result.type is Signal.BEARISH
        assert result.strength == pytest.approx(0.5 * 20 + 6000 / 100_000)
        assert result.strength_label is Strength.WEAK

    def test_divergence_needs_opposite_signs(self):
        assert calculate_divergence_strength(0.5, 6000) is None
        assert calculate_divergence_strength(0.0, -6000) is None

    def test_divergence_capped_and_strong(self):
        result = calculate_divergence_strength(-10.0, 10_000_000)
        assert result.strength == 100.0
        assert result.is_strong
        assert result.type is Signal.BULLISH

    def test_selling_absorbed(self):
        result = detect_absorption(0.1, -120_000)
        assert result.type is Signal.BULLISH
        assert result.is_strong is True

    def test_buying_absorbed_moderate(self):
        result = detect_absorption(-0.1, 60_000)
        assert result.type is Signal.BEARISH
        assert result.is_strong is False

    def test_no_absorption_when_price_moves(self):
        assert detect_absorption(0.5, -6000) is None
        assert detect_absorption(0.3, -120_000) is None

    def test_oi_patterns(self):
        assert detect_oi_price_pattern(2.0, 0.0).pattern == "COIL_FORMING"
        assert detect_oi_price_pattern(-2.0, 1.0).pattern == "SHORT_COVERING"
        assert detect_oi_price_pattern(2.0, -1.0).pattern == "STRONG_FLOW_BEAR"
        assert detect_oi_price_pattern(0.0, 0.0) is None

    def test_priority_prefers_strong_then_category(self):
        divergence = calculate_divergence_strength(0.5, -6000)
        absorption = detect_absorption(0.1, -120_000)
        assert select_priority_signal([divergence, absorption]) is absorption
        weak_absorption = detect_absorption(0.1, -60_000)
        assert select_priority_signal([weak_absorption, divergence]) is divergence
        assert select_priority_signal([]) is None


class TestProjectionClassification:
    def test_scenario_distribution(self):
        view = SeriesView(
            price=[(NOW - 5 * MIN, 100.0), (NOW, 100.5)],
            oi=[(NOW - 5 * MIN, 1e9), (NOW, 1.015e9)],
            cvd_ledger=[(NOW - MIN, -6000.0)],
            price_session_start=100.0,
            oi_session_start=1e9,
        )
        projection = build_projection("BTC", view, NOW, 5)
        flow = calculate_flow_confluence(projection)
        edges = detect_edge_signals(projection)
        assert flow.flow_type is FlowType.DIVERGENCE
        assert flow.has_timeframe_data
        assert edges.divergence.type is Signal.BEARISH
        assert edges.absorption is None

    def test_insufficient_window_falls_back_to_session(self):
        view = SeriesView(
            price=[(NOW, 105.0)],
            oi=[(NOW, 1.1e9)],
            price_session_start=100.0,
            oi_session_start=1e9,
        )
        projection = build_projection("BTC", view, NOW, 5)
        flow = calculate_flow_confluence(projection)
        assert flow.has_timeframe_data is False
        assert "session fallback" in flow.reason
        # large session move, but no CVD -> no confluence row matches
        assert flow.flow_type is FlowType.NEUTRAL

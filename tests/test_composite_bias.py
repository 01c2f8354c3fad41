"""
Tests for component scorers and the composite bias aggregator.
"""

import pytest

from market_fusion.continuous.data_types import WhaleConsensus, WhalePosition
from market_fusion.engines.bias_components import (
    calculate_cvd_bias,
    calculate_funding_bias,
    calculate_oi_bias,
    calculate_orderbook_bias,
    calculate_whale_bias,
)
from market_fusion.engines.composite_bias import (
    aggregate,
    bias_label_for,
    calculate_composite_bias,
    grade_for,
)
from market_fusion.engines.derived_metrics import (
    CvdProjection,
    FundingProjection,
    FundingTrend,
    OrderbookProjection,
    SeriesView,
    build_projection,
)
from market_fusion.engines.flow_confluence import classify_flow
from market_fusion.engines.fusion_config import BiasWeights
from market_fusion.engines.signals import BiasLabel, FlowType, Grade, Signal

NOW = 1_700_000_000_000
MIN = 60_000


def _whales(longs, shorts, consistent_longs=0, consistent_shorts=0):
    return WhaleConsensus(
        instrument="BTC",
        longs=[WhalePosition(f"0xl{i}", 1.0, is_consistent=i < consistent_longs) for i in range(longs)],
        shorts=[WhalePosition(f"0xs{i}", -1.0, is_consistent=i < consistent_shorts) for i in range(shorts)],
        timestamp_ms=NOW,
    )


def _strong_bull_view():
    return SeriesView(
        price=[(NOW - 5 * MIN, 100.0), (NOW, 100.6)],
        oi=[(NOW - 5 * MIN, 1.0e9), (NOW, 1.02e9)],
        cvd_ledger=[(NOW - MIN, 5000.0)],
        price_session_start=100.0,
        oi_session_start=1.0e9,
    )


class TestGradesAndLabels:
    @pytest.mark.parametrize(
        "score,grade",
        [(0.6, Grade.A_PLUS), (0.59, Grade.A), (0.4, Grade.A), (0.2, Grade.B), (-0.2, Grade.C),
         (-0.4, Grade.D), (-0.41, Grade.F)],
    )
    def test_grade_buckets(self, score, grade):
        assert grade_for(score) is grade

    @pytest.mark.parametrize(
        "score,label",
        [(0.6, BiasLabel.STRONG_BULL), (0.3, BiasLabel.BULLISH), (0.1, BiasLabel.LEAN_BULL),
         (-0.1, BiasLabel.NEUTRAL), (-0.2, BiasLabel.LEAN_BEAR), (-0.3, BiasLabel.BEARISH),
         (-0.6, BiasLabel.STRONG_BEAR)],
    )
    def test_label_buckets(self, score, label):
        assert bias_label_for(score) is label


class TestComponentScores:
    def test_funding_extreme_is_contrarian(self):
        funding = FundingProjection(rate=6e-4, available=True)
        assert calculate_funding_bias(funding).score == -4
        funding = FundingProjection(rate=-6e-4, available=True)
        assert calculate_funding_bias(funding).score == 4

    def test_funding_elevated_follows_sentiment_with_trend(self):
        funding = FundingProjection(rate=3e-4, available=True, trend=FundingTrend(delta=2e-4))
        result = calculate_funding_bias(funding)
        assert result.score == 3
        assert "Funding rising" in result.reasons

    def test_funding_unavailable(self):
        result = calculate_funding_bias(FundingProjection())
        assert result.score == 0
        assert result.available is False

    def test_orderbook_sustained_bids(self):
        result = calculate_orderbook_bias(OrderbookProjection(imbalance=40.0, avg_imbalance=25.0))
        assert result.score == 7

    def test_orderbook_moderate_asks(self):
        result = calculate_orderbook_bias(OrderbookProjection(imbalance=-15.0, avg_imbalance=-15.0))
        assert result.score == -3
        assert result.signal is Signal.BEARISH

    def test_whale_strong_long_with_consistency(self):
        result = calculate_whale_bias(_whales(5, 1, consistent_longs=2))
        assert result.score == 10
        assert result.long_pct == pytest.approx(5 / 6)

    def test_whale_lean_short(self):
        assert calculate_whale_bias(_whales(2, 3)).score == -4

    def test_whale_insufficient(self):
        result = calculate_whale_bias(_whales(1, 0))
        assert result.available is False
        assert result.reasons == ["Insufficient data"]
        assert calculate_whale_bias(None).available is False

    def test_cvd_bias_with_divergence_penalty(self):
        result = calculate_cvd_bias(CvdProjection(timeframe_delta=-100.0, trend=-5.0), price_change=1.0)
        assert result.score == -9

    def test_oi_bias_new_longs(self):
        view = SeriesView(
            price=[(NOW - 5 * MIN, 100.0), (NOW, 101.0)],
            oi=[(NOW - 5 * MIN, 1e9), (NOW, 1.05e9)],
            funding=[(NOW, 1e-4)],
            price_session_start=100.0,
            oi_session_start=1e9,
        )
        assert calculate_oi_bias(build_projection("BTC", view, NOW, 5)).score == 8


class TestAggregate:
    def test_strong_bull_scenario(self):
        projection = build_projection("BTC", _strong_bull_view(), NOW, 5)
        composite = calculate_composite_bias(projection)
        assert composite.flow.flow_type is FlowType.STRONG_BULL
        assert composite.flow.score == 9
        assert composite.normalized_score == pytest.approx(9 * 5 / (9 * 7))
        assert composite.grade is Grade.A_PLUS
        assert composite.absent == ["whale"]
        assert "whale" not in composite.weights_used
        assert set(composite.components) == {"flow", "whale", "ob", "funding", "oi", "cvd"}

    def test_whale_weight_counts_when_available(self):
        projection = build_projection("BTC", _strong_bull_view(), NOW, 5)
        composite = calculate_composite_bias(projection, _whales(5, 0))
        # (9*5 + 8*3) / 10 / 9
        assert composite.normalized_score == pytest.approx((45 + 24) / 10 / 9)
        assert composite.absent == []

    def test_normalized_is_clamped(self):
        flow = classify_flow(0.0, 0.0, 0.0)
        funding = calculate_funding_bias(FundingProjection())
        orderbook = calculate_orderbook_bias(OrderbookProjection())
        whale = calculate_whale_bias(_whales(6, 0, consistent_longs=3))
        composite = aggregate(
            "BTC",
            flow,
            funding,
            orderbook,
            whale,
            weights=BiasWeights(flow=0.0, whale=1.0, ob=0.0, funding=0.0),
        )
        # whale alone scores 10, above the max flow score of 9
        assert composite.score == 10
        assert composite.normalized_score == 1.0
        assert composite.label is BiasLabel.STRONG_BULL

    def test_to_dict_shape(self):
        projection = build_projection("BTC", _strong_bull_view(), NOW, 5)
        data = calculate_composite_bias(projection).to_dict()
        assert data["grade"] == "A+"
        assert data["flow"] == "STRONG_BULL"
        assert data["timeframe"] == 5
        assert data["components"]["whale"]["available"] is False

"""
Tests for the snapshot normalizer.
"""

import pytest

from market_fusion.continuous.data_types import Side
from market_fusion.continuous.normalizer import SnapshotNormalizer, aggregate_levels, parse_side
from market_fusion.errors import InvalidInputError

NOW = 1_700_000_000_000


@pytest.fixture
def normalizer():
    return SnapshotNormalizer()


class TestNormalizeTick:
    """Raw snapshot -> InstrumentTick."""

    def test_base_unit_oi_converted_to_quote(self, normalizer):
        tick = normalizer.normalize_tick("hyperliquid", "btc", {"markPx": "50000", "openInterest": "10"}, NOW)
        assert tick.instrument == "BTC"
        assert tick.price == 50000.0
        assert tick.open_interest == 500000.0
        assert tick.timestamp_ms == NOW
        assert tick.funding_rate is None
        assert tick.orderbook is None

    def test_orderbook_aggregated_to_quote_depth(self, normalizer):
        raw = {
            "price": 100,
            "open_interest": 1,
            "bids": [[100, 2], {"px": "99", "sz": "1"}],
            "asks": [[101, 1]],
        }
        tick = normalizer.normalize_tick("binance", "ETH", raw, NOW)
        assert tick.orderbook.bid_depth == 299.0
        assert tick.orderbook.ask_depth == 101.0
        assert tick.orderbook.imbalance == pytest.approx((299 - 101) / 400 * 100)

    def test_fixed_point_exchange_is_descaled(self, normalizer):
        raw = {"price": 50000 * 10**18, "open_interest": 2, "funding_rate": 10**14}
        tick = normalizer.normalize_tick("nado", "BTC", raw, NOW)
        assert tick.price == pytest.approx(50000.0)
        assert tick.funding_rate == pytest.approx(1e-4)

    def test_invalid_price_is_dropped_and_counted(self, normalizer):
        assert normalizer.normalize_tick("binance", "BTC", {"price": "abc", "open_interest": 1}, NOW) is None
        assert normalizer.normalize_tick("binance", "BTC", {"price": -5, "open_interest": 1}, NOW) is None
        status = normalizer.status("binance")
        assert status.dropped == 2
        assert "price" in status.last_error

    def test_non_positive_oi_is_dropped(self, normalizer):
        assert normalizer.normalize_tick("binance", "BTC", {"price": 1, "open_interest": 0}, NOW) is None

    def test_inactive_exchange_is_dropped(self, normalizer):
        assert normalizer.normalize_tick("lighter", "BTC", {"price": 1, "open_interest": 1}, NOW) is None
        assert normalizer.normalize_tick("variational", "BTC", {"price": 1, "open_interest": 1}, NOW) is None
        assert normalizer.normalize_tick("unknown", "BTC", {"price": 1, "open_interest": 1}, NOW) is None

    def test_explicit_timestamp_is_kept(self, normalizer):
        tick = normalizer.normalize_tick("binance", "BTC", {"price": 1, "open_interest": 1, "time": NOW - 500}, NOW)
        assert tick.timestamp_ms == NOW - 500


class TestNormalizeTrades:
    """Raw trades -> TradeEvent, invalid ones dropped individually."""

    def test_hyperliquid_style(self, normalizer):
        trades = normalizer.normalize_trades(
            "hyperliquid", "BTC", [{"px": "100", "sz": "2", "side": "B", "time": NOW, "tid": 1}], NOW
        )
        assert len(trades) == 1
        assert trades[0].side is Side.BUY
        assert trades[0].notional == 200.0
        assert trades[0].trade_id == "1"

    def test_binance_maker_flag(self, normalizer):
        trades = normalizer.normalize_trades(
            "binance", "BTC", [{"p": "100", "q": "1", "m": True, "T": NOW, "a": 9}], NOW
        )
        assert trades[0].side is Side.SELL

    def test_bad_trade_skipped(self, normalizer):
        trades = normalizer.normalize_trades(
            "binance",
            "BTC",
            [{"px": 1, "sz": 1, "side": "B", "tid": 1}, {"px": 1, "sz": 1, "side": "?", "tid": 2}],
            NOW,
        )
        assert [t.trade_id for t in trades] == ["1"]
        assert normalizer.status("binance").dropped == 1

    def test_missing_trade_id(self, normalizer):
        assert normalizer.normalize_trades("binance", "BTC", [{"px": 1, "sz": 1, "side": "B"}], NOW) == []


class TestHelpers:
    def test_aggregate_levels_respects_depth(self):
        levels = [[10, 1]] * 15
        assert aggregate_levels(levels, "bids", 10) == 100.0

    def test_parse_side(self):
        assert parse_side({"side": "sell"}) is Side.SELL
        with pytest.raises(InvalidInputError):
            parse_side({"side": "flat"})

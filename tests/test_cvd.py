"""
Tests for the CVD accumulator.
"""

from market_fusion.continuous.cvd import CvdAccumulator, TradeDeduplicator
from market_fusion.continuous.data_types import Side, TradeEvent
from market_fusion.continuous.history_registry import FamilyBounds, HistoryFamily, HistoryRegistry

NOW = 1_700_000_000_000


def _trade(tid, side, price=100.0, size=1.0, exchange="hyperliquid"):
    return TradeEvent(
        exchange=exchange,
        instrument="BTC",
        timestamp_ms=NOW,
        price=price,
        size=size,
        side=side,
        trade_id=str(tid),
    )


def _accumulator():
    registry = HistoryRegistry({family: FamilyBounds(3_600_000, 5000) for family in HistoryFamily})
    return CvdAccumulator(registry), registry


class TestApplyTrades:
    """Batch deltas and running scalars."""

    def test_batch_delta(self):
        acc, _ = _accumulator()
        update = acc.apply_trades(
            "hyperliquid",
            "BTC",
            [_trade(1, Side.BUY, size=3.0), _trade(2, Side.SELL, size=1.0)],
            NOW,
        )
        assert update.recent_buy == 300.0
        assert update.recent_sell == 100.0
        assert update.recent_delta == 200.0
        assert update.trades == 2
        assert acc.state("hyperliquid", "BTC").session_delta == 200.0

    def test_ledger_gets_one_increment_per_batch(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        acc.apply_trades("hyperliquid", "BTC", [_trade(2, Side.SELL, size=2.0)], NOW + 1000)
        assert acc.ledger("hyperliquid", "BTC") == [(NOW, 100.0), (NOW + 1000, -200.0)]

    def test_trend_is_change_of_increment(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        acc.apply_trades("hyperliquid", "BTC", [_trade(2, Side.BUY, size=4.0)], NOW + 1000)
        assert acc.trend("hyperliquid", "BTC") == 300.0

    def test_same_millisecond_batches_get_distinct_slots(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        acc.apply_trades("hyperliquid", "BTC", [_trade(2, Side.BUY)], NOW)
        assert [ts for ts, _ in acc.ledger("hyperliquid", "BTC")] == [NOW, NOW + 1]

    def test_marks_exchange_dirty(self):
        acc, registry = _accumulator()
        acc.apply_trades("binance", "BTC", [_trade(1, Side.BUY, exchange="binance")], NOW)
        assert "binance" in registry.dirty_exchanges()


class TestDeduplication:
    """Trades are keyed by (exchange, trade id)."""

    def test_duplicate_trades_skipped(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        update = acc.apply_trades(
            "hyperliquid", "BTC", [_trade(1, Side.BUY), _trade(2, Side.SELL)], NOW + 1000
        )
        assert update.trades == 1
        assert update.duplicates == 1
        assert update.recent_delta == -100.0
        assert [t.trade_id for t in update.fresh_trades] == ["2"]

    def test_all_duplicate_batch_is_a_no_op(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        assert acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW + 1000) is None
        assert len(acc.ledger("hyperliquid", "BTC")) == 1

    def test_same_id_on_different_exchanges_is_distinct(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(7, Side.BUY)], NOW)
        update = acc.apply_trades("binance", "BTC", [_trade(7, Side.BUY, exchange="binance")], NOW)
        assert update is not None

    def test_dedupe_memory_is_bounded(self):
        dedupe = TradeDeduplicator(max_keys=2)
        assert dedupe.is_new(("x", "1"))
        assert dedupe.is_new(("x", "2"))
        assert dedupe.is_new(("x", "3"))
        assert len(dedupe) == 2
        assert dedupe.is_new(("x", "1"))


class TestRollingDelta:
    """Window sums over the ledger."""

    def test_rolling_delta_excludes_old_increments(self):
        acc, _ = _accumulator()
        acc.apply_trades("hyperliquid", "BTC", [_trade(1, Side.BUY)], NOW)
        acc.apply_trades("hyperliquid", "BTC", [_trade(2, Side.SELL, size=0.5)], NOW + 6 * 60_000)
        assert acc.rolling_delta("hyperliquid", "BTC", 5 * 60_000, NOW + 6 * 60_000) == -50.0
        assert acc.timeframe_delta("hyperliquid", "BTC", 15, NOW + 6 * 60_000) == 50.0

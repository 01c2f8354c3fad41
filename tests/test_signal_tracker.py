"""
Tests for the signal outcome tracker.
"""

import pytest

from market_fusion.continuous.scheduler import ManualClock
from market_fusion.continuous.signal_tracker import SignalLogEntry, SignalOutcomeTracker
from market_fusion.engines.signals import FlowType

T0 = 1_700_000_000_000
SEC = 1000
MIN = 60 * SEC


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def tracker(clock):
    return SignalOutcomeTracker(clock)


class TestLogSignal:
    """Logging, filtering and debounce."""

    def test_logs_directional_signal(self, tracker):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        assert entry.is_pending
        assert entry.timestamp_ms == T0
        assert tracker.signal_log("BTC") == [entry]
        assert tracker.is_dirty

    def test_accepts_string_types(self, tracker):
        assert tracker.log_signal("BTC", "bearish", 100.0).type is FlowType.BEARISH

    @pytest.mark.parametrize("flow", [FlowType.NEUTRAL, FlowType.DIVERGENCE])
    def test_ignores_untracked_types(self, tracker, flow):
        assert tracker.log_signal("BTC", flow, 100.0) is None
        assert tracker.signal_log("BTC") == []

    def test_ignores_invalid_price(self, tracker):
        assert tracker.log_signal("BTC", FlowType.BULLISH, 0) is None

    def test_debounce_same_type(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        clock.advance(30 * SEC)
        assert tracker.log_signal("BTC", FlowType.BULLISH, 100.5) is None
        assert len(tracker.signal_log("BTC")) == 1

    def test_debounce_expires_after_gap(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        clock.advance(MIN)
        assert tracker.log_signal("BTC", FlowType.BULLISH, 100.5) is not None

    def test_different_type_not_debounced(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        clock.advance(10 * SEC)
        assert tracker.log_signal("BTC", FlowType.WEAK_BEAR, 100.0) is not None

    def test_newest_first_and_bounded(self, clock):
        tracker = SignalOutcomeTracker(clock, max_entries=3, min_gap_ms=1)
        for i in range(5):
            clock.advance(SEC)
            tracker.log_signal("BTC", FlowType.BULLISH, 100.0 + i)
        prices = [e.entry_price for e in tracker.signal_log("BTC")]
        assert prices == [104.0, 103.0, 102.0]


class TestEvaluateSignals:
    """Evaluation horizon, win threshold and expiry."""

    def test_win_at_exactly_fifteen_minutes(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 15 * MIN)
        results = tracker.evaluate_signals({"BTC": 100.35})
        assert len(results) == 1
        assert entry.won is True
        assert entry.exit_price == 100.35
        assert entry.evaluated_at_ms == T0 + 15 * MIN

    def test_loss_just_after_fifteen_minutes(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 15 * MIN + SEC)
        tracker.evaluate_signals({"BTC": 100.2})
        assert entry.won is False

    def test_expired_after_grace(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 18 * MIN)
        results = tracker.evaluate_signals({"BTC": 105.0})
        assert results[0].expired
        assert entry.expired is True
        assert entry.won is None
        assert entry.exit_price is None

    def test_not_evaluated_before_window(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 14 * MIN)
        assert tracker.evaluate_signals({"BTC": 110.0}) == []
        assert entry.is_pending

    def test_bearish_wins_on_drop(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.BEARISH, 100.0)
        clock.set(T0 + 16 * MIN)
        tracker.evaluate_signals({"BTC": 99.6})
        assert entry.won is True

    def test_resolved_entries_are_final(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 15 * MIN)
        tracker.evaluate_signals({"BTC": 101.0})
        clock.set(T0 + 16 * MIN)
        assert tracker.evaluate_signals({"BTC": 90.0}) == []
        assert entry.won is True
        assert entry.exit_price == 101.0

    def test_missing_price_skips_instrument(self, tracker, clock):
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 15 * MIN)
        assert tracker.evaluate_signals({"ETH": 10.0}) == []
        assert entry.is_pending

    def test_expires_without_price(self, tracker, clock):
        """Expiry past the grace period does not wait for a price."""
        entry = tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        clock.set(T0 + 18 * MIN)
        results = tracker.evaluate_signals({})
        assert [r.expired for r in results] == [True]
        assert entry.expired is True
        assert entry.exit_price is None
        assert tracker.is_dirty


class TestWinRates:
    def test_no_evaluations_means_no_rate(self, tracker):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        rates = tracker.get_win_rates("BTC")
        assert rates.overall.win_rate is None
        assert rates.pending == 1
        assert rates.to_dict()["overall"]["winRate"] is None

    def test_rates_by_type(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        tracker.log_signal("BTC", FlowType.BEARISH, 100.0)
        clock.advance(15 * MIN)
        tracker.evaluate_signals({"BTC": 100.5})
        rates = tracker.get_win_rates("BTC")
        assert rates.by_type[FlowType.BULLISH].wins == 1
        assert rates.by_type[FlowType.BEARISH].losses == 1
        assert rates.overall.win_rate == pytest.approx(50.0)
        assert rates.total_logged == 2

    def test_signal_stats(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        clock.advance(15 * MIN)
        tracker.evaluate_signals({"BTC": 101.0})
        stats = tracker.get_signal_stats("BTC", FlowType.BULLISH)
        assert len(stats.recent_wins) == 1
        assert stats.avg_win_pct == pytest.approx(1.0)
        assert stats.recent_losses == []


class TestPersistence:
    def test_snapshot_restore(self, tracker, clock):
        tracker.log_signal("BTC", FlowType.BULLISH, 100.0)
        clock.advance(15 * MIN)
        tracker.evaluate_signals({"BTC": 101.0})
        payload = tracker.snapshot()

        restored = SignalOutcomeTracker(clock)
        assert restored.restore(payload) == 1
        entry = restored.signal_log("BTC")[0]
        assert entry.won is True
        assert entry.exit_price == 101.0
        assert payload["BTC"][0]["entryPrice"] == 100.0

    def test_restore_drops_old_and_malformed(self, clock):
        tracker = SignalOutcomeTracker(clock, max_age_ms=60 * MIN)
        payload = {
            "BTC": [
                {"type": "BULLISH", "entryPrice": 1.0, "timestamp": T0 - 2 * 60 * MIN},
                {"type": "BEARISH", "entryPrice": 2.0, "timestamp": T0 - MIN},
                {"type": "NOPE", "entryPrice": 2.0, "timestamp": T0},
                {"entryPrice": 2.0},
            ]
        }
        assert tracker.restore(payload) == 1
        assert tracker.signal_log("BTC")[0].type is FlowType.BEARISH

    def test_restore_keeps_debounce(self, tracker, clock):
        tracker.restore({"BTC": [{"type": "BULLISH", "entryPrice": 1.0, "timestamp": T0 - 10 * SEC}]})
        assert tracker.log_signal("BTC", FlowType.BULLISH, 1.0) is None

    def test_entry_round_trip(self):
        entry = SignalLogEntry("BTC", FlowType.WEAK_BEAR, 10.0, T0, exit_price=9.0, evaluated_at_ms=T0 + 1, won=True)
        assert SignalLogEntry.from_dict("BTC", entry.to_dict()) == entry

    def test_prune(self, clock):
        tracker = SignalOutcomeTracker(clock, max_age_ms=60 * MIN)
        tracker.log_signal("BTC", FlowType.BULLISH, 1.0)
        clock.advance(61 * MIN)
        assert tracker.prune() == 1
        assert tracker.signal_log("BTC") == []

"""
Tests for runner output formatting.
"""

from market_fusion.continuous.signal_tracker import EvaluationResult, SignalLogEntry
from market_fusion.display import Colors, format_evaluation, format_signal, score_bar
from market_fusion.engines.signals import FlowType


def _strip(text):
    for code in (Colors.RESET, Colors.BOLD, Colors.DIM, Colors.RED, Colors.GREEN, Colors.YELLOW,
                 Colors.MAGENTA, Colors.CYAN):
        text = text.replace(code, "")
    return text


class TestFormatters:
    def test_score_bar_fills_from_center(self):
        assert _strip(score_bar(0.6, width=10)) == "░░░░░│███░░"
        assert _strip(score_bar(-1.0, width=10)) == "█████│░░░░░"

    def test_format_signal(self):
        entry = SignalLogEntry("BTC", FlowType.STRONG_BULL, 43_000.0, 0)
        assert _strip(format_signal(entry)) == "SIGNAL BTC STRONG_BULL @ 43,000.00"

    def test_format_evaluation(self):
        entry = SignalLogEntry("BTC", FlowType.BEARISH, 100.0, 0, exit_price=99.0, won=True)
        text = _strip(format_evaluation(EvaluationResult(entry=entry, expired=False, pct_change=-1.0)))
        assert text.startswith("WIN BTC BEARISH")
        assert "(-1.00%)" in text

        expired = SignalLogEntry("BTC", FlowType.BEARISH, 100.0, 0, expired=True)
        assert _strip(format_evaluation(EvaluationResult(entry=expired, expired=True))) == "EXPIRED BTC BEARISH"

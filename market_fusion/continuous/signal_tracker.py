"""
Signal Outcome Tracker.

Logs directional flow signals and grades them after a fixed horizon.

State machine per entry:

    [pending] --15m <= age <= 17m--> evaluate vs ±0.3% --> [resolved]
    [pending] --age > 17m----------> expired, won=None  --> [expired]

Resolved and expired entries are never touched again. Entries are kept
newest first, bounded per instrument by count and age.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..engines.signals import (
    BULLISH_FLOW_TYPES,
    TRACKED_FLOW_TYPES,
    FlowType,
    FlowTypeLike,
    coerce_flow_type,
)

logger = logging.getLogger(__name__)


@dataclass
class SignalLogEntry:
    """One logged signal. Mutated at most once, on evaluation or expiry."""

    instrument: str
    type: FlowType
    entry_price: float
    timestamp_ms: int
    exit_price: Optional[float] = None
    evaluated_at_ms: Optional[int] = None
    won: Optional[bool] = None
    expired: bool = False

    @property
    def is_pending(self) -> bool:
        return self.won is None and not self.expired

    @property
    def is_resolved(self) -> bool:
        return self.won is not None

    @property
    def pct_change(self) -> Optional[float]:
        if self.exit_price is None or not self.entry_price:
            return None
        return (self.exit_price - self.entry_price) / self.entry_price * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "type": self.type.value,
            "entryPrice": self.entry_price,
            "timestamp": self.timestamp_ms,
            "exitPrice": self.exit_price,
            "evaluatedAt": self.evaluated_at_ms,
            "won": self.won,
            "expired": self.expired,
        }

    @classmethod
    def from_dict(cls, instrument: str, data: Mapping[str, Any]) -> "SignalLogEntry":
        """Raises ValueError/KeyError/TypeError on malformed input."""
        exit_price = data.get("exitPrice")
        evaluated_at = data.get("evaluatedAt")
        won = data.get("won")
        return cls(
            instrument=instrument,
            type=coerce_flow_type(data["type"]),
            entry_price=float(data["entryPrice"]),
            timestamp_ms=int(data["timestamp"]),
            exit_price=float(exit_price) if exit_price is not None else None,
            evaluated_at_ms=int(evaluated_at) if evaluated_at is not None else None,
            won=bool(won) if won is not None else None,
            expired=bool(data.get("expired", False)),
        )


@dataclass
class WinRateStats:
    wins: int = 0
    losses: int = 0
    total: int = 0

    @property
    def win_rate(self) -> Optional[float]:
        """wins / total * 100, undefined (None) when nothing was evaluated."""
        return self.wins / self.total * 100 if self.total > 0 else None

    def add(self, won: bool) -> None:
        self.total += 1
        if won:
            self.wins += 1
        else:
            self.losses += 1

    def to_dict(self) -> Dict[str, Any]:
        return {"wins": self.wins, "losses": self.losses, "total": self.total, "winRate": self.win_rate}


@dataclass
class WinRates:
    by_type: Dict[FlowType, WinRateStats]
    overall: WinRateStats
    pending: int
    expired: int
    total_logged: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "byType": {t.value: s.to_dict() for t, s in self.by_type.items()},
            "overall": self.overall.to_dict(),
            "pending": self.pending,
            "expired": self.expired,
            "totalLogged": self.total_logged,
        }


@dataclass
class SignalStats:
    recent_wins: List[SignalLogEntry] = field(default_factory=list)
    recent_losses: List[SignalLogEntry] = field(default_factory=list)
    pending: int = 0
    avg_win_pct: float = 0.0
    avg_loss_pct: float = 0.0


@dataclass
class EvaluationResult:
    entry: SignalLogEntry
    expired: bool
    pct_change: Optional[float] = None


def _avg_pct(entries: List[SignalLogEntry]) -> float:
    if not entries:
        return 0.0
    total = sum(e.pct_change or 0.0 for e in entries)
    return total / len(entries)


class SignalOutcomeTracker:
    """
    Per-instrument signal log with delayed evaluation.

    Usage:
        tracker = SignalOutcomeTracker(clock)
        tracker.log_signal("BTC", FlowType.STRONG_BULL, 100.0)
        ...
        tracker.evaluate_signals({"BTC": 100.35})
        tracker.get_win_rates("BTC")
    """

    def __init__(
        self,
        clock,
        evaluation_window_ms: int = 15 * 60 * 1000,
        grace_ms: int = 2 * 60 * 1000,
        min_gap_ms: int = 60 * 1000,
        win_threshold_pct: float = 0.3,
        max_entries: int = 500,
        max_age_ms: int = 7 * 24 * 60 * 60 * 1000,
    ):
        self._clock = clock
        self.evaluation_window_ms = evaluation_window_ms
        self.grace_ms = grace_ms
        self.min_gap_ms = min_gap_ms
        self.win_threshold_pct = win_threshold_pct
        self.max_entries = max_entries
        self.max_age_ms = max_age_ms

        self._log: Dict[str, List[SignalLogEntry]] = {}
        self._last_logged: Dict[str, tuple] = {}  # instrument -> (type, ts)
        self._dirty = False

    # === Logging ===

    def log_signal(self, instrument: str, signal_type: FlowTypeLike, entry_price: float) -> Optional[SignalLogEntry]:
        """
        Log a signal unless it is neutral or a same-type repeat within the gap.

        Returns the new entry, or None when ignored.
        """
        flow_type = coerce_flow_type(signal_type)
        if flow_type not in TRACKED_FLOW_TYPES:
            return None
        if not entry_price or entry_price <= 0:
            logger.warning(f"Ignoring {flow_type.value} for {instrument}: invalid entry price {entry_price}")
            return None

        now = self._clock.now()
        last = self._last_logged.get(instrument)
        if last is not None and last[0] is flow_type and now - last[1] < self.min_gap_ms:
            return None

        self._last_logged[instrument] = (flow_type, now)
        entry = SignalLogEntry(
            instrument=instrument,
            type=flow_type,
            entry_price=entry_price,
            timestamp_ms=now,
        )
        entries = self._log.setdefault(instrument, [])
        entries.insert(0, entry)
        del entries[self.max_entries:]
        self._dirty = True

        logger.info(f"Logged {flow_type.value} for {instrument} @ {entry_price:.2f}")
        return entry

    # === Evaluation ===

    def evaluate_signals(self, current_prices: Mapping[str, float]) -> List[EvaluationResult]:
        """
        Evaluate pending entries against current prices.

        Entries past the window plus grace expire whether or not their
        instrument has a price; grading needs a positive current price.
        """
        now = self._clock.now()
        results: List[EvaluationResult] = []
        deadline = self.evaluation_window_ms + self.grace_ms

        for instrument, entries in self._log.items():
            price = current_prices.get(instrument)
            has_price = bool(price) and price > 0
            for entry in entries:
                if not entry.is_pending:
                    continue
                age = now - entry.timestamp_ms
                if age < self.evaluation_window_ms:
                    continue

                if age > deadline:
                    entry.expired = True
                    entry.evaluated_at_ms = now
                    logger.info(f"Signal {entry.type.value} for {instrument} expired - missed evaluation window")
                    results.append(EvaluationResult(entry=entry, expired=True))
                    continue
                if not has_price:
                    continue

                pct = (price - entry.entry_price) / entry.entry_price * 100
                if entry.type in BULLISH_FLOW_TYPES:
                    won = pct >= self.win_threshold_pct
                else:
                    won = pct <= -self.win_threshold_pct
                entry.exit_price = price
                entry.evaluated_at_ms = now
                entry.won = won
                logger.info(
                    f"Evaluated {entry.type.value} for {instrument}: "
                    f"{'WIN' if won else 'LOSS'} ({pct:.2f}% after {round(age / 60000)}min)"
                )
                results.append(EvaluationResult(entry=entry, expired=False, pct_change=pct))

        if results:
            self._dirty = True
        return results

    def prune(self) -> int:
        """Drop entries older than max age. Returns number dropped."""
        now = self._clock.now()
        dropped = 0
        for instrument, entries in self._log.items():
            kept = [e for e in entries if now - e.timestamp_ms < self.max_age_ms]
            dropped += len(entries) - len(kept)
            self._log[instrument] = kept
        if dropped:
            self._dirty = True
        return dropped

    # === Queries ===

    def signal_log(self, instrument: str) -> List[SignalLogEntry]:
        """Entries newest first (copy of the list; entries are shared)."""
        return list(self._log.get(instrument, []))

    def instruments(self) -> List[str]:
        return list(self._log.keys())

    def get_win_rates(self, instrument: str) -> WinRates:
        entries = self._log.get(instrument, [])
        by_type = {t: WinRateStats() for t in TRACKED_FLOW_TYPES}
        overall = WinRateStats()
        pending = 0
        expired = 0
        for entry in entries:
            if entry.expired:
                expired += 1
            elif entry.won is None:
                pending += 1
            else:
                by_type[entry.type].add(entry.won)
                overall.add(entry.won)
        return WinRates(
            by_type=by_type,
            overall=overall,
            pending=pending,
            expired=expired,
            total_logged=len(entries),
        )

    def get_signal_stats(self, instrument: str, signal_type: FlowTypeLike) -> SignalStats:
        """Three most recent wins and losses for one type, with average move."""
        flow_type = coerce_flow_type(signal_type)
        typed = [e for e in self._log.get(instrument, []) if e.type is flow_type]
        wins = [e for e in typed if e.won is True][:3]
        losses = [e for e in typed if e.won is False][:3]
        return SignalStats(
            recent_wins=wins,
            recent_losses=losses,
            pending=sum(1 for e in typed if e.is_pending),
            avg_win_pct=_avg_pct(wins),
            avg_loss_pct=_avg_pct(losses),
        )

    # === Persistence ===

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {inst: [e.to_dict() for e in entries] for inst, entries in self._log.items()}

    def restore(self, payload: Mapping[str, List[Mapping[str, Any]]]) -> int:
        """Load persisted entries, applying age and count bounds. Returns entries kept."""
        now = self._clock.now()
        kept = 0
        self._log.clear()
        self._last_logged.clear()
        for instrument, items in payload.items():
            entries = []
            for item in items:
                try:
                    entry = SignalLogEntry.from_dict(instrument, item)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed signal entry for {instrument}: {e}")
                    continue
                if now - entry.timestamp_ms < self.max_age_ms:
                    entries.append(entry)
            entries.sort(key=lambda e: e.timestamp_ms, reverse=True)
            entries = entries[: self.max_entries]
            self._log[instrument] = entries
            if entries:
                self._last_logged[instrument] = (entries[0].type, entries[0].timestamp_ms)
            kept += len(entries)
        return kept

    def reset(self) -> None:
        self._log.clear()
        self._last_logged.clear()
        self._dirty = True


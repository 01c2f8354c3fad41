"""Formatting helpers for runner output."""

from typing import Union

from ..continuous.signal_tracker import EvaluationResult, SignalLogEntry
from ..engines.composite_bias import CompositeBias
from ..engines.signals import Grade, Signal, signal_value
from .colors import Colors


def signal_color(signal: Union[Signal, str]) -> str:
    value = signal_value(signal)
    if value == Signal.BULLISH.value:
        return Colors.GREEN
    if value == Signal.BEARISH.value:
        return Colors.RED
    return Colors.YELLOW


def grade_color(grade: Grade) -> str:
    if grade in (Grade.A_PLUS, Grade.A):
        return Colors.GREEN
    if grade in (Grade.D, Grade.F):
        return Colors.RED
    return Colors.YELLOW


def score_bar(score: float, width: int = 20) -> str:
    """Bar for a score in [-1, +1], filled outward from the center."""
    half = width // 2
    filled = min(half, int(round(abs(score) * half)))
    if score >= 0:
        left = f"{Colors.DIM}{'░' * half}{Colors.RESET}"
        right = f"{Colors.GREEN}{'█' * filled}{Colors.DIM}{'░' * (half - filled)}{Colors.RESET}"
    else:
        left = f"{Colors.DIM}{'░' * (half - filled)}{Colors.RED}{'█' * filled}{Colors.RESET}"
        right = f"{Colors.DIM}{'░' * half}{Colors.RESET}"
    return f"{left}{Colors.DIM}│{Colors.RESET}{right}"


def format_composite(composite: CompositeBias) -> str:
    color = signal_color(composite.signal)
    absent = f" {Colors.DIM}(no {', '.join(composite.absent)}){Colors.RESET}" if composite.absent else ""
    return (
        f"{Colors.BOLD}{composite.instrument:<5}{Colors.RESET} "
        f"{score_bar(composite.normalized_score)} "
        f"{color}{composite.normalized_score:+.3f} {composite.label.value:<11}{Colors.RESET} "
        f"{grade_color(composite.grade)}{composite.grade.value:<2}{Colors.RESET} "
        f"flow={composite.flow.flow_type.value}{absent}"
    )


def format_signal(entry: SignalLogEntry) -> str:
    color = Colors.GREEN if entry.type.is_bullish else Colors.RED
    return (
        f"{Colors.CYAN}SIGNAL{Colors.RESET} {entry.instrument} "
        f"{color}{entry.type.value}{Colors.RESET} @ {entry.entry_price:,.2f}"
    )


def format_evaluation(result: EvaluationResult) -> str:
    entry = result.entry
    if result.expired:
        return f"{Colors.DIM}EXPIRED {entry.instrument} {entry.type.value}{Colors.RESET}"
    color = Colors.GREEN if entry.won else Colors.RED
    verdict = "WIN" if entry.won else "LOSS"
    return (
        f"{color}{verdict}{Colors.RESET} {entry.instrument} {entry.type.value} "
        f"{entry.entry_price:,.2f} → {entry.exit_price:,.2f} ({result.pct_change:+.2f}%)"
    )

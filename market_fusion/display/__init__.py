"""Terminal display helpers for the fusion runner."""

from .colors import Colors
from .formatters import (
    format_composite,
    format_evaluation,
    format_signal,
    grade_color,
    score_bar,
    signal_color,
)

__all__ = [
    "Colors",
    "format_composite",
    "format_evaluation",
    "format_signal",
    "grade_color",
    "score_bar",
    "signal_color",
]

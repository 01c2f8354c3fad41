"""Shared signal enums and helpers to avoid stringly-typed signals."""

from enum import Enum
from typing import Union


class Signal(Enum):
    """Directional signal values across classifiers."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

    def __str__(self) -> str:
        return self.value


class Direction(Enum):
    """Thresholded direction of a metric over a window."""
    UP = "↑"
    DOWN = "↓"
    FLAT = "↔"

    def __str__(self) -> str:
        return self.value

    @property
    def sign(self) -> int:
        if self is Direction.UP:
            return 1
        if self is Direction.DOWN:
            return -1
        return 0


class FlowType(Enum):
    """Flow confluence labels."""
    STRONG_BULL = "STRONG_BULL"
    BULLISH = "BULLISH"
    WEAK_BULL = "WEAK_BULL"
    STRONG_BEAR = "STRONG_BEAR"
    BEARISH = "BEARISH"
    WEAK_BEAR = "WEAK_BEAR"
    DIVERGENCE = "DIVERGENCE"
    NEUTRAL = "NEUTRAL"

    def __str__(self) -> str:
        return self.value

    @property
    def is_bullish(self) -> bool:
        return self in BULLISH_FLOW_TYPES

    @property
    def is_bearish(self) -> bool:
        return self in BEARISH_FLOW_TYPES

    @property
    def is_trackable(self) -> bool:
        """Only directional types get win/loss tracking."""
        return self.is_bullish or self.is_bearish


BULLISH_FLOW_TYPES = (FlowType.STRONG_BULL, FlowType.BULLISH, FlowType.WEAK_BULL)
BEARISH_FLOW_TYPES = (FlowType.STRONG_BEAR, FlowType.BEARISH, FlowType.WEAK_BEAR)
TRACKED_FLOW_TYPES = BULLISH_FLOW_TYPES + BEARISH_FLOW_TYPES


class BiasLabel(Enum):
    """Composite bias label buckets."""
    STRONG_BULL = "STRONG BULL"
    BULLISH = "BULLISH"
    LEAN_BULL = "LEAN BULL"
    NEUTRAL = "NEUTRAL"
    LEAN_BEAR = "LEAN BEAR"
    BEARISH = "BEARISH"
    STRONG_BEAR = "STRONG BEAR"

    def __str__(self) -> str:
        return self.value


class Grade(Enum):
    """Composite grade buckets."""
    A_PLUS = "A+"
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"

    def __str__(self) -> str:
        return self.value


class Strength(Enum):
    """Qualitative strength of a detected pattern."""
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"

    def __str__(self) -> str:
        return self.value


SignalLike = Union[Signal, str]
FlowTypeLike = Union[FlowType, str]


def signal_value(signal: SignalLike) -> str:
    """Normalize signal-like values to their string representation."""
    return signal.value if isinstance(signal, Signal) else str(signal)


def coerce_signal(signal: SignalLike, default: Signal = Signal.NEUTRAL) -> Signal:
    """Convert a string to Signal, falling back to default for unknown values."""
    if isinstance(signal, Signal):
        return signal
    try:
        return Signal(str(signal))
    except ValueError:
        return default


def coerce_flow_type(value: FlowTypeLike) -> FlowType:
    """Convert a string to FlowType; raises ValueError for unknown labels."""
    if isinstance(value, FlowType):
        return value
    return FlowType(str(value).upper())


def direction_of(value: float, threshold: float) -> Direction:
    """UP if value > threshold, DOWN if value < -threshold, FLAT otherwise."""
    if value > threshold:
        return Direction.UP
    if value < -threshold:
        return Direction.DOWN
    return Direction.FLAT


def sign_of(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def clip(value: float, lo: float, hi: float) -> float:
    """Clamp value to [lo, hi]."""
    return max(lo, min(hi, value))

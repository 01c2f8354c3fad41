"""
Event Bus - outbound pub-sub for presentation layers and observers.

One channel per snapshot family. Subscribers receive the published object
as-is and must treat it as read-only.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class Channel(Enum):
    TICK = "tick"
    COMPOSITE = "composite"
    SIGNAL = "signal"
    EVALUATION = "evaluation"
    BIAS_HISTORY = "bias_history"
    WHALE_TRADE = "whale_trade"
    STATUS = "status"


ChannelLike = Union[Channel, str]


def _channel(value: ChannelLike) -> Channel:
    if isinstance(value, Channel):
        return value
    try:
        return Channel(str(value).lower())
    except ValueError as exc:
        raise ValueError(f"Unknown channel: {value!r}") from exc


class EventBus:
    """
    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe("composite", on_composite)
        await bus.publish(Channel.COMPOSITE, composite)
        unsubscribe()
    """

    def __init__(self, on_error: Optional[Callable[[Channel, Exception], Any]] = None):
        self._subscribers: Dict[Channel, List[Callable]] = {c: [] for c in Channel}
        self._on_error = on_error
        self.published: Dict[str, int] = {c.value: 0 for c in Channel}

    def subscribe(self, channel: ChannelLike, callback: Callable) -> Callable[[], None]:
        """Register a sync or async callback. Returns an unsubscribe handle."""
        ch = _channel(channel)
        self._subscribers[ch].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[ch]:
                self._subscribers[ch].remove(callback)

        return unsubscribe

    def subscriber_count(self, channel: ChannelLike) -> int:
        return len(self._subscribers[_channel(channel)])

    async def publish(self, channel: ChannelLike, payload: Any) -> None:
        """Deliver to every subscriber; a failing subscriber does not stop the rest."""
        ch = _channel(channel)
        self.published[ch.value] += 1
        for callback in list(self._subscribers[ch]):
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Subscriber error on {ch.value}: {e}")
                if self._on_error is not None:
                    self._on_error(ch, e)

    def clear(self) -> None:
        for subscribers in self._subscribers.values():
            subscribers.clear()

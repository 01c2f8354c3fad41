"""
Rolling Series - bounded, time-ordered series for streaming metrics.

Each series holds `(timestamp_ms, value)` entries and enforces on append:
1. strict timestamp monotonicity (older-or-equal timestamps are rejected)
2. no expired appends (timestamps older than now - ttl are rejected)
3. age eviction (entries older than now - ttl are dropped)
4. count bound (oldest dropped until within max_entries)
5. dirty notification for the persistence flush

Appends are not the only trim point: owners call `evict(now)` on a timer
so idle series also age out.
"""

from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

T = TypeVar('T')


@dataclass(frozen=True, slots=True)
class SeriesEntry(Generic[T]):
    """Item with timestamp."""
    timestamp_ms: int
    value: T


class RollingSeries(Generic[T]):
    """
    Age- and count-bounded series with O(1) append.

    Example:
        series = RollingSeries[float]("price", ttl_ms=4 * 3600_000, max_entries=2880)
        series.append(now_ms, 100.0)
        series.snapshot()  # [(now_ms, 100.0)]
    """

    def __init__(
        self,
        name: str,
        ttl_ms: int,
        max_entries: int,
        on_dirty: Optional[Callable[[str], None]] = None,
    ):
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.name = name
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._entries: Deque[SeriesEntry[T]] = deque()
        self._on_dirty = on_dirty
        self._rejected = 0

    # === Mutation ===

    def append(self, timestamp_ms: int, value: T, now_ms: Optional[int] = None) -> bool:
        """
        Append an entry.

        Returns False (and leaves the series untouched) when `timestamp_ms`
        is not newer than the newest entry, or is already older than
        `now_ms - ttl`.
        """
        if self._entries and timestamp_ms <= self._entries[-1].timestamp_ms:
            self._rejected += 1
            return False
        if now_ms is not None and timestamp_ms < now_ms - self._ttl_ms:
            self._rejected += 1
            return False

        self._entries.append(SeriesEntry(timestamp_ms, value))
        self._evict(timestamp_ms if now_ms is None else max(now_ms, timestamp_ms))
        self._mark_dirty()
        return True

    def load(self, entries: Iterable[Tuple[int, T]], now_ms: int) -> int:
        """
        Replace contents from persisted entries.

        Out-of-order or duplicate timestamps are skipped; age trim and count
        bound are applied. Returns the number of entries kept.
        """
        self._entries.clear()
        cutoff = now_ms - self._ttl_ms
        for timestamp_ms, value in sorted(entries, key=lambda e: e[0]):
            if timestamp_ms < cutoff or timestamp_ms > now_ms:
                continue
            if self._entries and timestamp_ms <= self._entries[-1].timestamp_ms:
                continue
            self._entries.append(SeriesEntry(int(timestamp_ms), value))
        while len(self._entries) > self._max_entries:
            self._entries.popleft()
        return len(self._entries)

    def evict(self, now_ms: int) -> int:
        """Drop entries older than now - ttl. Returns number dropped."""
        dropped = self._evict(now_ms)
        if dropped:
            self._mark_dirty()
        return dropped

    def clear(self) -> None:
        if self._entries:
            self._entries.clear()
            self._mark_dirty()

    def _evict(self, now_ms: int) -> int:
        cutoff = now_ms - self._ttl_ms
        dropped = 0
        while self._entries and self._entries[0].timestamp_ms < cutoff:
            self._entries.popleft()
            dropped += 1
        while len(self._entries) > self._max_entries:
            self._entries.popleft()
            dropped += 1
        return dropped

    def _mark_dirty(self) -> None:
        if self._on_dirty is not None:
            self._on_dirty(self.name)

    # === Queries ===

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __iter__(self) -> Iterator[SeriesEntry[T]]:
        return iter(self._entries)

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def rejected_count(self) -> int:
        """Appends refused for non-monotonic or expired timestamps."""
        return self._rejected

    def snapshot(self) -> List[Tuple[int, T]]:
        """Structural copy, oldest first. Safe to hand to readers."""
        return [(e.timestamp_ms, e.value) for e in self._entries]

    def newest(self) -> Optional[SeriesEntry[T]]:
        return self._entries[-1] if self._entries else None

    def oldest(self) -> Optional[SeriesEntry[T]]:
        return self._entries[0] if self._entries else None

    def since(self, cutoff_ms: int) -> List[Tuple[int, T]]:
        """Entries with timestamp >= cutoff_ms."""
        return [(e.timestamp_ms, e.value) for e in self._entries if e.timestamp_ms >= cutoff_ms]

    def last(self, n: int) -> List[Tuple[int, T]]:
        """Last n entries (oldest first of the n)."""
        if n <= 0:
            return []
        items = list(self._entries)[-n:]
        return [(e.timestamp_ms, e.value) for e in items]

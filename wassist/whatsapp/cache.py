"""Bounded in-memory caches used by the deduplication layer.

Two eviction policies:
- BoundedFifoSet: capacity-based; the oldest *inserted* item goes first
  (membership checks do not refresh an item).
- TimeWindowMap: time-based; entries older than the window are dropped
  when pruned and never count as seen.
"""

import time
from collections import OrderedDict
from typing import Callable, Hashable, Optional


class BoundedFifoSet:
    """Set with a fixed capacity and first-in-first-out eviction."""

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._items: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, item: Hashable) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def contains(self, item: Hashable) -> bool:
        return item in self._items

    def insert(self, item: Hashable) -> bool:
        """Add an item. Returns False if it was already present."""
        if item in self._items:
            return False
        self._items[item] = None
        self.prune()
        return True

    def prune(self) -> int:
        """Evict oldest items until within capacity. Returns the number evicted."""
        evicted = 0
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)
            evicted += 1
        return evicted

    def clear(self):
        self._items.clear()


class TimeWindowMap:
    """Key → last-seen timestamp, meaningful only within a trailing window."""

    def __init__(self, window: float = 10.0, clock: Optional[Callable[[], float]] = None):
        self.window = window
        self._clock = clock or time.monotonic
        self._seen: dict[Hashable, float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def now(self) -> float:
        return self._clock()

    def contains(self, key: Hashable, now: Optional[float] = None) -> bool:
        """True if key was recorded within the window."""
        ts = self._seen.get(key)
        if ts is None:
            return False
        now = self._clock() if now is None else now
        return (now - ts) < self.window

    def insert(self, key: Hashable, now: Optional[float] = None):
        self._seen[key] = self._clock() if now is None else now

    def last_seen(self, key: Hashable) -> Optional[float]:
        return self._seen.get(key)

    def prune(self, now: Optional[float] = None) -> int:
        """Drop entries older than the window. Returns the number dropped."""
        now = self._clock() if now is None else now
        expired = [k for k, ts in self._seen.items() if (now - ts) >= self.window]
        for k in expired:
            del self._seen[k]
        return len(expired)

    def clear(self):
        self._seen.clear()

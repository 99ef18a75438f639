"""An in-memory expiring cache of keys known to be over their limit."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .stats import Scope


@dataclass
class _Entry:
    value: bytes
    expires_at: Optional[float]
    accessed_at: float


class LocalCache:
    """Thread-safe key/value cache with per-entry TTL and access statistics.

    ``max_entries`` bounds the size; the oldest entry is evacuated when full.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self.hit_count = 0
        self.miss_count = 0
        self.expired_count = 0
        self.evacuate_count = 0
        self.overwrite_count = 0

    @property
    def lookup_count(self) -> int:
        return self.hit_count + self.miss_count

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def average_access_time(self) -> int:
        """Mean last-access time of the current entries, as a clock reading."""
        with self._lock:
            if not self._entries:
                return 0
            total = sum(e.accessed_at for e in self._entries.values())
            return int(total / len(self._entries))

    def get(self, key: str) -> bytes:
        """Return the stored value; raise KeyError if absent or expired."""
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None:
                self.miss_count += 1
                raise KeyError(key)
            if entry.expires_at is not None and now >= entry.expires_at:
                del self._entries[key]
                self.expired_count += 1
                self.miss_count += 1
                raise KeyError(key)
            entry.accessed_at = now
            self.hit_count += 1
            return entry.value

    def set(self, key: str, value: bytes, ttl_seconds: int = 0) -> None:
        """Store ``value``; a ``ttl_seconds`` of 0 means it never expires."""
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        with self._lock:
            now = self._clock()
            expires_at = now + ttl_seconds if ttl_seconds > 0 else None
            if key in self._entries:
                self.overwrite_count += 1
                del self._entries[key]
            elif self.max_entries is not None and len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self.evacuate_count += 1
            self._entries[key] = _Entry(bytes(value), expires_at, now)


_GAUGES = {
    "evacuateCount": "evacuate_count",
    "expiredCount": "expired_count",
    "entryCount": "entry_count",
    "averageAccessTime": "average_access_time",
    "hitCount": "hit_count",
    "missCount": "miss_count",
    "lookupCount": "lookup_count",
    "overwriteCount": "overwrite_count",
}


class LocalCacheStats:
    """Publishes a LocalCache's statistics as gauges."""

    def __init__(self, cache: LocalCache, scope: Scope) -> None:
        self.cache = cache
        self._gauges = {attr: scope.gauge(name) for name, attr in _GAUGES.items()}

    def generate_stats(self) -> None:
        for attr, gauge in self._gauges.items():
            gauge.set(int(getattr(self.cache, attr)))
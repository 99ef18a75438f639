"""In-process counters, gauges and timers grouped in named scopes."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Type, TypeVar


class Counter:
    """A monotonically increasing count."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def add(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("counters only increase")
        with self._lock:
            self._value += amount

    def inc(self) -> None:
        self.add(1)


class Gauge:
    """A value that can be set and moved up or down."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def add(self, amount: int) -> None:
        with self._lock:
            self._value += amount

    def sub(self, amount: int) -> None:
        with self._lock:
            self._value -= amount


class Timer:
    """Records observed durations."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._values: List[float] = []
        self._lock = threading.Lock()

    @property
    def values(self) -> List[float]:
        with self._lock:
            return list(self._values)

    def add_value(self, value: float) -> None:
        with self._lock:
            self._values.append(value)


_M = TypeVar("_M", Counter, Gauge, Timer)


class _Store:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}
        self._lock = threading.Lock()

    def get(self, name: str, kind: Type[_M]) -> _M:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = kind(name)
                self._metrics[name] = metric
            elif not isinstance(metric, kind):
                raise TypeError(f"metric {name!r} already exists as {type(metric).__name__}")
            return metric

    def items(self):
        with self._lock:
            return list(self._metrics.items())


def _tagged(name: str, tags: Optional[Mapping[str, str]]) -> str:
    if not tags:
        return name
    return name + "".join(f".__{k}={v}" for k, v in sorted(tags.items()))


class Scope:
    """A named namespace of metrics; child scopes share the same store."""

    def __init__(self, name: str = "", _store: Optional[_Store] = None) -> None:
        self.name = name
        self._store = _store if _store is not None else _Store()

    def _full(self, name: str) -> str:
        return f"{self.name}.{name}" if self.name else name

    def counter(self, name: str, tags: Optional[Mapping[str, str]] = None) -> Counter:
        return self._store.get(_tagged(self._full(name), tags), Counter)

    def gauge(self, name: str) -> Gauge:
        return self._store.get(self._full(name), Gauge)

    def timer(self, name: str) -> Timer:
        return self._store.get(self._full(name), Timer)

    def scope(self, name: str) -> "Scope":
        return Scope(self._full(name), self._store)

    def snapshot(self) -> Dict[str, object]:
        """Current values of every metric under this scope, by full name."""
        prefix = f"{self.name}." if self.name else ""
        result: Dict[str, object] = {}
        for name, metric in self._store.items():
            if not name.startswith(prefix):
                continue
            result[name] = metric.values if isinstance(metric, Timer) else metric.value
        return result


@dataclass(frozen=True)
class RateLimitStats:
    """Counters kept for one configured limit."""

    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


def new_rate_limit_stats(scope: Scope, key: str) -> RateLimitStats:
    return RateLimitStats(
        total_hits=scope.counter(f"{key}.total_hits"),
        over_limit=scope.counter(f"{key}.over_limit"),
        near_limit=scope.counter(f"{key}.near_limit"),
        over_limit_with_local_cache=scope.counter(f"{key}.over_limit_with_local_cache"),
        within_limit=scope.counter(f"{key}.within_limit"),
        shadow_mode=scope.counter(f"{key}.shadow_mode"),
    )
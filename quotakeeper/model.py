"""Request, response and limit types shared by the rate limiting backends."""

from __future__ import annotations

import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    from .stats import RateLimitStats


class Unit(enum.IntEnum):
    """Time unit a limit is counted over."""

    UNKNOWN = 0
    SECOND = 1
    MINUTE = 2
    HOUR = 3
    DAY = 4


class Code(enum.IntEnum):
    """Outcome of a rate limit check."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


_DIVIDERS = {
    Unit.SECOND: 1,
    Unit.MINUTE: 60,
    Unit.HOUR: 3600,
    Unit.DAY: 86400,
}


def unit_to_divider(unit: Unit) -> int:
    """Return the length of ``unit`` in seconds."""
    try:
        return _DIVIDERS[Unit(unit)]
    except (KeyError, ValueError):
        raise ValueError(f"unknown rate limit unit: {unit!r}") from None


@dataclass(frozen=True)
class RateLimitPolicy:
    """The number of requests allowed per unit of time."""

    requests_per_unit: int
    unit: Unit


@dataclass(frozen=True)
class DescriptorEntry:
    key: str
    value: str


EntryLike = Union[DescriptorEntry, Tuple[str, str]]


@dataclass(frozen=True)
class Descriptor:
    """An ordered list of key/value entries identifying what is limited."""

    entries: Tuple[DescriptorEntry, ...] = ()

    def __post_init__(self) -> None:
        entries = tuple(
            e if isinstance(e, DescriptorEntry) else DescriptorEntry(*e)
            for e in self.entries
        )
        object.__setattr__(self, "entries", entries)


@dataclass(frozen=True)
class RateLimitRequest:
    """A request to check (and count) hits against a set of descriptors."""

    domain: str
    descriptors: Tuple[Descriptor, ...] = ()
    hits_addend: int = 0

    def __post_init__(self) -> None:
        descriptors = tuple(
            d if isinstance(d, Descriptor) else Descriptor(tuple(d))
            for d in self.descriptors
        )
        object.__setattr__(self, "descriptors", descriptors)


@dataclass
class DescriptorStatus:
    """Per-descriptor result; ``duration_until_reset`` is in seconds."""

    code: Code
    current_limit: Optional[RateLimitPolicy] = None
    limit_remaining: int = 0
    duration_until_reset: Optional[int] = None


@dataclass(eq=False)
class RateLimit:
    """A configured limit together with the counters it reports to."""

    limit: RateLimitPolicy
    stats: "RateLimitStats"
    shadow_mode: bool = False
    full_key: str = ""


class TimeSource(ABC):
    """Source of the current Unix time in whole seconds."""

    @abstractmethod
    def unix_now(self) -> int:
        """Return the current Unix time in seconds."""


class SystemTimeSource(TimeSource):
    def unix_now(self) -> int:
        return int(time.time())


def calculate_reset(unit: Unit, time_source: TimeSource) -> int:
    """Seconds left until the current window of ``unit`` ends."""
    seconds = unit_to_divider(unit)
    now = time_source.unix_now()
    return seconds - now % seconds


class RateLimitCache(ABC):
    """A cache backend that performs rate limiting."""

    @abstractmethod
    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[Optional[RateLimit]]
    ) -> list:
        """Check and count the request; return one DescriptorStatus per descriptor.

        ``limits`` has one entry per descriptor; ``None`` means the descriptor
        is not limited.
        """

    @abstractmethod
    def flush(self) -> None:
        """Wait for any unfinished asynchronous work."""
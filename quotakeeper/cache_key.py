"""Cache key generation for rate limit lookups."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .model import Descriptor, RateLimit, Unit, unit_to_divider


@dataclass(frozen=True)
class CacheKey:
    key: str
    # True when the key belongs to a limit with a SECOND unit.
    per_second: bool


def is_per_second_limit(unit: Unit) -> bool:
    return unit == Unit.SECOND


class CacheKeyGenerator:
    """Builds keys from a prefix, the domain, descriptor entries and time window."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def generate_cache_key(
        self,
        domain: str,
        descriptor: Descriptor,
        limit: Optional[RateLimit],
        now: int,
    ) -> CacheKey:
        """Return the key for ``limit``, or an empty key when there is no limit."""
        if limit is None:
            return CacheKey("", False)

        parts = [self.prefix, domain, "_"]
        for entry in descriptor.entries:
            parts.extend((entry.key, "_", entry.value, "_"))
        divider = unit_to_divider(limit.limit.unit)
        parts.append(str((now // divider) * divider))
        return CacheKey("".join(parts), is_per_second_limit(limit.limit.unit))
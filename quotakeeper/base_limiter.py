"""Backend-independent rate limiting decisions and statistics."""

from __future__ import annotations

import logging
import math
import random
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .cache_key import CacheKey, CacheKeyGenerator
from .local_cache import LocalCache
from .model import (
    Code,
    DescriptorStatus,
    RateLimit,
    RateLimitPolicy,
    RateLimitRequest,
    TimeSource,
    calculate_reset,
    unit_to_divider,
)

_log = logging.getLogger(__name__)


def _float32(x: float) -> float:
    return struct.unpack("f", struct.pack("f", x))[0]


@dataclass
class LimitInfo:
    """Counts for one limit around a single increment."""

    limit: Optional[RateLimit]
    limit_before_increase: int
    limit_after_increase: int
    near_limit_threshold: int = 0
    over_limit_threshold: int = 0


class BaseRateLimiter:
    """Shared logic used by the cache backends."""

    def __init__(
        self,
        time_source: TimeSource,
        jitter_rand: Optional[random.Random] = None,
        expiration_jitter_max_seconds: int = 0,
        local_cache: Optional[LocalCache] = None,
        near_limit_ratio: float = 0.8,
        cache_key_prefix: str = "",
    ) -> None:
        self.time_source = time_source
        self.jitter_rand = jitter_rand if jitter_rand is not None else random.Random()
        self.expiration_jitter_max_seconds = expiration_jitter_max_seconds
        self.cache_key_generator = CacheKeyGenerator(cache_key_prefix)
        self.local_cache = local_cache
        self.near_limit_ratio = near_limit_ratio

    def generate_cache_keys(
        self,
        request: RateLimitRequest,
        limits: Sequence[Optional[RateLimit]],
        hits_addend: int,
    ) -> List[CacheKey]:
        """One key per descriptor (empty where there is no limit); counts total hits."""
        if len(request.descriptors) != len(limits):
            raise ValueError("descriptors and limits must have the same length")
        now = self.time_source.unix_now()
        keys = []
        for descriptor, limit in zip(request.descriptors, limits):
            keys.append(
                self.cache_key_generator.generate_cache_key(
                    request.domain, descriptor, limit, now
                )
            )
            if limit is not None:
                limit.stats.total_hits.add(hits_addend)
        return keys

    def is_over_limit_with_local_cache(self, key: str) -> bool:
        if self.local_cache is None:
            return False
        try:
            self.local_cache.get(key)
        except KeyError:
            return False
        return True

    def is_over_limit_threshold_reached(self, limit_info: LimitInfo) -> bool:
        limit_info.over_limit_threshold = limit_info.limit.limit.requests_per_unit
        return limit_info.limit_after_increase > limit_info.over_limit_threshold

    def get_response_descriptor_status(
        self,
        key: str,
        limit_info: LimitInfo,
        is_over_limit_with_local_cache: bool,
        hits_addend: int,
    ) -> DescriptorStatus:
        """Decide OK or OVER_LIMIT for one descriptor and update its counters."""
        if key == "":
            return self._status(Code.OK, None, 0)

        limit = limit_info.limit
        stats = limit.stats
        is_over_limit = False
        if is_over_limit_with_local_cache:
            is_over_limit = True
            stats.over_limit.add(hits_addend)
            stats.over_limit_with_local_cache.add(hits_addend)
            status = self._status(Code.OVER_LIMIT, limit.limit, 0)
        else:
            limit_info.over_limit_threshold = limit.limit.requests_per_unit
            limit_info.near_limit_threshold = math.floor(
                _float32(
                    _float32(limit_info.over_limit_threshold)
                    * _float32(self.near_limit_ratio)
                )
            )
            _log.debug("cache key: %s current: %d", key, limit_info.limit_after_increase)
            if limit_info.limit_after_increase > limit_info.over_limit_threshold:
                is_over_limit = True
                status = self._status(Code.OVER_LIMIT, limit.limit, 0)
                self._check_over_limit_threshold(limit_info, hits_addend)
                if self.local_cache is not None:
                    # The key changes with each window, so a TTL of one unit is enough.
                    try:
                        self.local_cache.set(key, b"", unit_to_divider(limit.limit.unit))
                    except ValueError:
                        _log.error("Failing to set local cache key: %s", key)
            else:
                status = self._status(
                    Code.OK,
                    limit.limit,
                    limit_info.over_limit_threshold - limit_info.limit_after_increase,
                )
                self._check_near_limit_threshold(limit_info, hits_addend)
                stats.within_limit.add(hits_addend)

        if is_over_limit and limit.shadow_mode:
            _log.debug("Limit with key %s, is in shadow_mode", limit.full_key)
            status.code = Code.OK
            self._increase_shadow_mode_stats(
                is_over_limit_with_local_cache, limit_info, hits_addend
            )
        return status

    def _check_over_limit_threshold(self, info: LimitInfo, hits_addend: int) -> None:
        # If the count was already over before this increment, every hit is over;
        # otherwise only the part past the threshold is, and the rest was near.
        stats = info.limit.stats
        if info.limit_before_increase >= info.over_limit_threshold:
            stats.over_limit.add(hits_addend)
        else:
            stats.over_limit.add(info.limit_after_increase - info.over_limit_threshold)
            stats.near_limit.add(
                info.over_limit_threshold
                - max(info.near_limit_threshold, info.limit_before_increase)
            )

    def _check_near_limit_threshold(self, info: LimitInfo, hits_addend: int) -> None:
        if info.limit_after_increase > info.near_limit_threshold:
            stats = info.limit.stats
            if info.limit_before_increase >= info.near_limit_threshold:
                stats.near_limit.add(hits_addend)
            else:
                stats.near_limit.add(info.limit_after_increase - info.near_limit_threshold)

    def _increase_shadow_mode_stats(
        self, over_with_local_cache: bool, info: LimitInfo, hits_addend: int
    ) -> None:
        stats = info.limit.stats
        if over_with_local_cache or info.limit_before_increase >= info.over_limit_threshold:
            stats.shadow_mode.add(hits_addend)
        else:
            stats.shadow_mode.add(info.limit_after_increase - info.over_limit_threshold)

    def _status(
        self, code: Code, limit: Optional[RateLimitPolicy], remaining: int
    ) -> DescriptorStatus:
        if limit is None:
            return DescriptorStatus(code=code, current_limit=None, limit_remaining=remaining)
        return DescriptorStatus(
            code=code,
            current_limit=limit,
            limit_remaining=remaining,
            duration_until_reset=calculate_reset(limit.unit, self.time_source),
        )
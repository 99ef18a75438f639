"""Rate limiting backed by memcache, with increments done in the background.

Counts are read with a single multi-get; increments happen asynchronously.
Memcache does not create keys on increment, so a missing key is added, and
if that add loses a race the increment is retried.
"""

from __future__ import annotations

import logging
import random
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

from .base_limiter import BaseRateLimiter, LimitInfo
from .cache_key import CacheKey
from .local_cache import LocalCache
from .memcache_client import CacheMiss, Item, MemcacheClient, NotStored
from .model import (
    DescriptorStatus,
    RateLimit,
    RateLimitCache,
    RateLimitRequest,
    TimeSource,
    unit_to_divider,
)

_log = logging.getLogger(__name__)

_UINT32 = 0xFFFFFFFF
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_NUMBER = re.compile(r"[+-]?[0-9]+")


def _parse_count(raw: bytes) -> Optional[int]:
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        return None
    if not _NUMBER.fullmatch(text):
        return None
    value = int(text)
    if not _INT32_MIN <= value <= _INT32_MAX:
        return None
    return value & _UINT32


class MemcacheRateLimitCache(RateLimitCache):
    """A RateLimitCache storing counters in memcache."""

    def __init__(
        self,
        client: MemcacheClient,
        time_source: TimeSource,
        jitter_rand: Optional[random.Random] = None,
        expiration_jitter_max_seconds: int = 0,
        local_cache: Optional[LocalCache] = None,
        near_limit_ratio: float = 0.8,
        cache_key_prefix: str = "",
        auto_flush: bool = False,
        max_workers: int = 8,
    ) -> None:
        self.client = client
        self.auto_flush = auto_flush
        self._base = BaseRateLimiter(
            time_source,
            jitter_rand,
            expiration_jitter_max_seconds,
            local_cache,
            near_limit_ratio,
            cache_key_prefix,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="memcache-increment"
        )
        self._pending = 0
        self._cond = threading.Condition()

    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[Optional[RateLimit]]
    ) -> List[DescriptorStatus]:
        _log.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend)
        cache_keys = self._base.generate_cache_keys(request, limits, hits_addend)

        over_local = [False] * len(cache_keys)
        keys_to_get = []
        for i, cache_key in enumerate(cache_keys):
            if not cache_key.key:
                continue
            if self._base.is_over_limit_with_local_cache(cache_key.key):
                over_local[i] = True
                _log.debug("cache key is over the limit: %s", cache_key.key)
                continue
            _log.debug("looking up cache key: %s", cache_key.key)
            keys_to_get.append(cache_key.key)

        values: Dict[str, Item] = {}
        if keys_to_get:
            try:
                values = self.client.get_multi(keys_to_get)
            except Exception as err:
                _log.error("Error multi-getting memcache keys (%s): %s", keys_to_get, err)

        statuses = []
        for cache_key, limit, is_over_local in zip(cache_keys, limits, over_local):
            before = 0
            item = values.get(cache_key.key)
            if item is not None:
                parsed = _parse_count(item.value)
                if parsed is None:
                    _log.error("Unexpected non-numeric value in memcached: %r", item)
                else:
                    before = parsed
            after = (before + hits_addend) & _UINT32
            info = LimitInfo(limit, before, after)
            statuses.append(
                self._base.get_response_descriptor_status(
                    cache_key.key, info, is_over_local, hits_addend
                )
            )

        self._submit(
            lambda: self._increase(cache_keys, over_local, list(limits), hits_addend)
        )
        if self.auto_flush:
            self.flush()
        return statuses

    def flush(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._pending == 0)

    def _submit(self, task: Callable[[], None]) -> None:
        with self._cond:
            self._pending += 1

        def run() -> None:
            try:
                task()
            except Exception:
                _log.exception("memcache background increment failed")
            finally:
                with self._cond:
                    self._pending -= 1
                    self._cond.notify_all()

        self._executor.submit(run)

    def _increase(
        self,
        cache_keys: List[CacheKey],
        over_local: List[bool],
        limits: List[Optional[RateLimit]],
        hits_addend: int,
    ) -> None:
        for cache_key, is_over_local, limit in zip(cache_keys, over_local, limits):
            if not cache_key.key or is_over_local:
                continue
            key = cache_key.key
            try:
                self.client.increment(key, hits_addend)
                continue
            except CacheMiss:
                pass
            except Exception as err:
                _log.error("Failed to increment key %s: %s", key, err)
                continue

            expiration = unit_to_divider(limit.limit.unit)
            max_jitter = self._base.expiration_jitter_max_seconds
            if max_jitter > 0:
                expiration += self._base.jitter_rand.randrange(max_jitter)
            try:
                self.client.add(Item(key, str(hits_addend).encode(), expiration))
            except NotStored:
                # Another writer added the key first; incrementing works now.
                try:
                    self.client.increment(key, hits_addend)
                except Exception as err:
                    _log.error(
                        "Failed to increment key %s after failing to add: %s", key, err
                    )
            except Exception as err:
                _log.error("Failed to add key %s: %s", key, err)
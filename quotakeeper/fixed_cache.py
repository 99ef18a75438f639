"""Fixed-window rate limiting backed by redis."""

from __future__ import annotations

import logging
import random
from typing import Dict, List, Optional, Sequence

from .base_limiter import BaseRateLimiter, LimitInfo
from .cache_key import CacheKey
from .local_cache import LocalCache
from .model import (
    DescriptorStatus,
    RateLimit,
    RateLimitCache,
    RateLimitRequest,
    TimeSource,
    unit_to_divider,
)
from .redis_driver import Command, RedisClient, RedisError

_log = logging.getLogger(__name__)

_UINT32 = 0xFFFFFFFF


def _to_uint32(value: object) -> int:
    if value is None:
        return 0
    try:
        return int(value) & _UINT32  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise RedisError(f"unexpected non-numeric reply from redis: {value!r}") from None


class FixedRateLimitCache(RateLimitCache):
    """Counts hits per fixed time window with INCRBY and EXPIRE.

    If ``per_second_client`` is given, limits with a SECOND unit use it and
    all others use ``client``.
    """

    def __init__(
        self,
        client: RedisClient,
        per_second_client: Optional[RedisClient],
        time_source: TimeSource,
        jitter_rand: Optional[random.Random] = None,
        expiration_jitter_max_seconds: int = 0,
        local_cache: Optional[LocalCache] = None,
        near_limit_ratio: float = 0.8,
        cache_key_prefix: str = "",
        stop_cache_key_increment_when_overlimit: bool = False,
    ) -> None:
        self.client = client
        self.per_second_client = per_second_client
        self.stop_cache_key_increment_when_overlimit = stop_cache_key_increment_when_overlimit
        self._base = BaseRateLimiter(
            time_source,
            jitter_rand,
            expiration_jitter_max_seconds,
            local_cache,
            near_limit_ratio,
            cache_key_prefix,
        )

    def _uses_per_second(self, cache_key: CacheKey) -> bool:
        return self.per_second_client is not None and cache_key.per_second

    def _client(self, per_second: bool) -> RedisClient:
        return self.per_second_client if per_second else self.client  # type: ignore[return-value]

    def _over_local(self, cache_key: CacheKey, limit: RateLimit) -> bool:
        if not self._base.is_over_limit_with_local_cache(cache_key.key):
            return False
        if limit.shadow_mode:
            _log.debug(
                "Cache key %s would be rate limited but shadow mode is enabled on this rule",
                cache_key.key,
            )
        else:
            _log.debug("cache key is over the limit: %s", cache_key.key)
        return True

    def _run(self, pipelines: Dict[bool, List[Command]]) -> None:
        for per_second in (False, True):
            if pipelines[per_second]:
                self._client(per_second).pipe_do(pipelines[per_second])

    def do_limit(
        self, request: RateLimitRequest, limits: Sequence[Optional[RateLimit]]
    ) -> List[DescriptorStatus]:
        _log.debug("starting cache lookup")
        hits_addend = max(1, request.hits_addend)
        cache_keys = self._base.generate_cache_keys(request, limits, hits_addend)
        count = len(cache_keys)

        over_local = [False] * count
        over_indexes = [False] * count
        near_indexes = [False] * count
        hits_for_redis = hits_addend

        if self.stop_cache_key_increment_when_overlimit:
            any_over = False
            get_pipelines: Dict[bool, List[Command]] = {False: [], True: []}
            get_commands: Dict[int, Command] = {}
            for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
                if not cache_key.key:
                    continue
                if self._over_local(cache_key, limit):
                    over_local[i] = over_indexes[i] = True
                    hits_for_redis = 0
                    any_over = True
                    continue
                per_second = self._uses_per_second(cache_key)
                pipeline = self._client(per_second).pipe_append(
                    get_pipelines[per_second], "GET", cache_key.key
                )
                get_pipelines[per_second] = pipeline
                get_commands[i] = pipeline[-1]

            # Only ask redis for current counts when no key is already over its limit.
            if count > 1 and not any_over:
                self._run(get_pipelines)
                for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
                    if not cache_key.key:
                        continue
                    before = _to_uint32(get_commands[i].result)
                    info = LimitInfo(limit, before, (before + hits_addend) & _UINT32)
                    if self._base.is_over_limit_threshold_reached(info):
                        hits_for_redis = 0
                        near_indexes[i] = True
        else:
            for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
                if cache_key.key and self._over_local(cache_key, limit):
                    over_local[i] = over_indexes[i] = True

        pipelines: Dict[bool, List[Command]] = {False: [], True: []}
        increments: Dict[int, Command] = {}
        for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
            if not cache_key.key or over_indexes[i]:
                continue
            _log.debug("looking up cache key: %s", cache_key.key)
            expiration = unit_to_divider(limit.limit.unit)
            max_jitter = self._base.expiration_jitter_max_seconds
            if max_jitter > 0:
                expiration += self._base.jitter_rand.randrange(max_jitter)
            per_second = self._uses_per_second(cache_key)
            client = self._client(per_second)
            amount = hits_addend if near_indexes[i] else hits_for_redis
            pipeline = client.pipe_append(pipelines[per_second], "INCRBY", cache_key.key, amount)
            increments[i] = pipeline[-1]
            pipelines[per_second] = client.pipe_append(
                pipeline, "EXPIRE", cache_key.key, expiration
            )

        self._run(pipelines)

        statuses = []
        for i, (cache_key, limit) in enumerate(zip(cache_keys, limits)):
            after = _to_uint32(increments[i].result) if i in increments else 0
            before = (after - hits_addend) & _UINT32
            info = LimitInfo(limit, before, after)
            statuses.append(
                self._base.get_response_descriptor_status(
                    cache_key.key, info, over_local[i], hits_addend
                )
            )
        return statuses

    def flush(self) -> None:
        """Nothing to wait for: reads and updates happen synchronously."""
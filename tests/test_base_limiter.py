import pytest

from quotakeeper.base_limiter import BaseRateLimiter, LimitInfo
from quotakeeper.local_cache import LocalCache
from quotakeeper.model import (
    Code,
    RateLimit,
    RateLimitPolicy,
    RateLimitRequest,
    TimeSource,
    Unit,
    calculate_reset,
)
from quotakeeper.stats import Scope, new_rate_limit_stats


class FixedTime(TimeSource):
    def __init__(self, now):
        self.now = now

    def unix_now(self):
        return self.now


def make_limit(n, unit, key="key", shadow=False):
    return RateLimit(
        RateLimitPolicy(n, unit), new_rate_limit_stats(Scope(), key), shadow_mode=shadow
    )


def counts(limit):
    s = limit.stats
    return (s.total_hits.value, s.over_limit.value, s.near_limit.value, s.within_limit.value)


@pytest.mark.parametrize(
    "n, unit, after, hits, code, remaining, over, near, within",
    [
        (15, Unit.HOUR, 11, 1, Code.OK, 4, 0, 0, 1),
        (15, Unit.HOUR, 13, 1, Code.OK, 2, 0, 1, 1),
        (15, Unit.HOUR, 16, 1, Code.OVER_LIMIT, 0, 1, 0, 0),
        (20, Unit.SECOND, 5, 3, Code.OK, 15, 0, 0, 3),
        (8, Unit.SECOND, 7, 2, Code.OK, 1, 0, 1, 2),
        (20, Unit.SECOND, 19, 3, Code.OK, 1, 0, 3, 3),
        (20, Unit.SECOND, 22, 3, Code.OVER_LIMIT, 0, 2, 1, 0),
        (20, Unit.SECOND, 22, 7, Code.OVER_LIMIT, 0, 2, 4, 0),
        (10, Unit.SECOND, 30, 3, Code.OVER_LIMIT, 0, 3, 0, 0),
    ],
)
def test_near_and_over_limit_accounting(n, unit, after, hits, code, remaining, over, near, within):
    ts = FixedTime(1234)
    limiter = BaseRateLimiter(ts, near_limit_ratio=0.8)
    limit = make_limit(n, unit)
    info = LimitInfo(limit, after - hits, after)
    status = limiter.get_response_descriptor_status("some_key", info, False, hits)
    assert status.code == code
    assert status.limit_remaining == remaining
    assert status.current_limit == limit.limit
    assert status.duration_until_reset == calculate_reset(unit, ts)
    s = limit.stats
    assert (s.over_limit.value, s.near_limit.value, s.within_limit.value) == (over, near, within)


def test_empty_key_is_ok_without_limit():
    limiter = BaseRateLimiter(FixedTime(1234))
    status = limiter.get_response_descriptor_status("", LimitInfo(None, 0, 1), False, 1)
    assert status.code == Code.OK
    assert status.current_limit is None
    assert status.limit_remaining == 0
    assert status.duration_until_reset is None


def test_generate_cache_keys_counts_hits():
    limiter = BaseRateLimiter(FixedTime(1234))
    request = RateLimitRequest(
        "domain", [[("key2", "value2")], [("key2", "value2"), ("subkey2", "subvalue2")]], 1
    )
    limit = make_limit(10, Unit.MINUTE)
    keys = limiter.generate_cache_keys(request, [None, limit], 3)
    assert [k.key for k in keys] == ["", "domain_key2_value2_subkey2_subvalue2_1200"]
    assert limit.stats.total_hits.value == 3


def test_generate_cache_keys_length_mismatch():
    limiter = BaseRateLimiter(FixedTime(1234))
    request = RateLimitRequest("domain", [[("key", "value")]])
    with pytest.raises(ValueError):
        limiter.generate_cache_keys(request, [], 1)


def test_over_limit_fills_local_cache_then_short_circuits():
    cache = LocalCache()
    limiter = BaseRateLimiter(FixedTime(1000000), local_cache=cache)
    limit = make_limit(15, Unit.HOUR)
    key = "domain_key4_value4_997200"
    assert not limiter.is_over_limit_with_local_cache(key)

    limiter.get_response_descriptor_status(key, LimitInfo(limit, 15, 16), False, 1)
    assert limiter.is_over_limit_with_local_cache(key)

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 0, 1), True, 1)
    assert status.code == Code.OVER_LIMIT
    assert status.limit_remaining == 0
    assert limit.stats.over_limit.value == 2
    assert limit.stats.over_limit_with_local_cache.value == 1


def test_no_local_cache_never_over():
    limiter = BaseRateLimiter(FixedTime(1234))
    assert limiter.is_over_limit_with_local_cache("anything") is False


def test_shadow_mode_reports_ok():
    cache = LocalCache()
    limiter = BaseRateLimiter(FixedTime(1000000), local_cache=cache)
    limit = make_limit(15, Unit.HOUR, shadow=True)
    key = "domain_key4_value4_997200"

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 15, 16), False, 1)
    assert status.code == Code.OK
    assert status.limit_remaining == 0
    assert limit.stats.over_limit.value == 1
    assert limit.stats.shadow_mode.value == 1

    status = limiter.get_response_descriptor_status(key, LimitInfo(limit, 0, 1), True, 1)
    assert status.code == Code.OK
    assert limit.stats.over_limit.value == 2
    assert limit.stats.over_limit_with_local_cache.value == 1
    assert limit.stats.shadow_mode.value == 2


def test_is_over_limit_threshold_reached():
    limiter = BaseRateLimiter(FixedTime(1234))
    limit = make_limit(15, Unit.HOUR)
    assert limiter.is_over_limit_threshold_reached(LimitInfo(limit, 15, 16)) is True
    info = LimitInfo(limit, 14, 15)
    assert limiter.is_over_limit_threshold_reached(info) is False
    assert info.over_limit_threshold == limit.limit.requests_per_unit


def test_total_hits_unchanged_by_status():
    limiter = BaseRateLimiter(FixedTime(1234))
    limit = make_limit(10, Unit.SECOND)
    limiter.get_response_descriptor_status("k", LimitInfo(limit, 4, 5), False, 1)
    assert counts(limit) == (0, 0, 0, 1)
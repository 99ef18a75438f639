import pytest

from quotakeeper.local_cache import LocalCache, LocalCacheStats
from quotakeeper.stats import Scope


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_miss_then_set_then_hit():
    cache = LocalCache()
    with pytest.raises(KeyError):
        cache.get("domain_key4_value4_997200")
    assert (cache.hit_count, cache.miss_count, cache.lookup_count, cache.entry_count) == (0, 1, 1, 0)

    cache.set("domain_key4_value4_997200", b"", 3600)
    assert cache.entry_count == 1
    assert cache.get("domain_key4_value4_997200") == b""
    assert (cache.hit_count, cache.miss_count, cache.lookup_count) == (1, 1, 2)


def test_expiry():
    clock = FakeClock(100.0)
    cache = LocalCache(clock=clock)
    cache.set("k", b"v", 1)
    assert cache.get("k") == b"v"
    clock.now += 1
    with pytest.raises(KeyError):
        cache.get("k")
    assert cache.expired_count == 1
    assert cache.entry_count == 0


def test_zero_ttl_never_expires():
    clock = FakeClock()
    cache = LocalCache(clock=clock)
    cache.set("k", b"v", 0)
    clock.now += 10**9
    assert cache.get("k") == b"v"


def test_overwrite_counts():
    cache = LocalCache()
    cache.set("k", b"a")
    cache.set("k", b"b")
    assert cache.overwrite_count == 1
    assert cache.entry_count == 1
    assert cache.get("k") == b"b"


def test_evacuates_oldest_when_full():
    cache = LocalCache(max_entries=2)
    cache.set("a", b"1")
    cache.set("b", b"2")
    cache.set("c", b"3")
    assert cache.evacuate_count == 1
    assert cache.entry_count == 2
    with pytest.raises(KeyError):
        cache.get("a")
    assert cache.get("c") == b"3"


def test_invalid_arguments():
    with pytest.raises(ValueError):
        LocalCache(max_entries=0)
    with pytest.raises(ValueError):
        LocalCache().set("k", b"", -1)


def test_average_access_time_follows_clock():
    clock = FakeClock(5.0)
    cache = LocalCache(clock=clock)
    cache.set("k", b"")
    assert cache.average_access_time == 5


def test_local_cache_stats_publish_gauges():
    cache = LocalCache()
    scope = Scope().scope("localcache")
    stats = LocalCacheStats(cache, scope)
    with pytest.raises(KeyError):
        cache.get("missing")
    cache.set("k", b"")
    cache.get("k")
    stats.generate_stats()
    snap = scope.snapshot()
    assert snap["localcache.hitCount"] == cache.hit_count
    assert snap["localcache.missCount"] == cache.miss_count
    assert snap["localcache.lookupCount"] == cache.lookup_count
    assert snap["localcache.entryCount"] == cache.entry_count
    assert {
        "localcache.averageAccessTime",
        "localcache.overwriteCount",
        "localcache.evacuateCount",
        "localcache.expiredCount",
    } <= set(snap)
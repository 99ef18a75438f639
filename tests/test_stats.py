import dataclasses

import pytest

from quotakeeper.stats import Counter, Scope, new_rate_limit_stats


def test_counter_add_and_inc_match_snapshot():
    scope = Scope()
    c = scope.counter("requests")
    c.add(3)
    c.inc()
    assert c.value == 4
    assert scope.snapshot()["requests"] == c.value


def test_counter_rejects_negative():
    with pytest.raises(ValueError):
        Scope().counter("requests").add(-1)


def test_same_name_returns_same_counter():
    scope = Scope()
    scope.counter("x").inc()
    scope.counter("x").add(2)
    assert scope.counter("x").value == 3
    assert scope.snapshot()["x"] == 3


def test_tags_make_distinct_counters():
    scope = Scope()
    ok = scope.counter("multiget", {"code": "success"})
    err = scope.counter("multiget", {"code": "error"})
    ok.inc()
    assert ok is not err
    assert err.value == 0
    assert ok is scope.counter("multiget", {"code": "success"})


def test_child_scope_prefix_and_shared_store():
    root = Scope()
    child = root.scope("memcache")
    child.counter("keys_found").inc()
    root.counter("other").inc()
    snap = child.snapshot()
    assert snap and all(k.startswith("memcache.") for k in snap)
    assert set(snap) <= set(root.snapshot())


def test_gauge_set_add_sub_round_trip():
    g = Scope().gauge("cx_active")
    g.set(7)
    g.add(5)
    g.sub(5)
    assert g.value == 7


def test_timer_records_values():
    t = Scope().timer("response_time")
    t.add_value(1.5)
    t.add_value(2.0)
    assert t.values == [1.5, 2.0]


def test_kind_mismatch_raises():
    scope = Scope()
    scope.counter("thing")
    with pytest.raises(TypeError):
        scope.gauge("thing")


def test_rate_limit_stats_counters_are_distinct_and_zero():
    scope = Scope()
    stats = new_rate_limit_stats(scope, "key_value")
    counters = [getattr(stats, f.name) for f in dataclasses.fields(stats)]
    assert all(isinstance(c, Counter) for c in counters)
    assert len({id(c) for c in counters}) == len(counters)
    assert all(c.value == 0 for c in counters)
    assert all(c.name.startswith("key_value.") for c in counters)
    assert stats.total_hits.name.endswith(".total_hits")
# quotakeeper

quotakeeper decides whether requests are within their rate limits. It counts
hits in fixed time windows of one second, minute, hour or day
(`quotakeeper.model.Unit`). The counters live in Redis or memcached.

## Modules

- `quotakeeper.model`: the request and response types. These are `Unit`,
  `Code`, `RateLimitPolicy`, `DescriptorEntry`, `Descriptor`,
  `RateLimitRequest`, `DescriptorStatus` and `RateLimit`. The module also has
  the `TimeSource` / `SystemTimeSource` clock, the abstract `RateLimitCache`
  backend, and the helpers `unit_to_divider` and `calculate_reset`.
- `quotakeeper.stats`: in-process metrics.
  - `Counter`, `Gauge` and `Timer` live in named `Scope`s. Child scopes share
    one store.
  - `Scope.snapshot()` returns the current value of every metric under a scope.
  - A counter with tags is stored under a name such as
    `multiget.__code=success`.
  - `new_rate_limit_stats(scope, key)` creates the six per-limit counters
    (`RateLimitStats`): total hits, over limit, near limit, over limit with
    local cache, within limit and shadow mode.
- `quotakeeper.cache_key`: `CacheKeyGenerator` builds one key per descriptor.
  The key joins an optional prefix, the domain, the descriptor's key/value
  entries and the start of the current window, for example
  `domain_key_value_1234`. A descriptor without a limit gets an empty key.
- `quotakeeper.local_cache`: `LocalCache` is a thread-safe expiring cache. It
  remembers keys that have gone over their limit for the rest of their window,
  so later requests are answered without a round trip. `max_entries`
  optionally bounds its size. `LocalCacheStats` publishes its hit, miss,
  lookup, expired, entry, evacuate, overwrite and average-access figures as
  gauges.
- `quotakeeper.base_limiter`: `BaseRateLimiter` holds the decision logic that
  both backends share. It turns a counter value into a `DescriptorStatus`
  carrying `OK` or `OVER_LIMIT`, the remaining quota and the seconds until the
  window resets. It also updates the limit's statistics. The near-limit
  threshold is `near_limit_ratio` (default 0.8) of the limit.
- `quotakeeper.redis_driver`:
  - `new_client(...)` connects to a `"single"`, `"cluster"` or `"sentinel"`
    redis deployment and checks that it answers `PING`. It wraps the
    connection in a `RedisClient`.
  - `RedisClient` offers `do_cmd`, `pipe_append`, `pipe_do`, `close`,
    `num_active_conns` and `implicit_pipelining_enabled`.
  - `PoolStats` counts connections created, active and closed.
  - Cluster mode needs implicit pipelining: a non-zero pipeline window or
    limit.
- `quotakeeper.fixed_cache`: `FixedRateLimitCache` is the Redis backend.
  - It runs `INCRBY` and `EXPIRE` in a pipeline.
  - It can send per-second limits to a separate client.
  - It can add random jitter to expirations.
  - With `stop_cache_key_increment_when_overlimit=True`, it reads the counters
    first and stops incrementing once a key would pass its limit.
- `quotakeeper.memcache_client`: the memcache side.
  - `MemcacheClient` is the abstract interface the limiter needs: `get_multi`,
    `increment` and `add`.
  - `StatsCollectingClient` / `collect_stats` wrap a client and count the
    outcome of each call.
  - `ServerList` and `refresh_servers` keep a replaceable list of server
    addresses filled from an SRV resolver that you supply.
- `quotakeeper.memcached`: `MemcacheRateLimitCache` is the memcached backend.
  It reads all counters with one multi-get, then increments them on background
  threads. A missing key is added, and the increment is retried if another
  writer won the race. `flush()` waits for that work to finish;
  `auto_flush=True` does so after every call.
- `quotakeeper.metrics`: `ServerReporter.intercept(full_method, handler,
  request)` counts calls and records their response time in milliseconds, per
  method. `split_method_name("/service/method")` returns
  `("service", "method")`.
- `quotakeeper.provider`:
  - `ConfigUpdateEvent` and the abstract `RateLimitConfigProvider` (`updates()`,
    `stop()`).
  - `CertProvider` loads a TLS certificate/key pair, by default into a server
    `ssl.SSLContext`. It keeps the old certificate if a reload fails. After
    `start()` (or inside a `with` block) it polls the certificate's directory
    and reloads when it changes.

## Example

```python
from quotakeeper.model import (
    Code, Descriptor, DescriptorEntry, RateLimit, RateLimitPolicy,
    RateLimitRequest, SystemTimeSource, Unit,
)
from quotakeeper.stats import Scope, new_rate_limit_stats
from quotakeeper.redis_driver import new_client
from quotakeeper.fixed_cache import FixedRateLimitCache

scope = Scope()
client = new_client(scope.scope("redis_pool"), False, "", "tcp", "single",
                    "localhost:6379", 10, 0, 0)

cache = FixedRateLimitCache(client, None, SystemTimeSource())
request = RateLimitRequest(
    domain="domain",
    descriptors=[Descriptor([DescriptorEntry("key", "value")])],
    hits_addend=1,
)
limits = [RateLimit(RateLimitPolicy(10, Unit.SECOND),
                    new_rate_limit_stats(scope, "key_value"))]

status, = cache.do_limit(request, limits)
if status.code is Code.OVER_LIMIT:
    ...
```

A limit of `None` in the `limits` list means its descriptor is not checked. Its
status is always `OK`. A `RateLimit` with `shadow_mode=True` always answers
`OK`, but still counts what would have been limited. A `hits_addend` of 0 is
treated as 1.

## Errors

- Redis failures and misconfiguration raise `RedisError`.
- `MemcacheError` covers memcache problems; its subclasses `CacheMiss` and
  `NotStored` report the usual memcached conditions.
- `CertProvider` raises `CertificateError` when no certificate can be loaded.
- Unknown units raise `ValueError`.

## What it does not do

quotakeeper is a library and has no command of its own. It does not run a
gRPC or HTTP rate limit service. It does not read settings from the
environment, and it does not load rate limit configuration from files or a
management server. `RateLimitConfigProvider` is only an interface. No concrete
memcache network client or DNS SRV resolver is included: pass your own
`MemcacheClient` and resolver.

## Running the tests

```
pip install -e ".[test]"
pytest
```
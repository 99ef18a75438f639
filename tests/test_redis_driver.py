import socket

import pytest

from quotakeeper.redis_driver import Command, PoolStats, RedisClient, RedisError, new_client
from quotakeeper.stats import Scope


class FakeRaw:
    """An in-memory stand-in for a redis-py client."""

    def __init__(self):
        self.data = {}
        self.broken = False
        self.closed = False
        self.pipelines = 0

    def execute_command(self, cmd, key=None, *args):
        if self.broken:
            raise ConnectionError("EOF")
        if cmd == "SET":
            self.data[key] = str(args[0])
            return True
        if cmd == "GET":
            return self.data.get(key)
        if cmd == "INCRBY":
            value = int(self.data.get(key, 0)) + int(args[0])
            self.data[key] = str(value)
            return value
        if cmd == "EXPIRE":
            return key in self.data
        raise AssertionError(f"unexpected command {cmd}")

    def pipeline(self, transaction=True):
        self.pipelines += 1
        return FakePipe(self)

    def close(self):
        self.closed = True


class FakePipe:
    def __init__(self, raw):
        self.raw = raw
        self.queue = []

    def execute_command(self, *parts):
        self.queue.append(parts)
        return self

    def execute(self, raise_on_error=True):
        return [self.raw.execute_command(*parts) for parts in self.queue]


def test_do_cmd_set_get():
    client = RedisClient(FakeRaw())
    assert client.do_cmd("SET", "foo", "bar") is True
    assert client.do_cmd("GET", "foo") == "bar"


def test_do_cmd_incrby():
    client = RedisClient(FakeRaw())
    assert client.do_cmd("INCRBY", "a", 1) == 1
    assert client.do_cmd("INCRBY", "a", 1) == 2


def test_do_cmd_connection_broken():
    raw = FakeRaw()
    client = RedisClient(raw)
    client.do_cmd("SET", "foo", "bar")
    raw.broken = True
    with pytest.raises(RedisError, match="EOF"):
        client.do_cmd("GET", "foo")


@pytest.mark.parametrize("implicit", [True, False])
def test_pipe_do_set_get(implicit):
    raw = FakeRaw()
    client = RedisClient(raw, implicit_pipelining=implicit)
    pipeline = client.pipe_append([], "SET", "foo", "bar")
    pipeline = client.pipe_append(pipeline, "GET", "foo")
    client.pipe_do(pipeline)
    assert pipeline[1].result == "bar"
    assert raw.pipelines == (0 if implicit else 1)


@pytest.mark.parametrize("implicit", [True, False])
def test_pipe_do_incrby(implicit):
    client = RedisClient(FakeRaw(), implicit_pipelining=implicit)
    first = client.pipe_append([], "INCRBY", "a", 1)
    client.pipe_do(first)
    assert first[0].result == 1
    second = client.pipe_append([], "INCRBY", "a", 1)
    client.pipe_do(second)
    assert second[0].result == 2


@pytest.mark.parametrize("implicit", [True, False])
def test_pipe_do_connection_broken(implicit):
    raw = FakeRaw()
    client = RedisClient(raw, implicit_pipelining=implicit)
    client.pipe_do(client.pipe_append([], "SET", "foo", "bar"))
    raw.broken = True
    with pytest.raises(RedisError) as info:
        client.pipe_do(client.pipe_append([], "GET", "foo"))
    assert "EOF" in str(info.value)


def test_pipe_append_leaves_input_unchanged():
    client = RedisClient(FakeRaw())
    original = [Command("GET", "x")]
    extended = client.pipe_append(original, "INCRBY", "y", 3)
    assert len(original) == 1
    assert extended[-1] == Command("INCRBY", "y", (3,))


def test_close_then_calls_fail():
    raw = FakeRaw()
    client = RedisClient(raw)
    client.close()
    assert raw.closed is True
    with pytest.raises(RedisError, match="closed"):
        client.do_cmd("GET", "foo")


def test_pool_stats_track_connections():
    scope = Scope("redis_pool")
    stats = PoolStats(scope)
    client = RedisClient(FakeRaw(), stats)
    stats.connection_created()
    stats.connection_created()
    stats.connection_closed()
    assert client.num_active_conns() == 1
    snapshot = scope.snapshot()
    assert snapshot["redis_pool.cx_total"] == 2
    assert snapshot["redis_pool.cx_local_close"] == 1
    assert snapshot["redis_pool.cx_active"] == 1


def test_implicit_pipelining_flag():
    assert RedisClient(FakeRaw(), implicit_pipelining=True).implicit_pipelining_enabled() is True
    assert RedisClient(FakeRaw()).implicit_pipelining_enabled() is False


def test_unrecognized_redis_type():
    with pytest.raises(RedisError, match="Unrecognized redis type bogus"):
        new_client(Scope(), False, "", "tcp", "bogus", "127.0.0.1:6379", 1, 0, 0)


def test_cluster_requires_implicit_pipelining():
    with pytest.raises(RedisError, match="Implicit Pipelining must be enabled"):
        new_client(Scope(), False, "", "tcp", "cluster", "127.0.0.1:7000", 1, 0, 0)


def test_sentinel_requires_master_and_sentinels():
    with pytest.raises(RedisError, match="Expected master name"):
        new_client(Scope(), False, "", "tcp", "sentinel", "mymaster", 1, 0, 0)


def _free_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def test_connection_refused():
    address = f"127.0.0.1:{_free_port()}"
    with pytest.raises(RedisError) as info:
        new_client(Scope(), False, "", "tcp", "single", address, 1, 0, 0)
    assert "refused" in str(info.value).lower()
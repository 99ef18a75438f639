"""A small redis client wrapper with connection statistics and pipelining."""

from __future__ import annotations

import logging
import re
import ssl
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import redis
from redis.backoff import NoBackoff
from redis.cluster import ClusterNode, RedisCluster
from redis.retry import Retry
from redis.sentinel import Sentinel

from .stats import Scope

_log = logging.getLogger(__name__)

_DRIVER_ERRORS = (redis.exceptions.RedisError, OSError)


class RedisError(Exception):
    """Raised when talking to redis fails or redis is misconfigured."""


@dataclass
class Command:
    """One queued redis command; ``result`` is filled in when it runs."""

    cmd: str
    key: str
    args: Tuple[Any, ...] = ()
    result: Any = field(default=None, compare=False)


Pipeline = List[Command]


class PoolStats:
    """Connection counters for a redis pool."""

    def __init__(self, scope: Scope) -> None:
        self.connection_active = scope.gauge("cx_active")
        self.connection_total = scope.counter("cx_total")
        self.connection_close = scope.counter("cx_local_close")

    def connection_created(self) -> None:
        self.connection_total.add(1)
        self.connection_active.add(1)

    def connection_closed(self) -> None:
        self.connection_active.sub(1)
        self.connection_close.add(1)


class RedisClient:
    """Runs commands, singly or in pipelines, against a redis-py style client.

    With implicit pipelining a pipeline is sent command by command and the
    batching is left to the connection; otherwise it goes as one round trip.
    """

    def __init__(
        self,
        client: Any,
        stats: Optional[PoolStats] = None,
        implicit_pipelining: bool = False,
    ) -> None:
        self._client = client
        self._stats = stats
        self._implicit_pipelining = implicit_pipelining
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise RedisError("redis client is closed")

    def do_cmd(self, cmd: str, key: str, *args: Any) -> Any:
        """Run one command and return its result."""
        self._check_open()
        try:
            return self._client.execute_command(cmd, key, *args)
        except _DRIVER_ERRORS as err:
            raise RedisError(str(err)) from err

    def pipe_append(self, pipeline: Pipeline, cmd: str, key: str, *args: Any) -> Pipeline:
        """Return a new pipeline with the command queued at the end."""
        return [*pipeline, Command(cmd, key, tuple(args))]

    def pipe_do(self, pipeline: Pipeline) -> None:
        """Run every queued command, storing each result on its Command."""
        self._check_open()
        try:
            if self._implicit_pipelining:
                for command in pipeline:
                    command.result = self._client.execute_command(
                        command.cmd, command.key, *command.args
                    )
                return
            pipe = self._client.pipeline(transaction=False)
            for command in pipeline:
                pipe.execute_command(command.cmd, command.key, *command.args)
            results = pipe.execute(raise_on_error=True)
        except _DRIVER_ERRORS as err:
            raise RedisError(str(err)) from err
        for command, result in zip(pipeline, results):
            command.result = result

    def close(self) -> None:
        """Close the client; every later call raises RedisError."""
        if self._closed:
            return
        self._closed = True
        try:
            self._client.close()
            pool = getattr(self._client, "connection_pool", None)
            if pool is not None:
                pool.disconnect()
        except _DRIVER_ERRORS as err:
            raise RedisError(str(err)) from err

    def num_active_conns(self) -> int:
        return self._stats.connection_active.value if self._stats is not None else 0

    def implicit_pipelining_enabled(self) -> bool:
        return self._implicit_pipelining


def _mask_credentials(url: str) -> str:
    return re.sub(r"[^,@/]*@", "*****@", url)


def _split_auth(auth: str) -> Tuple[Optional[str], Optional[str]]:
    if not auth:
        return None, None
    parts = auth.partition(":")
    if parts[1]:
        return parts[0], parts[2]
    return None, auth


def _host_port(address: str) -> Tuple[str, int]:
    host, sep, port = address.strip().rpartition(":")
    if not sep or not host or not port.isdigit():
        raise RedisError(f"invalid redis address: {address!r}")
    return host.strip("[]"), int(port)


def _connection_class(base: type, stats: PoolStats, tls_context: Optional[ssl.SSLContext]) -> type:
    class _TrackedConnection(base):  # type: ignore[misc, valid-type]
        def _connect(self):
            sock = super()._connect()
            if tls_context is not None:
                sock = tls_context.wrap_socket(
                    sock, server_hostname=getattr(self, "host", None)
                )
            return sock

        def connect(self):
            fresh = self._sock is None
            try:
                super().connect()
            except Exception as err:
                _log.error("creating redis connection error : %s", err)
                raise
            if fresh and self._sock is not None:
                stats.connection_created()

        def disconnect(self, *args, **kwargs):
            had_socket = self._sock is not None
            super().disconnect(*args, **kwargs)
            if had_socket:
                stats.connection_closed()

    return _TrackedConnection


def new_client(
    scope: Scope,
    use_tls: bool,
    auth: str,
    socket_type: str,
    redis_type: str,
    url: str,
    pool_size: int,
    pipeline_window: float,
    pipeline_limit: int,
    tls_context: Optional[ssl.SSLContext] = None,
) -> RedisClient:
    """Connect to redis ("single", "cluster" or "sentinel") and check it answers PING.

    ``pipeline_window`` is in seconds; a window and limit of 0 disable
    implicit pipelining.
    """
    masked = _mask_credentials(url)
    _log.warning("connecting to redis on %s with pool size %d", masked, pool_size)
    username, password = _split_auth(auth)
    if password is not None:
        if username is not None:
            _log.warning("enabling authentication to redis on %s with user %s", masked, username)
        else:
            _log.warning("enabling authentication to redis on %s without user", masked)

    stats = PoolStats(scope)
    implicit_pipelining = not (pipeline_window == 0 and pipeline_limit == 0)
    _log.debug("Implicit pipelining enabled: %s", implicit_pipelining)
    if use_tls and tls_context is None:
        tls_context = ssl.create_default_context()

    kind = redis_type.lower()
    try:
        if kind == "single":
            no_retry = Retry(NoBackoff(), 0)
            conn_kwargs: dict = {
                "username": username,
                "password": password,
                "decode_responses": True,
                "retry": no_retry,
            }
            if socket_type == "unix":
                base = redis.UnixDomainSocketConnection
                conn_kwargs["path"] = url
            else:
                base = redis.Connection
                conn_kwargs["host"], conn_kwargs["port"] = _host_port(url)
            pool = redis.ConnectionPool(
                connection_class=_connection_class(base, stats, tls_context if use_tls else None),
                max_connections=pool_size,
                **conn_kwargs,
            )
            raw = redis.Redis(connection_pool=pool, retry=no_retry)
        elif kind == "cluster":
            urls = url.split(",")
            if not implicit_pipelining:
                raise RedisError(
                    "Implicit Pipelining must be enabled to work with Redis Cluster Mode. "
                    "Set values for REDIS_PIPELINE_WINDOW or REDIS_PIPELINE_LIMIT to enable "
                    "implicit pipelining"
                )
            _log.warning("Creating cluster with urls %s", urls)
            nodes = [ClusterNode(*_host_port(u)) for u in urls]
            extra = {"ssl": True} if use_tls else {}
            raw = RedisCluster(
                startup_nodes=nodes,
                username=username,
                password=password,
                decode_responses=True,
                **extra,
            )
        elif kind == "sentinel":
            urls = url.split(",")
            if len(urls) < 2:
                raise RedisError(
                    "Expected master name and a list of urls for the sentinels, in the format: "
                    "<redis master name>,<sentinel1>,...,<sentineln>"
                )
            sentinel = Sentinel([_host_port(u) for u in urls[1:]])
            extra = {"ssl": True} if use_tls else {}
            raw = sentinel.master_for(
                urls[0],
                username=username,
                password=password,
                decode_responses=True,
                max_connections=pool_size,
                **extra,
            )
        else:
            raise RedisError("Unrecognized redis type " + redis_type)

        response = raw.ping()
    except _DRIVER_ERRORS as err:
        raise RedisError(str(err)) from err

    if response is not True and response != "PONG":
        raise RedisError(f"connecting redis error: {response}")
    return RedisClient(raw, stats, implicit_pipelining)
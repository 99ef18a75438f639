"""Memcache client interface, a statistics-collecting wrapper and server lists."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Protocol, Sequence

from .stats import Scope


class MemcacheError(Exception):
    """Raised for memcache configuration and protocol errors."""


class CacheMiss(MemcacheError):
    """The requested key is not in the cache."""


class NotStored(MemcacheError):
    """A conditional write (such as add) did not store the item."""


@dataclass
class Item:
    """A memcache entry; ``expiration`` is in seconds, 0 meaning never."""

    key: str
    value: bytes = b""
    expiration: int = 0


class MemcacheClient(ABC):
    """The operations the rate limiter needs from a memcache client."""

    @abstractmethod
    def get_multi(self, keys: Sequence[str]) -> Dict[str, Item]:
        """Return the items found for ``keys``; missing keys are left out."""

    @abstractmethod
    def increment(self, key: str, delta: int) -> int:
        """Add ``delta`` to the value at ``key``; raise CacheMiss if absent."""

    @abstractmethod
    def add(self, item: Item) -> None:
        """Store ``item`` only if its key is absent; raise NotStored otherwise."""


class StatsCollectingClient(MemcacheClient):
    """Wraps a client and counts the outcome of every call."""

    def __init__(self, client: MemcacheClient, scope: Scope) -> None:
        self.client = client
        self._multiget_success = scope.counter("multiget", {"code": "success"})
        self._multiget_error = scope.counter("multiget", {"code": "error"})
        self._increment_success = scope.counter("increment", {"code": "success"})
        self._increment_miss = scope.counter("increment", {"code": "miss"})
        self._increment_error = scope.counter("increment", {"code": "error"})
        self._add_success = scope.counter("add", {"code": "success"})
        self._add_error = scope.counter("add", {"code": "error"})
        self._add_not_stored = scope.counter("add", {"code": "not_stored"})
        self._keys_requested = scope.counter("keys_requested")
        self._keys_found = scope.counter("keys_found")

    def get_multi(self, keys: Sequence[str]) -> Dict[str, Item]:
        self._keys_requested.add(len(keys))
        try:
            results = self.client.get_multi(keys)
        except Exception:
            self._multiget_error.inc()
            raise
        self._keys_found.add(len(results))
        self._multiget_success.inc()
        return results

    def increment(self, key: str, delta: int) -> int:
        try:
            value = self.client.increment(key, delta)
        except CacheMiss:
            self._increment_miss.inc()
            raise
        except Exception:
            self._increment_error.inc()
            raise
        self._increment_success.inc()
        return value

    def add(self, item: Item) -> None:
        try:
            self.client.add(item)
        except NotStored:
            self._add_not_stored.inc()
            raise
        except Exception:
            self._add_error.inc()
            raise
        self._add_success.inc()


def collect_stats(client: MemcacheClient, scope: Scope) -> StatsCollectingClient:
    return StatsCollectingClient(client, scope)


def _validate_address(address: str) -> str:
    if "/" in address:
        # A unix socket path.
        return address
    host, sep, port = address.rpartition(":")
    if not sep or not host or not port.isdigit() or int(port) > 65535:
        raise MemcacheError(f"invalid memcache server address: {address!r}")
    if host.startswith("[") != host.endswith("]"):
        raise MemcacheError(f"invalid memcache server address: {address!r}")
    return address


class ServerList:
    """A thread-safe, replaceable list of memcache server addresses."""

    def __init__(self) -> None:
        self._servers: List[str] = []
        self._lock = threading.Lock()

    def set_servers(self, *args: str) -> None:
        """Replace the servers; nothing changes if any address is invalid."""
        validated = [_validate_address(a) for a in args]
        with self._lock:
            self._servers = validated

    def servers(self) -> List[str]:
        with self._lock:
            return list(self._servers)


class SrvResolver(Protocol):
    def server_strings_from_srv(self, srv: str) -> Iterable[str]:
        ...


def refresh_servers(server_list: ServerList, srv: str, resolver: SrvResolver) -> None:
    """Resolve ``srv`` and install the result; errors leave the list unchanged."""
    servers = list(resolver.server_strings_from_srv(srv))
    server_list.set_servers(*servers)
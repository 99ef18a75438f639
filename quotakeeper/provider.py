"""Configuration providers and a certificate provider that reloads on change."""

from __future__ import annotations

import logging
import os
import queue
import ssl
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigUpdateEvent:
    """A new configuration, or the error that prevented loading one."""

    config: Any = None
    error: Optional[BaseException] = None

    def get_config(self) -> Tuple[Any, Optional[BaseException]]:
        return self.config, self.error


class RateLimitConfigProvider(ABC):
    """A source of configuration updates."""

    @abstractmethod
    def updates(self) -> "queue.Queue[ConfigUpdateEvent]":
        """Return the queue that receives an event for every detected change."""

    @abstractmethod
    def stop(self) -> None:
        """Stop watching for configuration changes."""


class CertificateError(Exception):
    """Raised when no certificate could be loaded."""


def _load_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_file, key_file)
    return context


_Snapshot = Dict[str, Tuple[int, int, int]]


class CertProvider:
    """Holds the current TLS certificate and reloads it when its directory changes.

    The certificate and key must live in the same directory. ``loader`` turns
    the two paths into the certificate object handed out by ``certificate()``;
    by default that is a server ``ssl.SSLContext``.
    """

    def __init__(
        self,
        cert_file: str,
        key_file: str,
        loader: Callable[[str, str], Any] = _load_ssl_context,
        poll_interval: float = 1.0,
    ) -> None:
        cert_directory = os.path.dirname(cert_file)
        if cert_directory != os.path.dirname(key_file):
            raise CertificateError("certFile and keyFile must be in the same directory")
        self.cert_file = cert_file
        self.key_file = key_file
        self.cert_directory = cert_directory or "."
        self.poll_interval = poll_interval
        self._loader = loader
        self._lock = threading.RLock()
        self._cert: Any = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._snapshot = self._scan()
        self.reload_cert()

    def certificate(self) -> Any:
        """Return the certificate currently in use."""
        with self._lock:
            return self._cert

    def reload_cert(self) -> None:
        """Load the files again; keep the old certificate if that fails.

        Raises CertificateError when loading fails and no certificate was
        loaded before.
        """
        try:
            loaded = self._loader(self.cert_file, self.key_file)
        except Exception as err:
            _log.error(
                "CertProvider failed to load TLS key pair (%s, %s): %s",
                self.cert_file,
                self.key_file,
                err,
            )
            with self._lock:
                if self._cert is None:
                    raise CertificateError(
                        "CertProvider failed to load any certificate"
                    ) from err
            return
        with self._lock:
            self._cert = loaded
        _log.info("CertProvider reloaded cert from (%s, %s)", self.cert_file, self.key_file)

    def start(self) -> None:
        """Begin watching the certificate directory in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._watch, name="cert-provider", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop watching and wait for the watcher thread to finish."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()

    def __enter__(self) -> "CertProvider":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _scan(self) -> _Snapshot:
        snapshot: _Snapshot = {}
        try:
            names = os.listdir(self.cert_directory)
        except OSError:
            return snapshot
        for name in names:
            if name.startswith("."):
                continue
            try:
                st = os.stat(os.path.join(self.cert_directory, name))
            except OSError:
                continue
            snapshot[name] = (st.st_mtime_ns, st.st_size, st.st_ino)
        return snapshot

    def _watch(self) -> None:
        while not self._stop.wait(self.poll_interval):
            _log.debug("CertProvider: waiting for runtime update")
            current = self._scan()
            if current == self._snapshot:
                continue
            self._snapshot = current
            _log.debug("CertProvider: got runtime update and reloading config")
            try:
                self.reload_cert()
            except CertificateError:
                _log.exception("CertProvider reload failed")
"""Server-side request metrics for the rate limit service."""

from __future__ import annotations

import time
from typing import Any, Callable, Tuple, TypeVar

from .stats import Scope

_R = TypeVar("_R")


def split_method_name(full_method_name: str) -> Tuple[str, str]:
    """Split "/service/method" into (service, method).

    Names without a separating slash give ("unknown", "unknown").
    """
    name = full_method_name[1:] if full_method_name.startswith("/") else full_method_name
    service, sep, method = name.partition("/")
    if not sep:
        return "unknown", "unknown"
    return service, method


class ServerReporter:
    """Counts requests and records response times per RPC method."""

    def __init__(self, scope: Scope) -> None:
        self.scope = scope

    def intercept(
        self,
        full_method: str,
        handler: Callable[[Any], _R],
        request: Any,
    ) -> _R:
        """Call ``handler(request)``, counting it and timing it in milliseconds.

        The response time is recorded whether the handler returns or raises.
        """
        start = time.monotonic()
        _, method = split_method_name(full_method)
        total_requests = self.scope.counter(f"{method}.total_requests")
        response_time = self.scope.timer(f"{method}.response_time")
        total_requests.inc()
        try:
            return handler(request)
        finally:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            response_time.add_value(float(elapsed_ms))
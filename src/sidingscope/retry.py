"""Backoff and per-table circuit breaking for store queries."""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, TypeVar
from urllib.error import HTTPError

from .config import RetryPolicy

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# client errors worth another attempt; every other 4xx fails immediately
RETRYABLE_CLIENT_STATUS = {408, 425, 429}


class CircuitBreakerOpen(RuntimeError):
    """Raised when a table has failed too often to be queried again."""


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.code >= 500 or exc.code in RETRYABLE_CLIENT_STATUS
    return isinstance(exc, OSError)


def backoff_delays(policy: RetryPolicy) -> Iterator[float]:
    for attempt in range(max(0, policy.retries)):
        yield max(0.0, policy.backoff_factor * (2 ** attempt))


class TableBreakers:
    """Consecutive transient failures, counted separately for each table."""

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self._failures: Dict[str, int] = {}

    def failures(self, table: str) -> int:
        return self._failures.get(table, 0)

    def is_open(self, table: str) -> bool:
        return self.threshold > 0 and self.failures(table) >= self.threshold

    def succeeded(self, table: str) -> None:
        self._failures.pop(table, None)

    def failed(self, table: str) -> None:
        if self.threshold > 0:
            self._failures[table] = self.failures(table) + 1


def query_with_retry(
    table: str,
    action: Callable[[float], T],
    *,
    policy: RetryPolicy,
    breakers: TableBreakers,
    sleeper: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``action(timeout)`` for ``table``, backing off on transient errors."""

    if breakers.is_open(table):
        raise CircuitBreakerOpen(f"Circuit breaker open for {table}")

    delays = backoff_delays(policy)
    while True:
        try:
            result = action(policy.timeout_seconds)
        except Exception as exc:
            if not is_transient(exc):
                raise
            delay = next(delays, None)
            if delay is None:
                breakers.failed(table)
                raise
            LOGGER.warning("Query on %s failed (%s); retrying in %.2fs", table, exc, delay)
            if delay:
                sleeper(delay)
        else:
            breakers.succeeded(table)
            return result


__all__ = ["CircuitBreakerOpen", "TableBreakers", "backoff_delays", "is_transient", "query_with_retry"]

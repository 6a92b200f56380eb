"""Thin PostgREST client for the rules, pricing and measurement tables."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import Config, RetryPolicy
from .retry import CircuitBreakerOpen, TableBreakers, query_with_retry

LOGGER = logging.getLogger(__name__)

MEASUREMENTS_TABLE = "cad_hover_measurements"
_SAFE_CHARS = ',.*()"'


class StoreError(RuntimeError):
    """Raised when the backing store cannot be queried."""


def eq(value: object) -> str:
    return f"eq.{value}"


def in_list(values: Iterable[object]) -> str:
    quoted = []
    for value in values:
        text = str(value).replace('"', '\\"')
        quoted.append(f'"{text}"')
    return f"in.({','.join(quoted)})"


class RestClient:
    """Issues ``select`` queries against a Supabase/PostgREST endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        policy: Optional[RetryPolicy] = None,
        opener: Callable[..., Any] = urlopen,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.policy = policy or RetryPolicy()
        self._opener = opener
        self._sleeper = sleeper
        self._breakers = TableBreakers(self.policy.circuit_breaker_failures)

    @classmethod
    def from_config(cls, config: Config) -> Optional["RestClient"]:
        if not config.store_configured:
            return None
        return cls(config.store_url or "", config.store_key or "", policy=config.retry)

    def select(
        self,
        table: str,
        filters: Optional[Mapping[str, str]] = None,
        order: Sequence[str] = (),
        columns: str = "*",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: List[tuple[str, str]] = [("select", columns)]
        for key, value in (filters or {}).items():
            params.append((key, value))
        if order:
            params.append(("order", ",".join(order)))
        if limit is not None:
            params.append(("limit", str(limit)))
        url = f"{self.base_url}/rest/v1/{table}?{urlencode(params, safe=_SAFE_CHARS)}"
        request = Request(
            url,
            headers={
                "apikey": self.api_key,
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
        )
        try:
            payload = query_with_retry(
                table,
                lambda timeout: self._read_json(request, timeout),
                policy=self.policy,
                breakers=self._breakers,
                sleeper=self._sleeper,
            )
        except CircuitBreakerOpen as exc:
            raise StoreError(str(exc)) from exc
        except Exception as exc:
            raise StoreError(f"{table} query failed: {exc}") from exc
        if not isinstance(payload, list):
            raise StoreError(f"{table} query returned {type(payload).__name__}, expected a list")
        return [row for row in payload if isinstance(row, dict)]

    def _read_json(self, request: Request, timeout: float) -> Any:
        with self._opener(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))


class MeasurementStore:
    """Looks up the persisted extraction measurements for a takeoff."""

    def __init__(self, client: Optional[RestClient]) -> None:
        self.client = client

    def fetch(self, extraction_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not extraction_id:
            return None
        if self.client is None:
            LOGGER.warning("Store not configured; cannot fetch measurements for %s", extraction_id)
            return None
        try:
            rows = self.client.select(MEASUREMENTS_TABLE, {"extraction_id": eq(extraction_id)}, limit=1)
        except StoreError as exc:
            LOGGER.error("Error fetching measurements for %s: %s", extraction_id, exc)
            return None
        if not rows:
            LOGGER.warning("No measurements found for extraction_id: %s", extraction_id)
            return None
        LOGGER.info("Loaded measurements from store for extraction_id: %s", extraction_id)
        return rows[0]


__all__ = ["MeasurementStore", "RestClient", "StoreError", "eq", "in_list"]

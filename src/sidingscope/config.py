from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace
from typing import Mapping, Optional


_BOOLEAN_TRUE = {"1", "true", "yes", "on"}
_PLACEHOLDER_VALUES = {"your_supabase_url_here", "your_supabase_anon_key_here"}


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff policy for rule, pricing and measurement store calls."""

    timeout_seconds: float = 15.0
    retries: int = 1
    backoff_factor: float = 0.5
    circuit_breaker_failures: int = 3


@dataclass(frozen=True)
class Config:
    """Runtime configuration assembled from environment variables and CLI options."""

    store_url: Optional[str]
    store_key: Optional[str]
    rules_file: Optional[Path]
    pricing_file: Optional[Path]
    output_dir: Path
    rules_cache_ttl_seconds: float = 300.0
    pricing_trade: str = "siding"
    markup_rate: float = 0.15
    overhead_rate: float = 0.10
    li_insurance_rate: float = 0.1265
    unemployment_rate: float = 0.013
    waste_factor: float = 1.12
    retry: RetryPolicy = RetryPolicy()
    verbose: bool = False

    @property
    def store_configured(self) -> bool:
        if not self.store_url or not self.store_key:
            return False
        return self.store_url not in _PLACEHOLDER_VALUES and self.store_key not in _PLACEHOLDER_VALUES


def _to_path(value: object | None) -> Optional[Path]:
    text = _text(value)
    return Path(text).expanduser().resolve() if text else None


def _to_int(value: object | None) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None and math.isfinite(number) else None


def _to_float(value: object | None) -> Optional[float]:
    if value is None:
        return None
    text = str(value).replace("$", "").replace(",", "").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def to_rate(value: object | None, default: float) -> float:
    """Accept either a fraction (0.15) or a percentage (15)."""
    rate = _to_float(value)
    if rate is None or rate < 0:
        return default
    if rate > 1:
        rate = rate / 100.0
    return rate


def _flag(value: object | None) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _BOOLEAN_TRUE


def _text(value: object | None) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _namespace(cli_args: object | None) -> SimpleNamespace:
    if cli_args is None:
        return SimpleNamespace()
    if isinstance(cli_args, SimpleNamespace):
        return cli_args
    if hasattr(cli_args, "__dict__"):
        return SimpleNamespace(**{k: v for k, v in vars(cli_args).items()})
    return SimpleNamespace()


def load_config(env: Mapping[str, str], cli_args: object | None = None) -> Config:
    """Build a runtime :class:`Config` from environment variables and CLI options."""

    base_dir = Path.cwd()
    default_output_dir = (base_dir / "outputs").resolve()

    store_url = _text(env.get("SUPABASE_URL"))
    store_key = _text(env.get("SUPABASE_ANON_KEY"))
    rules_file = _to_path(env.get("SIDINGSCOPE_RULES_FILE"))
    pricing_file = _to_path(env.get("SIDINGSCOPE_PRICING_FILE"))
    output_dir = _to_path(env.get("OUTPUT_DIR")) or default_output_dir
    ttl = _to_float(env.get("RULES_CACHE_TTL_SECONDS"))
    rules_cache_ttl_seconds = ttl if ttl is not None and ttl >= 0 else 300.0
    pricing_trade = _text(env.get("PRICING_TRADE")) or "siding"
    markup_rate = to_rate(env.get("MARKUP_RATE"), 0.15)
    overhead_rate = to_rate(env.get("OVERHEAD_RATE"), 0.10)
    li_insurance_rate = to_rate(env.get("LI_INSURANCE_RATE"), 0.1265)
    unemployment_rate = to_rate(env.get("UNEMPLOYMENT_RATE"), 0.013)
    waste = _to_float(env.get("WASTE_FACTOR"))
    waste_factor = waste if waste is not None and waste >= 1.0 else 1.12

    timeout = _to_float(env.get("HTTP_TIMEOUT_SECONDS"))
    retries = _to_int(env.get("HTTP_RETRIES"))
    backoff = _to_float(env.get("HTTP_BACKOFF_FACTOR"))
    breaker = _to_int(env.get("HTTP_CIRCUIT_BREAKER_FAILURES"))
    retry = RetryPolicy(
        timeout_seconds=timeout if timeout and timeout > 0 else 15.0,
        retries=max(0, retries) if retries is not None else 1,
        backoff_factor=max(0.0, backoff) if backoff is not None else 0.5,
        circuit_breaker_failures=breaker if breaker is not None else 3,
    )
    verbose = _flag(env.get("SIDINGSCOPE_VERBOSE"))

    cli_ns = _namespace(cli_args)
    if getattr(cli_ns, "rules_file", None):
        rules_file = _to_path(cli_ns.rules_file) or rules_file
    if getattr(cli_ns, "pricing_file", None):
        pricing_file = _to_path(cli_ns.pricing_file) or pricing_file
    if getattr(cli_ns, "output_dir", None):
        output_dir = _to_path(cli_ns.output_dir) or output_dir
    if getattr(cli_ns, "markup_rate", None) is not None:
        markup_rate = to_rate(cli_ns.markup_rate, markup_rate)
    if getattr(cli_ns, "offline", False):
        store_url = None
        store_key = None
    if getattr(cli_ns, "verbose", False):
        verbose = bool(cli_ns.verbose)

    return Config(
        store_url=store_url,
        store_key=store_key,
        rules_file=rules_file,
        pricing_file=pricing_file,
        output_dir=output_dir,
        rules_cache_ttl_seconds=rules_cache_ttl_seconds,
        pricing_trade=pricing_trade,
        markup_rate=markup_rate,
        overhead_rate=overhead_rate,
        li_insurance_rate=li_insurance_rate,
        unemployment_rate=unemployment_rate,
        waste_factor=waste_factor,
        retry=retry,
        verbose=verbose,
    )


__all__ = ["Config", "RetryPolicy", "load_config", "to_rate"]

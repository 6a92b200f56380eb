"""
Auto-scope rule loading.

Rules live in the ``siding_auto_scope_rules`` table and are edited outside
this package.  :class:`RuleRepository` keeps one cached snapshot for a
fixed time window and replaces it wholesale on refresh.  When the store is
unconfigured or failing, the hard-coded ``FALLBACK_RULES`` keep the
takeoff producing the always-needed accessories (house wrap, fasteners,
sealant) instead of failing.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Protocol, Sequence, Tuple

from .models import Rule
from .store import RestClient, eq

try:  # Optional dependency; JSON rule files are supported without PyYAML.
    import yaml  # type: ignore
except ImportError:  # pragma: no cover - executed when PyYAML is unavailable
    yaml = None

LOGGER = logging.getLogger(__name__)

RULES_TABLE = "siding_auto_scope_rules"
DEFAULT_TTL_SECONDS = 300.0


FALLBACK_RULES: Tuple[Rule, ...] = (
    Rule(
        id="fallback-housewrap",
        sku="TYVEK-HW-9X150",
        product_name="Tyvek HomeWrap 9' x 150'",
        category="water_barrier",
        presentation_group="House Wrap & Accessories",
        unit="ROLL",
        quantity_formula="ceiling(facade_sqft / 1350)",
        trigger_conditions={"facade_sqft_gt": 0},
        display_order=1,
        notes="Fallback rule - 1350 SF coverage per roll",
    ),
    Rule(
        id="fallback-staples",
        sku="ARROW-T50-3/8",
        product_name='Arrow T50 Staples 3/8"',
        category="fasteners",
        presentation_group="Fasteners",
        unit="BOX",
        quantity_formula="ceiling(facade_sqft / 500)",
        trigger_conditions={"facade_sqft_gt": 0},
        display_order=2,
        notes="Fallback rule - 1 box per 500 SF",
    ),
    Rule(
        id="fallback-caulk",
        sku="OSI-QUAD-10OZ",
        product_name="OSI Quad Caulk 10oz",
        category="accessories",
        presentation_group="Caulk & Sealants",
        unit="TUBE",
        quantity_formula="ceiling(total_opening_perimeter_lf / 25)",
        trigger_conditions={"total_opening_perimeter_lf_gt": 0},
        display_order=3,
        notes="Fallback rule - 1 tube per 25 LF",
    ),
    Rule(
        id="fallback-nails",
        sku="MAZE-SIDING-2.5",
        product_name='Maze Siding Nails 2.5"',
        category="fasteners",
        presentation_group="Fasteners",
        unit="BOX",
        quantity_formula="ceiling(net_siding_area_sqft / 100)",
        trigger_conditions={"net_siding_area_sqft_gt": 0},
        display_order=4,
        notes="Fallback rule - 1 lb box per 100 SF",
    ),
    Rule(
        id="fallback-flashing",
        sku="JH-HEAD-FLASH-10",
        product_name="HardiFlashing 10'",
        category="flashing",
        presentation_group="Flashing",
        unit="PC",
        quantity_formula="ceiling((window_head_lf + door_head_lf) / 10)",
        trigger_conditions={"window_count_gt": 0},
        display_order=5,
        notes="Fallback rule - head flashing for windows and doors",
    ),
    Rule(
        id="fallback-primer",
        sku="SW-PRIMER-GAL",
        product_name="Sherwin-Williams Primer Gallon",
        category="accessories",
        presentation_group="Paint & Primer",
        unit="GAL",
        quantity_formula="ceiling(total_corner_lf / 100)",
        trigger_conditions={"total_corner_lf_gt": 0},
        display_order=6,
        notes="Fallback rule - touch-up primer for cut ends",
    ),
)


def fallback_rules() -> List[Rule]:
    return list(FALLBACK_RULES)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _to_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on", "t"}


def _manufacturer_filter(value: Any) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "null":
            return None
        if text.startswith("["):
            try:
                return _manufacturer_filter(json.loads(text))
            except ValueError:
                pass
        names = [part.strip() for part in text.split(",")]
    elif isinstance(value, (list, tuple, set)):
        names = [str(part).strip() for part in value if part is not None]
    else:
        names = [str(value).strip()]
    names = [name for name in names if name]
    return tuple(names) or None


def _trigger(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() == "null":
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text
    return value


def parse_rule(row: Mapping[str, Any]) -> Rule:
    """Normalise a stored rule row; raises ``ValueError`` when unusable."""

    sku = str(row.get("sku") or "").strip()
    formula = str(row.get("quantity_formula") or "").strip()
    if not sku:
        raise ValueError("rule is missing a sku")
    if not formula:
        raise ValueError(f"rule {sku} is missing a quantity formula")
    rule_id = str(row.get("id") or row.get("rule_id") or sku)
    return Rule(
        id=rule_id,
        sku=sku,
        product_name=str(row.get("product_name") or row.get("description") or sku),
        category=str(row.get("category") or ""),
        presentation_group=str(row.get("presentation_group") or "Other Materials"),
        unit=str(row.get("unit") or "EA"),
        quantity_formula=formula,
        trigger_conditions=_trigger(row.get("trigger_conditions", row.get("trigger_condition"))),
        display_order=_to_int(row.get("display_order")),
        group_order=_to_int(row.get("group_order")),
        is_active=_to_bool(row.get("is_active"), True),
        manufacturer_filter=_manufacturer_filter(row.get("manufacturer_filter")),
        notes=str(row.get("notes") or ""),
    )


def parse_rules(rows: Sequence[Mapping[str, Any]]) -> List[Rule]:
    rules: List[Rule] = []
    for row in rows:
        try:
            rules.append(parse_rule(row))
        except ValueError as exc:
            LOGGER.warning("Skipping malformed auto-scope rule %s: %s", row.get("id", "?"), exc)
    return rules


def rule_sort_key(rule: Rule) -> Tuple[int, int, str]:
    return (rule.group_order, rule.display_order, rule.id)


class RuleSource(Protocol):
    def load(self) -> List[Rule]:
        ...


class RestRuleSource:
    """Reads active rules from the PostgREST rules table."""

    def __init__(self, client: RestClient) -> None:
        self.client = client

    def load(self) -> List[Rule]:
        rows = self.client.select(
            RULES_TABLE,
            {"is_active": eq("true")},
            order=("group_order.asc", "display_order.asc"),
        )
        return parse_rules(rows)

    def __str__(self) -> str:
        return f"store table {RULES_TABLE}"


class FileRuleSource:
    """Reads rules from a JSON or YAML file (a list, or ``{"rules": [...]}``)."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> List[Rule]:
        if not self.path.exists():
            raise FileNotFoundError(f"Rules file not found: {self.path}")
        with self.path.open("r", encoding="utf-8") as handle:
            if self.path.suffix.lower() in {".yaml", ".yml"}:
                if not yaml:
                    raise ImportError("PyYAML is required to read YAML rule files; install it or switch to JSON")
                payload = yaml.safe_load(handle)
            else:
                payload = json.load(handle)
        if isinstance(payload, Mapping):
            payload = payload.get("rules", [])
        if not isinstance(payload, list):
            raise ValueError(f"Rules file {self.path} must contain a list of rules")
        return parse_rules(payload)

    def __str__(self) -> str:
        return str(self.path)


class RuleRepository:
    """Single-slot, time-boxed cache in front of a :class:`RuleSource`."""

    def __init__(
        self,
        source: Optional[RuleSource] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rules: Optional[Tuple[Rule, ...]] = None
        self._loaded_at = 0.0
        self.last_source = "none"

    def get_rules(self) -> List[Rule]:
        now = self._clock()
        if self._rules is not None and (now - self._loaded_at) < self.ttl_seconds:
            self.last_source = "cache"
            return list(self._rules)

        if self.source is None:
            LOGGER.warning("Rule store not configured - using fallback auto-scope rules")
            self.last_source = "fallback"
            return fallback_rules()

        try:
            loaded = self.source.load()
        except Exception as exc:
            LOGGER.error("Error fetching auto-scope rules from %s: %s", self.source, exc)
            self.last_source = "fallback"
            return fallback_rules()

        rules = tuple(sorted((rule for rule in loaded if rule.is_active), key=rule_sort_key))
        self._rules = rules
        self._loaded_at = now
        self.last_source = "store"
        LOGGER.info("Loaded %d auto-scope rules from %s", len(rules), self.source)
        return list(rules)

    def invalidate(self) -> None:
        self._rules = None
        self._loaded_at = 0.0

    @classmethod
    def from_config(cls, config, client: Optional[RestClient] = None) -> "RuleRepository":
        source: Optional[RuleSource] = None
        if client is not None:
            source = RestRuleSource(client)
        elif config.rules_file is not None:
            source = FileRuleSource(config.rules_file)
        return cls(source=source, ttl_seconds=config.rules_cache_ttl_seconds)


__all__ = [
    "FALLBACK_RULES",
    "FileRuleSource",
    "RestRuleSource",
    "RuleRepository",
    "fallback_rules",
    "parse_rule",
    "parse_rules",
]

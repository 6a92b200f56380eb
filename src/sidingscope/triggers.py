"""Trigger condition parsing and evaluation for auto-scope rules."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .models import AssignedMaterial

LOGGER = logging.getLogger(__name__)

ALWAYS_MARKERS = {"always", "true", "*"}
REASON_NO_TRIGGER = "no trigger conditions"
REASON_ALWAYS = "always"
REASON_ALL_MET = "all conditions met"
REASON_UNRECOGNIZED = "unrecognized trigger conditions"

LEGACY_OPERATORS = {"gt", "gte", "lt", "lte", "eq", "neq", "exists", "not_exists"}
FIELD_SUFFIXES = ("", "_count", "_sqft", "_lf")


@dataclass(frozen=True)
class CategoryMatch:
    category: str


@dataclass(frozen=True)
class SkuPattern:
    pattern: str


@dataclass(frozen=True)
class NumericMin:
    field: str
    threshold: float


@dataclass(frozen=True)
class NumericGreater:
    field: str
    threshold: float


@dataclass(frozen=True)
class Comparison:
    """Legacy ``{field, operator, value}`` condition."""

    field: str
    operator: str
    value: Any = None


Condition = Union[CategoryMatch, SkuPattern, NumericMin, NumericGreater, Comparison]

_ORDER = {CategoryMatch: 0, SkuPattern: 1, NumericMin: 2, NumericGreater: 3, Comparison: 4}


@dataclass(frozen=True)
class TriggerSpec:
    conditions: Tuple[Condition, ...] = ()
    always: bool = False
    unrecognized: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerResult:
    applies: bool
    reason: str


def _fmt(value: float) -> str:
    return f"{value:g}"


def _threshold(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _freeze(raw: Any) -> Any:
    """Hashable, type-tagged view of a raw trigger spec so parsing can be cached.

    Scalars carry their type name: ``True`` and ``1`` compare equal and would
    otherwise share a cache entry.
    """
    if isinstance(raw, Mapping):
        return ("map", tuple(sorted((str(k), _freeze(v)) for k, v in raw.items())))
    if isinstance(raw, (list, tuple)):
        return ("seq", tuple(_freeze(v) for v in raw))
    return ("val", type(raw).__name__, raw)


def _thaw(frozen: Tuple[Any, ...]) -> Any:
    tag = frozen[0]
    if tag == "map":
        return {k: _thaw(v) for k, v in frozen[1]}
    if tag == "seq":
        return [_thaw(v) for v in frozen[1]]
    return frozen[2]


def parse_trigger(raw: Any) -> TriggerSpec:
    """Normalise the stored trigger value into a :class:`TriggerSpec`."""
    try:
        return _parse_frozen(_freeze(raw))
    except TypeError:
        return _parse(raw)


@lru_cache(maxsize=1024)
def _parse_frozen(frozen: Any) -> TriggerSpec:
    return _parse(_thaw(frozen))


def _parse(raw: Any) -> TriggerSpec:
    if raw is None:
        return TriggerSpec(always=True)
    if isinstance(raw, str):
        text = raw.strip()
        if not text or text.lower() in ALWAYS_MARKERS:
            return TriggerSpec(always=True)
        try:
            decoded = json.loads(text)
        except ValueError:
            return TriggerSpec(unrecognized=(text,))
        return _parse(decoded)
    if isinstance(raw, bool):
        return TriggerSpec(always=True) if raw else TriggerSpec(unrecognized=("false",))
    if isinstance(raw, (list, tuple)):
        if not raw:
            return TriggerSpec(always=True)
        return _parse_legacy(raw)
    if isinstance(raw, Mapping):
        return _parse_mapping(raw)
    return TriggerSpec(unrecognized=(repr(raw),))


def _parse_mapping(raw: Mapping[str, Any]) -> TriggerSpec:
    if raw.get("always") is True or str(raw.get("type", "")).lower() == "always":
        return TriggerSpec(always=True)

    conditions = []
    unrecognized = []
    for key, value in raw.items():
        if value is None or key in ("always", "type"):
            continue
        if key in ("material_category", "category"):
            values = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                if str(item).strip():
                    conditions.append(CategoryMatch(str(item).strip()))
            continue
        if key == "sku_pattern":
            if str(value).strip():
                conditions.append(SkuPattern(str(value).strip()))
            continue
        threshold = _threshold(value)
        if key.startswith("min_") and len(key) > 4 and threshold is not None:
            conditions.append(NumericMin(key[4:], threshold))
        elif key.endswith("_gt") and len(key) > 3 and threshold is not None:
            conditions.append(NumericGreater(key[:-3], threshold))
        else:
            unrecognized.append(key)

    conditions.sort(key=lambda c: _ORDER[type(c)])
    return TriggerSpec(conditions=tuple(conditions), unrecognized=tuple(unrecognized))


def _parse_legacy(raw: Sequence[Any]) -> TriggerSpec:
    conditions = []
    unrecognized = []
    for item in raw:
        if not isinstance(item, Mapping):
            unrecognized.append(repr(item))
            continue
        field = str(item.get("field") or "").strip()
        operator = str(item.get("operator") or "").strip().lower()
        if not field or operator not in LEGACY_OPERATORS:
            unrecognized.append(f"{field or '?'}:{operator or '?'}")
            continue
        threshold = _threshold(item.get("value"))
        if operator == "gte" and threshold is not None:
            conditions.append(NumericMin(field, threshold))
        elif operator == "gt" and threshold is not None:
            conditions.append(NumericGreater(field, threshold))
        else:
            conditions.append(Comparison(field, operator, item.get("value")))
    conditions.sort(key=lambda c: _ORDER[type(c)])
    return TriggerSpec(conditions=tuple(conditions), unrecognized=tuple(unrecognized))


def resolve_field(name: str, context: Mapping[str, float]) -> Tuple[str, float, bool]:
    """Find ``name`` in the context, trying the count/area/length suffixes."""
    for suffix in FIELD_SUFFIXES:
        candidate = f"{name}{suffix}"
        if candidate in context:
            return candidate, float(context[candidate]), True
    return name, 0.0, False


def _check(condition: Condition, context: Mapping[str, float], materials: Sequence[AssignedMaterial]) -> Optional[str]:
    """Return ``None`` when the condition holds, otherwise the failure reason."""
    if isinstance(condition, CategoryMatch):
        wanted = condition.category.casefold()
        if any((m.category or "").casefold() == wanted for m in materials):
            return None
        return f"material_category={condition.category} not assigned"

    if isinstance(condition, SkuPattern):
        wanted = condition.pattern.casefold()
        if any(wanted in (m.sku or "").casefold() for m in materials):
            return None
        return f"no assigned sku matches '{condition.pattern}'"

    if isinstance(condition, NumericMin):
        _, value, found = resolve_field(condition.field, context)
        if not found:
            LOGGER.debug("Trigger field %s not in measurement context; treating as 0", condition.field)
        if value >= condition.threshold:
            return None
        return f"{condition.field}={_fmt(value)} < {_fmt(condition.threshold)}"

    if isinstance(condition, NumericGreater):
        _, value, found = resolve_field(condition.field, context)
        if not found:
            LOGGER.debug("Trigger field %s not in measurement context; treating as 0", condition.field)
        if value > condition.threshold:
            return None
        return f"{condition.field}={_fmt(value)} <= {_fmt(condition.threshold)}"

    return _check_comparison(condition, context)


def _check_comparison(condition: Comparison, context: Mapping[str, float]) -> Optional[str]:
    _, value, _ = resolve_field(condition.field, context)
    operator = condition.operator
    if operator == "exists":
        return None if value != 0 else f"{condition.field} not present"
    if operator == "not_exists":
        return None if value == 0 else f"{condition.field}={_fmt(value)} present"

    target = _threshold(condition.value)
    if target is None:
        return f"{condition.field} {operator} {condition.value!r}: non-numeric value"
    holds = {
        "lt": value < target,
        "lte": value <= target,
        "eq": value == target,
        "neq": value != target,
        "gt": value > target,
        "gte": value >= target,
    }[operator]
    if holds:
        return None
    return f"{condition.field}={_fmt(value)} not {operator} {_fmt(target)}"


def evaluate_trigger(
    trigger: Any,
    context: Mapping[str, float],
    assigned_materials: Optional[Iterable[AssignedMaterial]] = None,
) -> TriggerResult:
    """
    Decide whether a rule applies to ``context``.

    Every condition must hold; material conditions run before numeric ones
    and the first failure is reported.  A spec with no recognised
    condition applies, tagged ``unrecognized trigger conditions``.
    """

    spec = trigger if isinstance(trigger, TriggerSpec) else parse_trigger(trigger)
    if spec.always:
        return TriggerResult(True, REASON_NO_TRIGGER if trigger is None else REASON_ALWAYS)
    if spec.unrecognized:
        LOGGER.debug("Ignoring unrecognized trigger keys: %s", ", ".join(spec.unrecognized))
    if not spec.conditions:
        LOGGER.warning("Trigger %r has no recognized conditions; applying rule", trigger)
        return TriggerResult(True, REASON_UNRECOGNIZED)

    materials = tuple(assigned_materials or ())
    for condition in spec.conditions:
        failure = _check(condition, context, materials)
        if failure is not None:
            return TriggerResult(False, failure)
    return TriggerResult(True, REASON_ALL_MET)


__all__ = [
    "CategoryMatch",
    "Comparison",
    "NumericGreater",
    "NumericMin",
    "SkuPattern",
    "TriggerResult",
    "TriggerSpec",
    "evaluate_trigger",
    "parse_trigger",
    "resolve_field",
]

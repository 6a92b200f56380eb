"""
Measurement context normalisation.

Stored extraction records and ad-hoc webhook payloads describe the same
building with different field names and shapes.  ``build_measurement_context``
folds both into one canonical, immutable mapping of finite non-negative
numbers that quantity formulas and trigger conditions read from.

Precedence is per field: a non-zero stored value wins, then the payload,
then the default (0, or 10 ft for the average wall height since it is a
divisor).  Historical names used by database-authored formulas are served
through ``ALIASES`` at lookup time instead of being copied.
"""

from __future__ import annotations

import math
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

DEFAULT_WALL_HEIGHT_FT = 10.0

# canonical field -> (stored record keys, payload key paths)
FIELD_SOURCES: Dict[str, Tuple[Tuple[str, ...], Tuple[Tuple[str, ...], ...]]] = {
    "facade_sqft": (("facade_total_sqft", "facade_sqft"), (("facade_sqft",), ("facade_total_sqft",))),
    "gross_wall_area_sqft": (("gross_wall_area_sqft",), (("gross_wall_area_sqft",),)),
    "net_siding_area_sqft": (
        ("net_siding_area_sqft", "net_wall_area_sqft"),
        (("net_siding_area_sqft",), ("net_wall_area_sqft",)),
    ),
    "window_count": (("window_count",), (("window_count",), ("windows", "count"))),
    "window_area_sqft": (
        ("window_total_area_sqft", "window_area_sqft"),
        (("window_area_sqft",), ("windows", "total_area_sqft")),
    ),
    "window_perimeter_lf": (("window_perimeter_lf",), (("window_perimeter_lf",), ("windows", "perimeter_lf"))),
    "window_head_lf": (("window_head_lf",), (("window_head_lf",), ("windows", "head_lf"))),
    "window_sill_lf": (("window_sill_lf",), (("window_sill_lf",), ("windows", "sill_lf"))),
    "window_jamb_lf": (("window_jamb_lf",), (("window_jamb_lf",), ("windows", "jamb_lf"))),
    "door_count": (("door_count",), (("door_count",), ("doors", "count"))),
    "door_area_sqft": (
        ("door_total_area_sqft", "door_area_sqft"),
        (("door_area_sqft",), ("doors", "total_area_sqft")),
    ),
    "door_perimeter_lf": (("door_perimeter_lf",), (("door_perimeter_lf",), ("doors", "perimeter_lf"))),
    "door_head_lf": (("door_head_lf",), (("door_head_lf",), ("doors", "head_lf"))),
    "door_jamb_lf": (("door_jamb_lf",), (("door_jamb_lf",), ("doors", "jamb_lf"))),
    "garage_count": (("garage_count",), (("garage_count",), ("garages", "count"))),
    "garage_area_sqft": (
        ("garage_total_area_sqft", "garage_area_sqft"),
        (("garage_area_sqft",), ("garages", "total_area_sqft")),
    ),
    "garage_perimeter_lf": (("garage_perimeter_lf",), (("garage_perimeter_lf",), ("garages", "perimeter_lf"))),
    "outside_corner_count": (
        ("corners_outside_count", "outside_corner_count"),
        (("outside_corner_count",), ("outside_corners", "count")),
    ),
    "outside_corner_lf": (
        ("corners_outside_lf", "outside_corner_lf"),
        (("outside_corner_lf",), ("outside_corners", "total_lf")),
    ),
    "inside_corner_count": (
        ("corners_inside_count", "inside_corner_count"),
        (("inside_corner_count",), ("inside_corners", "count")),
    ),
    "inside_corner_lf": (
        ("corners_inside_lf", "inside_corner_lf"),
        (("inside_corner_lf",), ("inside_corners", "total_lf")),
    ),
    "gable_count": (("gable_count",), (("gable_count",), ("gables", "count"))),
    "gable_area_sqft": (("gable_area_sqft",), (("gable_area_sqft",), ("gables", "area_sqft"))),
    "gable_rake_lf": (("gable_rake_lf",), (("gable_rake_lf",), ("gables", "rake_lf"))),
    "level_starter_lf": (("level_starter_lf",), (("level_starter_lf",),)),
    "avg_wall_height_ft": (("avg_wall_height_ft",), (("avg_wall_height_ft",),)),
    "trim_head_lf": (("trim_head_lf",), (("trim_head_lf",), ("trim", "total_head_lf"))),
    "trim_jamb_lf": (("trim_jamb_lf",), (("trim_jamb_lf",), ("trim", "total_jamb_lf"))),
    "trim_sill_lf": (("trim_sill_lf",), (("trim_sill_lf",), ("trim", "total_sill_lf"))),
    "trim_total_lf": (("trim_total_lf",), (("trim_total_lf",), ("trim", "total_trim_lf"))),
    "belly_band_lf": (
        ("belly_band_lf",),
        (("belly_band_lf",), ("detection_counts", "belly_band", "total_lf")),
    ),
}

DERIVED_FIELDS: Tuple[str, ...] = (
    "openings_count",
    "openings_area_sqft",
    "total_opening_perimeter_lf",
    "corners_count",
    "total_corner_lf",
    "facade_perimeter_lf",
)

# Only populated in manufacturer-scoped contexts.
MANUFACTURER_FIELDS: Tuple[str, ...] = (
    "manufacturer_area_sqft",
    "manufacturer_linear_lf",
    "manufacturer_piece_count",
)

FIELDS: Tuple[str, ...] = tuple(FIELD_SOURCES) + DERIVED_FIELDS + MANUFACTURER_FIELDS

# alternate name -> canonical name
ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "facade_area_sqft": "facade_sqft",
        "gross_area_sqft": "gross_wall_area_sqft",
        "net_area_sqft": "net_siding_area_sqft",
        "net_wall_area_sqft": "net_siding_area_sqft",
        "window_total_area_sqft": "window_area_sqft",
        "door_total_area_sqft": "door_area_sqft",
        "garage_total_area_sqft": "garage_area_sqft",
        "corners_outside_count": "outside_corner_count",
        "corners_inside_count": "inside_corner_count",
        "outside_corners_lf": "outside_corner_lf",
        "inside_corners_lf": "inside_corner_lf",
        "openings_perimeter_lf": "total_opening_perimeter_lf",
        "corner_lf": "total_corner_lf",
        "wall_height_ft": "avg_wall_height_ft",
        "starter_lf": "level_starter_lf",
        "perimeter_lf": "facade_perimeter_lf",
        "trim_lf": "trim_total_lf",
    }
)


def coerce_measurement(value: Any) -> float:
    """Return ``value`` as a finite, non-negative float; anything else is 0."""
    if value is None:
        return 0.0
    try:
        if isinstance(value, str):
            number = float(value.replace(",", "").strip())
        else:
            number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


class MeasurementContext(Mapping[str, float]):
    """Immutable canonical measurement mapping with alias-aware lookup."""

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        source = values or {}
        clean = {name: coerce_measurement(source.get(name)) for name in FIELDS}
        object.__setattr__(self, "_values", MappingProxyType(clean))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("MeasurementContext is immutable")

    def __getitem__(self, key: str) -> float:
        return self._values[ALIASES.get(key, key)]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return ALIASES.get(key, key) in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        populated = {k: v for k, v in self._values.items() if v}
        return f"MeasurementContext({populated!r})"

    def variables(self) -> Dict[str, float]:
        """Canonical fields plus every alias, for formula binding."""
        bound = dict(self._values)
        for alias, target in ALIASES.items():
            bound[alias] = self._values[target]
        return bound

    def as_dict(self) -> Dict[str, float]:
        return dict(self._values)

    def replace(self, **overrides: Any) -> "MeasurementContext":
        values = dict(self._values)
        for key, value in overrides.items():
            name = ALIASES.get(key, key)
            if name not in values:
                raise KeyError(f"Unknown measurement field: {key}")
            values[name] = value
        return MeasurementContext(values)


def _lookup(record: Mapping[str, Any], path: Sequence[str]) -> Any:
    node: Any = record
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _first_positive(record: Optional[Mapping[str, Any]], paths: Sequence[Sequence[str]]) -> float:
    if not record:
        return 0.0
    for path in paths:
        value = coerce_measurement(_lookup(record, path))
        if value > 0:
            return value
    return 0.0


def with_derived_fields(values: Mapping[str, Any]) -> Dict[str, float]:
    """Recompute opening/corner totals and facade perimeter from base fields."""
    out = {name: coerce_measurement(values.get(name)) for name in FIELDS}
    out["openings_count"] = out["window_count"] + out["door_count"] + out["garage_count"]
    out["openings_area_sqft"] = out["window_area_sqft"] + out["door_area_sqft"] + out["garage_area_sqft"]
    out["total_opening_perimeter_lf"] = (
        out["window_perimeter_lf"] + out["door_perimeter_lf"] + out["garage_perimeter_lf"]
    )
    out["corners_count"] = out["outside_corner_count"] + out["inside_corner_count"]
    out["total_corner_lf"] = out["outside_corner_lf"] + out["inside_corner_lf"]
    height = out["avg_wall_height_ft"]
    if height > 0:
        out["facade_perimeter_lf"] = out["facade_sqft"] / height
    else:
        out["facade_perimeter_lf"] = out["level_starter_lf"]
    return out


def build_measurement_context(
    stored: Optional[Mapping[str, Any]] = None,
    payload: Optional[Mapping[str, Any]] = None,
) -> MeasurementContext:
    """Merge a stored measurement record and a payload into one context."""

    values: Dict[str, float] = {}
    for name, (stored_keys, payload_paths) in FIELD_SOURCES.items():
        value = _first_positive(stored, [(key,) for key in stored_keys])
        if not value:
            value = _first_positive(payload, payload_paths)
        values[name] = value

    if not values["avg_wall_height_ft"]:
        values["avg_wall_height_ft"] = DEFAULT_WALL_HEIGHT_FT
    if not values["facade_sqft"]:
        values["facade_sqft"] = values["gross_wall_area_sqft"]
    if not values["gross_wall_area_sqft"]:
        values["gross_wall_area_sqft"] = values["facade_sqft"]

    derived = with_derived_fields(values)

    # Stored records may carry precomputed opening totals.
    precomputed_count = _first_positive(stored, [("openings_count",), ("total_openings_count",)])
    if precomputed_count:
        derived["openings_count"] = precomputed_count
    precomputed_area = _first_positive(stored, [("openings_total_area_sqft",), ("openings_area_sqft",)])
    if precomputed_area:
        derived["openings_area_sqft"] = precomputed_area

    return MeasurementContext(derived)


def measurement_source(
    stored: Optional[Mapping[str, Any]],
    payload: Optional[Mapping[str, Any]],
) -> str:
    if stored:
        return "stored"
    if payload:
        return "payload"
    return "fallback"


__all__ = [
    "ALIASES",
    "DEFAULT_WALL_HEIGHT_FT",
    "FIELDS",
    "MeasurementContext",
    "build_measurement_context",
    "coerce_measurement",
    "measurement_source",
    "with_derived_fields",
]

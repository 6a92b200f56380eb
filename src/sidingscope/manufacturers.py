"""
Manufacturer grouping and manufacturer-scoped contexts.

A project may mix products from several manufacturers (lap siding from one,
trim from another).  Rules carrying a manufacturer filter are evaluated
against the share of the project attributed to each manufacturer, built
here from the material assignments and, when available, the precomputed
per-material spatial breakdown.

Every physical measurement reaches a group through exactly one path: an
assignment quantity is attributed by its unit only, a declared area or
perimeter is used only when the unit cannot be classified, and spatial
facade area is only taken for manufacturers that have no assignment-based
area.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .context import FIELD_SOURCES, MeasurementContext, coerce_measurement, with_derived_fields
from .models import AssignedMaterial, ManufacturerGroup, MaterialAssignment
from .pricing import PricingCatalog

LOGGER = logging.getLogger(__name__)

UNASSIGNED = "unassigned"

# unit -> multiplier into square feet
AREA_UNITS = {
    "SF": 1.0,
    "SQFT": 1.0,
    "SQ FT": 1.0,
    "SQ_FT": 1.0,
    "FT2": 1.0,
    "SQUARE FEET": 1.0,
    "SQ": 100.0,
    "SQUARE": 100.0,
    "SQUARES": 100.0,
}
LINEAR_UNITS = {"LF", "FT", "LIN FT", "LINEAR FT", "LNFT", "FEET"}
COUNT_UNITS = {"EA", "EACH", "PC", "PCS", "PIECE", "PIECES", "UNIT", "UNITS", "CT"}

# spatial measurement keys merged additively into a group; names match context fields
SPATIAL_FIELDS: Tuple[str, ...] = (
    "window_count",
    "door_count",
    "garage_count",
    "window_perimeter_lf",
    "door_perimeter_lf",
    "garage_perimeter_lf",
    "openings_area_sqft",
    "outside_corner_count",
    "outside_corner_lf",
    "inside_corner_count",
    "inside_corner_lf",
    "trim_head_lf",
    "trim_jamb_lf",
    "trim_sill_lf",
    "trim_total_lf",
    "belly_band_lf",
)


def classify_unit(unit: Optional[str]) -> Tuple[Optional[str], float]:
    """Return ``("area" | "linear" | "count" | None, factor)`` for a unit label."""
    label = " ".join(str(unit or "").upper().replace(".", "").split())
    if label in AREA_UNITS:
        return "area", AREA_UNITS[label]
    if label in LINEAR_UNITS:
        return "linear", 1.0
    if label in COUNT_UNITS:
        return "count", 1.0
    return None, 0.0


def _resolve_manufacturer(catalog: PricingCatalog, key: Optional[str], sku: Optional[str] = None) -> str:
    item = catalog.lookup(pricing_item_id=key, sku=sku) or catalog.by_sku(key)
    if item is None:
        return ""
    return (item.manufacturer or "").strip()


class _Groups:
    """Case-insensitive manufacturer -> group registry keeping first-seen spelling."""

    def __init__(self) -> None:
        self._groups: Dict[str, ManufacturerGroup] = {}

    def get(self, manufacturer: str) -> Optional[ManufacturerGroup]:
        return self._groups.get(manufacturer.casefold())

    def get_or_create(self, manufacturer: str) -> ManufacturerGroup:
        key = manufacturer.casefold()
        if key not in self._groups:
            self._groups[key] = ManufacturerGroup(manufacturer=manufacturer)
        return self._groups[key]

    def keys(self) -> set:
        return set(self._groups)

    def as_dict(self) -> Dict[str, ManufacturerGroup]:
        return {group.manufacturer: group for group in self._groups.values()}


def _add_assignment(group: ManufacturerGroup, assignment: MaterialAssignment) -> None:
    kind, factor = classify_unit(assignment.unit)
    quantity = coerce_measurement(assignment.quantity)
    if kind == "area":
        group.area_sqft += quantity * factor
    elif kind == "linear":
        group.linear_ft += quantity
    elif kind == "count":
        group.piece_count += quantity
    else:
        group.area_sqft += coerce_measurement(assignment.area_sf)
        group.linear_ft += coerce_measurement(assignment.perimeter_lf)
    if assignment.pricing_item_id and assignment.pricing_item_id not in group.pricing_item_ids:
        group.pricing_item_ids.append(assignment.pricing_item_id)
    if assignment.detection_id:
        group.detection_ids.append(assignment.detection_id)


def _spatial_entries(spatial: Any) -> Iterable[Tuple[str, Mapping[str, Any]]]:
    if not spatial:
        return []
    if isinstance(spatial, Mapping):
        return [(str(key), entry) for key, entry in spatial.items() if isinstance(entry, Mapping)]
    if not isinstance(spatial, (list, tuple)):
        LOGGER.warning("Ignoring per-material measurements of type %s", type(spatial).__name__)
        return []
    return [
        (str(entry.get("material_id") or ""), entry)
        for entry in spatial
        if isinstance(entry, Mapping)
    ]


def build_manufacturer_groups(
    assignments: Iterable[MaterialAssignment],
    pricing: PricingCatalog,
    spatial: Any = None,
) -> Dict[str, ManufacturerGroup]:
    """Aggregate assignments (and optional spatial data) per manufacturer."""

    groups = _Groups()
    for assignment in assignments:
        manufacturer = _resolve_manufacturer(pricing, assignment.pricing_item_id)
        if not manufacturer:
            LOGGER.debug(
                "No manufacturer for assignment %s (pricing item %s); not grouped",
                assignment.detection_id,
                assignment.pricing_item_id,
            )
            continue
        _add_assignment(groups.get_or_create(manufacturer), assignment)

    from_assignments = groups.keys()

    for key, entry in _spatial_entries(spatial):
        material_id = str(entry.get("material_id") or key)
        if key == UNASSIGNED or material_id == UNASSIGNED:
            continue
        manufacturer = str(entry.get("manufacturer") or "").strip() or _resolve_manufacturer(
            pricing, material_id, entry.get("material_sku")
        )
        if not manufacturer:
            LOGGER.debug("No manufacturer for spatial measurements of material %s; ignored", material_id)
            continue
        group = groups.get_or_create(manufacturer)
        if manufacturer.casefold() not in from_assignments:
            group.area_sqft += coerce_measurement(entry.get("facade_sqft"))
        for name in SPATIAL_FIELDS:
            if entry.get(name) is None:
                continue
            setattr(group, name, getattr(group, name) + coerce_measurement(entry.get(name)))
            group.measured_fields.add(name)
        if material_id not in group.pricing_item_ids:
            group.pricing_item_ids.append(material_id)

    result = groups.as_dict()
    for name, group in result.items():
        LOGGER.debug(
            "Manufacturer group %s: %.2f SF, %.2f LF, %.0f pcs",
            name,
            group.area_sqft,
            group.linear_ft,
            group.piece_count,
        )
    return result


def build_manufacturer_context(project: MeasurementContext, group: ManufacturerGroup) -> MeasurementContext:
    """
    Derive the context for one manufacturer's share of the project.

    Facade and gross wall area are the group's own area.  Fields the spatial
    merge measured come from the group; every other base field is scaled by
    ``group area / project facade area`` (0 when the project has no facade
    area).  Wall height is kept as-is.
    """

    baseline = project["facade_sqft"]
    ratio = group.area_sqft / baseline if baseline > 0 else 0.0
    measured = group.measured_fields

    values: Dict[str, float] = {}
    for name in FIELD_SOURCES:
        if name == "avg_wall_height_ft":
            values[name] = project[name]
        elif name in measured:
            values[name] = getattr(group, name)
        else:
            values[name] = project[name] * ratio

    values["facade_sqft"] = group.area_sqft
    values["gross_wall_area_sqft"] = group.area_sqft
    if "openings_area_sqft" in measured:
        values["net_siding_area_sqft"] = max(0.0, group.area_sqft - group.openings_area_sqft)

    derived = with_derived_fields(values)
    if "openings_area_sqft" in measured:
        derived["openings_area_sqft"] = group.openings_area_sqft
    else:
        derived["openings_area_sqft"] = project["openings_area_sqft"] * ratio
    if not any(f"{kind}_count" in measured for kind in ("window", "door", "garage")):
        derived["openings_count"] = project["openings_count"] * ratio

    derived["manufacturer_area_sqft"] = group.area_sqft
    derived["manufacturer_linear_lf"] = group.linear_ft
    derived["manufacturer_piece_count"] = group.piece_count
    return MeasurementContext(derived)


def assigned_materials_for(
    assignments: Iterable[MaterialAssignment],
    pricing: PricingCatalog,
) -> List[AssignedMaterial]:
    """Distinct assigned products, described for trigger matching."""

    materials: List[AssignedMaterial] = []
    seen = set()
    for assignment in assignments:
        key = assignment.pricing_item_id
        if not key or key in seen:
            continue
        seen.add(key)
        item = pricing.lookup(pricing_item_id=key) or pricing.by_sku(key)
        if item is None:
            LOGGER.debug("Assigned pricing item %s not in catalog; excluded from trigger matching", key)
            continue
        materials.append(
            AssignedMaterial(
                sku=item.sku,
                category=item.category,
                manufacturer=item.manufacturer,
                pricing_item_id=item.id,
            )
        )
    return materials


__all__ = [
    "SPATIAL_FIELDS",
    "assigned_materials_for",
    "build_manufacturer_context",
    "build_manufacturer_groups",
    "classify_unit",
]

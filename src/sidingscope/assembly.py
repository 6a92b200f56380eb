"""
Pricing, consolidation and totals for takeoff line items.

Candidates from the rule engine and the user's material assignments are
priced into :class:`LineItem` rows, merged by identity (pricing id, else
SKU) and only then rounded to cents.  Items without pricing are still
emitted at zero cost and flagged so the shortfall stays visible.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .manufacturers import classify_unit
from .models import CandidateQuantity, LineItem, MaterialAssignment, PricingItem, TakeoffTotals
from .pricing import LaborRates, PricingCatalog, calculate_total_labor

LOGGER = logging.getLogger(__name__)

DEFAULT_WASTE_FACTOR = 1.12
PIECE_LENGTH_FT = 12.0
DEFAULT_GROUP = "Other Materials"
PRICING_NOT_FOUND = "PRICING_NOT_FOUND"

SOURCE_AUTO_SCOPE = "auto-scope"
SOURCE_ASSIGNED = "assigned_material"

PRESENTATION_GROUPS: Dict[str, str] = {
    "siding": "Siding",
    "lap_siding": "Siding",
    "trim": "Trim",
    "corner": "Corners",
    "corners": "Corners",
    "flashing": "Flashing",
    "fasteners": "Fasteners",
    "accessories": "Accessories",
    "water_barrier": "House Wrap & Accessories",
    "caulk": "Caulk & Sealants",
    "paint": "Paint & Primer",
}

_SQUARE_UNITS = {"SQ", "SQUARE", "SQUARES"}
_PIECE_UNITS = {"EA", "PC", "PCS", "PIECE", "PIECES"}


def presentation_group_for(category: Optional[str]) -> str:
    return PRESENTATION_GROUPS.get((category or "").strip().lower(), DEFAULT_GROUP)


def _unit(label: Optional[str]) -> str:
    return str(label or "").strip().upper()


def _ceil(value: float) -> float:
    return float(math.ceil(round(value, 6)))


def convert_quantity(quantity: float, from_unit: str, to_unit: str, waste_factor: float = DEFAULT_WASTE_FACTOR) -> float:
    """Convert an assignment quantity into the pricing unit, applying waste where units change."""

    source = _unit(from_unit)
    target = _unit(to_unit)
    quantity = float(quantity or 0.0)
    if not target or source == target:
        return quantity
    kind, factor = classify_unit(source)
    if kind == "count" or (kind is not None and classify_unit(target) == (kind, factor)):
        return quantity
    if kind == "area" and target in _SQUARE_UNITS:
        return _ceil(quantity * factor / 100.0 * waste_factor)
    if kind == "linear" and target in _PIECE_UNITS:
        return _ceil(quantity / PIECE_LENGTH_FT * waste_factor)
    return _ceil(quantity * waste_factor)


def _labor_unit_cost(item: PricingItem, rates: LaborRates) -> float:
    if item.total_labor_cost and item.total_labor_cost > 0:
        return float(item.total_labor_cost)
    return calculate_total_labor(item.base_labor_cost, rates)


def _apply_pricing(line: LineItem, item: Optional[PricingItem], rates: LaborRates) -> LineItem:
    if item is None:
        line.priced = False
        return line
    line.material_unit_cost = float(item.material_cost)
    line.labor_unit_cost = _labor_unit_cost(item, rates)
    line.material_extended = line.quantity * line.material_unit_cost
    line.labor_extended = line.quantity * line.labor_unit_cost
    line.pricing_item_id = item.id
    return line


def price_candidates(
    candidates: Iterable[CandidateQuantity],
    pricing: PricingCatalog,
    rates: Optional[LaborRates] = None,
) -> List[LineItem]:
    rates = rates or LaborRates()
    items: List[LineItem] = []
    for candidate in candidates:
        rule = candidate.rule
        item = pricing.by_sku(rule.sku)
        if item is None:
            LOGGER.warning("No pricing found for auto-scope SKU %s", rule.sku)
        line = LineItem(
            key=(item.id if item and item.id else rule.sku),
            description=rule.product_name or (item.product_name if item else rule.sku),
            sku=rule.sku,
            quantity=_ceil(candidate.quantity),
            unit=rule.unit,
            category=rule.category,
            presentation_group=rule.presentation_group or presentation_group_for(rule.category),
            calculation_source=SOURCE_AUTO_SCOPE,
            rule_ids=[rule.id],
            manufacturers=[candidate.manufacturer] if candidate.manufacturer else [],
            formula_used=rule.quantity_formula,
            notes=rule.notes,
        )
        items.append(_apply_pricing(line, item, rates))
    return items


def price_assignments(
    assignments: Iterable[MaterialAssignment],
    pricing: PricingCatalog,
    rates: Optional[LaborRates] = None,
    waste_factor: float = DEFAULT_WASTE_FACTOR,
) -> List[LineItem]:
    rates = rates or LaborRates()
    items: List[LineItem] = []
    for assignment in assignments:
        item = pricing.by_id(assignment.pricing_item_id) or pricing.by_sku(assignment.pricing_item_id)
        if item is None:
            LOGGER.warning("No pricing found for assigned item %s", assignment.pricing_item_id)
            quantity = float(assignment.quantity or 0.0)
            unit = assignment.unit
        else:
            quantity = convert_quantity(assignment.quantity, assignment.unit, item.unit, waste_factor)
            unit = item.unit or assignment.unit
        line = LineItem(
            key=(item.id if item and item.id else assignment.pricing_item_id),
            description=(item.product_name if item else assignment.detection_class) or assignment.pricing_item_id,
            sku=(item.sku if item else assignment.pricing_item_id),
            quantity=quantity,
            unit=unit,
            category=(item.category if item else assignment.detection_class),
            presentation_group=presentation_group_for(item.category if item else assignment.detection_class),
            calculation_source=SOURCE_ASSIGNED,
            detection_ids=[assignment.detection_id] if assignment.detection_id else [],
            manufacturers=[item.manufacturer] if item and item.manufacturer else [],
        )
        items.append(_apply_pricing(line, item, rates))
    return items


def _extend_unique(target: List[str], values: Sequence[str]) -> None:
    for value in values:
        if value and value not in target:
            target.append(value)


def consolidate(items: Iterable[LineItem]) -> List[LineItem]:
    """Merge rows sharing a key; quantities and extended costs are summed unrounded."""

    merged: Dict[str, LineItem] = {}
    for item in items:
        existing = merged.get(item.key)
        if existing is None:
            merged[item.key] = replace(
                item,
                rule_ids=list(item.rule_ids),
                detection_ids=list(item.detection_ids),
                manufacturers=list(item.manufacturers),
            )
            continue
        existing.quantity += item.quantity
        existing.material_extended += item.material_extended
        existing.labor_extended += item.labor_extended
        existing.detection_ids.extend(item.detection_ids)
        _extend_unique(existing.rule_ids, item.rule_ids)
        _extend_unique(existing.manufacturers, item.manufacturers)
        if item.notes and item.notes not in existing.notes:
            existing.notes = f"{existing.notes}; {item.notes}" if existing.notes else item.notes
        if item.formula_used and not existing.formula_used:
            existing.formula_used = item.formula_used
        existing.priced = existing.priced and item.priced
    return list(merged.values())


def finalize(items: Iterable[LineItem]) -> List[LineItem]:
    """Round money to cents once, after every merge."""

    items = list(items)
    for item in items:
        item.quantity = round(item.quantity, 4)
        item.material_unit_cost = round(item.material_unit_cost, 2)
        item.labor_unit_cost = round(item.labor_unit_cost, 2)
        item.material_extended = round(item.material_extended, 2)
        item.labor_extended = round(item.labor_extended, 2)
    return items


def assemble(
    candidates: Iterable[CandidateQuantity],
    pricing: PricingCatalog,
    assigned_items: Iterable[LineItem] = (),
    rates: Optional[LaborRates] = None,
) -> List[LineItem]:
    priced = list(assigned_items) + price_candidates(candidates, pricing, rates)
    return finalize(consolidate(priced))


def compute_totals(
    items: Iterable[LineItem],
    overhead_rate: float = 0.10,
    markup_rate: float = 0.15,
) -> TakeoffTotals:
    material = 0.0
    labor = 0.0
    for item in items:
        material += item.material_extended
        labor += item.labor_extended
    overhead = labor * overhead_rate
    subtotal = material + labor + overhead
    markup = subtotal * markup_rate
    return TakeoffTotals(
        material_cost=round(material, 2),
        labor_cost=round(labor, 2),
        overhead=round(overhead, 2),
        subtotal=round(subtotal, 2),
        markup_rate=markup_rate,
        markup_amount=round(markup, 2),
        total=round(subtotal + markup, 2),
    )


def missing_pricing(items: Iterable[LineItem]) -> Tuple[List[str], List[Dict[str, str]]]:
    """Return the unpriced item SKUs and one warning per item."""

    missing: List[str] = []
    warnings: List[Dict[str, str]] = []
    for item in items:
        if item.priced:
            continue
        missing.append(item.sku)
        warnings.append(
            {
                "code": PRICING_NOT_FOUND,
                "message": f"No pricing found for {item.sku} ({item.calculation_source}); emitted at zero cost",
            }
        )
    return missing, warnings


__all__ = [
    "PRESENTATION_GROUPS",
    "PRICING_NOT_FOUND",
    "assemble",
    "compute_totals",
    "consolidate",
    "convert_quantity",
    "finalize",
    "missing_pricing",
    "presentation_group_for",
    "price_assignments",
    "price_candidates",
]

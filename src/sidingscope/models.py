from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Rule:
    """Auto-scope rule as stored in ``siding_auto_scope_rules``."""

    id: str
    sku: str
    product_name: str
    category: str
    presentation_group: str
    unit: str
    quantity_formula: str
    trigger_conditions: Any = None
    display_order: int = 0
    group_order: int = 0
    is_active: bool = True
    manufacturer_filter: Optional[Tuple[str, ...]] = None
    notes: str = ""


@dataclass(frozen=True)
class AssignedMaterial:
    """A material the user explicitly chose; only used for trigger matching."""

    sku: str
    category: str
    manufacturer: str = ""
    pricing_item_id: Optional[str] = None


@dataclass(frozen=True)
class MaterialAssignment:
    detection_id: str
    detection_class: str
    pricing_item_id: str
    quantity: float
    unit: str
    area_sf: Optional[float] = None
    perimeter_lf: Optional[float] = None


@dataclass(frozen=True)
class PricingItem:
    """Normalized row of the pricing table."""

    id: Optional[str]
    sku: str
    product_name: str = ""
    manufacturer: str = ""
    category: str = ""
    unit: str = ""
    material_cost: float = 0.0
    base_labor_cost: float = 0.0
    total_labor_cost: Optional[float] = None
    snapshot_name: str = ""


@dataclass
class ManufacturerGroup:
    """Measurements attributed to one manufacturer's share of the project."""

    manufacturer: str
    area_sqft: float = 0.0
    linear_ft: float = 0.0
    piece_count: float = 0.0
    window_count: float = 0.0
    door_count: float = 0.0
    garage_count: float = 0.0
    window_perimeter_lf: float = 0.0
    door_perimeter_lf: float = 0.0
    garage_perimeter_lf: float = 0.0
    openings_area_sqft: float = 0.0
    outside_corner_count: float = 0.0
    outside_corner_lf: float = 0.0
    inside_corner_count: float = 0.0
    inside_corner_lf: float = 0.0
    trim_head_lf: float = 0.0
    trim_jamb_lf: float = 0.0
    trim_sill_lf: float = 0.0
    trim_total_lf: float = 0.0
    belly_band_lf: float = 0.0
    measured_fields: set = field(default_factory=set)
    pricing_item_ids: List[str] = field(default_factory=list)
    detection_ids: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, float]:
        return {
            "area_sqft": round(self.area_sqft, 2),
            "linear_ft": round(self.linear_ft, 2),
            "piece_count": round(self.piece_count, 2),
        }


@dataclass(frozen=True)
class CandidateQuantity:
    rule: Rule
    quantity: float
    manufacturer: Optional[str] = None


@dataclass(frozen=True)
class RuleSkip:
    """Diagnostic record for a (rule, scope) pair that produced no quantity."""

    rule_id: str
    sku: str
    kind: str
    reason: str
    manufacturer: Optional[str] = None

    def __str__(self) -> str:
        scope = f" [{self.manufacturer}]" if self.manufacturer else ""
        return f"{self.sku}{scope}: {self.reason}"


@dataclass
class LineItem:
    """Final priced output row."""

    key: str
    description: str
    sku: str
    quantity: float
    unit: str
    category: str
    presentation_group: str
    material_unit_cost: float = 0.0
    material_extended: float = 0.0
    labor_unit_cost: float = 0.0
    labor_extended: float = 0.0
    calculation_source: str = "auto-scope"
    pricing_item_id: Optional[str] = None
    rule_ids: List[str] = field(default_factory=list)
    detection_ids: List[str] = field(default_factory=list)
    manufacturers: List[str] = field(default_factory=list)
    formula_used: str = ""
    notes: str = ""
    priced: bool = True


@dataclass(frozen=True)
class TakeoffTotals:
    material_cost: float
    labor_cost: float
    overhead: float
    subtotal: float
    markup_rate: float
    markup_amount: float
    total: float

    @property
    def markup_percent(self) -> float:
        return round(self.markup_rate * 100, 2)


@dataclass
class TakeoffResult:
    line_items: List[LineItem]
    totals: TakeoffTotals
    metadata: Dict[str, Any] = field(default_factory=dict)

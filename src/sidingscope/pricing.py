"""
Pricing catalog and sources.

Line items are priced against the current pricing snapshot: the
``v_pricing_current`` view (one row per SKU and trade) for rule SKUs and
the ``pricing_items`` table for explicitly assigned products.  An
organization may override material cost or labor rate per product; a labor
override recomputes total labor with the burden rates.  Offline runs read
the same columns from a CSV, JSON or Excel export.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .models import PricingItem
from .store import RestClient, StoreError, eq, in_list

LOGGER = logging.getLogger(__name__)

PRICING_VIEW = "v_pricing_current"
PRICING_TABLE = "pricing_items"
OVERRIDES_TABLE = "organization_pricing_overrides"

NUMERIC_COLUMNS = ("material_cost", "base_labor_cost", "total_labor_cost")
TEXT_COLUMNS = ("id", "sku", "product_name", "manufacturer", "category", "unit", "snapshot_name")

# export header -> canonical column
COLUMN_ALIASES = {
    "item_id": "id",
    "pricing_item_id": "id",
    "description": "product_name",
    "name": "product_name",
    "unit_cost": "material_cost",
    "material_unit_cost": "material_cost",
    "labor_cost": "base_labor_cost",
    "labor_rate": "base_labor_cost",
    "total_labor": "total_labor_cost",
}


@dataclass(frozen=True)
class LaborRates:
    """Payroll burden applied on top of base installation labor."""

    li_insurance_rate: float = 0.1265
    unemployment_rate: float = 0.013

    @property
    def multiplier(self) -> float:
        return 1.0 + self.li_insurance_rate + self.unemployment_rate

    @classmethod
    def from_config(cls, config) -> "LaborRates":
        return cls(li_insurance_rate=config.li_insurance_rate, unemployment_rate=config.unemployment_rate)


def calculate_total_labor(base_labor_cost: float, rates: Optional[LaborRates] = None) -> float:
    rates = rates or LaborRates()
    return float(base_labor_cost or 0.0) * rates.multiplier


def _money(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.replace("$", "").replace(",", "").strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
    if not math.isfinite(number):
        return None
    return number


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def row_to_pricing(row: Mapping[str, Any]) -> Optional[PricingItem]:
    """Build a :class:`PricingItem` from a table or file row, or ``None``."""

    item_id = _text(row.get("id")) or None
    sku = _text(row.get("sku"))
    if not item_id and not sku:
        return None
    total_labor = _money(row.get("total_labor_cost"))
    return PricingItem(
        id=item_id,
        sku=sku,
        product_name=_text(row.get("product_name")) or sku,
        manufacturer=_text(row.get("manufacturer")),
        category=_text(row.get("category")),
        unit=_text(row.get("unit")),
        material_cost=_money(row.get("material_cost")) or 0.0,
        base_labor_cost=_money(row.get("base_labor_cost")) or 0.0,
        total_labor_cost=total_labor,
        snapshot_name=_text(row.get("snapshot_name")),
    )


def apply_override(item: PricingItem, override: Mapping[str, Any], rates: Optional[LaborRates] = None) -> PricingItem:
    material = _money(override.get("material_cost_override"))
    labor = _money(override.get("labor_rate_override"))
    changes: Dict[str, Any] = {}
    if material is not None:
        changes["material_cost"] = material
    if labor is not None:
        changes["base_labor_cost"] = labor
        changes["total_labor_cost"] = calculate_total_labor(labor, rates)
    return replace(item, **changes) if changes else item


class PricingCatalog:
    """Pricing rows indexed by id and by SKU; ids win on lookup."""

    def __init__(self, items: Iterable[PricingItem] = ()) -> None:
        self._by_id: Dict[str, PricingItem] = {}
        self._by_sku: Dict[str, PricingItem] = {}
        for item in items:
            self.add(item)

    def add(self, item: PricingItem) -> None:
        if item.id:
            self._by_id[item.id] = item
        if item.sku:
            self._by_sku[item.sku] = item

    def by_id(self, item_id: Optional[str]) -> Optional[PricingItem]:
        if not item_id:
            return None
        return self._by_id.get(str(item_id))

    def by_sku(self, sku: Optional[str]) -> Optional[PricingItem]:
        if not sku:
            return None
        return self._by_sku.get(sku)

    def get(self, key: Optional[str]) -> Optional[PricingItem]:
        return self.by_id(key) or self.by_sku(key)

    def lookup(self, pricing_item_id: Optional[str] = None, sku: Optional[str] = None) -> Optional[PricingItem]:
        return self.by_id(pricing_item_id) or self.by_sku(sku)

    def merge(self, other: "PricingCatalog") -> "PricingCatalog":
        merged = PricingCatalog(self)
        for item in other:
            merged.add(item)
        return merged

    def __iter__(self) -> Iterator[PricingItem]:
        seen = set()
        for item in list(self._by_id.values()) + list(self._by_sku.values()):
            if id(item) in seen:
                continue
            seen.add(id(item))
            yield item

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return bool(self._by_id or self._by_sku)


class RestPricingSource:
    """Fetches pricing rows from the store; each failed query degrades to no rows."""

    def __init__(self, client: RestClient, trade: str = "siding", rates: Optional[LaborRates] = None) -> None:
        self.client = client
        self.trade = trade
        self.rates = rates or LaborRates()

    def _select(self, table: str, filters: Mapping[str, str]) -> List[Dict[str, Any]]:
        try:
            return self.client.select(table, filters)
        except StoreError as exc:
            LOGGER.error("Error fetching pricing from %s: %s", table, exc)
            return []

    def fetch(
        self,
        skus: Sequence[str] = (),
        ids: Sequence[str] = (),
        organization_id: Optional[str] = None,
    ) -> PricingCatalog:
        items: List[PricingItem] = []
        wanted_skus = sorted({s for s in skus if s})
        wanted_ids = sorted({str(i) for i in ids if i})
        if wanted_skus:
            rows = self._select(PRICING_VIEW, {"trade": eq(self.trade), "sku": in_list(wanted_skus)})
            items.extend(item for item in map(row_to_pricing, rows) if item)
        if wanted_ids:
            rows = self._select(PRICING_TABLE, {"id": in_list(wanted_ids)})
            items.extend(item for item in map(row_to_pricing, rows) if item)

        if organization_id and items:
            item_ids = sorted({item.id for item in items if item.id})
            overrides: Dict[str, Mapping[str, Any]] = {}
            if item_ids:
                rows = self._select(
                    OVERRIDES_TABLE,
                    {"organization_id": eq(organization_id), "pricing_item_id": in_list(item_ids)},
                )
                overrides = {str(row.get("pricing_item_id")): row for row in rows}
            if overrides:
                LOGGER.info("Applying %d organization pricing overrides", len(overrides))
                items = [
                    apply_override(item, overrides[item.id], self.rates) if item.id in overrides else item
                    for item in items
                ]

        LOGGER.info("Fetched %d pricing rows (%d SKUs, %d ids requested)", len(items), len(wanted_skus), len(wanted_ids))
        return PricingCatalog(items)


def _normalise_frame(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out.columns = [str(col).strip().lower().replace(" ", "_") for col in out.columns]
    out = out.rename(columns={k: v for k, v in COLUMN_ALIASES.items() if k in out.columns and v not in out.columns})
    for col in NUMERIC_COLUMNS:
        if col in out.columns:
            series = out[col]
            if series.dtype == object:
                series = series.astype(str).str.replace(r"[$,]", "", regex=True)
            out[col] = pd.to_numeric(series, errors="coerce").replace([np.inf, -np.inf], np.nan)
        else:
            out[col] = np.nan
    out["material_cost"] = out["material_cost"].fillna(0.0)
    out["base_labor_cost"] = out["base_labor_cost"].fillna(0.0)
    for col in TEXT_COLUMNS:
        if col not in out.columns:
            out[col] = ""
        out[col] = out[col].fillna("").astype(str).str.strip()
    return out


def load_pricing_frame(path: Path) -> pd.DataFrame:
    """Read a pricing export (CSV, JSON records or Excel) into a normalised frame."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pricing file not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str)
    elif suffix == ".json":
        df = pd.read_json(path, orient="records")
    elif suffix in {".xlsx", ".xlsm"}:
        df = pd.read_excel(path, engine="openpyxl", dtype=str)
    else:
        raise ValueError(f"Unsupported pricing file type: {path.suffix}")
    return _normalise_frame(df)


class FilePricingSource:
    """Serves pricing from a local export; the file is read once."""

    def __init__(self, path: Path, rates: Optional[LaborRates] = None) -> None:
        self.path = Path(path)
        self.rates = rates or LaborRates()
        self._catalog: Optional[PricingCatalog] = None

    def _load(self) -> PricingCatalog:
        if self._catalog is None:
            df = load_pricing_frame(self.path)
            rows = df.astype(object).where(pd.notna(df), None).to_dict(orient="records")
            self._catalog = PricingCatalog(item for item in map(row_to_pricing, rows) if item)
            LOGGER.info("Loaded %d pricing rows from %s", len(self._catalog), self.path)
        return self._catalog

    def fetch(
        self,
        skus: Sequence[str] = (),
        ids: Sequence[str] = (),
        organization_id: Optional[str] = None,
    ) -> PricingCatalog:
        catalog = self._load()
        if not skus and not ids:
            return catalog
        wanted_skus = set(skus)
        wanted_ids = {str(i) for i in ids}
        return PricingCatalog(item for item in catalog if item.sku in wanted_skus or item.id in wanted_ids)


__all__ = [
    "FilePricingSource",
    "LaborRates",
    "PricingCatalog",
    "RestPricingSource",
    "apply_override",
    "calculate_total_labor",
    "load_pricing_frame",
    "row_to_pricing",
]

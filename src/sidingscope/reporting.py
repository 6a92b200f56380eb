from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable

import pandas as pd

from .models import LineItem, TakeoffResult

COLUMNS = [
    "PRESENTATION_GROUP",
    "SKU",
    "DESCRIPTION",
    "QUANTITY",
    "UNIT",
    "MATERIAL_UNIT_COST",
    "MATERIAL_EXTENDED",
    "LABOR_UNIT_COST",
    "LABOR_EXTENDED",
    "TOTAL_COST",
    "CALCULATION_SOURCE",
    "MANUFACTURERS",
    "PRICED",
]


def line_items_frame(items: Iterable[LineItem]) -> pd.DataFrame:
    rows = []
    for item in items:
        rows.append(
            {
                "PRESENTATION_GROUP": item.presentation_group,
                "SKU": item.sku,
                "DESCRIPTION": item.description,
                "QUANTITY": item.quantity,
                "UNIT": item.unit,
                "MATERIAL_UNIT_COST": item.material_unit_cost,
                "MATERIAL_EXTENDED": item.material_extended,
                "LABOR_UNIT_COST": item.labor_unit_cost,
                "LABOR_EXTENDED": item.labor_extended,
                "TOTAL_COST": round(item.material_extended + item.labor_extended, 2),
                "CALCULATION_SOURCE": item.calculation_source,
                "MANUFACTURERS": ", ".join(item.manufacturers),
                "PRICED": item.priced,
            }
        )
    return pd.DataFrame(rows, columns=COLUMNS)


def make_summary_text(result: TakeoffResult) -> str:
    totals = result.totals
    items_df = line_items_frame(result.line_items)
    top = items_df.sort_values("TOTAL_COST", ascending=False).head(5)[
        ["SKU", "DESCRIPTION", "QUANTITY", "UNIT", "TOTAL_COST"]
    ]
    by_group = items_df.groupby("PRESENTATION_GROUP", sort=False)["TOTAL_COST"].sum()
    missing = result.metadata.get("items_missing") or []
    lines = [
        f"Takeoff subtotal (materials + labor + overhead): ${totals.subtotal:,.2f}.",
        f"Markup {totals.markup_percent:g}%: ${totals.markup_amount:,.2f}. Total: ${totals.total:,.2f}.",
        f"Top cost drivers:\n{top.to_string(index=False)}" if not items_df.empty else "No line items.",
    ]
    if not by_group.empty:
        lines.append(f"Cost by group:\n{by_group.round(2).to_string()}")
    if missing:
        lines.append(f"Unpriced items ({len(missing)}): {', '.join(missing)}")
    lines.append(
        f"Rules evaluated: {result.metadata.get('rules_evaluated', 0)}, "
        f"triggered: {result.metadata.get('rules_triggered', 0)} "
        f"(measurements: {result.metadata.get('measurement_source', 'fallback')})."
    )
    return "\n".join(lines) + "\n"


def result_to_dict(result: TakeoffResult) -> Dict[str, Any]:
    totals = asdict(result.totals)
    totals["markup_percent"] = result.totals.markup_percent
    return {
        "line_items": [asdict(item) for item in result.line_items],
        "totals": totals,
        "metadata": result.metadata,
    }


def write_outputs(result: TakeoffResult, output_dir: Path) -> Dict[str, Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / "takeoff.json"
    csv_path = output_dir / "line_items.csv"
    with json_path.open("w", encoding="utf-8") as fh:
        json.dump(result_to_dict(result), fh, indent=2)
    line_items_frame(result.line_items).to_csv(csv_path, index=False)
    return {"json": json_path, "csv": csv_path}


__all__ = ["line_items_frame", "make_summary_text", "result_to_dict", "write_outputs"]

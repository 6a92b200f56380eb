from __future__ import annotations

import json
from pathlib import Path

import pandas as pd

from sidingscope.assembly import compute_totals
from sidingscope.models import LineItem, TakeoffResult
from sidingscope.reporting import line_items_frame, make_summary_text, write_outputs


def _result() -> TakeoffResult:
    items = [
        LineItem(
            key="p-wrap",
            description="Tyvek HomeWrap",
            sku="TYVEK-HW-9X150",
            quantity=2,
            unit="ROLL",
            category="water_barrier",
            presentation_group="House Wrap & Accessories",
            material_unit_cost=180.0,
            material_extended=360.0,
            labor_unit_cost=22.79,
            labor_extended=45.58,
            rule_ids=["fallback-housewrap"],
        ),
        LineItem(
            key="OSI-QUAD-10OZ",
            description="OSI Quad Caulk 10oz",
            sku="OSI-QUAD-10OZ",
            quantity=8,
            unit="TUBE",
            category="accessories",
            presentation_group="Caulk & Sealants",
            priced=False,
        ),
    ]
    metadata = {"rules_evaluated": 6, "rules_triggered": 5, "measurement_source": "payload", "items_missing": ["OSI-QUAD-10OZ"]}
    return TakeoffResult(items, compute_totals(items), metadata)


def test_line_items_frame_columns() -> None:
    df = line_items_frame(_result().line_items)
    assert list(df["SKU"]) == ["TYVEK-HW-9X150", "OSI-QUAD-10OZ"]
    assert df.loc[0, "TOTAL_COST"] == 405.58
    assert list(df["PRICED"]) == [True, False]


def test_summary_mentions_totals_and_missing_items() -> None:
    text = make_summary_text(_result())
    assert "Total: $" in text
    assert "TYVEK-HW-9X150" in text
    assert "Unpriced items (1): OSI-QUAD-10OZ" in text
    assert "Rules evaluated: 6, triggered: 5" in text


def test_summary_without_items() -> None:
    empty = TakeoffResult([], compute_totals([]), {})
    assert "No line items." in make_summary_text(empty)


def test_write_outputs(tmp_path: Path) -> None:
    paths = write_outputs(_result(), tmp_path / "out")
    payload = json.loads(paths["json"].read_text(encoding="utf-8"))
    assert payload["totals"]["markup_percent"] == 15
    assert payload["line_items"][0]["rule_ids"] == ["fallback-housewrap"]
    csv = pd.read_csv(paths["csv"])
    assert len(csv) == 2

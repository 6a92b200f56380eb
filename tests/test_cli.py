from __future__ import annotations

import json
from pathlib import Path

from pytest import MonkeyPatch

from sidingscope import cli


def _write_inputs(tmp_path: Path) -> Path:
    request = tmp_path / "request.json"
    request.write_text(
        json.dumps(
            {
                "project_id": "proj-1",
                "measurements": {"facade_sqft": 2000, "windows": {"count": 4, "perimeter_lf": 64}},
                "material_assignments": [
                    {"detection_id": "d1", "pricing_item_id": "p-lap", "quantity": 1000, "unit": "SF"}
                ],
            }
        ),
        encoding="utf-8",
    )
    (tmp_path / "pricing.csv").write_text(
        "id,sku,product_name,manufacturer,category,unit,material_cost,base_labor_cost,total_labor_cost\n"
        "p-lap,HARDIE-LAP-8,Lap siding,James Hardie,lap_siding,SQ,250,100,\n"
        "p-wrap,TYVEK-HW-9X150,HomeWrap,DuPont,water_barrier,ROLL,180,20,22.79\n",
        encoding="utf-8",
    )
    return request


def test_main_writes_outputs_offline(tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "SIDINGSCOPE_RULES_FILE"):
        monkeypatch.delenv(name, raising=False)
    request = _write_inputs(tmp_path)

    exit_code = cli.main(
        [
            "--request",
            str(request),
            "--pricing-file",
            str(tmp_path / "pricing.csv"),
            "--output-dir",
            str(tmp_path / "out"),
            "--offline",
        ]
    )

    assert exit_code == 0
    payload = json.loads((tmp_path / "out" / "takeoff.json").read_text(encoding="utf-8"))
    by_sku = {item["sku"]: item for item in payload["line_items"]}
    assert by_sku["HARDIE-LAP-8"]["quantity"] == 12
    assert by_sku["TYVEK-HW-9X150"]["quantity"] == 2
    assert payload["metadata"]["rules_source"] == "fallback"
    assert (tmp_path / "out" / "line_items.csv").exists()


def test_main_reports_missing_request(tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert cli.main(["--request", str(tmp_path / "missing.json"), "--offline"]) == 1

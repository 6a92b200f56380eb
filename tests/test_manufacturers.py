from __future__ import annotations

import pytest

from sidingscope.context import build_measurement_context
from sidingscope.manufacturers import (
    assigned_materials_for,
    build_manufacturer_context,
    build_manufacturer_groups,
    classify_unit,
)
from sidingscope.models import ManufacturerGroup, MaterialAssignment


def _assignment(detection_id, pricing_item_id, quantity, unit, **extra):
    return MaterialAssignment(
        detection_id=detection_id,
        detection_class="siding",
        pricing_item_id=pricing_item_id,
        quantity=quantity,
        unit=unit,
        **extra,
    )


@pytest.mark.parametrize(
    "unit, kind",
    [("SF", "area"), ("sq ft", "area"), ("LF", "linear"), ("ft", "linear"), ("EA", "count"), ("pcs", "count"), ("ROLL", None)],
)
def test_classify_unit(unit, kind) -> None:
    assert classify_unit(unit)[0] == kind


def test_groups_aggregate_by_unit(catalog) -> None:
    groups = build_manufacturer_groups(
        [
            _assignment("d1", "p-lap", 800, "SF"),
            _assignment("d2", "p-lap", 400, "SF"),
            _assignment("d3", "p-trim", 120, "LF"),
            _assignment("d4", "missing-item", 50, "SF"),
        ],
        catalog,
    )
    assert set(groups) == {"James Hardie", "LP"}
    assert groups["James Hardie"].area_sqft == 1200
    assert groups["James Hardie"].detection_ids == ["d1", "d2"]
    assert groups["LP"].linear_ft == 120
    assert groups["LP"].area_sqft == 0


def test_area_round_trip_has_no_inflation(catalog) -> None:
    assignments = [
        _assignment("d1", "p-lap", 800, "SF", area_sf=800),
        _assignment("d2", "p-lap", 350.5, "SF", area_sf=350.5),
        _assignment("d3", "p-trim", 120, "LF", perimeter_lf=120),
    ]
    groups = build_manufacturer_groups(assignments, catalog)
    total_area = sum(group.area_sqft for group in groups.values())
    assert total_area == pytest.approx(800 + 350.5)


def test_declared_area_only_used_when_unit_unclassified(catalog) -> None:
    groups = build_manufacturer_groups([_assignment("d1", "p-lap", 3, "BUNDLE", area_sf=96)], catalog)
    assert groups["James Hardie"].area_sqft == 96
    assert groups["James Hardie"].piece_count == 0


def test_spatial_merge_does_not_double_count_facade_area(catalog) -> None:
    """One physical facade area reaches the group through exactly one path."""
    assignments = [_assignment("d1", "p-lap", 1000, "SF", area_sf=1000)]
    spatial = {
        "p-lap": {
            "material_id": "p-lap",
            "manufacturer": "James Hardie",
            "facade_sqft": 1000,
            "window_count": 6,
            "window_perimeter_lf": 96,
            "openings_area_sqft": 90,
        },
        "unassigned": {"facade_sqft": 400, "window_count": 2},
    }
    groups = build_manufacturer_groups(assignments, catalog, spatial)
    hardie = groups["James Hardie"]
    assert hardie.area_sqft == 1000
    assert hardie.window_count == 6
    assert hardie.window_perimeter_lf == 96
    assert {"window_count", "window_perimeter_lf", "openings_area_sqft"} <= hardie.measured_fields
    assert set(groups) == {"James Hardie"}


def test_spatial_only_manufacturer_takes_facade_area(catalog) -> None:
    spatial = [{"material_id": "p-trim", "facade_sqft": 300, "trim_total_lf": 80}]
    groups = build_manufacturer_groups([], catalog, spatial)
    assert groups["LP"].area_sqft == 300
    assert groups["LP"].trim_total_lf == 80


def test_manufacturer_context_scales_unmeasured_fields() -> None:
    project = _project_context()
    group = ManufacturerGroup(manufacturer="James Hardie", area_sqft=500, linear_ft=40, piece_count=3)
    scoped = build_manufacturer_context(project, group)
    assert scoped["facade_sqft"] == 500
    assert scoped["gross_wall_area_sqft"] == 500
    assert scoped["facade_perimeter_lf"] == pytest.approx(50)
    assert scoped["net_siding_area_sqft"] == pytest.approx(1700 * 0.25)
    assert scoped["window_perimeter_lf"] == pytest.approx(160 * 0.25)
    assert scoped["avg_wall_height_ft"] == 10
    assert scoped["manufacturer_area_sqft"] == 500
    assert scoped["manufacturer_linear_lf"] == 40
    assert scoped["manufacturer_piece_count"] == 3
    assert project["manufacturer_area_sqft"] == 0


def test_manufacturer_context_uses_measured_fields() -> None:
    project = _project_context()
    group = ManufacturerGroup(
        manufacturer="James Hardie",
        area_sqft=1000,
        window_count=6,
        window_perimeter_lf=96,
        openings_area_sqft=90,
        measured_fields={"window_count", "window_perimeter_lf", "openings_area_sqft"},
    )
    scoped = build_manufacturer_context(project, group)
    assert scoped["window_count"] == 6
    assert scoped["window_perimeter_lf"] == 96
    assert scoped["openings_area_sqft"] == 90
    assert scoped["net_siding_area_sqft"] == 910
    assert scoped["door_perimeter_lf"] == pytest.approx(40 * 0.5)


def test_zero_project_baseline_yields_zero_ratio() -> None:
    project = build_measurement_context(None, {"windows": {"perimeter_lf": 100}})
    group = ManufacturerGroup(manufacturer="LP", area_sqft=250)
    scoped = build_manufacturer_context(project, group)
    assert scoped["facade_sqft"] == 250
    assert scoped["window_perimeter_lf"] == 0


def test_assigned_materials_for(catalog) -> None:
    materials = assigned_materials_for(
        [
            _assignment("d1", "p-lap", 1, "SF"),
            _assignment("d2", "p-lap", 1, "SF"),
            _assignment("d3", "p-trim", 1, "LF"),
            _assignment("d4", "nope", 1, "LF"),
        ],
        catalog,
    )
    assert [(m.sku, m.category, m.manufacturer) for m in materials] == [
        ("HARDIE-LAP-8", "lap_siding", "James Hardie"),
        ("LP-TRIM-4", "trim", "LP"),
    ]


def _project_context():
    return build_measurement_context(
        None,
        {
            "facade_sqft": 2000,
            "net_siding_area_sqft": 1700,
            "windows": {"count": 10, "perimeter_lf": 160},
            "doors": {"count": 2, "perimeter_lf": 40},
        },
    )


@pytest.mark.parametrize("spatial", [5, "bad", 2.5, True])
def test_malformed_spatial_payload_is_ignored(catalog, spatial) -> None:
    groups = build_manufacturer_groups([_assignment("d1", "p-lap", 500, "SF")], catalog, spatial)
    assert set(groups) == {"James Hardie"}
    assert groups["James Hardie"].area_sqft == 500

from __future__ import annotations

import pytest

import sidingscope.engine as engine_module
from sidingscope.context import build_measurement_context
from sidingscope.engine import RuleEngine
from sidingscope.models import AssignedMaterial, ManufacturerGroup


@pytest.fixture
def ctx():
    return build_measurement_context(None, {"facade_sqft": 2000, "net_siding_area_sqft": 0})


@pytest.fixture
def engine():
    return RuleEngine()


def test_always_rule_yields_ceiling_quantity(engine, ctx, rule_factory) -> None:
    rule = rule_factory("TYVEK", "ceiling(facade_sqft / 1350)", trigger_conditions="always")
    result = engine.run(ctx, {}, [rule], [])
    assert [c.quantity for c in result.candidates] == [2]
    assert result.rules_evaluated == 1
    assert result.rules_triggered == 1
    assert result.skipped == []


def test_unmatched_manufacturer_filter_is_skipped(engine, ctx, rule_factory) -> None:
    rule = rule_factory("ACME-CLIP", manufacturer_filter=("Acme",))
    groups = {"LP": ManufacturerGroup(manufacturer="LP", area_sqft=100)}
    result = engine.run(ctx, groups, [rule], [])
    assert result.candidates == []
    assert [str(skip) for skip in result.skipped] == ["ACME-CLIP: no matching manufacturer groups"]


def test_each_rule_produces_one_outcome(engine, ctx, rule_factory) -> None:
    rules = [
        rule_factory("OK", "ceiling(facade_sqft / 1000)"),
        rule_factory("ZERO", "net_siding_area_sqft / 100"),
        rule_factory("TRIGGER", "1", trigger_conditions={"min_openings": 1}),
        rule_factory("BROKEN", "facade_sqft / (net_siding_area_sqft)"),
        rule_factory("OFF", "1", is_active=False),
    ]
    result = engine.run(ctx, {}, rules, [])
    assert [c.rule.sku for c in result.candidates] == ["OK"]
    kinds = {skip.sku: skip.kind for skip in result.skipped}
    assert kinds == {"ZERO": "zero_quantity", "TRIGGER": "trigger", "BROKEN": "formula_error"}
    assert result.rules_evaluated == 4
    assert result.rules_triggered == 1
    reasons = {skip.sku: skip.reason for skip in result.skipped}
    assert reasons["ZERO"] == "quantity=0"
    assert "openings=0 < 1" in reasons["TRIGGER"]


def test_rule_order_does_not_change_outcomes(engine, ctx, rule_factory) -> None:
    rules = [rule_factory(f"R{i}", f"ceiling(facade_sqft / {i * 100})") for i in range(1, 6)]
    forward = engine.run(ctx, {}, rules, [])
    backward = engine.run(ctx, {}, list(reversed(rules)), [])
    assert {c.rule.sku: c.quantity for c in forward.candidates} == {c.rule.sku: c.quantity for c in backward.candidates}


def test_manufacturer_rule_runs_per_group(engine, ctx, rule_factory) -> None:
    rule = rule_factory(
        "TOUCHUP",
        "ceiling(manufacturer_area_sqft / 100)",
        manufacturer_filter=("james hardie", "LP", "Allura"),
    )
    groups = {
        "James Hardie": ManufacturerGroup(manufacturer="James Hardie", area_sqft=1500),
        "LP": ManufacturerGroup(manufacturer="LP", area_sqft=500),
    }
    result = engine.run(ctx, groups, [rule], [])
    assert {c.manufacturer: c.quantity for c in result.candidates} == {"James Hardie": 15, "LP": 5}
    assert result.rules_triggered == 1


def test_group_without_measure_is_skipped(engine, ctx, rule_factory) -> None:
    rule = rule_factory("CLIPS", "1", manufacturer_filter=("LP",))
    groups = {"LP": ManufacturerGroup(manufacturer="LP", piece_count=10)}
    result = engine.run(ctx, groups, [rule], [])
    assert result.candidates == []
    assert result.skipped[0].kind == "no_measure"
    assert result.skipped[0].manufacturer == "LP"


def test_trigger_materials_are_scoped_to_manufacturer(engine, ctx, rule_factory) -> None:
    rule = rule_factory(
        "HARDIE-KIT",
        "1",
        manufacturer_filter=("James Hardie", "LP"),
        trigger_conditions={"material_category": "lap_siding"},
    )
    groups = {
        "James Hardie": ManufacturerGroup(manufacturer="James Hardie", area_sqft=1000),
        "LP": ManufacturerGroup(manufacturer="LP", area_sqft=1000),
    }
    materials = [
        AssignedMaterial(sku="HARDIE-LAP-8", category="lap_siding", manufacturer="James Hardie"),
        AssignedMaterial(sku="LP-TRIM-4", category="trim", manufacturer="LP"),
    ]
    result = engine.run(ctx, groups, [rule], materials)
    assert [c.manufacturer for c in result.candidates] == ["James Hardie"]
    assert [(s.manufacturer, s.kind) for s in result.skipped] == [("LP", "trigger")]


def test_unexpected_error_is_isolated(engine, ctx, rule_factory, monkeypatch) -> None:
    real_evaluate = engine_module.evaluate_formula

    def flaky(formula, context):
        if formula == "explode":
            raise RuntimeError("boom")
        return real_evaluate(formula, context)

    monkeypatch.setattr(engine_module, "evaluate_formula", flaky)
    result = engine.run(ctx, {}, [rule_factory("BAD", "explode"), rule_factory("GOOD", "1")], [])
    assert [c.rule.sku for c in result.candidates] == ["GOOD"]
    assert result.skipped[0].kind == "error"
    assert "boom" in result.skipped[0].reason

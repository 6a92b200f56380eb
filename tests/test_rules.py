from __future__ import annotations

import json
from pathlib import Path
from typing import List

import pytest

from sidingscope.models import Rule
from sidingscope.rules import (
    FALLBACK_RULES,
    FileRuleSource,
    RestRuleSource,
    RuleRepository,
    parse_rule,
)
from sidingscope.store import StoreError


class CountingSource:
    def __init__(self, rules: List[Rule]) -> None:
        self.rules = rules
        self.calls = 0

    def load(self) -> List[Rule]:
        self.calls += 1
        return list(self.rules)


class BrokenSource:
    def __init__(self) -> None:
        self.calls = 0

    def load(self) -> List[Rule]:
        self.calls += 1
        raise StoreError("connection refused")


def test_rules_are_cached_until_ttl_expires(rule_factory, clock) -> None:
    source = CountingSource([rule_factory("A")])
    repo = RuleRepository(source, ttl_seconds=300, clock=clock)

    assert [r.sku for r in repo.get_rules()] == ["A"]
    clock.advance(299)
    repo.get_rules()
    assert source.calls == 1
    assert repo.last_source == "cache"

    source.rules = [rule_factory("B")]
    clock.advance(2)
    assert [r.sku for r in repo.get_rules()] == ["B"]
    assert source.calls == 2


def test_invalidate_forces_reload(rule_factory, clock) -> None:
    source = CountingSource([rule_factory("A")])
    repo = RuleRepository(source, clock=clock)
    repo.get_rules()
    repo.invalidate()
    repo.get_rules()
    assert source.calls == 2


def test_rules_are_ordered_and_inactive_dropped(rule_factory, clock) -> None:
    source = CountingSource(
        [
            rule_factory("C", group_order=2, display_order=1),
            rule_factory("B", group_order=1, display_order=5),
            rule_factory("A", group_order=1, display_order=2),
            rule_factory("Z", is_active=False),
        ]
    )
    repo = RuleRepository(source, clock=clock)
    assert [r.sku for r in repo.get_rules()] == ["A", "B", "C"]


def test_store_failure_returns_fallback_and_retries(clock) -> None:
    source = BrokenSource()
    repo = RuleRepository(source, clock=clock)
    first = repo.get_rules()
    second = repo.get_rules()
    assert first == list(FALLBACK_RULES)
    assert first == second
    assert repo.last_source == "fallback"
    assert source.calls == 2


def test_unconfigured_store_uses_fallback() -> None:
    rules = RuleRepository().get_rules()
    assert rules
    assert {r.sku for r in rules} >= {"TYVEK-HW-9X150", "ARROW-T50-3/8", "OSI-QUAD-10OZ"}


def test_parse_rule_normalises_database_row() -> None:
    rule = parse_rule(
        {
            "id": 17,
            "sku": "HARDIE-STARTER",
            "product_name": "Starter strip",
            "category": "accessories",
            "presentation_group": "Accessories",
            "unit": "PC",
            "quantity_formula": "ceiling(facade_perimeter_lf / 12)",
            "trigger_conditions": '{"min_facade_sqft": 100}',
            "display_order": "3",
            "is_active": "true",
            "manufacturer_filter": "James Hardie, Allura",
        }
    )
    assert rule.id == "17"
    assert rule.trigger_conditions == {"min_facade_sqft": 100}
    assert rule.display_order == 3
    assert rule.manufacturer_filter == ("James Hardie", "Allura")


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, None),
        ("", None),
        ('["LP"]', ("LP",)),
        (["LP", " "], ("LP",)),
        ([], None),
    ],
)
def test_parse_rule_manufacturer_filter(raw, expected) -> None:
    row = {"sku": "X", "quantity_formula": "1", "manufacturer_filter": raw}
    assert parse_rule(row).manufacturer_filter == expected


def test_parse_rule_rejects_rows_without_formula() -> None:
    with pytest.raises(ValueError):
        parse_rule({"sku": "X", "quantity_formula": ""})


def test_file_source_reads_json_and_skips_bad_rows(tmp_path: Path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(
        json.dumps(
            {
                "rules": [
                    {"id": "r1", "sku": "WRAP", "quantity_formula": "ceiling(facade_sqft / 1350)"},
                    {"id": "r2", "sku": "", "quantity_formula": "1"},
                ]
            }
        ),
        encoding="utf-8",
    )
    rules = FileRuleSource(path).load()
    assert [r.sku for r in rules] == ["WRAP"]


def test_file_source_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "rules.yaml"
    path.write_text(
        "- id: r1\n"
        "  sku: WRAP\n"
        "  quantity_formula: ceiling(facade_sqft / 1350)\n"
        "  trigger_conditions:\n"
        "    facade_sqft_gt: 0\n",
        encoding="utf-8",
    )
    rules = FileRuleSource(path).load()
    assert rules[0].trigger_conditions == {"facade_sqft_gt": 0}


def test_missing_rules_file_falls_back(tmp_path: Path) -> None:
    repo = RuleRepository(FileRuleSource(tmp_path / "missing.json"))
    assert repo.get_rules() == list(FALLBACK_RULES)


def test_rest_source_queries_active_rules() -> None:
    calls = []

    class FakeClient:
        def select(self, table, filters=None, order=(), columns="*", limit=None):
            calls.append((table, filters, order))
            return [{"id": "1", "sku": "WRAP", "quantity_formula": "1", "is_active": True}]

    rules = RestRuleSource(FakeClient()).load()
    assert [r.sku for r in rules] == ["WRAP"]
    assert calls == [
        ("siding_auto_scope_rules", {"is_active": "eq.true"}, ("group_order.asc", "display_order.asc"))
    ]

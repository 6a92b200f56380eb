from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Dict

import pytest

from sidingscope.config import Config, load_config
from sidingscope.models import PricingItem, Rule
from sidingscope.pricing import PricingCatalog


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return load_config({}, SimpleNamespace(output_dir=str(tmp_path / "outputs")))


@pytest.fixture
def rule_factory() -> Callable[..., Rule]:
    def _create(sku: str = "TEST-SKU", formula: str = "ceiling(facade_sqft / 100)", **overrides: Any) -> Rule:
        values: Dict[str, Any] = {
            "id": f"rule-{sku.lower()}",
            "sku": sku,
            "product_name": f"{sku} product",
            "category": "accessories",
            "presentation_group": "Accessories",
            "unit": "EA",
            "quantity_formula": formula,
        }
        values.update(overrides)
        return Rule(**values)

    return _create


@pytest.fixture
def catalog() -> PricingCatalog:
    return PricingCatalog(
        [
            PricingItem(
                id="p-lap",
                sku="HARDIE-LAP-8",
                product_name="HardiePlank Lap 8.25in",
                manufacturer="James Hardie",
                category="lap_siding",
                unit="SF",
                material_cost=2.50,
                base_labor_cost=1.00,
                total_labor_cost=1.14,
            ),
            PricingItem(
                id="p-trim",
                sku="LP-TRIM-4",
                product_name="LP SmartSide Trim 4in",
                manufacturer="LP",
                category="trim",
                unit="LF",
                material_cost=1.75,
                base_labor_cost=0.50,
            ),
            PricingItem(
                id="p-wrap",
                sku="TYVEK-HW-9X150",
                product_name="Tyvek HomeWrap",
                manufacturer="DuPont",
                category="water_barrier",
                unit="ROLL",
                material_cost=180.0,
                base_labor_cost=20.0,
                total_labor_cost=22.79,
            ),
        ]
    )

"""
End-to-end takeoff calculation.

``TakeoffCalculator.calculate`` runs one request through the whole
pipeline: measurements, rules, pricing, manufacturer groups, rule engine,
assigned-material pricing, consolidation and totals.  Every external call
degrades instead of raising, so a takeoff always completes with whatever
data was reachable and reports the gaps in its metadata.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .assembly import (
    SOURCE_ASSIGNED,
    SOURCE_AUTO_SCOPE,
    assemble,
    compute_totals,
    missing_pricing,
    price_assignments,
)
from .config import Config, to_rate
from .context import build_measurement_context, coerce_measurement, measurement_source
from .engine import RuleEngine
from .manufacturers import assigned_materials_for, build_manufacturer_groups
from .models import MaterialAssignment, TakeoffResult
from .pricing import FilePricingSource, LaborRates, PricingCatalog, RestPricingSource
from .rules import RuleRepository
from .store import MeasurementStore, RestClient

LOGGER = logging.getLogger(__name__)

PRICING_UNAVAILABLE = "PRICING_UNAVAILABLE"
MEASUREMENTS_UNAVAILABLE = "MEASUREMENTS_UNAVAILABLE"

# request keys folded into the measurement payload when given at top level
_PAYLOAD_SECTIONS = ("trim", "detection_counts")


class PricingSource(Protocol):
    def fetch(
        self,
        skus: Sequence[str] = (),
        ids: Sequence[str] = (),
        organization_id: Optional[str] = None,
    ) -> PricingCatalog:
        ...


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    number = coerce_measurement(value)
    return number if number > 0 else None


def parse_assignment(raw: Mapping[str, Any]) -> Optional[MaterialAssignment]:
    pricing_item_id = str(raw.get("pricing_item_id") or raw.get("material_id") or "").strip()
    if not pricing_item_id:
        return None
    return MaterialAssignment(
        detection_id=str(raw.get("detection_id") or ""),
        detection_class=str(raw.get("detection_class") or raw.get("class") or ""),
        pricing_item_id=pricing_item_id,
        quantity=coerce_measurement(raw.get("quantity")),
        unit=str(raw.get("unit") or "").strip().upper(),
        area_sf=_optional_float(raw.get("area_sf")),
        perimeter_lf=_optional_float(raw.get("perimeter_lf")),
    )


@dataclass
class TakeoffRequest:
    project_id: str = ""
    extraction_id: Optional[str] = None
    measurements: Dict[str, Any] = field(default_factory=dict)
    material_assignments: List[MaterialAssignment] = field(default_factory=list)
    per_material_measurements: Any = None
    organization_id: Optional[str] = None
    markup_rate: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TakeoffRequest":
        measurements = dict(payload.get("measurements") or {})
        for section in _PAYLOAD_SECTIONS:
            if payload.get(section) and not measurements.get(section):
                measurements[section] = payload[section]

        assignments = []
        for raw in payload.get("material_assignments") or []:
            assignment = parse_assignment(raw) if isinstance(raw, Mapping) else None
            if assignment is None:
                LOGGER.warning("Ignoring material assignment without a pricing item: %r", raw)
                continue
            assignments.append(assignment)

        spatial = payload.get("per_material_measurements")
        if spatial is None:
            spatial = measurements.get("per_material_measurements")

        markup = payload.get("markup_rate")
        return cls(
            project_id=str(payload.get("project_id") or ""),
            extraction_id=(str(payload["extraction_id"]) if payload.get("extraction_id") else None),
            measurements=measurements,
            material_assignments=assignments,
            per_material_measurements=spatial,
            organization_id=(str(payload["organization_id"]) if payload.get("organization_id") else None),
            markup_rate=to_rate(markup, 0.0) if markup is not None else None,
        )


class TakeoffCalculator:
    """Wires the measurement, rule and pricing sources into one calculation."""

    def __init__(
        self,
        config: Config,
        rules: RuleRepository,
        pricing_source: Optional[PricingSource] = None,
        measurement_source: Optional[MeasurementStore] = None,
        engine: Optional[RuleEngine] = None,
    ) -> None:
        self.config = config
        self.rules = rules
        self.pricing_source = pricing_source
        self.measurement_source = measurement_source
        self.engine = engine or RuleEngine()
        self.rates = LaborRates.from_config(config)

    @classmethod
    def from_config(cls, config: Config) -> "TakeoffCalculator":
        client = RestClient.from_config(config)
        rates = LaborRates.from_config(config)
        pricing_source: Optional[PricingSource] = None
        if client is not None:
            pricing_source = RestPricingSource(client, trade=config.pricing_trade, rates=rates)
        elif config.pricing_file is not None:
            pricing_source = FilePricingSource(config.pricing_file, rates=rates)
        else:
            LOGGER.warning("No pricing store or pricing file configured; line items will be unpriced")
        return cls(
            config,
            RuleRepository.from_config(config, client),
            pricing_source=pricing_source,
            measurement_source=MeasurementStore(client),
        )

    def _stored_measurements(self, request: TakeoffRequest, warnings: List[Dict[str, str]]) -> Optional[Dict[str, Any]]:
        if self.measurement_source is None or not request.extraction_id:
            return None
        try:
            return self.measurement_source.fetch(request.extraction_id)
        except Exception as exc:
            LOGGER.error("Error fetching stored measurements for %s: %s", request.extraction_id, exc)
            warnings.append({"code": MEASUREMENTS_UNAVAILABLE, "message": str(exc)})
            return None

    def _pricing(
        self,
        skus: Sequence[str],
        ids: Sequence[str],
        organization_id: Optional[str],
        warnings: List[Dict[str, str]],
    ) -> PricingCatalog:
        if self.pricing_source is None:
            return PricingCatalog()
        try:
            return self.pricing_source.fetch(skus=skus, ids=ids, organization_id=organization_id)
        except Exception as exc:
            LOGGER.error("Error fetching pricing: %s", exc)
            warnings.append({"code": PRICING_UNAVAILABLE, "message": str(exc)})
            return PricingCatalog()

    def calculate(self, request: TakeoffRequest) -> TakeoffResult:
        warnings: List[Dict[str, str]] = []

        stored = self._stored_measurements(request, warnings)
        context = build_measurement_context(stored, request.measurements)
        source = measurement_source(stored, request.measurements)
        LOGGER.info("Measurement source for project %s: %s", request.project_id or "?", source)

        rules = self.rules.get_rules()
        assignments = request.material_assignments
        pricing = self._pricing(
            skus=sorted({rule.sku for rule in rules}),
            ids=sorted({a.pricing_item_id for a in assignments}),
            organization_id=request.organization_id,
            warnings=warnings,
        )

        groups = build_manufacturer_groups(assignments, pricing, request.per_material_measurements)
        materials = assigned_materials_for(assignments, pricing)
        outcome = self.engine.run(context, groups, rules, materials)

        assigned_items = price_assignments(assignments, pricing, self.rates, self.config.waste_factor)
        line_items = assemble(outcome.candidates, pricing, assigned_items, self.rates)

        markup_rate = request.markup_rate if request.markup_rate is not None else self.config.markup_rate
        totals = compute_totals(line_items, overhead_rate=self.config.overhead_rate, markup_rate=markup_rate)

        items_missing, pricing_warnings = missing_pricing(line_items)
        warnings.extend(pricing_warnings)

        metadata: Dict[str, Any] = {
            "project_id": request.project_id,
            "measurement_source": source,
            "rules_source": self.rules.last_source,
            "rules_evaluated": outcome.rules_evaluated,
            "rules_triggered": outcome.rules_triggered,
            "rules_skipped": outcome.skip_reasons,
            "assigned_items_count": sum(1 for item in line_items if item.calculation_source == SOURCE_ASSIGNED),
            "auto_scope_items_count": sum(1 for item in line_items if item.calculation_source == SOURCE_AUTO_SCOPE),
            "items_missing": items_missing,
            "warnings": warnings,
            "manufacturer_groups": {name: group.summary() for name, group in groups.items()},
        }
        LOGGER.info(
            "Takeoff complete: %d line items, total $%s",
            len(line_items),
            f"{totals.total:,.2f}",
        )
        return TakeoffResult(line_items=line_items, totals=totals, metadata=metadata)


__all__ = ["TakeoffCalculator", "TakeoffRequest", "parse_assignment"]

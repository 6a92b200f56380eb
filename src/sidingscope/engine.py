"""Rule evaluation over the project-wide and manufacturer-scoped contexts."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .context import MeasurementContext
from .expression import evaluate_formula
from .manufacturers import build_manufacturer_context
from .models import AssignedMaterial, CandidateQuantity, ManufacturerGroup, Rule, RuleSkip
from .triggers import evaluate_trigger

LOGGER = logging.getLogger(__name__)

SKIP_TRIGGER = "trigger"
SKIP_ZERO_QUANTITY = "zero_quantity"
SKIP_FORMULA_ERROR = "formula_error"
SKIP_NO_MANUFACTURER = "no_manufacturer"
SKIP_NO_MEASURE = "no_measure"
SKIP_ERROR = "error"


@dataclass
class EngineResult:
    candidates: List[CandidateQuantity] = field(default_factory=list)
    skipped: List[RuleSkip] = field(default_factory=list)
    rules_evaluated: int = 0
    rules_triggered: int = 0

    @property
    def skip_reasons(self) -> List[str]:
        return [str(skip) for skip in self.skipped]


class RuleEngine:
    """
    Evaluates each active rule once per applicable scope.

    Unfiltered rules run on the project context.  Rules with a
    manufacturer filter run once for every filtered manufacturer that has a
    group, on that manufacturer's scoped context and against that
    manufacturer's assigned materials only.  Each (rule, scope) pair yields
    one candidate or one :class:`RuleSkip`.
    """

    def run(
        self,
        context: MeasurementContext,
        manufacturer_groups: Optional[Mapping[str, ManufacturerGroup]],
        rules: Iterable[Rule],
        assigned_materials: Optional[Sequence[AssignedMaterial]] = None,
    ) -> EngineResult:
        result = EngineResult()
        materials = list(assigned_materials or ())
        groups = {name.casefold(): group for name, group in (manufacturer_groups or {}).items()}
        scoped: Dict[str, MeasurementContext] = {}

        for rule in rules:
            if not rule.is_active:
                continue
            result.rules_evaluated += 1
            triggered = False

            if not rule.manufacturer_filter:
                triggered = self._evaluate_scope(rule, context, materials, None, result)
            else:
                matches = self._matching_groups(rule, groups)
                if not matches:
                    result.skipped.append(
                        RuleSkip(rule.id, rule.sku, SKIP_NO_MANUFACTURER, "no matching manufacturer groups")
                    )
                    continue
                for group in matches:
                    if group.area_sqft <= 0 and group.linear_ft <= 0:
                        result.skipped.append(
                            RuleSkip(
                                rule.id,
                                rule.sku,
                                SKIP_NO_MEASURE,
                                "manufacturer has no area or linear measure",
                                group.manufacturer,
                            )
                        )
                        continue
                    key = group.manufacturer.casefold()
                    if key not in scoped:
                        scoped[key] = build_manufacturer_context(context, group)
                    group_materials = [m for m in materials if (m.manufacturer or "").casefold() == key]
                    if self._evaluate_scope(rule, scoped[key], group_materials, group.manufacturer, result):
                        triggered = True

            if triggered:
                result.rules_triggered += 1

        LOGGER.info(
            "Auto-scope: %d rules evaluated, %d triggered, %d skips",
            result.rules_evaluated,
            result.rules_triggered,
            len(result.skipped),
        )
        return result

    @staticmethod
    def _matching_groups(rule: Rule, groups: Mapping[str, ManufacturerGroup]) -> List[ManufacturerGroup]:
        matches: List[ManufacturerGroup] = []
        for name in rule.manufacturer_filter or ():
            group = groups.get(name.casefold())
            if group is not None and group not in matches:
                matches.append(group)
        return matches

    def _evaluate_scope(
        self,
        rule: Rule,
        context: MeasurementContext,
        materials: Sequence[AssignedMaterial],
        manufacturer: Optional[str],
        result: EngineResult,
    ) -> bool:
        try:
            outcome = self.evaluate_rule(rule, context, materials, manufacturer)
        except Exception as exc:
            LOGGER.exception("Unexpected error evaluating rule %s (%s)", rule.id, rule.sku)
            outcome = RuleSkip(rule.id, rule.sku, SKIP_ERROR, f"error ({exc})", manufacturer)

        if isinstance(outcome, CandidateQuantity):
            result.candidates.append(outcome)
            return True
        result.skipped.append(outcome)
        return False

    @staticmethod
    def evaluate_rule(
        rule: Rule,
        context: MeasurementContext,
        materials: Sequence[AssignedMaterial] = (),
        manufacturer: Optional[str] = None,
    ) -> Union[CandidateQuantity, RuleSkip]:
        trigger = evaluate_trigger(rule.trigger_conditions, context, materials)
        if not trigger.applies:
            return RuleSkip(rule.id, rule.sku, SKIP_TRIGGER, f"trigger not met ({trigger.reason})", manufacturer)

        formula = evaluate_formula(rule.quantity_formula, context)
        if not formula.ok:
            return RuleSkip(rule.id, rule.sku, SKIP_FORMULA_ERROR, f"formula error ({formula.error})", manufacturer)
        if formula.quantity <= 0:
            return RuleSkip(rule.id, rule.sku, SKIP_ZERO_QUANTITY, "quantity=0", manufacturer)

        LOGGER.debug(
            "Rule %s%s: %s = %g",
            rule.sku,
            f" [{manufacturer}]" if manufacturer else "",
            rule.quantity_formula,
            formula.quantity,
        )
        return CandidateQuantity(rule=rule, quantity=formula.quantity, manufacturer=manufacturer)


__all__ = [
    "EngineResult",
    "RuleEngine",
    "SKIP_ERROR",
    "SKIP_FORMULA_ERROR",
    "SKIP_NO_MANUFACTURER",
    "SKIP_NO_MEASURE",
    "SKIP_TRIGGER",
    "SKIP_ZERO_QUANTITY",
]

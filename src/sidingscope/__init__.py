"""Auto-scope takeoff engine for exterior siding projects."""

from .config import Config, load_config
from .context import MeasurementContext, build_measurement_context
from .engine import EngineResult, RuleEngine
from .expression import evaluate_formula
from .rules import FALLBACK_RULES, RuleRepository
from .takeoff import TakeoffCalculator, TakeoffRequest
from .triggers import evaluate_trigger

__all__ = [
    "Config",
    "EngineResult",
    "FALLBACK_RULES",
    "MeasurementContext",
    "RuleEngine",
    "RuleRepository",
    "TakeoffCalculator",
    "TakeoffRequest",
    "build_measurement_context",
    "evaluate_formula",
    "evaluate_trigger",
    "load_config",
]

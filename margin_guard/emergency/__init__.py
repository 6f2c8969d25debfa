"""Emergency strategies, execution, system-wide mode and effect measurement."""

from .effect_analyzer import EffectAnalyzer, EffectMeasurement, PerformanceMetrics, TrendAnalysis
from .executor import EmergencyActionExecutor
from .loss_minimizer import LossMinimizer, MinimizationPolicy, MinimizationResult
from .mode import (
    EmergencyLevel,
    EmergencyModeManager,
    EmergencyModeState,
    EmergencyTrigger,
    RecoveryActionType,
    TriggerType,
)
from .models import (
    ActionParameters,
    ActionType,
    EmergencyAction,
    EmergencyActionResult,
    EmergencyResponse,
    EmergencyStrategy,
    ResponseStatus,
    StrategyScenario,
    SuccessCriteria,
)
from .strategies import DynamicActionParameters, StrategyNotFoundError, StrategyRegistry

__all__ = [
    "ActionParameters",
    "ActionType",
    "DynamicActionParameters",
    "EffectAnalyzer",
    "EffectMeasurement",
    "EmergencyAction",
    "EmergencyActionExecutor",
    "EmergencyActionResult",
    "EmergencyLevel",
    "EmergencyModeManager",
    "EmergencyModeState",
    "EmergencyResponse",
    "EmergencyStrategy",
    "EmergencyTrigger",
    "LossMinimizer",
    "MinimizationPolicy",
    "MinimizationResult",
    "PerformanceMetrics",
    "RecoveryActionType",
    "ResponseStatus",
    "StrategyNotFoundError",
    "StrategyRegistry",
    "StrategyScenario",
    "SuccessCriteria",
    "TrendAnalysis",
    "TriggerType",
]

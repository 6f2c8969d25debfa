from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from margin_guard.telemetry import ResiliencePolicy

OPERATION_TYPES: tuple[str, ...] = (
    "auto_trading",
    "new_positions",
    "position_modifications",
    "account_switching",
    "bulk_operations",
    "api_integrations",
    "notification_sending",
    "data_sync",
    "monitoring",
    "manual_trading",
)

EMERGENCY_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")


def _default_suspended_operations() -> Dict[str, List[str]]:
    return {
        "low": ["bulk_operations"],
        "medium": ["auto_trading", "bulk_operations"],
        "high": ["auto_trading", "new_positions", "bulk_operations", "account_switching"],
        "critical": [
            "auto_trading",
            "new_positions",
            "position_modifications",
            "account_switching",
            "bulk_operations",
            "api_integrations",
        ],
    }


@dataclass()
class ThresholdConfig:
    """Margin-level bands (percent) checked on every poll."""

    warning: float = 200.0
    danger: float = 150.0
    critical: float = 100.0
    loss_cut: float = 20.0
    rapid_change_percent: float = 5.0
    broker_loss_cut_levels: Dict[str, float] = field(default_factory=dict)

    def loss_cut_for(self, broker: Optional[str]) -> float:
        if broker and broker in self.broker_loss_cut_levels:
            return float(self.broker_loss_cut_levels[broker])
        return self.loss_cut

    def validate(self) -> "ThresholdConfig":
        if not (self.warning > self.danger > self.critical > self.loss_cut >= 0):
            raise ValueError(
                "Thresholds must satisfy warning > danger > critical > loss_cut >= 0 "
                f"(got {self.warning}, {self.danger}, {self.critical}, {self.loss_cut})."
            )
        for broker, level in self.broker_loss_cut_levels.items():
            if level < 0:
                raise ValueError(f"Loss-cut level for broker '{broker}' must be >= 0.")
        return self


@dataclass()
class MonitorConfig:
    """Polling scheduler settings."""

    interval_ms: int = 1000
    trend_history_size: int = 10
    stale_after_seconds: float = 60.0


@dataclass()
class ForecastConfig:
    min_data_points: int = 5
    trend_sensitivity: float = 0.1
    volatility_window: int = 10
    confidence_threshold: float = 0.7
    update_interval_ms: int = 30000
    history_retention_seconds: float = 7200.0
    target_margin_level: float = 200.0
    sample_interval_minutes: float = 5.0
    sustained_decline_window: int = 10


@dataclass()
class LossMinimizationConfig:
    max_loss_percentage: float = 20.0
    prefer_partial_close: bool = True
    enable_hedging: bool = False
    hedge_ratio: float = 0.5
    prioritize_margin_efficiency: bool = True
    target_margin_level: float = 150.0


@dataclass()
class EmergencyModeConfig:
    suspended_operations_by_level: Dict[str, List[str]] = field(
        default_factory=_default_suspended_operations
    )
    auto_recovery_enabled: bool = True
    auto_recovery_timeout_minutes: float = 30.0
    auto_deactivate_delay_seconds: float = 5.0

    def validate(self) -> "EmergencyModeConfig":
        for level, operations in self.suspended_operations_by_level.items():
            if level not in EMERGENCY_LEVELS:
                raise ValueError(f"Unknown emergency level '{level}' in suspended operations.")
            unknown = [op for op in operations if op not in OPERATION_TYPES]
            if unknown:
                raise ValueError(
                    f"Unknown operation(s) for level '{level}': {', '.join(sorted(unknown))}."
                )
        return self


@dataclass()
class ExecutionConfig:
    """Safety rails for the emergency action execution engine."""

    dry_run: bool = False
    critical_margin_level: float = 50.0
    correlated_position_threshold: int = 5
    response_cooldown_seconds: float = 60.0
    resilience: ResiliencePolicy = field(default_factory=ResiliencePolicy)


@dataclass()
class MarginGuardConfig:
    """Top-level configuration for the margin guard engine."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    loss_minimization: LossMinimizationConfig = field(default_factory=LossMinimizationConfig)
    emergency_mode: EmergencyModeConfig = field(default_factory=EmergencyModeConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    debug_level: int = 1
    metadata: Mapping[str, Any] = field(default_factory=dict)


__all__ = [
    "EMERGENCY_LEVELS",
    "EmergencyModeConfig",
    "ExecutionConfig",
    "ForecastConfig",
    "LossMinimizationConfig",
    "MarginGuardConfig",
    "MonitorConfig",
    "OPERATION_TYPES",
    "ThresholdConfig",
]

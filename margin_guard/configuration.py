"""Utilities for loading margin guard configuration files and environment overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from margin_guard.config.models import (
    EmergencyModeConfig,
    ExecutionConfig,
    ForecastConfig,
    LossMinimizationConfig,
    MarginGuardConfig,
    MonitorConfig,
    ThresholdConfig,
)
from margin_guard.logging_setup import configure_logging, debug_to_logging_level
from margin_guard.telemetry import ResiliencePolicy

logger = logging.getLogger(__name__)


def _ensure_logger_level(target: logging.Logger, level: int) -> None:
    """Ensure ``target`` and its handlers are set to at most ``level``."""

    if target.level == logging.NOTSET or target.level > level:
        target.setLevel(level)
    for handler in target.handlers:
        if handler.level == logging.NOTSET or handler.level > level:
            handler.setLevel(level)


def configure_default_logging(debug_level: int = 1) -> bool:
    """Install the redacting handler unless the host application already configured logging.

    Returns ``True`` when handlers were installed by this call.
    """

    root_logger = logging.getLogger()
    already_configured = bool(root_logger.handlers)
    if not already_configured:
        configure_logging(debug=debug_level)

    desired_level = debug_to_logging_level(debug_level)
    _ensure_logger_level(root_logger, desired_level)
    _ensure_logger_level(logging.getLogger("margin_guard"), desired_level)
    return not already_configured


def _load_json(path: Path) -> Dict[str, Any]:
    """Return parsed JSON payload from ``path`` with helpful error messages."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    """Return ``payload`` when it is a mapping, otherwise raise ``TypeError``."""

    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise TypeError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _coerce_bool(value: Any, default: bool = False) -> bool:
    """Return a boolean for ``value`` supporting common string representations."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "default", "auto"}:
            return default
        if lowered in {"1", "true", "yes", "on", "enabled", "enable"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled", "disable"}:
            return False
    return bool(value)


def _coerce_float(value: Any, *, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field_name}' must be a number, got {value!r}.") from exc


def _parse_thresholds(payload: Mapping[str, Any]) -> ThresholdConfig:
    thresholds = ThresholdConfig()
    for key in ("warning", "danger", "critical", "loss_cut", "rapid_change_percent"):
        if key in payload:
            setattr(thresholds, key, _coerce_float(payload[key], field_name=f"thresholds.{key}"))
    brokers = payload.get("broker_loss_cut_levels")
    if brokers is not None:
        brokers = _ensure_mapping(brokers, description="thresholds.broker_loss_cut_levels")
        thresholds.broker_loss_cut_levels = {
            str(name): _coerce_float(level, field_name=f"broker_loss_cut_levels.{name}")
            for name, level in brokers.items()
        }
    return thresholds.validate()


def _parse_monitor(payload: Mapping[str, Any]) -> MonitorConfig:
    monitor = MonitorConfig()
    if "interval_ms" in payload:
        interval = int(_coerce_float(payload["interval_ms"], field_name="monitor.interval_ms"))
        if interval <= 0:
            raise ValueError("'monitor.interval_ms' must be positive.")
        monitor.interval_ms = interval
    if "trend_history_size" in payload:
        monitor.trend_history_size = int(payload["trend_history_size"])
    if "stale_after_seconds" in payload:
        monitor.stale_after_seconds = _coerce_float(
            payload["stale_after_seconds"], field_name="monitor.stale_after_seconds"
        )
    return monitor


def _parse_forecast(payload: Mapping[str, Any]) -> ForecastConfig:
    forecast = ForecastConfig()
    for key in (
        "trend_sensitivity",
        "confidence_threshold",
        "history_retention_seconds",
        "target_margin_level",
        "sample_interval_minutes",
    ):
        if key in payload:
            setattr(forecast, key, _coerce_float(payload[key], field_name=f"forecast.{key}"))
    for key in ("min_data_points", "volatility_window", "update_interval_ms", "sustained_decline_window"):
        if key in payload:
            setattr(forecast, key, int(_coerce_float(payload[key], field_name=f"forecast.{key}")))
    if not 0.0 <= forecast.confidence_threshold <= 1.0:
        raise ValueError("'forecast.confidence_threshold' must be between 0 and 1.")
    return forecast


def _parse_loss_minimization(payload: Mapping[str, Any]) -> LossMinimizationConfig:
    config = LossMinimizationConfig()
    for key in ("max_loss_percentage", "hedge_ratio", "target_margin_level"):
        if key in payload:
            setattr(config, key, _coerce_float(payload[key], field_name=f"loss_minimization.{key}"))
    for key in ("prefer_partial_close", "enable_hedging", "prioritize_margin_efficiency"):
        if key in payload:
            setattr(config, key, _coerce_bool(payload[key], getattr(config, key)))
    return config


def _parse_emergency_mode(payload: Mapping[str, Any]) -> EmergencyModeConfig:
    config = EmergencyModeConfig()
    if "auto_recovery_enabled" in payload:
        config.auto_recovery_enabled = _coerce_bool(payload["auto_recovery_enabled"], True)
    if "auto_recovery_timeout_minutes" in payload:
        config.auto_recovery_timeout_minutes = _coerce_float(
            payload["auto_recovery_timeout_minutes"], field_name="emergency_mode.auto_recovery_timeout_minutes"
        )
    if "auto_deactivate_delay_seconds" in payload:
        config.auto_deactivate_delay_seconds = _coerce_float(
            payload["auto_deactivate_delay_seconds"], field_name="emergency_mode.auto_deactivate_delay_seconds"
        )
    suspended = payload.get("suspended_operations_by_level")
    if suspended is not None:
        suspended = _ensure_mapping(suspended, description="emergency_mode.suspended_operations_by_level")
        merged = dict(config.suspended_operations_by_level)
        for level, operations in suspended.items():
            if not isinstance(operations, list):
                raise TypeError(f"Suspended operations for level '{level}' must be a list.")
            merged[str(level)] = [str(op) for op in operations]
        config.suspended_operations_by_level = merged
    return config.validate()


def _parse_execution(payload: Mapping[str, Any]) -> ExecutionConfig:
    config = ExecutionConfig()
    if "dry_run" in payload:
        config.dry_run = _coerce_bool(payload["dry_run"], False)
    if "critical_margin_level" in payload:
        config.critical_margin_level = _coerce_float(
            payload["critical_margin_level"], field_name="execution.critical_margin_level"
        )
    if "correlated_position_threshold" in payload:
        config.correlated_position_threshold = int(payload["correlated_position_threshold"])
    if "response_cooldown_seconds" in payload:
        config.response_cooldown_seconds = _coerce_float(
            payload["response_cooldown_seconds"], field_name="execution.response_cooldown_seconds"
        )
    resilience = payload.get("resilience")
    if resilience is not None:
        config.resilience = ResiliencePolicy.from_mapping(
            _ensure_mapping(resilience, description="execution.resilience")
        )
    return config


def validate_config(payload: Mapping[str, Any]) -> MarginGuardConfig:
    """Build a :class:`MarginGuardConfig` from a decoded JSON document."""

    data = _ensure_mapping(payload, description="Configuration")
    sections = {}
    for name in ("monitor", "thresholds", "forecast", "loss_minimization", "emergency_mode", "execution"):
        section = data.get(name, {})
        sections[name] = _ensure_mapping(section, description=f"'{name}' section")

    config = MarginGuardConfig(
        monitor=_parse_monitor(sections["monitor"]),
        thresholds=_parse_thresholds(sections["thresholds"]),
        forecast=_parse_forecast(sections["forecast"]),
        loss_minimization=_parse_loss_minimization(sections["loss_minimization"]),
        emergency_mode=_parse_emergency_mode(sections["emergency_mode"]),
        execution=_parse_execution(sections["execution"]),
        debug_level=int(data.get("debug_level", 1)),
        metadata=dict(data.get("metadata", {}) or {}),
    )
    return config


def load_config(path: Path | str) -> MarginGuardConfig:
    """Load and validate a configuration file from disk."""

    resolved = Path(path).expanduser().resolve()
    config = validate_config(_load_json(resolved))
    logger.info("Loaded margin guard configuration", extra={"path": str(resolved)})
    return config


@dataclass
class Settings:
    """Configuration with ``MARGIN_GUARD_*`` environment overrides applied."""

    config: MarginGuardConfig

    @classmethod
    def from_environment(
        cls,
        *,
        config: Optional[MarginGuardConfig] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        env = os.environ if env is None else env
        base = config or MarginGuardConfig()

        interval = _env_int(env.get("MARGIN_GUARD_POLL_INTERVAL_MS"))
        if interval is not None and interval > 0:
            base.monitor.interval_ms = interval

        for env_key, attribute in (
            ("MARGIN_GUARD_WARNING_LEVEL", "warning"),
            ("MARGIN_GUARD_DANGER_LEVEL", "danger"),
            ("MARGIN_GUARD_CRITICAL_LEVEL", "critical"),
            ("MARGIN_GUARD_LOSSCUT_LEVEL", "loss_cut"),
        ):
            value = _env_float(env.get(env_key))
            if value is not None:
                setattr(base.thresholds, attribute, value)
        base.thresholds.validate()

        auto_recovery = _env_bool(env.get("MARGIN_GUARD_AUTO_RECOVERY"))
        if auto_recovery is not None:
            base.emergency_mode.auto_recovery_enabled = auto_recovery
        dry_run = _env_bool(env.get("MARGIN_GUARD_DRY_RUN"))
        if dry_run is not None:
            base.execution.dry_run = dry_run
        debug_level = _env_int(env.get("MARGIN_GUARD_DEBUG"))
        if debug_level is not None:
            base.debug_level = debug_level
        return cls(config=base)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "MarginGuardConfig",
    "Settings",
    "configure_default_logging",
    "load_config",
    "validate_config",
]

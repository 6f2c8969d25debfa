"""Margin-level monitoring, loss-cut forecasting and emergency response."""

from .configuration import Settings, load_config, validate_config
from .engine import MarginGuardEngine
from .events import EventDispatcher
from .models import AccountMarginInfo, MarginSample, Position, RiskLevel, RiskMonitoringState

__version__ = "0.1.0"

__all__ = [
    "AccountMarginInfo",
    "EventDispatcher",
    "MarginGuardEngine",
    "MarginSample",
    "Position",
    "RiskLevel",
    "RiskMonitoringState",
    "Settings",
    "load_config",
    "validate_config",
]

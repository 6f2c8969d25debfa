"""Margin sampling, polling and the per-account risk state of record."""

from .margin_monitor import MarginLevelMonitor, classify_trend
from .sample_store import MarginSampleStore
from .state_manager import RiskAlert, RiskStateManager

__all__ = [
    "MarginLevelMonitor",
    "MarginSampleStore",
    "RiskAlert",
    "RiskStateManager",
    "classify_trend",
]

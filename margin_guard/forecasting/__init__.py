"""Margin-level trend estimation and loss-cut forecasting."""

from .algorithms import ESTIMATORS, Prediction
from .engine import ForecastEngine, PredictionMetrics, forecast_risk_level, is_sustained_decline

__all__ = [
    "ESTIMATORS",
    "ForecastEngine",
    "Prediction",
    "PredictionMetrics",
    "forecast_risk_level",
    "is_sustained_decline",
]

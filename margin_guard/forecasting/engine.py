"""Trend analysis and loss-cut forecasting over the shared sample buffers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from statistics import fmean
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from margin_guard.config.models import ForecastConfig, ThresholdConfig
from margin_guard.events import EventDispatcher, ForecastUpdated
from margin_guard.metrics import MetricRegistry, Timer
from margin_guard.models import (
    EarlyWarning,
    ForecastHorizon,
    LossCutForecast,
    RiskLevel,
    TrendDirection,
    TrendEstimate,
    required_recovery_amount,
    worst_risk_level,
)
from margin_guard.monitoring.sample_store import MarginSampleStore

from . import algorithms
from .algorithms import Prediction

logger = logging.getLogger(__name__)

ACCURATE_WITHIN_MINUTES = 30.0


def forecast_risk_level(margin_level: float, time_to_loss_cut: Optional[float]) -> RiskLevel:
    """Forward-looking level from the current value and the countdown."""

    if margin_level < 50:
        return RiskLevel.CRITICAL
    if margin_level < 100 or (time_to_loss_cut is not None and time_to_loss_cut < 30):
        return RiskLevel.DANGER
    if margin_level < 150 or (time_to_loss_cut is not None and time_to_loss_cut < 60):
        return RiskLevel.WARNING
    return RiskLevel.SAFE


def is_sustained_decline(values: Sequence[float], window: int) -> bool:
    """True when the last ``window`` values never rise and end lower than they start."""

    if window < 2 or len(values) < window:
        return False
    recent = values[-window:]
    if recent[-1] >= recent[0]:
        return False
    return all(current <= previous for previous, current in zip(recent, recent[1:]))


@dataclass
class PredictionMetrics:
    total_predictions: int = 0
    accurate_predictions: int = 0
    average_lead_time_minutes: float = 0.0

    @property
    def accuracy(self) -> float:
        if not self.total_predictions:
            return 0.0
        return self.accurate_predictions / self.total_predictions

    def to_payload(self) -> Dict[str, Any]:
        return {
            "total_predictions": self.total_predictions,
            "accurate_predictions": self.accurate_predictions,
            "accuracy": self.accuracy,
            "average_lead_time_minutes": self.average_lead_time_minutes,
        }


class ForecastEngine:
    """Recompute :class:`LossCutForecast` objects on a slower cadence than polling."""

    def __init__(
        self,
        store: MarginSampleStore,
        dispatcher: EventDispatcher,
        *,
        config: Optional[ForecastConfig] = None,
        thresholds: Optional[ThresholdConfig] = None,
        metrics: Optional[MetricRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self.config = config or ForecastConfig()
        self._thresholds = thresholds or ThresholdConfig()
        self._metrics = metrics or MetricRegistry()
        self._clock = clock
        self._forecasts: Dict[str, LossCutForecast] = {}
        self._loss_cut_levels: Dict[str, float] = {}
        self._prediction_metrics = PredictionMetrics()
        self._task: Optional[asyncio.Task] = None

    def set_loss_cut_level(self, account_id: str, level: float) -> None:
        self._loss_cut_levels[account_id] = level

    def loss_cut_level(self, account_id: str) -> float:
        return self._loss_cut_levels.get(account_id, self._thresholds.loss_cut)

    def analyze_trend(self, account_id: str) -> TrendEstimate:
        values = self._store.margin_levels(account_id)
        now = self._clock()
        if len(values) < 2:
            return TrendEstimate(
                slope=0.0,
                direction=TrendDirection.STABLE,
                volatility=0.0,
                confidence=0.0,
                sample_count=len(values),
                computed_at=now,
            )
        slope = algorithms.linear_regression(values).slope
        vol = algorithms.volatility(values[-self.config.volatility_window:])
        if abs(slope) < self.config.trend_sensitivity:
            direction = TrendDirection.STABLE
        elif slope > 0:
            direction = TrendDirection.IMPROVING
        else:
            direction = TrendDirection.DETERIORATING
        confidence = max(0.0, min(1.0, (len(values) / 20) * (1 - vol / 100)))
        return TrendEstimate(
            slope=slope,
            direction=direction,
            volatility=vol,
            confidence=confidence,
            sample_count=len(values),
            computed_at=now,
        )

    def predict(
        self,
        account_id: str,
        minutes_ahead: float,
        method: str = algorithms.VOLATILITY_ADJUSTED,
    ) -> Prediction:
        try:
            estimator = algorithms.ESTIMATORS[method]
        except KeyError as exc:
            raise ValueError(f"Unknown forecasting method: {method}") from exc
        values = self._store.margin_levels(account_id)
        if method in (algorithms.MOVING_AVERAGE, algorithms.EXPONENTIAL_MOVING_AVERAGE):
            return estimator(values, minutes_ahead)
        return estimator(values, minutes_ahead, sample_interval_minutes=self.config.sample_interval_minutes)

    def method_breakdown(self, account_id: str, minutes_ahead: float = 30) -> Dict[str, Prediction]:
        return algorithms.run_all(
            self._store.margin_levels(account_id),
            minutes_ahead,
            sample_interval_minutes=self.config.sample_interval_minutes,
        )

    def _horizon_value(self, values: List[float], trend: TrendEstimate, minutes_ahead: float) -> float:
        prediction = algorithms.volatility_adjusted(
            values, minutes_ahead, sample_interval_minutes=self.config.sample_interval_minutes
        )
        if prediction.confidence > 0:
            return max(0.0, prediction.prediction)
        rate_per_minute = trend.slope / self.config.sample_interval_minutes
        return max(0.0, values[-1] + rate_per_minute * minutes_ahead - trend.volatility * 0.1)

    def compute_forecast(self, account_id: str) -> Optional[LossCutForecast]:
        """Build a fresh forecast, or ``None`` when there are too few samples."""

        samples = self._store.samples(account_id)
        if len(samples) < self.config.min_data_points:
            return None

        with Timer(self._metrics, "forecast_seconds", labels={"account_id": account_id}):
            values = [sample.margin_level for sample in samples]
            latest = samples[-1]
            trend = self.analyze_trend(account_id)
            now = self._clock()
            loss_cut = self.loss_cut_level(account_id)

            time_to_loss_cut: Optional[float] = None
            predicted_time: Optional[float] = None
            if (
                trend.direction is TrendDirection.DETERIORATING
                and trend.confidence > self.config.confidence_threshold
            ):
                rate_per_minute = abs(trend.slope) / self.config.sample_interval_minutes
                if rate_per_minute > 0:
                    time_to_loss_cut = max(0.0, (latest.margin_level - loss_cut) / rate_per_minute)
                    predicted_time = now + time_to_loss_cut * 60

            horizon = ForecastHorizon(
                next_15_minutes=self._horizon_value(values, trend, 15),
                next_30_minutes=self._horizon_value(values, trend, 30),
                next_1_hour=self._horizon_value(values, trend, 60),
            )

            risk_level = worst_risk_level(
                forecast_risk_level(latest.margin_level, time_to_loss_cut),
                forecast_risk_level(horizon.next_1_hour, None),
            )
            if is_sustained_decline(values, self.config.sustained_decline_window):
                risk_level = worst_risk_level(risk_level, RiskLevel.DANGER)

            required = required_recovery_amount(
                latest.equity, latest.used_margin, max(self.config.target_margin_level, 200.0)
            )
            forecast = LossCutForecast(
                account_id=account_id,
                current_margin_level=latest.margin_level,
                predicted_loss_cut_time=predicted_time,
                time_to_loss_cut_minutes=time_to_loss_cut,
                required_recovery_amount=required,
                confidence_level=trend.confidence,
                trend_direction=trend.direction,
                forecast=horizon,
                risk_level=risk_level,
                last_update=now,
                early_warnings=_early_warnings(latest.margin_level, risk_level, time_to_loss_cut),
            )
        return forecast

    def update(self, account_id: str) -> Optional[LossCutForecast]:
        forecast = self.compute_forecast(account_id)
        if forecast is None:
            return None
        self._forecasts[account_id] = forecast
        self._metrics.inc("forecasts_computed", labels={"risk_level": forecast.risk_level.value})
        self._dispatcher.publish(
            ForecastUpdated(
                account_id=account_id,
                risk_level=forecast.risk_level,
                payload=forecast.to_payload(),
                timestamp=forecast.last_update,
            )
        )
        return forecast

    def recompute_all(self) -> List[LossCutForecast]:
        forecasts = []
        for account_id in self._store.accounts():
            forecast = self.update(account_id)
            if forecast is not None:
                forecasts.append(forecast)
        return forecasts

    def latest(self, account_id: str) -> Optional[LossCutForecast]:
        return self._forecasts.get(account_id)

    def all_forecasts(self) -> Dict[str, LossCutForecast]:
        return dict(self._forecasts)

    def critical_warnings(self) -> List[Tuple[str, EarlyWarning]]:
        """Danger and critical warnings across live forecasts, critical first."""

        warnings = [
            (account_id, warning)
            for account_id, forecast in sorted(self._forecasts.items())
            for warning in forecast.early_warnings
            if warning.level in (RiskLevel.CRITICAL, RiskLevel.DANGER)
        ]
        return sorted(warnings, key=lambda item: item[1].level is not RiskLevel.CRITICAL)

    def remove_account(self, account_id: str) -> None:
        self._forecasts.pop(account_id, None)
        self._loss_cut_levels.pop(account_id, None)

    def record_outcome(self, account_id: str, *, actual_loss_cut_time: Optional[float]) -> PredictionMetrics:
        """Score the live forecast for ``account_id`` against what happened."""

        forecast = self._forecasts.get(account_id)
        if forecast is None:
            return self._prediction_metrics
        stats = self._prediction_metrics
        stats.total_predictions += 1
        if actual_loss_cut_time is not None and forecast.predicted_loss_cut_time is not None:
            lead_minutes = abs(actual_loss_cut_time - forecast.predicted_loss_cut_time) / 60
            if lead_minutes <= ACCURATE_WITHIN_MINUTES:
                stats.accurate_predictions += 1
            stats.average_lead_time_minutes = fmean(
                [stats.average_lead_time_minutes] * (stats.total_predictions - 1) + [lead_minutes]
            )
        return stats

    def prediction_metrics(self) -> PredictionMetrics:
        return self._prediction_metrics

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="forecast-engine")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        interval = self.config.update_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                self.recompute_all()
            except Exception:  # pragma: no cover - retried on the next interval
                logger.exception("Forecast recompute failed")


def _early_warnings(
    margin_level: float,
    risk_level: RiskLevel,
    time_to_loss_cut: Optional[float],
) -> tuple[EarlyWarning, ...]:
    if risk_level is RiskLevel.CRITICAL:
        message = f"Margin level has fallen to {margin_level:.1f}%; act immediately"
    elif risk_level is RiskLevel.DANGER:
        message = f"Loss-cut risk is rising ({margin_level:.1f}%)"
    elif risk_level is RiskLevel.WARNING:
        message = f"Margin level is trending down ({margin_level:.1f}%)"
        time_to_loss_cut = None
    else:
        return ()
    return (EarlyWarning(level=risk_level, message=message, time_to_threshold_minutes=time_to_loss_cut),)


__all__ = ["ForecastEngine", "PredictionMetrics", "forecast_risk_level", "is_sustained_decline"]

"""Heuristic margin-level estimators.

Each estimator takes the margin levels of one account in sample order and
returns a :class:`Prediction` for ``minutes_ahead``.  When a method has fewer
points than it needs it returns a zero prediction with zero confidence
instead of raising.

The x axis is the sample index; estimators that extrapolate in steps assume
one sample every ``sample_interval_minutes`` minutes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from statistics import fmean, pstdev
from typing import Dict, List, NamedTuple, Sequence, Tuple

MOVING_AVERAGE = "moving_average"
EXPONENTIAL_MOVING_AVERAGE = "exponential_moving_average"
LINEAR_REGRESSION = "linear_regression"
POLYNOMIAL_REGRESSION = "polynomial_regression"
ARIMA_LIKE = "arima_like"
ENSEMBLE = "ensemble"
VOLATILITY_ADJUSTED = "volatility_adjusted"

DEFAULT_SAMPLE_INTERVAL_MINUTES = 5.0


@dataclass(frozen=True)
class Prediction:
    prediction: float
    confidence: float
    method: str

    @classmethod
    def empty(cls, method: str) -> "Prediction":
        return cls(0.0, 0.0, method)


class LinearFit(NamedTuple):
    slope: float
    intercept: float
    r2: float


def linear_regression(values: Sequence[float]) -> LinearFit:
    """Ordinary least squares of ``values`` against their index."""

    n = len(values)
    if n < 2:
        return LinearFit(0.0, values[0] if values else 0.0, 0.0)
    xs = range(n)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    denominator = n * sum_xx - sum_x * sum_x
    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    mean_y = sum_y / n
    ss_res = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, values))
    ss_tot = sum((y - mean_y) ** 2 for y in values)
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0
    return LinearFit(slope, intercept, r2)


def quadratic_coefficients(values: Sequence[float]) -> Tuple[Tuple[float, float, float], float]:
    """Approximate degree-2 coefficients and their R².

    This is a moment-ratio shortcut rather than a least-squares solve; the
    resulting R² is clipped at zero.
    """

    n = len(values)
    sum_x = sum_x2 = sum_x3 = sum_x4 = 0.0
    sum_y = sum_xy = sum_x2y = 0.0
    for x, y in enumerate(values):
        x2 = x * x
        sum_x += x
        sum_x2 += x2
        sum_x3 += x2 * x
        sum_x4 += x2 * x2
        sum_y += y
        sum_xy += x * y
        sum_x2y += x2 * y
    a0 = sum_y / n
    a1 = sum_xy / sum_x2 if sum_x2 else 0.0
    a2 = (sum_x2y - a1 * sum_x3) / sum_x4 if sum_x4 else 0.0
    mean_y = sum_y / n
    ss_res = sum((y - (a0 + a1 * x + a2 * x * x)) ** 2 for x, y in enumerate(values))
    ss_tot = sum((y - mean_y) ** 2 for y in values)
    r2 = max(0.0, 1 - ss_res / ss_tot) if ss_tot > 0 else 0.0
    return (a0, a1, a2), r2


def volatility(values: Sequence[float]) -> float:
    """Population standard deviation; zero for fewer than two values."""

    if len(values) < 2:
        return 0.0
    return pstdev(values)


def _clamp_confidence(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def moving_average(values: Sequence[float], minutes_ahead: float = 30, *, window: int = 5) -> Prediction:
    if len(values) < window:
        return Prediction.empty(MOVING_AVERAGE)
    recent = list(values[-window:])
    average = fmean(recent)
    trend = (recent[-1] - recent[0]) / (len(recent) - 1) if len(recent) > 1 else 0.0
    confidence = min(1.0, window / 10) * (1 - abs(trend) / 10)
    return Prediction(average + trend * minutes_ahead, _clamp_confidence(confidence), MOVING_AVERAGE)


def exponential_moving_average(values: Sequence[float], minutes_ahead: float = 30, *, alpha: float = 0.3) -> Prediction:
    if len(values) < 2:
        return Prediction.empty(EXPONENTIAL_MOVING_AVERAGE)
    ema = values[0]
    series: List[float] = [ema]
    for value in values[1:]:
        ema = alpha * value + (1 - alpha) * ema
        series.append(ema)
    trend = linear_regression(series).slope
    confidence = min(1.0, len(values) / 15) * 0.8
    return Prediction(ema + trend * minutes_ahead, _clamp_confidence(confidence), EXPONENTIAL_MOVING_AVERAGE)


def linear_extrapolation(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Prediction:
    if len(values) < 3:
        return Prediction.empty(LINEAR_REGRESSION)
    fit = linear_regression(values)
    next_x = len(values) + minutes_ahead / sample_interval_minutes
    return Prediction(fit.slope * next_x + fit.intercept, _clamp_confidence(fit.r2), LINEAR_REGRESSION)


def polynomial_extrapolation(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Prediction:
    if len(values) < 5:
        return Prediction.empty(POLYNOMIAL_REGRESSION)
    (a0, a1, a2), r2 = quadratic_coefficients(values)
    next_x = len(values) + minutes_ahead / sample_interval_minutes
    prediction = a0 + a1 * next_x + a2 * next_x * next_x
    return Prediction(prediction, _clamp_confidence(r2 * 0.9), POLYNOMIAL_REGRESSION)


def arima_like(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Prediction:
    """Extrapolate with the mean of the last five first differences."""

    if len(values) < 10:
        return Prediction.empty(ARIMA_LIKE)
    diffs = [current - previous for previous, current in zip(values, values[1:])]
    recent = diffs[-min(5, len(diffs)):]
    average_diff = fmean(recent)
    steps_ahead = minutes_ahead / sample_interval_minutes
    prediction = values[-1] + average_diff * steps_ahead
    confidence = max(0.0, 1 - pstdev(recent) / 5)
    return Prediction(prediction, _clamp_confidence(confidence), ARIMA_LIKE)


def component_predictions(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> List[Prediction]:
    return [
        moving_average(values, minutes_ahead),
        exponential_moving_average(values, minutes_ahead),
        linear_extrapolation(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes),
        polynomial_extrapolation(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes),
        arima_like(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes),
    ]


def ensemble(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Prediction:
    """Confidence-weighted mean of the five component estimators.

    Zero-confidence components carry no weight.  The ensemble confidence is
    the total weight averaged over all five components.
    """

    methods = component_predictions(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes)
    total_weight = sum(method.confidence for method in methods)
    if total_weight <= 0:
        return Prediction.empty(ENSEMBLE)
    weighted = sum(method.prediction * method.confidence for method in methods if method.confidence > 0)
    return Prediction(weighted / total_weight, total_weight / len(methods), ENSEMBLE)


def volatility_adjusted(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Prediction:
    base = ensemble(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes)
    if len(values) < 10:
        return base
    vol = volatility(values)
    factor = max(0.1, 1 - vol / 50)
    penalty = vol * 0.1 * math.sqrt(minutes_ahead / 30)
    return Prediction(base.prediction - penalty, _clamp_confidence(base.confidence * factor), VOLATILITY_ADJUSTED)


ESTIMATORS = {
    MOVING_AVERAGE: moving_average,
    EXPONENTIAL_MOVING_AVERAGE: exponential_moving_average,
    LINEAR_REGRESSION: linear_extrapolation,
    POLYNOMIAL_REGRESSION: polynomial_extrapolation,
    ARIMA_LIKE: arima_like,
    ENSEMBLE: ensemble,
    VOLATILITY_ADJUSTED: volatility_adjusted,
}


def run_all(
    values: Sequence[float],
    minutes_ahead: float = 30,
    *,
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
) -> Dict[str, Prediction]:
    """Evaluate every estimator, keyed by method name."""

    results: Dict[str, Prediction] = {}
    for prediction in component_predictions(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes):
        results[prediction.method] = prediction
    results[ENSEMBLE] = ensemble(values, minutes_ahead, sample_interval_minutes=sample_interval_minutes)
    results[VOLATILITY_ADJUSTED] = volatility_adjusted(
        values, minutes_ahead, sample_interval_minutes=sample_interval_minutes
    )
    return results

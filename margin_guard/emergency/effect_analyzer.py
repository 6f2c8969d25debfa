"""Before/after measurement of emergency responses and rolling performance stats."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from statistics import fmean
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from margin_guard.models import RiskLevel, RiskMonitoringState, _json_float, isoformat

from .models import EmergencyResponse

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0
SUCCESS_EFFECTIVENESS = 0.7
PERFORMANCE_HISTORY_LIMIT = 100

#: Higher is healthier; used to sign the risk-level delta.
RISK_LEVEL_SCORES: Dict[RiskLevel, int] = {
    RiskLevel.SAFE: 4,
    RiskLevel.WARNING: 3,
    RiskLevel.DANGER: 2,
    RiskLevel.CRITICAL: 1,
}


def estimate_total_loss(state: RiskMonitoringState) -> float:
    return max(0.0, state.used_margin - state.free_margin) * 0.1


def estimate_position_count(state: RiskMonitoringState) -> int:
    return max(1, math.floor(state.used_margin / 1000))


def margin_improvement(before: float, after: float) -> float:
    if math.isinf(before) and math.isinf(after):
        return 0.0
    return after - before


def determine_trend(values: Sequence[float]) -> str:
    """Compare first-half and second-half means; more than 10% either way is a trend."""

    if len(values) < 2:
        return "stable"
    middle = len(values) // 2
    first, second = fmean(values[:middle]), fmean(values[middle:])
    if first == 0:
        if second > 0:
            return "improving"
        return "declining" if second < 0 else "stable"
    change = (second - first) / abs(first)
    if change > 0.1:
        return "improving"
    if change < -0.1:
        return "declining"
    return "stable"


@dataclass(frozen=True)
class StateSnapshot:
    margin_level: float
    total_loss: float
    used_margin: float
    position_count: int
    risk_level: RiskLevel

    @classmethod
    def from_state(cls, state: RiskMonitoringState) -> "StateSnapshot":
        return cls(
            margin_level=state.margin_level,
            total_loss=estimate_total_loss(state),
            used_margin=state.used_margin,
            position_count=estimate_position_count(state),
            risk_level=state.risk_level,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "margin_level": _json_float(self.margin_level),
            "total_loss": self.total_loss,
            "used_margin": self.used_margin,
            "position_count": self.position_count,
            "risk_level": self.risk_level.value,
        }


@dataclass(frozen=True)
class ResponseEffects:
    loss_reduction: float
    margin_improvement: float
    risk_level_change: int
    execution_time_ms: float
    success_rate: float
    reported_loss_avoidance: float = 0.0


@dataclass(frozen=True)
class Evaluation:
    effectiveness: float
    efficiency: float
    overall_score: float
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class EffectMeasurement:
    id: str
    response_id: str
    account_id: str
    scenario_type: str
    action_count: int
    measurement_time: float
    before: StateSnapshot
    after: StateSnapshot
    effects: ResponseEffects
    evaluation: Evaluation

    @property
    def successful(self) -> bool:
        return self.evaluation.effectiveness > SUCCESS_EFFECTIVENESS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "response_id": self.response_id,
            "account_id": self.account_id,
            "scenario_type": self.scenario_type,
            "measurement_time": isoformat(self.measurement_time),
            "before": self.before.to_payload(),
            "after": self.after.to_payload(),
            "effects": {
                "loss_reduction": self.effects.loss_reduction,
                "margin_improvement": _json_float(self.effects.margin_improvement),
                "risk_level_change": self.effects.risk_level_change,
                "execution_time_ms": self.effects.execution_time_ms,
                "success_rate": self.effects.success_rate,
                "reported_loss_avoidance": self.effects.reported_loss_avoidance,
            },
            "evaluation": {
                "effectiveness": self.evaluation.effectiveness,
                "efficiency": self.evaluation.efficiency,
                "overall_score": self.evaluation.overall_score,
                "recommendations": list(self.evaluation.recommendations),
            },
        }


@dataclass(frozen=True)
class Improvement:
    category: str
    description: str
    priority: str
    estimated_impact: float


@dataclass(frozen=True)
class PerformanceMetrics:
    total_responses: int
    successful_responses: int
    average_execution_time_ms: float
    average_loss_reduction: float
    average_margin_improvement: float
    success_rate_by_scenario: Dict[str, float]
    success_rate_by_risk_level: Dict[str, float]
    execution_time_analysis: Dict[str, float]
    improvements: tuple[Improvement, ...] = ()

    @property
    def success_rate(self) -> float:
        if not self.total_responses:
            return 0.0
        return self.successful_responses / self.total_responses

    def to_payload(self) -> Dict[str, Any]:
        return {
            "total_responses": self.total_responses,
            "successful_responses": self.successful_responses,
            "success_rate": self.success_rate,
            "average_execution_time_ms": self.average_execution_time_ms,
            "average_loss_reduction": self.average_loss_reduction,
            "average_margin_improvement": _json_float(self.average_margin_improvement),
            "success_rate_by_scenario": dict(self.success_rate_by_scenario),
            "success_rate_by_risk_level": dict(self.success_rate_by_risk_level),
            "execution_time_analysis": dict(self.execution_time_analysis),
            "improvements": [
                {
                    "category": item.category,
                    "description": item.description,
                    "priority": item.priority,
                    "estimated_impact": item.estimated_impact,
                }
                for item in self.improvements
            ],
        }


@dataclass(frozen=True)
class TrendPoint:
    date: float
    average_effectiveness: float
    total_actions: int
    success_rate: float


@dataclass(frozen=True)
class TrendAnalysis:
    period: str
    data_points: tuple[TrendPoint, ...]
    trends: Dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "data_points": [
                {
                    "date": isoformat(point.date),
                    "average_effectiveness": point.average_effectiveness,
                    "total_actions": point.total_actions,
                    "success_rate": point.success_rate,
                }
                for point in self.data_points
            ],
            "trends": dict(self.trends),
        }


def calculate_effects(
    response: EmergencyResponse, before: RiskMonitoringState, after: RiskMonitoringState
) -> ResponseEffects:
    return ResponseEffects(
        loss_reduction=max(0.0, estimate_total_loss(before) - estimate_total_loss(after)),
        margin_improvement=margin_improvement(before.margin_level, after.margin_level),
        risk_level_change=RISK_LEVEL_SCORES[after.risk_level] - RISK_LEVEL_SCORES[before.risk_level],
        execution_time_ms=response.execution_time_ms,
        success_rate=response.success_rate,
        reported_loss_avoidance=response.total_loss_avoidance or 0.0,
    )


def evaluate(effects: ResponseEffects, action_count: int) -> Evaluation:
    effectiveness = 0.0
    if effects.margin_improvement > 0:
        effectiveness += 0.4
    if effects.loss_reduction > 0:
        effectiveness += 0.4
    if effects.risk_level_change > 0:
        effectiveness += 0.2

    efficiency = 0.0
    if effects.execution_time_ms < 30000:
        efficiency += 0.4
    if effects.success_rate > 0.8:
        efficiency += 0.4
    if action_count <= 3:
        efficiency += 0.2

    effectiveness = min(1.0, effectiveness)
    efficiency = min(1.0, efficiency)
    overall = min(1.0, effectiveness * 0.6 + efficiency * 0.4)

    recommendations: List[str] = []
    if effects.execution_time_ms > 60000:
        recommendations.append("Execution took too long; consider simplifying the strategy")
    if effects.success_rate < 0.7:
        recommendations.append("Action success rate is low; action reliability needs work")
    if effects.margin_improvement < 10:
        recommendations.append("Margin improvement was small; consider a more aggressive strategy")
    if action_count > 5:
        recommendations.append("Too many actions were needed; review the strategy for efficiency")
    if overall < 0.5:
        recommendations.append("Overall effect was low; the strategy needs a fundamental review")
    return Evaluation(effectiveness, efficiency, overall, tuple(recommendations))


def _execution_time_analysis(measurements: Sequence[EffectMeasurement]) -> Dict[str, float]:
    times = sorted(m.effects.execution_time_ms for m in measurements)
    if not times:
        return {"fastest": 0.0, "slowest": 0.0, "median": 0.0, "percentile_95": 0.0}
    return {
        "fastest": times[0],
        "slowest": times[-1],
        "median": times[len(times) // 2],
        "percentile_95": times[math.floor(len(times) * 0.95)],
    }


def _success_rate(measurements: Sequence[EffectMeasurement]) -> float:
    if not measurements:
        return 0.0
    return sum(1 for m in measurements if m.successful) / len(measurements)


class EffectAnalyzer:
    """Keep one measurement per response and aggregate them on request."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._measurements: Dict[str, EffectMeasurement] = {}
        self._performance_history: Deque[PerformanceMetrics] = deque(maxlen=PERFORMANCE_HISTORY_LIMIT)

    def measure(
        self, response: EmergencyResponse, before: RiskMonitoringState, after: RiskMonitoringState
    ) -> EffectMeasurement:
        now = self._clock()
        effects = calculate_effects(response, before, after)
        action_count = len(response.executed_actions)
        measurement = EffectMeasurement(
            id=f"measurement_{response.id}",
            response_id=response.id,
            account_id=response.account_id,
            scenario_type=response.strategy.scenario_type.value,
            action_count=action_count,
            measurement_time=now,
            before=StateSnapshot.from_state(before),
            after=StateSnapshot.from_state(after),
            effects=effects,
            evaluation=evaluate(effects, action_count),
        )
        self._measurements[measurement.id] = measurement
        logger.info(
            "Measured emergency response",
            extra={
                "response_id": response.id,
                "account_id": response.account_id,
                "overall_score": round(measurement.evaluation.overall_score, 2),
            },
        )
        return measurement

    def measurement(self, measurement_id: str) -> Optional[EffectMeasurement]:
        return self._measurements.get(measurement_id)

    def measurement_for_response(self, response_id: str) -> Optional[EffectMeasurement]:
        for measurement in self._measurements.values():
            if measurement.response_id == response_id:
                return measurement
        return None

    def measurements(self) -> List[EffectMeasurement]:
        return list(self._measurements.values())

    def performance_history(self) -> List[PerformanceMetrics]:
        return list(self._performance_history)

    def analyze_performance(self, window_hours: float = 24) -> PerformanceMetrics:
        cutoff = self._clock() - window_hours * 3600
        recent = [m for m in self._measurements.values() if m.measurement_time >= cutoff]

        by_scenario: Dict[str, List[EffectMeasurement]] = {}
        for measurement in recent:
            by_scenario.setdefault(measurement.scenario_type, []).append(measurement)

        metrics = PerformanceMetrics(
            total_responses=len(recent),
            successful_responses=sum(1 for m in recent if m.successful),
            average_execution_time_ms=fmean([m.effects.execution_time_ms for m in recent]) if recent else 0.0,
            average_loss_reduction=fmean([m.effects.loss_reduction for m in recent]) if recent else 0.0,
            average_margin_improvement=(
                fmean([m.effects.margin_improvement for m in recent]) if recent else 0.0
            ),
            success_rate_by_scenario={
                scenario: _success_rate(items) for scenario, items in sorted(by_scenario.items())
            },
            success_rate_by_risk_level={
                level.value: _success_rate([m for m in recent if m.before.risk_level is level])
                for level in RiskLevel
            },
            execution_time_analysis=_execution_time_analysis(recent),
            improvements=tuple(self._improvements(recent)),
        )
        self._performance_history.append(metrics)
        return metrics

    @staticmethod
    def _improvements(measurements: Sequence[EffectMeasurement]) -> List[Improvement]:
        improvements: List[Improvement] = []
        average_effectiveness = (
            fmean([m.evaluation.effectiveness for m in measurements]) if measurements else 0.0
        )
        if average_effectiveness < 0.7:
            improvements.append(
                Improvement(
                    "strategy",
                    "Emergency strategy effectiveness is declining; review the strategies",
                    "high",
                    0.3,
                )
            )
        slow = sum(1 for m in measurements if m.effects.execution_time_ms > 30000)
        if slow > len(measurements) * 0.3:
            improvements.append(
                Improvement("speed", "Too many responses run longer than 30 seconds", "medium", 0.2)
            )
        return improvements

    def analyze_trends(self, days: int = 7) -> TrendAnalysis:
        end = self._clock()
        start = end - days * SECONDS_PER_DAY
        points: List[TrendPoint] = []
        day_start = start
        while day_start <= end:
            day_end = day_start + SECONDS_PER_DAY
            bucket = [m for m in self._measurements.values() if day_start <= m.measurement_time < day_end]
            points.append(
                TrendPoint(
                    date=day_start,
                    average_effectiveness=fmean([m.evaluation.effectiveness for m in bucket]) if bucket else 0.0,
                    total_actions=len(bucket),
                    success_rate=_success_rate(bucket),
                )
            )
            day_start = day_end
        return TrendAnalysis(
            period=f"{days} days",
            data_points=tuple(points),
            trends={
                "effectiveness": determine_trend([p.average_effectiveness for p in points]),
                "efficiency": determine_trend([p.total_actions / max(p.success_rate, 0.1) for p in points]),
                "reliability": determine_trend([p.success_rate for p in points]),
            },
        )

    def generate_detailed_report(self, response_id: str) -> str:
        measurement = self.measurement_for_response(response_id) or self._measurements.get(response_id)
        if measurement is None:
            raise KeyError(f"No measurement recorded for {response_id}")
        before, after = measurement.before, measurement.after
        effects, evaluation = measurement.effects, measurement.evaluation
        measured_at = datetime.fromtimestamp(measurement.measurement_time, tz=timezone.utc)
        lines = [
            "# Emergency response effect report",
            "",
            "## Summary",
            f"- Response: {measurement.response_id}",
            f"- Account: {measurement.account_id}",
            f"- Measured at: {measured_at:%Y-%m-%d %H:%M:%S} UTC",
            "",
            "## State change",
            "### Before",
            *_state_lines(before),
            "",
            "### After",
            *_state_lines(after),
            "",
            "## Effects",
            f"- Loss reduction: ${effects.loss_reduction:.2f}",
            f"- Margin improvement: {effects.margin_improvement:.2f} points",
            f"- Execution time: {effects.execution_time_ms:.0f}ms",
            f"- Success rate: {effects.success_rate * 100:.1f}%",
            "",
            "## Evaluation",
            f"- Effectiveness: {evaluation.effectiveness * 100:.1f}%",
            f"- Efficiency: {evaluation.efficiency * 100:.1f}%",
            f"- Overall: {evaluation.overall_score * 100:.1f}%",
            "",
            "## Recommendations",
            *(f"- {item}" for item in evaluation.recommendations),
        ]
        return "\n".join(lines)


def _state_lines(snapshot: StateSnapshot) -> List[str]:
    return [
        f"- Margin level: {snapshot.margin_level:.2f}%",
        f"- Total loss: ${snapshot.total_loss:.2f}",
        f"- Used margin: ${snapshot.used_margin:.2f}",
        f"- Risk level: {snapshot.risk_level.value}",
    ]


__all__ = [
    "EffectAnalyzer",
    "EffectMeasurement",
    "Evaluation",
    "PERFORMANCE_HISTORY_LIMIT",
    "PerformanceMetrics",
    "ResponseEffects",
    "StateSnapshot",
    "TrendAnalysis",
    "calculate_effects",
    "determine_trend",
    "estimate_position_count",
    "estimate_total_loss",
    "evaluate",
]

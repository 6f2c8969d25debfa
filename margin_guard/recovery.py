"""Ranked recovery scenarios for an account approaching loss-cut."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import MarginSample, Position, RiskMonitoringState, calculate_margin_level

logger = logging.getLogger(__name__)

DEFAULT_TARGET_MARGIN_LEVEL = 200.0


class ScenarioType(str, Enum):
    DEPOSIT = "deposit"
    POSITION_REDUCTION = "position_reduction"
    PROFIT_TAKING = "profit_taking"
    CROSS_ACCOUNT = "cross_account"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


URGENCY_WEIGHTS: Dict[Urgency, float] = {
    Urgency.CRITICAL: 1.0,
    Urgency.HIGH: 0.8,
    Urgency.MEDIUM: 0.6,
    Urgency.LOW: 0.4,
}

TYPE_TIME_WEIGHTS: Dict[ScenarioType, float] = {
    ScenarioType.POSITION_REDUCTION: 1.0,
    ScenarioType.PROFIT_TAKING: 0.9,
    ScenarioType.CROSS_ACCOUNT: 0.7,
    ScenarioType.DEPOSIT: 0.7,
}

EXECUTION_MINUTES: Dict[ScenarioType, float] = {
    ScenarioType.POSITION_REDUCTION: 2,
    ScenarioType.PROFIT_TAKING: 2,
    ScenarioType.CROSS_ACCOUNT: 30,
    ScenarioType.DEPOSIT: 60,
}


@dataclass(frozen=True)
class RecoveryScenario:
    type: ScenarioType
    description: str
    required_amount: float
    impact_percent: float
    urgency: Urgency
    feasibility: float
    instructions: Tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "required_amount": self.required_amount,
            "impact_percent": self.impact_percent,
            "urgency": self.urgency.value,
            "feasibility": self.feasibility,
            "instructions": list(self.instructions),
        }


@dataclass(frozen=True)
class RecoveryAccount:
    """Account view the calculator works from."""

    account_id: str
    margin_level: float
    equity: float
    used_margin: float
    free_margin: float
    positions: Tuple[Position, ...] = ()
    broker: str = ""

    @classmethod
    def from_state(
        cls, state: RiskMonitoringState, positions: Sequence[Position] = (), *, broker: str = ""
    ) -> "RecoveryAccount":
        return cls(
            account_id=state.account_id,
            margin_level=state.margin_level,
            equity=state.equity,
            used_margin=state.used_margin,
            free_margin=state.free_margin,
            positions=tuple(positions),
            broker=broker,
        )

    @classmethod
    def from_sample(
        cls, account_id: str, sample: MarginSample, positions: Sequence[Position] = (), *, broker: str = ""
    ) -> "RecoveryAccount":
        return cls(
            account_id=account_id,
            margin_level=sample.margin_level,
            equity=sample.equity,
            used_margin=sample.used_margin,
            free_margin=sample.free_margin,
            positions=tuple(positions),
            broker=broker,
        )

    @property
    def label(self) -> str:
        return self.broker or self.account_id


@dataclass(frozen=True)
class RankedScenario:
    scenario: RecoveryScenario
    score: float


@dataclass(frozen=True)
class RecoveryPlan:
    scenarios: Tuple[RankedScenario, ...]
    optimal: RecoveryScenario
    estimated_execution_minutes: float
    success_probability: float
    risk_reduction: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "scenarios": [
                dict(ranked.scenario.to_payload(), score=ranked.score) for ranked in self.scenarios
            ],
            "optimal": self.optimal.to_payload(),
            "estimated_execution_minutes": self.estimated_execution_minutes,
            "success_probability": self.success_probability,
            "risk_reduction": self.risk_reduction,
        }


def calculate_basic_recovery(
    margin_level: float, used_margin: float, target_margin_level: float = DEFAULT_TARGET_MARGIN_LEVEL
) -> float:
    """Equity to add so that ``margin_level`` reaches ``target_margin_level``."""

    if margin_level >= target_margin_level:
        return 0.0
    required_equity = used_margin * target_margin_level / 100
    current_equity = used_margin * margin_level / 100
    return max(0.0, required_equity - current_equity)


def urgency_from_margin_level(margin_level: float) -> Urgency:
    if margin_level < 50:
        return Urgency.CRITICAL
    if margin_level < 100:
        return Urgency.HIGH
    if margin_level < 150:
        return Urgency.MEDIUM
    return Urgency.LOW


def urgency_weight(urgency: Urgency, margin_level: float) -> float:
    if margin_level < 50 and urgency is Urgency.CRITICAL:
        return 1.0
    if margin_level < 100 and urgency is Urgency.HIGH:
        return 0.9
    return URGENCY_WEIGHTS[urgency]


def score_scenario(scenario: RecoveryScenario, margin_level: float) -> float:
    return (
        scenario.feasibility
        * (scenario.impact_percent / 100)
        * urgency_weight(scenario.urgency, margin_level)
        * TYPE_TIME_WEIGHTS.get(scenario.type, 0.7)
    )


def impact_percentage(current_level: float, new_level: float, target_level: float) -> float:
    if current_level >= target_level:
        return 0.0
    if math.isinf(new_level):
        return 100.0
    return min(100.0, (new_level - current_level) / (target_level - current_level) * 100)


def _level_after(used_margin: float, equity: float) -> float:
    return calculate_margin_level(equity, used_margin)


def _format_level(level: float) -> str:
    return "unlimited" if math.isinf(level) else f"{level:.1f}%"


class RecoveryScenarioCalculator:
    """Generate and rank deposit, trim, profit-take and transfer scenarios."""

    def __init__(self, *, target_margin_level: float = DEFAULT_TARGET_MARGIN_LEVEL) -> None:
        self.target_margin_level = target_margin_level

    def position_reduction_scenarios(
        self, account: RecoveryAccount, target: Optional[float] = None
    ) -> List[RecoveryScenario]:
        target = target or self.target_margin_level
        if account.margin_level >= target:
            return []
        losers = sorted((p for p in account.positions if p.profit < 0), key=lambda p: p.profit)
        winners = sorted((p for p in account.positions if p.profit > 0), key=lambda p: p.profit, reverse=True)
        scenarios: List[RecoveryScenario] = []

        if losers:
            worst = losers[0]
            loss = abs(worst.profit)
            new_level = _level_after(account.used_margin - worst.margin_required, account.equity - loss)
            scenarios.append(
                RecoveryScenario(
                    type=ScenarioType.POSITION_REDUCTION,
                    description=f"Close largest losing position {worst.symbol} ({worst.lots} lots)",
                    required_amount=0.0,
                    impact_percent=impact_percentage(account.margin_level, new_level, target),
                    urgency=Urgency.MEDIUM if new_level >= target else Urgency.HIGH,
                    feasibility=0.95,
                    instructions=(
                        f"Close {worst.symbol} {worst.side.upper()} {worst.lots} lots",
                        f"Expected realised loss: {loss:.2f}",
                        f"Expected margin level: {_format_level(new_level)}",
                        "Confirm the account state after closing",
                    ),
                )
            )

        if winners:
            best = winners[0]
            new_level = _level_after(account.used_margin - best.margin_required, account.equity + best.profit)
            scenarios.append(
                RecoveryScenario(
                    type=ScenarioType.PROFIT_TAKING,
                    description=f"Take profit on {best.symbol} ({best.lots} lots)",
                    required_amount=0.0,
                    impact_percent=impact_percentage(account.margin_level, new_level, target),
                    urgency=Urgency.LOW,
                    feasibility=0.9,
                    instructions=(
                        f"Close {best.symbol} {best.side.upper()} {best.lots} lots",
                        f"Profit realised: {best.profit:.2f}",
                        f"Expected margin level: {_format_level(new_level)}",
                    ),
                )
            )

        if losers:
            position = losers[0]
            partial_lots = max(0.01, position.lots * 0.5)
            partial_loss = abs(position.profit) * 0.5
            new_level = _level_after(
                account.used_margin - position.margin_required * 0.5, account.equity - partial_loss
            )
            scenarios.append(
                RecoveryScenario(
                    type=ScenarioType.POSITION_REDUCTION,
                    description=f"Close 50% of {position.symbol}",
                    required_amount=0.0,
                    impact_percent=impact_percentage(account.margin_level, new_level, target),
                    urgency=Urgency.MEDIUM,
                    feasibility=0.9,
                    instructions=(
                        f"Partially close {position.symbol} {position.side.upper()} {partial_lots:.2f} lots",
                        f"Expected realised loss: {partial_loss:.2f}",
                        f"Remaining position: {position.lots - partial_lots:.2f} lots",
                        f"Expected margin level: {_format_level(new_level)}",
                    ),
                )
            )
        return scenarios

    def cross_account_scenarios(
        self,
        account: RecoveryAccount,
        others: Sequence[RecoveryAccount],
        target: Optional[float] = None,
    ) -> List[RecoveryScenario]:
        target = target or self.target_margin_level
        required = calculate_basic_recovery(account.margin_level, account.used_margin, target)
        if required <= 0:
            return []
        scenarios: List[RecoveryScenario] = []
        candidates = [other for other in others if other.account_id != account.account_id]

        donors = sorted(
            (other for other in candidates if other.free_margin > required * 1.2),
            key=lambda other: other.free_margin,
            reverse=True,
        )
        if donors:
            donor = donors[0]
            scenarios.append(
                RecoveryScenario(
                    type=ScenarioType.CROSS_ACCOUNT,
                    description=f"Transfer funds from {donor.label} to {account.label}",
                    required_amount=required,
                    impact_percent=100.0,
                    urgency=urgency_from_margin_level(account.margin_level),
                    feasibility=0.7,
                    instructions=(
                        f"Source: {donor.label} (free margin {donor.free_margin:.0f})",
                        f"Amount: {required:.0f}",
                        "Run other mitigations while the transfer settles",
                        "Confirm the margin level once funds arrive",
                    ),
                )
            )

        available = sorted(
            (other for other in candidates if other.free_margin > 1000),
            key=lambda other: other.free_margin,
            reverse=True,
        )
        if len(available) >= 2:
            total_available = sum(other.free_margin * 0.8 for other in available)
            if total_available >= required:
                legs = tuple(
                    f"{other.label}: {min(other.free_margin * 0.8, required / 2):.0f}" for other in available[:3]
                )
                scenarios.append(
                    RecoveryScenario(
                        type=ScenarioType.CROSS_ACCOUNT,
                        description="Distributed transfer from several accounts",
                        required_amount=required,
                        impact_percent=95.0,
                        urgency=urgency_from_margin_level(account.margin_level),
                        feasibility=0.6,
                        instructions=legs + ("Execute the transfers in parallel", "Track settlement of every leg"),
                    )
                )
        return scenarios

    def deposit_scenarios(self, account: RecoveryAccount, target: Optional[float] = None) -> List[RecoveryScenario]:
        target = target or self.target_margin_level
        required = calculate_basic_recovery(account.margin_level, account.used_margin, target)
        if required <= 0:
            return []
        buffered = required * 1.5
        return [
            RecoveryScenario(
                type=ScenarioType.DEPOSIT,
                description="Deposit the minimum required amount",
                required_amount=required,
                impact_percent=100.0,
                urgency=urgency_from_margin_level(account.margin_level),
                feasibility=0.8,
                instructions=(
                    f"Deposit {required:.0f}",
                    "Run other mitigations until the deposit is credited",
                    "Confirm the margin level after the deposit",
                ),
            ),
            RecoveryScenario(
                type=ScenarioType.DEPOSIT,
                description="Deposit with safety buffer",
                required_amount=buffered,
                impact_percent=120.0,
                urgency=Urgency.MEDIUM,
                feasibility=0.7,
                instructions=(
                    f"Deposit {buffered:.0f} including buffer",
                    "Leaves room for further adverse moves",
                ),
            ),
        ]

    def scenarios(
        self,
        account: RecoveryAccount,
        others: Sequence[RecoveryAccount] = (),
        target: Optional[float] = None,
    ) -> List[RankedScenario]:
        """All candidate scenarios, best score first."""

        collected: List[RecoveryScenario] = []
        collected.extend(self.position_reduction_scenarios(account, target))
        if others:
            collected.extend(self.cross_account_scenarios(account, others, target))
        collected.extend(self.deposit_scenarios(account, target))
        ranked = [RankedScenario(scenario, score_scenario(scenario, account.margin_level)) for scenario in collected]
        ranked.sort(key=lambda item: item.score, reverse=True)
        return ranked

    def plan(
        self,
        account: RecoveryAccount,
        others: Sequence[RecoveryAccount] = (),
        target: Optional[float] = None,
    ) -> RecoveryPlan:
        target = target or self.target_margin_level
        ranked = self.scenarios(account, others, target)
        if ranked:
            optimal = ranked[0].scenario
        else:
            optimal = RecoveryScenario(
                type=ScenarioType.DEPOSIT,
                description="Default deposit plan",
                required_amount=calculate_basic_recovery(account.margin_level, account.used_margin, target),
                impact_percent=100.0,
                urgency=Urgency.HIGH,
                feasibility=0.8,
                instructions=("Deposit additional funds",),
            )
        logger.debug(
            "Recovery plan computed",
            extra={"account_id": account.account_id, "scenarios": len(ranked), "optimal": optimal.type.value},
        )
        return RecoveryPlan(
            scenarios=tuple(ranked),
            optimal=optimal,
            estimated_execution_minutes=EXECUTION_MINUTES.get(optimal.type, 15),
            success_probability=optimal.feasibility,
            risk_reduction=optimal.impact_percent,
        )


__all__ = [
    "EXECUTION_MINUTES",
    "RankedScenario",
    "RecoveryAccount",
    "RecoveryPlan",
    "RecoveryScenario",
    "RecoveryScenarioCalculator",
    "ScenarioType",
    "Urgency",
    "calculate_basic_recovery",
    "impact_percentage",
    "score_scenario",
    "urgency_from_margin_level",
]

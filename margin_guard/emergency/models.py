"""Records exchanged between the strategy registry and the execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from margin_guard.models import isoformat


class ActionType(str, Enum):
    IMMEDIATE_CLOSE = "immediate_close"
    PARTIAL_CLOSE = "partial_close"
    HEDGE_OPEN = "hedge_open"
    BALANCE_TRANSFER = "balance_transfer"


class StrategyScenario(str, Enum):
    SINGLE_ACCOUNT = "single_account"
    MULTI_ACCOUNT = "multi_account"
    CORRELATED_POSITIONS = "correlated_positions"


class ResponseStatus(str, Enum):
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not ResponseStatus.EXECUTING


@dataclass(frozen=True)
class ActionParameters:
    percentage: Optional[float] = None
    max_loss: Optional[float] = None
    hedge_ratio: Optional[float] = None
    amount: Optional[float] = None

    def to_payload(self) -> Dict[str, float]:
        return {
            key: value
            for key, value in (
                ("percentage", self.percentage),
                ("max_loss", self.max_loss),
                ("hedge_ratio", self.hedge_ratio),
                ("amount", self.amount),
            )
            if value is not None
        }


@dataclass(frozen=True)
class EmergencyAction:
    type: ActionType
    priority: int
    target_positions: Tuple[str, ...] = ()
    parameters: ActionParameters = field(default_factory=ActionParameters)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "priority": self.priority,
            "target_positions": list(self.target_positions),
            "parameters": self.parameters.to_payload(),
        }


@dataclass(frozen=True)
class SuccessCriteria:
    margin_level_target: float
    max_acceptable_loss: float
    timeout_minutes: float


@dataclass(frozen=True)
class EmergencyStrategy:
    """Ordered set of mitigating actions with a time and loss budget."""

    id: str
    name: str
    scenario_type: StrategyScenario
    actions: Tuple[EmergencyAction, ...]
    max_execution_time_ms: float
    success_criteria: SuccessCriteria
    description: str = ""

    def ordered_actions(self) -> List[EmergencyAction]:
        """Actions by descending priority; ties keep declaration order."""

        return sorted(self.actions, key=lambda action: -action.priority)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "scenario_type": self.scenario_type.value,
            "description": self.description,
            "actions": [action.to_payload() for action in self.actions],
            "max_execution_time_ms": self.max_execution_time_ms,
            "success_criteria": {
                "margin_level_target": self.success_criteria.margin_level_target,
                "max_acceptable_loss": self.success_criteria.max_acceptable_loss,
                "timeout_minutes": self.success_criteria.timeout_minutes,
            },
        }


@dataclass(frozen=True)
class EmergencyActionResult:
    action: EmergencyAction
    success: bool
    execution_time_ms: float
    result: Optional[Mapping[str, Any]] = None
    error: Optional[str] = None
    loss_reduction: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_payload(),
            "success": self.success,
            "execution_time_ms": self.execution_time_ms,
            "result": dict(self.result) if self.result is not None else None,
            "error": self.error,
            "loss_reduction": self.loss_reduction,
        }


@dataclass
class EmergencyResponse:
    """Lifecycle record of one strategy dispatch.

    Only the execution engine mutates a response.  ``status`` leaves
    ``executing`` at most once.
    """

    id: str
    account_id: str
    strategy: EmergencyStrategy
    start_time: float
    executed_actions: List[EmergencyActionResult] = field(default_factory=list)
    status: ResponseStatus = ResponseStatus.EXECUTING
    end_time: Optional[float] = None
    total_loss_avoidance: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cumulative_loss_reduction(self) -> float:
        return sum(result.loss_reduction or 0.0 for result in self.executed_actions)

    @property
    def success_rate(self) -> float:
        if not self.executed_actions:
            return 0.0
        return sum(1 for result in self.executed_actions if result.success) / len(self.executed_actions)

    @property
    def execution_time_ms(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time) * 1000.0

    def record(self, result: EmergencyActionResult) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Response {self.id} is already {self.status.value}")
        if len(self.executed_actions) >= len(self.strategy.actions):
            raise RuntimeError(f"Response {self.id} has no actions left to record")
        self.executed_actions.append(result)

    def finish(self, status: ResponseStatus, end_time: float) -> bool:
        """Move to a terminal ``status``; ``False`` if already terminal."""

        if not status.is_terminal:
            raise ValueError("A response can only finish with a terminal status")
        if self.is_terminal:
            return False
        self.status = status
        self.end_time = end_time
        self.total_loss_avoidance = self.cumulative_loss_reduction
        return True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "strategy": self.strategy.to_payload(),
            "executed_actions": [result.to_payload() for result in self.executed_actions],
            "status": self.status.value,
            "start_time": isoformat(self.start_time),
            "end_time": isoformat(self.end_time),
            "total_loss_avoidance": self.total_loss_avoidance,
        }


__all__ = [
    "ActionParameters",
    "ActionType",
    "EmergencyAction",
    "EmergencyActionResult",
    "EmergencyResponse",
    "EmergencyStrategy",
    "ResponseStatus",
    "StrategyScenario",
    "SuccessCriteria",
]

"""Process-wide emergency posture: level, suspended operations and recovery checklist.

A single :class:`EmergencyModeManager` owns the state.  Other components hold
a reference to it and only read through :meth:`EmergencyModeManager.state` and
:meth:`EmergencyModeManager.is_operation_allowed`; every transition goes
through the manager's methods.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from margin_guard.config.models import OPERATION_TYPES, EmergencyModeConfig
from margin_guard.events import EmergencyModeChanged, EventDispatcher
from margin_guard.models import isoformat

logger = logging.getLogger(__name__)


class EmergencyLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def escalated(self) -> Optional["EmergencyLevel"]:
        index = _LEVEL_ORDER.index(self)
        return _LEVEL_ORDER[index + 1] if index + 1 < len(_LEVEL_ORDER) else None

    def de_escalated(self) -> Optional["EmergencyLevel"]:
        index = _LEVEL_ORDER.index(self)
        return _LEVEL_ORDER[index - 1] if index > 0 else None


_LEVEL_ORDER: Tuple[EmergencyLevel, ...] = (
    EmergencyLevel.LOW,
    EmergencyLevel.MEDIUM,
    EmergencyLevel.HIGH,
    EmergencyLevel.CRITICAL,
)


class TriggerType(str, Enum):
    LOSSCUT = "losscut"
    MARGIN_CRITICAL = "margin_critical"
    SYSTEM_ERROR = "system_error"
    NETWORK_ISSUE = "network_issue"
    MANUAL = "manual"


class RecoveryActionType(str, Enum):
    POSITION_VALIDATION = "position_validation"
    MARGIN_CHECK = "margin_check"
    SYSTEM_HEALTH = "system_health"
    CONNECTIVITY_TEST = "connectivity_test"


class RecoveryResult(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


BASE_RECOVERY_MINUTES: Dict[EmergencyLevel, float] = {
    EmergencyLevel.LOW: 5,
    EmergencyLevel.MEDIUM: 15,
    EmergencyLevel.HIGH: 30,
    EmergencyLevel.CRITICAL: 60,
}

TRIGGER_RECOVERY_MULTIPLIERS: Dict[TriggerType, float] = {
    TriggerType.LOSSCUT: 1.5,
    TriggerType.SYSTEM_ERROR: 2.0,
}

_TRIGGER_REASONS: Dict[TriggerType, str] = {
    TriggerType.LOSSCUT: "Loss-cut detected",
    TriggerType.MARGIN_CRITICAL: "Margin level critical",
    TriggerType.SYSTEM_ERROR: "System error",
    TriggerType.NETWORK_ISSUE: "Network issue",
    TriggerType.MANUAL: "Manually activated",
}


@dataclass(frozen=True)
class EmergencyTrigger:
    type: TriggerType
    severity: EmergencyLevel
    account_id: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EmergencyModeState:
    is_active: bool = False
    level: Optional[EmergencyLevel] = None
    triggered_at: Optional[float] = None
    triggered_by: str = ""
    reason: str = ""
    affected_accounts: Tuple[str, ...] = ()
    suspended_operations: Tuple[str, ...] = ()
    allowed_operations: Tuple[str, ...] = ()
    auto_recovery_enabled: bool = False
    manual_intervention_required: bool = False
    estimated_recovery_time_minutes: Optional[float] = None
    deactivated_at: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "level": self.level.value if self.level else None,
            "triggered_at": isoformat(self.triggered_at),
            "triggered_by": self.triggered_by,
            "reason": self.reason,
            "affected_accounts": list(self.affected_accounts),
            "suspended_operations": list(self.suspended_operations),
            "allowed_operations": list(self.allowed_operations),
            "auto_recovery_enabled": self.auto_recovery_enabled,
            "manual_intervention_required": self.manual_intervention_required,
            "estimated_recovery_time_minutes": self.estimated_recovery_time_minutes,
            "deactivated_at": isoformat(self.deactivated_at),
        }


@dataclass
class RecoveryAction:
    id: str
    type: RecoveryActionType
    description: str
    required: bool
    result: Optional[RecoveryResult] = None
    executed_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.result is not None

    @property
    def succeeded(self) -> bool:
        return self.result is RecoveryResult.SUCCESS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "required": self.required,
            "completed": self.completed,
            "result": self.result.value if self.result else None,
            "executed_at": isoformat(self.executed_at),
            "error": self.error,
        }


RecoveryCheck = Callable[[RecoveryAction, EmergencyModeState], Union[bool, Awaitable[bool]]]
StateListener = Callable[[EmergencyModeState], None]


async def _always_passes(action: RecoveryAction, state: EmergencyModeState) -> bool:
    await asyncio.sleep(0)
    return True


def estimate_recovery_minutes(level: EmergencyLevel, trigger_type: TriggerType) -> float:
    minutes = BASE_RECOVERY_MINUTES[level] * TRIGGER_RECOVERY_MULTIPLIERS.get(trigger_type, 1.0)
    return float(round(minutes))


def build_recovery_actions(level: EmergencyLevel, trigger_type: TriggerType) -> List[RecoveryAction]:
    actions = [
        RecoveryAction(
            "position_validation", RecoveryActionType.POSITION_VALIDATION, "Validate open positions", True
        )
    ]
    if trigger_type in (TriggerType.LOSSCUT, TriggerType.MARGIN_CRITICAL):
        actions.append(RecoveryAction("margin_check", RecoveryActionType.MARGIN_CHECK, "Confirm margin levels", True))
    if level in (EmergencyLevel.HIGH, EmergencyLevel.CRITICAL):
        actions.append(
            RecoveryAction("system_health", RecoveryActionType.SYSTEM_HEALTH, "Run system health check", True)
        )
    actions.append(
        RecoveryAction("connectivity_test", RecoveryActionType.CONNECTIVITY_TEST, "Check connectivity", False)
    )
    return actions


def _reason_text(trigger: EmergencyTrigger) -> str:
    reason = _TRIGGER_REASONS.get(trigger.type, "Unknown reason")
    if trigger.account_id:
        reason += f" (account: {trigger.account_id})"
    margin_level = trigger.details.get("margin_level")
    if margin_level is not None:
        reason += f" margin level: {margin_level}%"
    return reason


class EmergencyModeManager:
    """Two-sided state machine: inactive, then low/medium/high/critical."""

    def __init__(
        self,
        config: Optional[EmergencyModeConfig] = None,
        *,
        dispatcher: Optional[EventDispatcher] = None,
        recovery_checks: Optional[Mapping[RecoveryActionType, RecoveryCheck]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = (config or EmergencyModeConfig()).validate()
        self._dispatcher = dispatcher
        self._checks: Dict[RecoveryActionType, RecoveryCheck] = dict(recovery_checks or {})
        self._clock = clock
        self._state = EmergencyModeState()
        self._history: List[EmergencyModeState] = []
        self._recovery_actions: List[RecoveryAction] = []
        self._listeners: List[StateListener] = []
        self._timers: Dict[str, asyncio.Task] = {}

    @property
    def state(self) -> EmergencyModeState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    def history(self) -> List[EmergencyModeState]:
        return list(self._history)

    def recovery_actions(self) -> List[RecoveryAction]:
        return list(self._recovery_actions)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self.remove_listener(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_recovery_check(self, action_type: RecoveryActionType, check: RecoveryCheck) -> None:
        self._checks[action_type] = check

    # transitions

    def activate(self, trigger: EmergencyTrigger, level: Optional[EmergencyLevel] = None) -> EmergencyModeState:
        level = level or trigger.severity
        previous = self._state
        if previous.is_active:
            self._history.append(replace(previous, deactivated_at=self._clock()))
        self._cancel_timers()

        auto_recovery = self.config.auto_recovery_enabled and level is not EmergencyLevel.CRITICAL
        self._state = EmergencyModeState(
            is_active=True,
            level=level,
            triggered_at=self._clock(),
            triggered_by=trigger.type.value,
            reason=_reason_text(trigger),
            affected_accounts=(trigger.account_id,) if trigger.account_id else (),
            suspended_operations=self._suspended_for(level),
            allowed_operations=self._allowed_for(level),
            auto_recovery_enabled=auto_recovery,
            manual_intervention_required=level is EmergencyLevel.CRITICAL or trigger.type is TriggerType.MANUAL,
            estimated_recovery_time_minutes=estimate_recovery_minutes(level, trigger.type),
        )
        self._recovery_actions = build_recovery_actions(level, trigger.type)
        logger.warning(
            "Emergency mode activated",
            extra={"level": level.value, "trigger": trigger.type.value, "account_id": trigger.account_id},
        )
        self._notify(self._state.reason)
        if auto_recovery:
            self._schedule_auto_recovery()
        return self._state

    def escalate(self) -> EmergencyModeState:
        state = self._state
        if not state.is_active or state.level is None:
            return state
        new_level = state.level.escalated()
        if new_level is None:
            return state
        changes: Dict[str, Any] = {}
        if new_level is EmergencyLevel.CRITICAL:
            changes = {"manual_intervention_required": True, "auto_recovery_enabled": False}
            self._cancel_timers()
        return self._change_level(new_level, "escalated", **changes)

    def de_escalate(self) -> EmergencyModeState:
        state = self._state
        if not state.is_active or state.level is None:
            return state
        new_level = state.level.de_escalated()
        if new_level is None:
            self.deactivate("auto_de_escalation")
            return self._state
        changes: Dict[str, Any] = {}
        if state.level is EmergencyLevel.CRITICAL:
            changes = {
                "manual_intervention_required": state.triggered_by == TriggerType.MANUAL.value,
                "auto_recovery_enabled": self.config.auto_recovery_enabled,
            }
        updated = self._change_level(new_level, "de-escalated", **changes)
        if changes.get("auto_recovery_enabled"):
            self._schedule_auto_recovery()
        return updated

    def deactivate(self, reason: str = "manual") -> bool:
        state = self._state
        if not state.is_active:
            logger.info("Emergency mode is not active")
            return False
        if state.manual_intervention_required and reason != "manual":
            logger.info("Manual intervention required; refusing to deactivate (%s)", reason)
            return False
        pending = [action.id for action in self._recovery_actions if action.required and not action.succeeded]
        if pending:
            logger.info("Required recovery actions outstanding: %s", ", ".join(pending))
            return False

        self._history.append(replace(state, deactivated_at=self._clock()))
        self._state = EmergencyModeState()
        self._recovery_actions = []
        self._cancel_timers(keep_current=True)
        logger.warning("Emergency mode deactivated", extra={"reason": reason})
        self._notify(reason)
        return True

    def is_operation_allowed(self, operation: str, account_id: Optional[str] = None) -> bool:
        state = self._state
        if not state.is_active:
            return True
        if account_id is not None and account_id in state.affected_accounts:
            return operation in state.allowed_operations
        return operation not in state.suspended_operations

    # recovery checklist

    async def execute_recovery_action(self, action_id: str) -> bool:
        action = next((item for item in self._recovery_actions if item.id == action_id), None)
        if action is None:
            raise KeyError(f"Recovery action not found: {action_id}")
        if action.succeeded:
            raise RuntimeError(f"Recovery action already completed: {action_id}")
        return await self._perform(action)

    async def execute_all_recovery_actions(self) -> int:
        """Run every outstanding action, then attempt the completion check."""

        succeeded = 0
        for action in [item for item in self._recovery_actions if not item.succeeded]:
            if await self._perform(action):
                succeeded += 1
        self._check_recovery_completion()
        return succeeded

    async def _perform(self, action: RecoveryAction) -> bool:
        action.executed_at = self._clock()
        check = self._checks.get(action.type, _always_passes)
        try:
            outcome = check(action, self._state)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            action.result = RecoveryResult.FAILED
            action.error = str(exc)
            logger.exception("Recovery action %s failed", action.id)
            return False
        action.result = RecoveryResult.SUCCESS if outcome else RecoveryResult.FAILED
        action.error = None if outcome else "check reported failure"
        logger.info("Recovery action %s: %s", action.id, action.result.value)
        return bool(outcome)

    def _check_recovery_completion(self) -> None:
        if not self._state.is_active or not self._state.auto_recovery_enabled:
            return
        if all(action.succeeded for action in self._recovery_actions if action.required):
            self._schedule("auto_deactivate", self.config.auto_deactivate_delay_seconds, self._auto_deactivate)

    async def _auto_deactivate(self) -> None:
        self.deactivate("auto_recovery")

    async def _auto_recover(self) -> None:
        if self._state.is_active and self._state.auto_recovery_enabled:
            await self.execute_all_recovery_actions()

    # timers

    def _schedule_auto_recovery(self) -> None:
        minutes = self._state.estimated_recovery_time_minutes
        if not minutes:
            return
        delay = min(minutes, self.config.auto_recovery_timeout_minutes) * 60
        self._schedule("auto_recovery", delay, self._auto_recover)

    def _schedule(self, name: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s timer not scheduled", name)
            return
        existing = self._timers.pop(name, None)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()

        async def _fire() -> None:
            await asyncio.sleep(delay)
            await callback()

        self._timers[name] = loop.create_task(_fire(), name=f"emergency-mode-{name}")

    def _cancel_timers(self, keep_current: bool = False) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for name, task in list(self._timers.items()):
            if keep_current and task is current:
                continue
            task.cancel()
            self._timers.pop(name, None)

    async def close(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for task in timers:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # helpers

    def _suspended_for(self, level: EmergencyLevel) -> Tuple[str, ...]:
        return tuple(self.config.suspended_operations_by_level.get(level.value, ()))

    def _allowed_for(self, level: EmergencyLevel) -> Tuple[str, ...]:
        suspended = set(self._suspended_for(level))
        return tuple(op for op in OPERATION_TYPES if op not in suspended)

    def _change_level(self, level: EmergencyLevel, verb: str, **changes: Any) -> EmergencyModeState:
        previous = self._state.level
        self._state = replace(
            self._state,
            level=level,
            suspended_operations=self._suspended_for(level),
            allowed_operations=self._allowed_for(level),
            **changes,
        )
        logger.warning(
            "Emergency level %s: %s -> %s", verb, previous.value if previous else None, level.value
        )
        self._notify(f"{verb} to {level.value}")
        return self._state

    def _notify(self, reason: str) -> None:
        state = self._state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Emergency mode listener failed")
        if self._dispatcher is not None:
            self._dispatcher.publish(
                EmergencyModeChanged(
                    is_active=state.is_active,
                    level=state.level.value if state.level else None,
                    reason=reason,
                    timestamp=self._clock(),
                )
            )

    def status(self) -> Dict[str, Any]:
        payload = self._state.to_payload()
        payload["recovery_actions"] = [action.to_payload() for action in self._recovery_actions]
        return payload


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


__all__ = [
    "BASE_RECOVERY_MINUTES",
    "EmergencyLevel",
    "EmergencyModeManager",
    "EmergencyModeState",
    "EmergencyTrigger",
    "RecoveryAction",
    "RecoveryActionType",
    "RecoveryResult",
    "TriggerType",
    "build_recovery_actions",
    "estimate_recovery_minutes",
]

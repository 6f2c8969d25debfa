"""Sequential execution of emergency strategies against the command channel."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from margin_guard.commands import CommandChannel, CommandRejected, DryRunCommandChannel, EmergencyCommand
from margin_guard.config.models import ExecutionConfig
from margin_guard.events import EventDispatcher, ResponseFinished
from margin_guard.metrics import MetricRegistry
from margin_guard.models import Position, RiskMonitoringState, RiskPredictions
from margin_guard.telemetry import COMMAND_CHANNEL_PREFIX, Telemetry

from .loss_minimizer import LossMinimizer, MinimizationResult, select_worst_positions
from .mode import EmergencyLevel, EmergencyModeManager, EmergencyTrigger, TriggerType
from .models import (
    ActionType,
    EmergencyAction,
    EmergencyActionResult,
    EmergencyResponse,
    EmergencyStrategy,
    ResponseStatus,
    StrategyScenario,
)
from .strategies import DynamicActionParameters, StrategyRegistry

logger = logging.getLogger(__name__)


def estimate_loss_reduction(action: EmergencyAction, state: RiskMonitoringState) -> float:
    """Loss avoided by ``action`` when the channel does not measure it."""

    params = action.parameters
    if action.type is ActionType.IMMEDIATE_CLOSE:
        return params.max_loss or 0.0
    if action.type is ActionType.PARTIAL_CLOSE:
        percentage = params.percentage if params.percentage is not None else 50.0
        return (params.max_loss or 0.0) * percentage / 100
    if action.type is ActionType.HEDGE_OPEN:
        return state.used_margin * 0.1
    return params.amount or 0.0


def related_positions(positions: Sequence[Position]) -> List[str]:
    """Ids of positions sharing a symbol with at least one other position."""

    by_symbol: Dict[str, List[str]] = {}
    for position in positions:
        by_symbol.setdefault(position.symbol, []).append(position.id)
    return [position_id for ids in by_symbol.values() if len(ids) > 1 for position_id in ids]


class EmergencyActionExecutor:
    """Run one response per account, actions strictly in priority order.

    Each action is sent through the command channel under the telemetry
    timeout/retry rules.  A failing action is recorded and the next one runs.
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        mode: EmergencyModeManager,
        *,
        channel: Optional[CommandChannel] = None,
        dispatcher: Optional[EventDispatcher] = None,
        minimizer: Optional[LossMinimizer] = None,
        config: Optional[ExecutionConfig] = None,
        telemetry: Optional[Telemetry] = None,
        metrics: Optional[MetricRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ExecutionConfig()
        self._registry = registry
        self._mode = mode
        self._channel: CommandChannel = channel if channel is not None and not self.config.dry_run else DryRunCommandChannel()
        self._dispatcher = dispatcher
        self._minimizer = minimizer or LossMinimizer()
        self._metrics = metrics or MetricRegistry()
        self._telemetry = telemetry or Telemetry(policy=self.config.resilience, metrics=self._metrics)
        self._clock = clock
        self._active: Dict[str, EmergencyResponse] = {}
        self._history: List[EmergencyResponse] = []

    def active_responses(self) -> List[EmergencyResponse]:
        return list(self._active.values())

    def active_response(self, account_id: str) -> Optional[EmergencyResponse]:
        return self._active.get(account_id)

    def history(self) -> List[EmergencyResponse]:
        return list(self._history)

    def find_response(self, response_id: str) -> Optional[EmergencyResponse]:
        for response in list(self._active.values()) + self._history:
            if response.id == response_id:
                return response
        return None

    def determine_scenario(self, related: Sequence[str]) -> StrategyScenario:
        if len(related) > self.config.correlated_position_threshold:
            return StrategyScenario.CORRELATED_POSITIONS
        return StrategyScenario.SINGLE_ACCOUNT

    async def handle_loss_cut_detection(
        self,
        account_id: str,
        state: RiskMonitoringState,
        *,
        positions: Sequence[Position] = (),
        related: Optional[Sequence[str]] = None,
        dynamic_params: Optional[DynamicActionParameters] = None,
    ) -> EmergencyResponse:
        logger.critical("Loss-cut detected for %s at %.1f%%", account_id, state.margin_level)
        self._mode.activate(
            EmergencyTrigger(
                type=TriggerType.LOSSCUT,
                severity=EmergencyLevel.CRITICAL,
                account_id=account_id,
                details={"margin_level": round(state.margin_level, 2)},
            )
        )
        if related is None:
            related = related_positions(positions)
        scenario = self.determine_scenario(related)
        strategy = self._registry.select(scenario, state.risk_level, dynamic_params)
        return await self.execute(account_id, strategy, state, positions=positions)

    async def handle_critical_margin_level(
        self,
        account_id: str,
        state: RiskMonitoringState,
        *,
        positions: Sequence[Position] = (),
    ) -> Optional[EmergencyResponse]:
        if state.margin_level > self.config.critical_margin_level:
            return None
        logger.warning("Critical margin level %.1f%% for %s", state.margin_level, account_id)
        state = replace(
            state,
            predictions=RiskPredictions(time_to_critical_minutes=0.0, required_recovery=state.used_margin * 0.3),
        )
        return await self.execute(account_id, self._registry.preventive(), state, positions=positions)

    async def execute(
        self,
        account_id: str,
        strategy: EmergencyStrategy,
        state: RiskMonitoringState,
        *,
        positions: Sequence[Position] = (),
    ) -> EmergencyResponse:
        existing = self._active.get(account_id)
        if existing is not None:
            logger.info("Response %s already running for %s", existing.id, account_id)
            return existing

        if positions:
            strategy = self._bind_targets(strategy, positions, state)
        response = EmergencyResponse(
            id=f"emergency_{account_id}_{uuid.uuid4().hex[:12]}",
            account_id=account_id,
            strategy=strategy,
            start_time=self._clock(),
        )
        self._active[account_id] = response
        logger.info(
            "Executing emergency strategy",
            extra={"account_id": account_id, "response_id": response.id, "strategy": strategy.id},
        )

        try:
            for action in strategy.ordered_actions():
                result = await self._execute_action(account_id, action, state)
                if response.is_terminal:
                    break
                response.record(result)
                if response.cumulative_loss_reduction >= strategy.success_criteria.max_acceptable_loss:
                    self._finalize(response, ResponseStatus.COMPLETED)
                    break
                elapsed_ms = (self._clock() - response.start_time) * 1000
                if elapsed_ms > strategy.max_execution_time_ms:
                    self._finalize(response, ResponseStatus.TIMEOUT)
                    break
        finally:
            self._finalize(response, ResponseStatus.FAILED)
        return response

    async def _execute_action(
        self, account_id: str, action: EmergencyAction, state: RiskMonitoringState
    ) -> EmergencyActionResult:
        params = action.parameters
        command = EmergencyCommand(
            account_id=account_id,
            action_type=action.type.value,
            target_positions=action.target_positions,
            percentage=params.percentage,
            max_loss=params.max_loss,
            hedge_ratio=params.hedge_ratio,
            amount=params.amount,
        )
        started = time.perf_counter()
        try:
            report: Mapping[str, Any] = await self._telemetry.execute_with_resilience(
                f"{COMMAND_CHANNEL_PREFIX}{action.type.value}",
                lambda: self._channel.dispatch(command),
                idempotent=False,
            ) or {}
            if not report.get("success", True):
                raise CommandRejected(str(report.get("error", "rejected by command channel")), report)
        except CommandRejected as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._metrics.inc("emergency_actions_total", labels={"type": action.type.value, "outcome": "rejected"})
            logger.error("Emergency action %s rejected for %s: %s", action.type.value, account_id, exc)
            return EmergencyActionResult(
                action=action,
                success=False,
                execution_time_ms=elapsed_ms,
                result=exc.report or None,
                error=str(exc),
            )
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.exception("Emergency action %s failed for %s", action.type.value, account_id)
            self._metrics.inc("emergency_actions_total", labels={"type": action.type.value, "outcome": "error"})
            return EmergencyActionResult(
                action=action, success=False, execution_time_ms=elapsed_ms, error=str(exc) or type(exc).__name__
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._metrics.observe("emergency_action_seconds", elapsed_ms / 1000, labels={"type": action.type.value})
        measured = report.get("loss_reduction")
        loss_reduction = float(measured) if measured is not None else estimate_loss_reduction(action, state)
        self._metrics.inc("emergency_actions_total", labels={"type": action.type.value, "outcome": "success"})
        return EmergencyActionResult(
            action=action,
            success=True,
            execution_time_ms=elapsed_ms,
            result=report,
            loss_reduction=loss_reduction,
        )

    def _bind_targets(
        self, strategy: EmergencyStrategy, positions: Sequence[Position], state: RiskMonitoringState
    ) -> EmergencyStrategy:
        plan: MinimizationResult = self._minimizer.minimize(positions, state)
        closes = plan.positions_to_close or tuple(p.id for p in select_worst_positions(positions))
        reductions = tuple(item.position_id for item in plan.positions_to_reduce) or closes
        hedged_symbols = {hedge.symbol for hedge in plan.hedge_positions}
        hedges = tuple(p.id for p in positions if p.symbol in hedged_symbols) or tuple(p.id for p in positions)
        targets = {
            ActionType.IMMEDIATE_CLOSE: closes,
            ActionType.PARTIAL_CLOSE: reductions,
            ActionType.HEDGE_OPEN: hedges,
            ActionType.BALANCE_TRANSFER: (),
        }
        actions = tuple(
            action if action.target_positions else replace(action, target_positions=targets[action.type])
            for action in strategy.actions
        )
        return replace(strategy, actions=actions)

    def _finalize(self, response: EmergencyResponse, status: ResponseStatus) -> bool:
        if not response.finish(status, self._clock()):
            return False
        if self._active.get(response.account_id) is response:
            del self._active[response.account_id]
        self._history.append(response)
        self._metrics.inc("emergency_responses_total", labels={"status": status.value})
        log = logger.info if status is ResponseStatus.COMPLETED else logger.warning
        log(
            "Emergency response finished",
            extra={
                "account_id": response.account_id,
                "response_id": response.id,
                "status": status.value,
                "total_loss_avoidance": response.total_loss_avoidance,
            },
        )
        if self._dispatcher is not None:
            self._dispatcher.publish(
                ResponseFinished(
                    account_id=response.account_id,
                    response_id=response.id,
                    status=status.value,
                    total_loss_avoidance=response.total_loss_avoidance or 0.0,
                    timestamp=response.end_time or self._clock(),
                )
            )
        return True

    def stop(self, account_id: Optional[str] = None) -> int:
        """Fail responses still executing, all of them or one account's.

        Returns how many were stopped.
        """

        stopped = 0
        for response in list(self._active.values()):
            if account_id is not None and response.account_id != account_id:
                continue
            if self._finalize(response, ResponseStatus.FAILED):
                stopped += 1
        return stopped


__all__ = ["EmergencyActionExecutor", "estimate_loss_reduction", "related_positions"]

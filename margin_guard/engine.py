"""Top-level orchestration wiring monitoring, forecasting and emergency response."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union, cast

from .commands import CommandChannel, MarginDataSource, PositionService
from .config.models import MarginGuardConfig
from .emergency.effect_analyzer import EffectAnalyzer, EffectMeasurement
from .emergency.executor import EmergencyActionExecutor
from .emergency.loss_minimizer import LossMinimizer
from .emergency.mode import EmergencyModeManager
from .emergency.models import EmergencyResponse
from .emergency.strategies import DynamicActionParameters, StrategyRegistry
from .events import Event, EventDispatcher, ForecastUpdated, LossCutDetected, ThresholdBreached
from .forecasting.engine import ForecastEngine
from .metrics import MetricRegistry, Timer
from .models import AccountMarginInfo, Position, RiskLevel, RiskMonitoringState
from .monitoring.margin_monitor import MarginLevelMonitor
from .monitoring.sample_store import MarginSampleStore
from .monitoring.state_manager import RiskStateManager
from .recovery import RecoveryAccount, RecoveryPlan, RecoveryScenarioCalculator
from .telemetry import Telemetry

logger = logging.getLogger(__name__)

AccountSpec = Union[Mapping[str, Optional[str]], Iterable[str]]


class MarginGuardEngine:
    """Own one instance of every component and route events between them.

    Loss-cut detections and critical threshold breaches start an emergency
    response on the running event loop.  Responses for the same account are
    rate limited by ``execution.response_cooldown_seconds``.
    """

    def __init__(
        self,
        config: Optional[MarginGuardConfig] = None,
        *,
        source: Optional[MarginDataSource] = None,
        positions: Optional[PositionService] = None,
        channel: Optional[CommandChannel] = None,
        dispatcher: Optional[EventDispatcher] = None,
        metrics: Optional[MetricRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or MarginGuardConfig()
        self._source = source
        self._positions = positions
        self._clock = clock
        self.metrics = metrics or MetricRegistry()
        self.dispatcher = dispatcher or EventDispatcher()
        self.telemetry = Telemetry(policy=self.config.execution.resilience, metrics=self.metrics, clock=clock)

        self.store = MarginSampleStore(
            retention_seconds=self.config.forecast.history_retention_seconds,
            trend_window=self.config.monitor.trend_history_size,
        )
        self.state_manager = RiskStateManager(
            self.dispatcher,
            thresholds=self.config.thresholds,
            clock=clock,
            stale_after_seconds=self.config.monitor.stale_after_seconds,
        )
        self.monitor = MarginLevelMonitor(
            self.store,
            self.dispatcher,
            source=source,
            state_manager=self.state_manager,
            config=self.config.monitor,
            thresholds=self.config.thresholds,
            metrics=self.metrics,
        )
        self.forecast = ForecastEngine(
            self.store,
            self.dispatcher,
            config=self.config.forecast,
            thresholds=self.config.thresholds,
            metrics=self.metrics,
            clock=clock,
        )
        self.recovery = RecoveryScenarioCalculator(target_margin_level=self.config.forecast.target_margin_level)
        self.minimizer = LossMinimizer(self.config.loss_minimization)
        self.registry = StrategyRegistry()
        self.mode = EmergencyModeManager(self.config.emergency_mode, dispatcher=self.dispatcher, clock=clock)
        self.executor = EmergencyActionExecutor(
            self.registry,
            self.mode,
            channel=channel,
            dispatcher=self.dispatcher,
            minimizer=self.minimizer,
            config=self.config.execution,
            telemetry=self.telemetry,
            metrics=self.metrics,
            clock=clock,
        )
        self.analyzer = EffectAnalyzer(clock=clock)

        self._brokers: Dict[str, str] = {}
        self._known_positions: Dict[str, List[Position]] = {}
        self._last_response: Dict[str, float] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribers = [
            self.dispatcher.subscribe(LossCutDetected.kind, self._on_loss_cut),
            self.dispatcher.subscribe(ThresholdBreached.kind, self._on_threshold),
            self.dispatcher.subscribe(ForecastUpdated.kind, self._on_forecast),
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, accounts: AccountSpec) -> None:
        """Begin polling ``accounts`` (ids, or a mapping of id to broker name)."""

        brokers = dict(accounts) if isinstance(accounts, Mapping) else {account: None for account in accounts}
        for account_id, broker in brokers.items():
            self.register_account(account_id, broker=broker)
            self.monitor.start_monitoring(account_id, broker=broker)
        self.forecast.start()
        logger.info("Margin guard started", extra={"accounts": sorted(brokers)})

    async def stop(self) -> None:
        await self.monitor.stop_all()
        await self.forecast.stop()
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        stopped = self.executor.stop()
        await self.mode.close()
        logger.info("Margin guard stopped", extra={"responses_stopped": stopped})

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def register_account(self, account_id: str, *, broker: Optional[str] = None) -> None:
        if not broker:
            return
        self._brokers[account_id] = broker
        self.state_manager.register_broker(account_id, broker)
        self.forecast.set_loss_cut_level(account_id, self.config.thresholds.loss_cut_for(broker))

    async def remove_account(self, account_id: str) -> None:
        """Stop watching ``account_id`` and drop everything kept for it.

        A response still running for the account is cancelled and recorded as
        failed.
        """

        await self.monitor.remove_account(account_id)
        name = f"emergency-response-{account_id}"
        pending = [task for task in self._tasks if task.get_name() == name and not task.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        stopped = self.executor.stop(account_id)
        self.store.remove_account(account_id)
        self.state_manager.remove_account(account_id)
        self.forecast.remove_account(account_id)
        self._brokers.pop(account_id, None)
        self._known_positions.pop(account_id, None)
        self._last_response.pop(account_id, None)
        logger.info("Account removed", extra={"account_id": account_id, "responses_stopped": stopped})

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def ingest(self, info: AccountMarginInfo) -> List[Event]:
        """Feed a reading that arrived outside the polling loop."""

        return self.monitor.process(info)

    def ingest_mapping(self, payload: Mapping[str, Any]) -> List[Event]:
        return self.ingest(AccountMarginInfo.from_mapping(payload))

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------
    def _on_loss_cut(self, event: Event) -> None:
        account_id = cast(LossCutDetected, event).account_id
        if self._claim_response(account_id):
            self._spawn(self.respond_to_loss_cut(account_id), account_id)

    def _on_threshold(self, event: Event) -> None:
        breach = cast(ThresholdBreached, event)
        if breach.band != "critical" or breach.margin_level > self.config.execution.critical_margin_level:
            return
        # Band events precede the state update: the entering reading and
        # loss-cut readings belong to the loss-cut path.
        previous = self.state_manager.get_state(breach.account_id)
        if previous is None or previous.risk_level is not RiskLevel.CRITICAL:
            return
        if breach.margin_level <= self.config.thresholds.loss_cut_for(self._brokers.get(breach.account_id)):
            return
        if self._claim_response(breach.account_id):
            self._spawn(self.respond_to_critical_level(breach.account_id), breach.account_id)

    def _on_forecast(self, event: Event) -> None:
        forecast = self.forecast.latest(cast(ForecastUpdated, event).account_id)
        if forecast is not None:
            self.state_manager.apply_forecast(forecast)

    def _claim_response(self, account_id: str) -> bool:
        now = self._clock()
        last = self._last_response.get(account_id)
        if last is not None and now - last < self.config.execution.response_cooldown_seconds:
            logger.info("Emergency response for %s suppressed by cooldown", account_id)
            self.metrics.inc("emergency_responses_suppressed", labels={"account_id": account_id})
            return False
        self._last_response[account_id] = now
        return True

    def _spawn(self, coro: Coroutine[Any, Any, Any], account_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._last_response.pop(account_id, None)
            logger.warning("No running event loop; emergency response for %s skipped", account_id)
            return
        task = loop.create_task(coro, name=f"emergency-response-{account_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Emergency response task failed", exc_info=exc)

    async def wait_for_responses(self) -> None:
        """Wait until every spawned response task has finished."""

        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------
    async def respond_to_loss_cut(self, account_id: str) -> Optional[EmergencyResponse]:
        before = self.state_manager.get_state(account_id)
        if before is None:
            logger.warning("Loss-cut reported for unknown account %s", account_id)
            return None
        positions = await self.fetch_positions(account_id)
        response = await self.executor.handle_loss_cut_detection(
            account_id,
            before,
            positions=positions,
            dynamic_params=DynamicActionParameters.from_state(before, positions) if positions else None,
        )
        await self._measure(response, before)
        return response

    async def respond_to_critical_level(self, account_id: str) -> Optional[EmergencyResponse]:
        before = self.state_manager.get_state(account_id)
        if before is None:
            return None
        positions = await self.fetch_positions(account_id)
        response = await self.executor.handle_critical_margin_level(account_id, before, positions=positions)
        if response is not None:
            await self._measure(response, before)
        return response

    async def fetch_positions(self, account_id: str) -> List[Position]:
        if self._positions is None:
            return list(self._known_positions.get(account_id, []))
        try:
            with Timer(self.metrics, "position_fetch_seconds", labels={"account_id": account_id}):
                positions = list(
                    await self.telemetry.execute_with_resilience(
                        "positions", lambda: self._positions.fetch_positions(account_id)  # type: ignore[union-attr]
                    )
                    or []
                )
        except Exception as exc:
            logger.warning("Position fetch failed for %s: %s", account_id, exc)
            return list(self._known_positions.get(account_id, []))
        self._known_positions[account_id] = positions
        return positions

    async def _measure(self, response: EmergencyResponse, before: RiskMonitoringState) -> EffectMeasurement:
        after = await self._refresh_state(response.account_id) or before
        return self.analyzer.measure(response, before, after)

    async def _refresh_state(self, account_id: str) -> Optional[RiskMonitoringState]:
        if self._source is not None:
            try:
                info = await self.telemetry.execute_with_resilience(
                    "margin", lambda: self._source.fetch_margin_info(account_id)  # type: ignore[union-attr]
                )
            except Exception as exc:
                logger.warning("Post-response margin refresh failed for %s: %s", account_id, exc)
            else:
                self.ingest(info)
        return self.state_manager.get_state(account_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def recovery_plan(self, account_id: str, *, target: Optional[float] = None) -> RecoveryPlan:
        """Rank recovery scenarios, using every other account as a transfer donor."""

        state = self.state_manager.get_state(account_id)
        if state is None:
            raise KeyError(account_id)
        account = RecoveryAccount.from_state(
            state, self._known_positions.get(account_id, ()), broker=self._brokers.get(account_id, "")
        )
        others: Sequence[RecoveryAccount] = [
            RecoveryAccount.from_state(other, broker=self._brokers.get(other_id, ""))
            for other_id, other in self.state_manager.all_states().items()
            if other_id != account_id
        ]
        return self.recovery.plan(account, others, target)

    def now(self) -> float:
        return self._clock()

    def status(self) -> Dict[str, Any]:
        return {
            "monitoring": self.state_manager.monitoring_status(),
            "monitor": self.monitor.statistics(),
            "risk": self.state_manager.statistics(),
            "emergency_mode": self.mode.status(),
            "active_responses": len(self.executor.active_responses()),
            "prediction_metrics": self.forecast.prediction_metrics().to_payload(),
        }


__all__ = ["MarginGuardEngine"]

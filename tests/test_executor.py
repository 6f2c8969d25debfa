import asyncio

import pytest

from margin_guard.commands import CommandRejected, DryRunCommandChannel
from margin_guard.config.models import ExecutionConfig
from margin_guard.emergency.executor import EmergencyActionExecutor, estimate_loss_reduction, related_positions
from margin_guard.emergency.mode import EmergencyLevel, EmergencyModeManager
from margin_guard.emergency.models import (
    ActionParameters,
    ActionType,
    EmergencyAction,
    ResponseStatus,
    StrategyScenario,
)
from margin_guard.emergency.strategies import StrategyRegistry, single_account_critical_strategy
from margin_guard.events import EventDispatcher, ResponseFinished
from margin_guard.metrics import MetricRegistry
from margin_guard.models import Position, RiskMonitoringState
from margin_guard.telemetry import ResiliencePolicy


class RecordingChannel:
    def __init__(self, report=None, fail_on=(), on_dispatch=None):
        self.report = report if report is not None else {"success": True}
        self.fail_on = set(fail_on)
        self.on_dispatch = on_dispatch
        self.commands = []

    async def dispatch(self, command):
        self.commands.append(command)
        if self.on_dispatch is not None:
            self.on_dispatch(command)
        if command.action_type in self.fail_on:
            raise RuntimeError(f"{command.action_type} unavailable")
        return dict(self.report)


class BlockingChannel:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def dispatch(self, command):
        self.entered.set()
        await self.release.wait()
        return {"success": True}


def _state(margin_level=40.0, used=1000.0, account_id="acct-1"):
    equity = used * margin_level / 100
    return RiskMonitoringState(
        account_id=account_id,
        margin_level=margin_level,
        free_margin=max(0.0, equity - used),
        used_margin=used,
        balance=1000.0,
        equity=equity,
        bonus_amount=0.0,
        last_update=0.0,
        loss_cut_level=20.0,
    )


def _executor(channel, *, clock=lambda: 100.0, dispatcher=None, metrics=None, **config):
    config.setdefault("resilience", ResiliencePolicy(max_retries=0))
    mode = EmergencyModeManager(clock=clock)
    executor = EmergencyActionExecutor(
        StrategyRegistry(),
        mode,
        channel=channel,
        dispatcher=dispatcher,
        config=ExecutionConfig(**config),
        metrics=metrics,
        clock=clock,
    )
    return executor, mode


def test_estimate_loss_reduction_per_action_type():
    state = _state(used=2000.0)

    def action(action_type, **params):
        return EmergencyAction(type=action_type, priority=1, parameters=ActionParameters(**params))

    assert estimate_loss_reduction(action(ActionType.IMMEDIATE_CLOSE, max_loss=500), state) == 500
    assert estimate_loss_reduction(action(ActionType.PARTIAL_CLOSE, max_loss=300, percentage=75), state) == 225
    assert estimate_loss_reduction(action(ActionType.PARTIAL_CLOSE, max_loss=300), state) == 150
    assert estimate_loss_reduction(action(ActionType.HEDGE_OPEN, hedge_ratio=1.0), state) == pytest.approx(200.0)
    assert estimate_loss_reduction(action(ActionType.BALANCE_TRANSFER, amount=750), state) == 750


def test_related_positions_share_a_symbol():
    positions = [
        Position("a", "EURUSD", "buy", 1.0, 1.0, 1.0, -5.0, 10.0),
        Position("b", "EURUSD", "sell", 1.0, 1.0, 1.0, 5.0, 10.0),
        Position("c", "USDJPY", "buy", 1.0, 1.0, 1.0, 1.0, 10.0),
    ]

    assert related_positions(positions) == ["a", "b"]


def test_actions_run_sequentially_by_priority_and_fail_when_criteria_unmet():
    channel = RecordingChannel()
    executor, _ = _executor(channel)

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert [command.action_type for command in channel.commands] == [
        "immediate_close",
        "partial_close",
        "hedge_open",
    ]
    assert response.status is ResponseStatus.FAILED
    # 500 + 300 * 75% + 10% of used margin
    assert response.total_loss_avoidance == pytest.approx(825.0)
    assert executor.active_responses() == []
    assert executor.history() == [response]


def test_response_completes_once_cumulative_reduction_meets_budget():
    channel = RecordingChannel(report={"success": True, "loss_reduction": 600.0})
    executor, _ = _executor(channel)

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert response.status is ResponseStatus.COMPLETED
    assert len(response.executed_actions) == 2
    assert response.total_loss_avoidance == pytest.approx(1200.0)


def test_failing_action_is_recorded_and_execution_continues():
    metrics = MetricRegistry()
    channel = RecordingChannel(fail_on={"partial_close"})
    executor, _ = _executor(channel, metrics=metrics)

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    results = response.executed_actions
    assert [result.success for result in results] == [True, False, True]
    assert "partial_close unavailable" in results[1].error
    assert results[1].loss_reduction is None
    assert response.total_loss_avoidance == pytest.approx(600.0)
    assert metrics.counter("emergency_actions_total", labels={"type": "partial_close", "outcome": "error"}) == 1


def test_rejected_report_marks_action_unsuccessful():
    channel = RecordingChannel(report={"success": False, "error": "market closed"})
    executor, _ = _executor(channel)

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert all(not result.success for result in response.executed_actions)
    assert response.executed_actions[0].error == "market closed"
    assert response.status is ResponseStatus.FAILED


def test_elapsed_budget_marks_timeout():
    now = [100.0]

    def advance(command):
        now[0] += 40.0

    channel = RecordingChannel(on_dispatch=advance)
    executor, _ = _executor(channel, clock=lambda: now[0])

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert response.status is ResponseStatus.TIMEOUT
    assert len(response.executed_actions) == 1
    assert response.end_time == pytest.approx(140.0)


def test_loss_cut_detection_activates_emergency_mode_first():
    channel = RecordingChannel()
    dispatcher = EventDispatcher()
    executor, mode = _executor(channel, dispatcher=dispatcher)

    response = asyncio.run(executor.handle_loss_cut_detection("acct-1", _state(15.0)))

    assert mode.is_active
    assert mode.state.level is EmergencyLevel.CRITICAL
    assert mode.state.affected_accounts == ("acct-1",)
    assert response.strategy.id == "single_critical"
    finished = dispatcher.history(ResponseFinished.kind)
    assert [event.response_id for event in finished] == [response.id]


def test_loss_cut_detection_prefers_dynamic_parameters():
    from margin_guard.emergency.strategies import DynamicActionParameters

    executor, _ = _executor(RecordingChannel())
    params = DynamicActionParameters.from_state(_state(15.0))

    response = asyncio.run(executor.handle_loss_cut_detection("acct-1", _state(15.0), dynamic_params=params))

    assert response.strategy.id.startswith("dynamic_")


def test_many_related_positions_select_correlated_strategy():
    executor, _ = _executor(RecordingChannel(), correlated_position_threshold=2)

    assert executor.determine_scenario(["a", "b", "c"]) is StrategyScenario.CORRELATED_POSITIONS
    assert executor.determine_scenario(["a", "b"]) is StrategyScenario.SINGLE_ACCOUNT


def test_positions_are_bound_to_action_targets():
    channel = RecordingChannel()
    executor, _ = _executor(channel)
    positions = [
        Position(f"p{index}", "EURUSD", "buy", 1.0, 1.0, 1.0, -10.0 * (index + 1), 200.0) for index in range(5)
    ]

    asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state(), positions=positions))

    targets = {command.action_type: command.target_positions for command in channel.commands}
    assert targets["immediate_close"] == ("p4", "p3")
    assert targets["partial_close"] == ("p4", "p3")
    assert set(targets["hedge_open"]) == {f"p{index}" for index in range(5)}


def test_critical_level_response_only_at_or_below_configured_level():
    executor, _ = _executor(RecordingChannel())

    assert asyncio.run(executor.handle_critical_margin_level("acct-1", _state(60.0))) is None
    response = asyncio.run(executor.handle_critical_margin_level("acct-1", _state(45.0)))

    assert response.strategy.id == "preventive_critical"


def test_dry_run_routes_commands_to_recording_channel():
    channel = RecordingChannel()
    executor, _ = _executor(channel, dry_run=True)

    asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert channel.commands == []
    assert isinstance(executor._channel, DryRunCommandChannel)
    assert len(executor._channel.dispatched) == 3


def test_one_active_response_per_account_and_stop_fails_it():
    async def scenario():
        channel = BlockingChannel()
        executor, _ = _executor(channel)
        first = asyncio.create_task(executor.execute("acct-1", single_account_critical_strategy(), _state()))
        await channel.entered.wait()

        duplicate = await executor.execute("acct-1", single_account_critical_strategy(), _state())
        active = executor.active_response("acct-1")
        stopped = executor.stop()
        channel.release.set()
        response = await first
        return duplicate, active, stopped, response, executor

    duplicate, active, stopped, response, executor = asyncio.run(scenario())

    assert duplicate is response
    assert active is response
    assert stopped == 1
    assert response.status is ResponseStatus.FAILED
    assert response.executed_actions == []
    assert executor.history() == [response]
    assert executor.find_response(response.id) is response


def test_channel_raising_command_rejected_keeps_its_report():
    metrics = MetricRegistry()

    class RefusingChannel:
        async def dispatch(self, command):
            raise CommandRejected("insufficient liquidity", {"code": 17})

    executor, _ = _executor(RefusingChannel(), metrics=metrics)

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    first = response.executed_actions[0]
    assert first.success is False
    assert first.error == "insufficient liquidity"
    assert first.result == {"code": 17}
    assert metrics.counter("emergency_actions_total", labels={"type": "immediate_close", "outcome": "rejected"}) == 1
    assert metrics.counter("emergency_actions_total", labels={"type": "immediate_close", "outcome": "error"}) == 0


def test_failed_command_is_not_resent_when_retries_are_configured():
    channel = RecordingChannel(fail_on={"immediate_close"})
    executor, _ = _executor(channel, resilience=ResiliencePolicy(max_retries=3, retry_backoff=0.0))

    asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    sent = [command.action_type for command in channel.commands]
    assert sent == ["immediate_close", "partial_close", "hedge_open"]


def test_budget_met_on_an_overrunning_action_completes_rather_than_times_out():
    now = [100.0]

    def advance(command):
        now[0] += 40.0

    channel = RecordingChannel(report={"success": True, "loss_reduction": 1000.0}, on_dispatch=advance)
    executor, _ = _executor(channel, clock=lambda: now[0])

    response = asyncio.run(executor.execute("acct-1", single_account_critical_strategy(), _state()))

    assert response.end_time - response.start_time > response.strategy.max_execution_time_ms / 1000
    assert response.status is ResponseStatus.COMPLETED
    assert len(response.executed_actions) == 1


def test_stop_for_one_account_leaves_other_responses_running():
    async def scenario():
        channel = BlockingChannel()
        executor, _ = _executor(channel)
        first = asyncio.create_task(executor.execute("acct-1", single_account_critical_strategy(), _state()))
        second = asyncio.create_task(
            executor.execute("acct-2", single_account_critical_strategy(), _state(account_id="acct-2"))
        )
        await channel.entered.wait()
        await asyncio.sleep(0)

        stopped = executor.stop("acct-1")
        still_active = [response.account_id for response in executor.active_responses()]
        channel.release.set()
        return stopped, still_active, await first, await second

    stopped, still_active, first, second = asyncio.run(scenario())

    assert stopped == 1
    assert still_active == ["acct-2"]
    assert first.status is ResponseStatus.FAILED
    assert len(second.executed_actions) == 3

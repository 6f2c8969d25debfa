import pytest

from margin_guard.emergency.models import (
    ActionType,
    EmergencyActionResult,
    EmergencyResponse,
    ResponseStatus,
    StrategyScenario,
)
from margin_guard.emergency.strategies import (
    DEFAULT_STRATEGY_KEY,
    DynamicActionParameters,
    StrategyNotFoundError,
    StrategyRegistry,
    calculate_risk_score,
    generate_dynamic_strategy,
    preventive_critical_strategy,
    single_account_critical_strategy,
    strategy_templates,
)
from margin_guard.models import Position, RiskLevel, RiskMonitoringState


def _params(margin_level, *, balance=1000.0, pl=0.0, positions=1, used=1000.0, free=1000.0):
    return DynamicActionParameters(
        account_balance=balance,
        margin_level=margin_level,
        position_count=positions,
        total_profit_loss=pl,
        used_margin=used,
        free_margin=free,
    )


def test_templates_are_sorted_by_descending_priority():
    for template in strategy_templates():
        priorities = [action.priority for action in template.strategy.actions]
        assert priorities == sorted(priorities, reverse=True)


def test_timeout_minutes_follow_execution_budget():
    strategy = preventive_critical_strategy()

    assert strategy.max_execution_time_ms == 60000
    assert strategy.success_criteria.timeout_minutes == pytest.approx(1.0)
    assert strategy.success_criteria.margin_level_target == 150
    assert [action.type for action in strategy.actions] == [ActionType.HEDGE_OPEN, ActionType.PARTIAL_CLOSE]


@pytest.mark.parametrize(
    "params, expected_score",
    [
        (_params(250.0), 0),
        (_params(180.0, pl=-30.0), 2),
        (_params(80.0, pl=-200.0, free=150.0), 7),
        (_params(30.0, pl=-200.0, positions=25, free=10.0), 10),
    ],
)
def test_risk_score(params, expected_score):
    assert calculate_risk_score(params) == expected_score


def test_risk_score_handles_zero_balance_and_used_margin():
    assert calculate_risk_score(_params(250.0, balance=0.0, pl=-10.0, used=0.0)) == 3


@pytest.mark.parametrize(
    "params, strategy_id, action_types",
    [
        (_params(250.0), "dynamic_low", [ActionType.HEDGE_OPEN]),
        (_params(120.0, pl=-60.0, free=150.0), "dynamic_medium", [ActionType.HEDGE_OPEN, ActionType.PARTIAL_CLOSE]),
        (_params(80.0, pl=-200.0, free=150.0), "dynamic_high", [ActionType.PARTIAL_CLOSE, ActionType.HEDGE_OPEN]),
        (_params(30.0, pl=-200.0, positions=25, free=10.0), "dynamic_extreme", [ActionType.IMMEDIATE_CLOSE]),
    ],
)
def test_dynamic_strategy_tiers(params, strategy_id, action_types):
    strategy = generate_dynamic_strategy(params)

    assert strategy.id == strategy_id
    assert [action.type for action in strategy.actions] == action_types
    assert strategy.success_criteria.max_acceptable_loss == pytest.approx(params.account_balance * 0.1)


def test_multi_account_dynamic_strategy_adds_balance_transfer_when_free_margin_is_low():
    strategy = generate_dynamic_strategy(_params(120.0, free=100.0), StrategyScenario.MULTI_ACCOUNT)

    transfer = [action for action in strategy.actions if action.type is ActionType.BALANCE_TRANSFER]
    assert transfer and transfer[0].parameters.amount == pytest.approx(300.0)


def test_dynamic_parameters_from_state_prefer_position_profit():
    state = RiskMonitoringState(
        account_id="acct-1",
        margin_level=90.0,
        free_margin=0.0,
        used_margin=1000.0,
        balance=1000.0,
        equity=900.0,
        bonus_amount=0.0,
        last_update=0.0,
        loss_cut_level=20.0,
    )
    position = Position("p1", "EURUSD", "buy", 1.0, 1.0, 1.0, -50.0, 100.0)

    assert DynamicActionParameters.from_state(state).total_profit_loss == pytest.approx(-100.0)
    from_positions = DynamicActionParameters.from_state(state, [position])
    assert from_positions.total_profit_loss == pytest.approx(-50.0)
    assert from_positions.position_count == 1


def test_selection_precedence():
    registry = StrategyRegistry()

    dynamic = registry.select(StrategyScenario.SINGLE_ACCOUNT, RiskLevel.CRITICAL, _params(250.0))
    static = registry.select(StrategyScenario.CORRELATED_POSITIONS, RiskLevel.DANGER)
    critical = registry.select(StrategyScenario.SINGLE_ACCOUNT, RiskLevel.CRITICAL)

    assert dynamic.id == "dynamic_low"
    assert static.id == "correlated_positions"
    assert critical.id == single_account_critical_strategy().id


def test_selection_falls_back_to_default_when_key_is_missing():
    registry = StrategyRegistry()
    registry.unregister("multi_account_warning")

    strategy = registry.select(StrategyScenario.MULTI_ACCOUNT, RiskLevel.WARNING)

    assert strategy.id == "single_critical"


def test_missing_default_is_a_hard_error():
    registry = StrategyRegistry(strategies={})

    with pytest.raises(StrategyNotFoundError):
        registry.select(StrategyScenario.SINGLE_ACCOUNT, RiskLevel.CRITICAL)


def test_preventive_falls_back_to_default():
    registry = StrategyRegistry()
    registry.unregister("preventive_critical")

    assert registry.preventive().id == registry.get(DEFAULT_STRATEGY_KEY).id
    assert "preventive_critical" not in list(registry)


def _result(success=True, loss_reduction=100.0):
    strategy = single_account_critical_strategy()
    return EmergencyActionResult(
        action=strategy.actions[0], success=success, execution_time_ms=1.0, loss_reduction=loss_reduction
    )


def test_response_status_is_terminal_only_once():
    response = EmergencyResponse(
        id="r1", account_id="acct-1", strategy=single_account_critical_strategy(), start_time=0.0
    )
    response.record(_result(loss_reduction=120.0))

    assert response.finish(ResponseStatus.COMPLETED, 2.0) is True
    assert response.finish(ResponseStatus.FAILED, 3.0) is False
    assert response.status is ResponseStatus.COMPLETED
    assert response.total_loss_avoidance == pytest.approx(120.0)
    assert response.execution_time_ms == pytest.approx(2000.0)
    with pytest.raises(RuntimeError):
        response.record(_result())
    with pytest.raises(ValueError):
        response.finish(ResponseStatus.EXECUTING, 4.0)


def test_response_cannot_record_more_actions_than_strategy_has():
    strategy = single_account_critical_strategy()
    response = EmergencyResponse(id="r2", account_id="acct-1", strategy=strategy, start_time=0.0)
    for _ in strategy.actions:
        response.record(_result(success=False, loss_reduction=None))

    with pytest.raises(RuntimeError):
        response.record(_result())
    assert response.success_rate == 0.0

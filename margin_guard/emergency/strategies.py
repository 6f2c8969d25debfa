"""Static strategy templates and the risk-scored dynamic strategy generator."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from margin_guard.models import Position, RiskLevel, RiskMonitoringState

from .models import (
    ActionParameters,
    ActionType,
    EmergencyAction,
    EmergencyStrategy,
    StrategyScenario,
    SuccessCriteria,
)

logger = logging.getLogger(__name__)

DEFAULT_STRATEGY_KEY = "single_account_critical"
PREVENTIVE_STRATEGY_KEY = "preventive_critical"
MAX_RISK_SCORE = 10


class StrategyNotFoundError(LookupError):
    """Raised when neither the requested strategy nor the fallback is registered."""


def _action(
    action_type: ActionType,
    priority: int,
    *,
    percentage: Optional[float] = None,
    max_loss: Optional[float] = None,
    hedge_ratio: Optional[float] = None,
    amount: Optional[float] = None,
) -> EmergencyAction:
    return EmergencyAction(
        type=action_type,
        priority=priority,
        parameters=ActionParameters(
            percentage=percentage, max_loss=max_loss, hedge_ratio=hedge_ratio, amount=amount
        ),
    )


def _strategy(
    strategy_id: str,
    name: str,
    scenario: StrategyScenario,
    max_execution_time_ms: float,
    criteria: Tuple[float, float],
    actions: Sequence[EmergencyAction],
    description: str = "",
) -> EmergencyStrategy:
    margin_target, max_loss = criteria
    return EmergencyStrategy(
        id=strategy_id,
        name=name,
        scenario_type=scenario,
        actions=tuple(sorted(actions, key=lambda action: -action.priority)),
        max_execution_time_ms=max_execution_time_ms,
        success_criteria=SuccessCriteria(
            margin_level_target=margin_target,
            max_acceptable_loss=max_loss,
            timeout_minutes=max_execution_time_ms / 60000,
        ),
        description=description,
    )


def single_account_critical_strategy() -> EmergencyStrategy:
    return _strategy(
        "single_critical",
        "Single account critical",
        StrategyScenario.SINGLE_ACCOUNT,
        30000,
        (100, 1000),
        [
            _action(ActionType.IMMEDIATE_CLOSE, 10, percentage=100, max_loss=500),
            _action(ActionType.PARTIAL_CLOSE, 8, percentage=75, max_loss=300),
            _action(ActionType.HEDGE_OPEN, 6, hedge_ratio=1.0, max_loss=200),
        ],
        "Single account right before the loss-cut",
    )


def multi_account_strategy() -> EmergencyStrategy:
    return _strategy(
        "multi_account",
        "Multi-account correlation",
        StrategyScenario.MULTI_ACCOUNT,
        60000,
        (150, 2000),
        [
            _action(ActionType.BALANCE_TRANSFER, 10, amount=1000, max_loss=0),
            _action(ActionType.HEDGE_OPEN, 9, hedge_ratio=0.8, max_loss=500),
            _action(ActionType.PARTIAL_CLOSE, 7, percentage=50, max_loss=800),
        ],
        "Correlated risk spread over several accounts",
    )


def correlated_positions_strategy() -> EmergencyStrategy:
    return _strategy(
        "correlated_positions",
        "Correlated positions",
        StrategyScenario.CORRELATED_POSITIONS,
        45000,
        (120, 1500),
        [
            _action(ActionType.HEDGE_OPEN, 10, hedge_ratio=0.6, max_loss=400),
            _action(ActionType.PARTIAL_CLOSE, 8, percentage=40, max_loss=600),
            _action(ActionType.IMMEDIATE_CLOSE, 6, percentage=100, max_loss=800),
        ],
        "Group of highly correlated positions",
    )


def preventive_strategy() -> EmergencyStrategy:
    return _strategy(
        "preventive",
        "Preventive",
        StrategyScenario.SINGLE_ACCOUNT,
        90000,
        (200, 500),
        [
            _action(ActionType.HEDGE_OPEN, 9, hedge_ratio=0.3, max_loss=150),
            _action(ActionType.PARTIAL_CLOSE, 7, percentage=20, max_loss=200),
            _action(ActionType.BALANCE_TRANSFER, 5, amount=500, max_loss=0),
        ],
        "Early measures while the margin level is sliding",
    )


def preventive_critical_strategy() -> EmergencyStrategy:
    return _strategy(
        "preventive_critical",
        "Preventive critical",
        StrategyScenario.SINGLE_ACCOUNT,
        60000,
        (150, 500),
        [
            _action(ActionType.HEDGE_OPEN, 9, hedge_ratio=0.5),
            _action(ActionType.PARTIAL_CLOSE, 7, percentage=25, max_loss=200),
        ],
        "Margin level at or below 50% before any loss-cut",
    )


def high_frequency_strategy() -> EmergencyStrategy:
    return _strategy(
        "high_frequency",
        "High frequency",
        StrategyScenario.SINGLE_ACCOUNT,
        15000,
        (80, 300),
        [
            _action(ActionType.IMMEDIATE_CLOSE, 10, percentage=100, max_loss=200),
            _action(ActionType.HEDGE_OPEN, 8, hedge_ratio=0.5, max_loss=100),
        ],
        "Ultra-fast response for high frequency trading",
    )


@dataclass(frozen=True)
class DynamicActionParameters:
    account_balance: float
    margin_level: float
    position_count: int
    total_profit_loss: float
    used_margin: float
    free_margin: float

    @classmethod
    def from_state(
        cls, state: RiskMonitoringState, positions: Sequence[Position] = ()
    ) -> "DynamicActionParameters":
        total_profit_loss = (
            sum(position.profit for position in positions) if positions else state.equity - state.balance
        )
        return cls(
            account_balance=state.balance,
            margin_level=state.margin_level,
            position_count=len(positions),
            total_profit_loss=total_profit_loss,
            used_margin=state.used_margin,
            free_margin=state.free_margin,
        )


def calculate_risk_score(params: DynamicActionParameters) -> int:
    """Score 0-10 from margin level, loss ratio, position count and free margin."""

    score = 0
    if params.margin_level < 50:
        score += 4
    elif params.margin_level < 100:
        score += 3
    elif params.margin_level < 150:
        score += 2
    elif params.margin_level < 200:
        score += 1

    if params.account_balance > 0:
        loss_ratio = abs(params.total_profit_loss) / params.account_balance
    else:
        loss_ratio = math.inf if params.total_profit_loss else 0.0
    if loss_ratio > 0.1:
        score += 3
    elif loss_ratio > 0.05:
        score += 2
    elif loss_ratio > 0.02:
        score += 1

    if params.position_count > 20:
        score += 2
    elif params.position_count > 10:
        score += 1

    if params.used_margin > 0:
        free_margin_ratio = params.free_margin / params.used_margin
        if free_margin_ratio < 0.1:
            score += 2
        elif free_margin_ratio < 0.2:
            score += 1

    return min(score, MAX_RISK_SCORE)


def generate_dynamic_strategy(
    params: DynamicActionParameters,
    scenario: StrategyScenario = StrategyScenario.SINGLE_ACCOUNT,
) -> EmergencyStrategy:
    """Bucket the risk score into one of four response tiers."""

    score = calculate_risk_score(params)
    balance = params.account_balance
    if score >= 9:
        tier = "extreme"
        actions = [_action(ActionType.IMMEDIATE_CLOSE, 10, percentage=100, max_loss=balance * 0.1)]
        max_execution_time_ms, margin_target = 15000, 80
    elif score >= 7:
        tier = "high"
        actions = [
            _action(ActionType.PARTIAL_CLOSE, 9, percentage=80, max_loss=balance * 0.08),
            _action(ActionType.HEDGE_OPEN, 7, hedge_ratio=0.7, max_loss=balance * 0.05),
        ]
        max_execution_time_ms, margin_target = 25000, 100
    elif score >= 5:
        tier = "medium"
        actions = [
            _action(ActionType.HEDGE_OPEN, 8, hedge_ratio=0.5, max_loss=balance * 0.03),
            _action(ActionType.PARTIAL_CLOSE, 6, percentage=40, max_loss=balance * 0.04),
        ]
        max_execution_time_ms, margin_target = 45000, 150
    else:
        tier = "low"
        actions = [_action(ActionType.HEDGE_OPEN, 7, hedge_ratio=0.3, max_loss=balance * 0.02)]
        max_execution_time_ms, margin_target = 60000, 200

    if scenario is StrategyScenario.MULTI_ACCOUNT and params.free_margin < params.used_margin * 0.2:
        actions.append(_action(ActionType.BALANCE_TRANSFER, 5, amount=params.used_margin * 0.3, max_loss=0))

    logger.debug("Generated dynamic strategy", extra={"risk_score": score, "tier": tier, "scenario": scenario.value})
    return _strategy(
        f"dynamic_{tier}",
        f"Dynamic ({tier} risk, score {score})",
        scenario,
        max_execution_time_ms,
        (margin_target, balance * 0.1),
        actions,
    )


@dataclass(frozen=True)
class StrategyTemplate:
    id: str
    name: str
    description: str
    applicable_scenarios: Tuple[str, ...]
    strategy: EmergencyStrategy


def strategy_templates() -> List[StrategyTemplate]:
    entries = [
        (single_account_critical_strategy(), ("single_account", "critical")),
        (multi_account_strategy(), ("multi_account",)),
        (correlated_positions_strategy(), ("correlated_positions",)),
        (preventive_strategy(), ("single_account", "warning")),
        (high_frequency_strategy(), ("single_account", "speed_critical")),
    ]
    return [
        StrategyTemplate(strategy.id, strategy.name, strategy.description, scenarios, strategy)
        for strategy, scenarios in entries
    ]


def strategy_key(scenario: StrategyScenario, risk_level: RiskLevel) -> str:
    return f"{scenario.value}_{risk_level.value}"


def _default_registrations() -> Dict[str, EmergencyStrategy]:
    preventive = preventive_strategy()
    multi = multi_account_strategy()
    correlated = correlated_positions_strategy()
    registrations: Dict[str, EmergencyStrategy] = {
        DEFAULT_STRATEGY_KEY: single_account_critical_strategy(),
        PREVENTIVE_STRATEGY_KEY: preventive_critical_strategy(),
        "high_frequency": high_frequency_strategy(),
    }
    for level in RiskLevel:
        registrations[strategy_key(StrategyScenario.MULTI_ACCOUNT, level)] = multi
        registrations[strategy_key(StrategyScenario.CORRELATED_POSITIONS, level)] = correlated
        if level is not RiskLevel.CRITICAL:
            registrations[strategy_key(StrategyScenario.SINGLE_ACCOUNT, level)] = preventive
    return registrations


class StrategyRegistry:
    """Strategies keyed by ``<scenario>_<risk level>`` plus named extras."""

    def __init__(self, strategies: Optional[Dict[str, EmergencyStrategy]] = None) -> None:
        self._strategies: Dict[str, EmergencyStrategy] = (
            dict(strategies) if strategies is not None else _default_registrations()
        )

    def register(self, key: str, strategy: EmergencyStrategy) -> None:
        self._strategies[key] = strategy

    def unregister(self, key: str) -> Optional[EmergencyStrategy]:
        return self._strategies.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._strategies)

    def get(self, key: str) -> EmergencyStrategy:
        try:
            return self._strategies[key]
        except KeyError as exc:
            raise StrategyNotFoundError(f"No emergency strategy registered under '{key}'") from exc

    def default(self) -> EmergencyStrategy:
        return self.get(DEFAULT_STRATEGY_KEY)

    def preventive(self) -> EmergencyStrategy:
        strategy = self._strategies.get(PREVENTIVE_STRATEGY_KEY)
        return strategy if strategy is not None else self.default()

    def select(
        self,
        scenario: StrategyScenario,
        risk_level: RiskLevel,
        params: Optional[DynamicActionParameters] = None,
    ) -> EmergencyStrategy:
        """Dynamic parameters win; otherwise look up the key, then the default."""

        if params is not None:
            return generate_dynamic_strategy(params, scenario)
        key = strategy_key(scenario, risk_level)
        strategy = self._strategies.get(key)
        if strategy is None:
            logger.info("No strategy for %s, using %s", key, DEFAULT_STRATEGY_KEY)
            return self.default()
        logger.info("Selected strategy %s (%s)", key, strategy.id)
        return strategy

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._strategies)


__all__ = [
    "DEFAULT_STRATEGY_KEY",
    "DynamicActionParameters",
    "PREVENTIVE_STRATEGY_KEY",
    "StrategyNotFoundError",
    "StrategyRegistry",
    "StrategyTemplate",
    "calculate_risk_score",
    "correlated_positions_strategy",
    "generate_dynamic_strategy",
    "high_frequency_strategy",
    "multi_account_strategy",
    "preventive_critical_strategy",
    "preventive_strategy",
    "single_account_critical_strategy",
    "strategy_key",
    "strategy_templates",
]

"""Close/reduce/hedge planning that frees margin at the lowest projected loss."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from margin_guard.config.models import LossMinimizationConfig
from margin_guard.models import Position, RiskMonitoringState

logger = logging.getLogger(__name__)

HEDGE_EXPECTED_OFFSET = 100.0
MIN_HEDGE_LOTS = 0.01


class MinimizationPolicy(str, Enum):
    NONE = "none"
    CLOSE_WORST = "close_worst"
    PARTIAL_REDUCTION = "partial_reduction"
    MIXED_CLOSE = "mixed_close"


@dataclass(frozen=True)
class PositionReduction:
    position_id: str
    reduction_percentage: float


@dataclass(frozen=True)
class HedgeOrder:
    symbol: str
    side: str
    lots: float


@dataclass(frozen=True)
class MinimizationResult:
    policy: MinimizationPolicy
    required_margin_reduction: float
    positions_to_close: Tuple[str, ...] = ()
    positions_to_reduce: Tuple[PositionReduction, ...] = ()
    hedge_positions: Tuple[HedgeOrder, ...] = ()
    expected_loss_reduction: float = 0.0
    expected_margin_improvement: float = 0.0
    confidence: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "policy": self.policy.value,
            "required_margin_reduction": self.required_margin_reduction,
            "positions_to_close": list(self.positions_to_close),
            "positions_to_reduce": [
                {"id": item.position_id, "reduction_percentage": item.reduction_percentage}
                for item in self.positions_to_reduce
            ],
            "hedge_positions": [
                {"symbol": hedge.symbol, "side": hedge.side, "lots": hedge.lots} for hedge in self.hedge_positions
            ],
            "expected_loss_reduction": self.expected_loss_reduction,
            "expected_margin_improvement": self.expected_margin_improvement,
            "confidence": self.confidence,
        }


@dataclass
class PositionAnalysis:
    profitable: List[Position] = field(default_factory=list)
    losing: List[Position] = field(default_factory=list)
    total_profit: float = 0.0
    total_loss: float = 0.0
    total_margin: float = 0.0

    @property
    def profit_loss_ratio(self) -> float:
        if self.total_loss == 0:
            return math.inf if self.total_profit > 0 else 0.0
        return self.total_profit / abs(self.total_loss)


def analyze_positions(positions: Sequence[Position]) -> PositionAnalysis:
    analysis = PositionAnalysis()
    for position in positions:
        if position.profit > 0:
            analysis.profitable.append(position)
            analysis.total_profit += position.profit
        elif position.profit < 0:
            analysis.losing.append(position)
            analysis.total_loss += position.profit
        analysis.total_margin += position.margin_required
    return analysis


def required_margin_reduction(equity: float, used_margin: float, margin_level: float, target_margin_level: float) -> float:
    """Used margin to release so that equity covers ``target_margin_level``."""

    if margin_level >= target_margin_level:
        return 0.0
    allowed_margin = equity / (target_margin_level / 100)
    return max(0.0, used_margin - allowed_margin)


def select_worst_positions(positions: Sequence[Position], fraction: float = 0.4) -> List[Position]:
    """The worst ``fraction`` of losing positions (at least one when any lose)."""

    losers = sorted((p for p in positions if p.profit < 0), key=lambda p: p.profit)
    if not losers:
        return []
    count = max(1, math.floor(len(losers) * fraction))
    return losers[:count]


def net_positions_by_symbol(positions: Sequence[Position]) -> Dict[str, float]:
    """Signed net lots per symbol (positive means net long)."""

    net: Dict[str, float] = {}
    for position in positions:
        net[position.symbol] = net.get(position.symbol, 0.0) + position.signed_lots
    return net


class LossMinimizer:
    """Pick one of three mutually exclusive policies and project its effect."""

    def __init__(self, config: Optional[LossMinimizationConfig] = None) -> None:
        self.config = config or LossMinimizationConfig()

    def update_config(self, **changes: Any) -> LossMinimizationConfig:
        self.config = replace(self.config, **changes)
        return self.config

    def minimize(
        self,
        positions: Sequence[Position],
        state: RiskMonitoringState,
        target_margin_level: Optional[float] = None,
    ) -> MinimizationResult:
        target = target_margin_level or self.config.target_margin_level
        analysis = analyze_positions(positions)
        required = required_margin_reduction(state.equity, state.used_margin, state.margin_level, target)

        to_close: List[Position] = []
        to_reduce: List[PositionReduction] = []
        hedges: List[HedgeOrder] = []
        if required <= 0:
            policy = MinimizationPolicy.NONE
        elif required > state.used_margin * 0.3:
            policy = MinimizationPolicy.CLOSE_WORST
            to_close = select_worst_positions(positions, 0.4)
        elif self.config.prefer_partial_close:
            policy = MinimizationPolicy.PARTIAL_REDUCTION
            to_reduce = self._partial_reductions(positions, required)
            if self.config.enable_hedging:
                hedges = self._hedges(positions)
        else:
            policy = MinimizationPolicy.MIXED_CLOSE
            to_close = self._profitable_to_close(analysis.profitable) + self._losing_to_close(
                analysis.losing, required
            )

        by_id = {position.id: position for position in positions}
        result = MinimizationResult(
            policy=policy,
            required_margin_reduction=required,
            positions_to_close=tuple(position.id for position in to_close),
            positions_to_reduce=tuple(to_reduce),
            hedge_positions=tuple(hedges),
            expected_loss_reduction=_expected_loss_reduction(by_id, to_close, to_reduce, hedges),
            expected_margin_improvement=_margin_improvement(by_id, to_close, to_reduce),
            confidence=_confidence(positions, analysis, required),
        )
        logger.info(
            "Loss minimisation plan computed",
            extra={
                "account_id": state.account_id,
                "policy": policy.value,
                "required_margin_reduction": round(required, 2),
                "expected_loss_reduction": round(result.expected_loss_reduction, 2),
            },
        )
        return result

    def _partial_reductions(self, positions: Sequence[Position], required: float) -> List[PositionReduction]:
        inefficient = sorted(
            (p for p in positions if p.margin_required > 0 and p.profit_per_margin < 0),
            key=lambda p: p.profit_per_margin,
        )
        reductions: List[PositionReduction] = []
        remaining = required
        for position in inefficient:
            if remaining <= 0:
                break
            amount = min(remaining, position.margin_required * 0.75)
            percentage = amount / position.margin_required * 100
            if percentage < 10:
                continue
            reductions.append(PositionReduction(position.id, float(round(percentage))))
            remaining -= amount
        return reductions

    def _hedges(self, positions: Sequence[Position]) -> List[HedgeOrder]:
        hedges: List[HedgeOrder] = []
        for symbol, net_lots in net_positions_by_symbol(positions).items():
            if abs(net_lots) < MIN_HEDGE_LOTS:
                continue
            lots = abs(net_lots) * self.config.hedge_ratio
            if lots >= MIN_HEDGE_LOTS:
                hedges.append(HedgeOrder(symbol=symbol, side="sell" if net_lots > 0 else "buy", lots=round(lots, 2)))
        return hedges

    @staticmethod
    def _profitable_to_close(profitable: Sequence[Position]) -> List[Position]:
        candidates = sorted(
            (p for p in profitable if p.profit > p.margin_required * 0.05),
            key=lambda p: p.profit_per_margin,
            reverse=True,
        )
        return candidates[: max(1, math.floor(len(profitable) * 0.3))]

    @staticmethod
    def _losing_to_close(losing: Sequence[Position], required: float) -> List[Position]:
        candidates = sorted(
            (p for p in losing if abs(p.profit) > p.margin_required * 0.1),
            key=lambda p: p.profit,
        )
        selected: List[Position] = []
        released = 0.0
        for position in candidates:
            if released >= required:
                break
            selected.append(position)
            released += position.margin_required
        return selected


def _expected_loss_reduction(
    by_id: Dict[str, Position],
    to_close: Sequence[Position],
    to_reduce: Sequence[PositionReduction],
    hedges: Sequence[HedgeOrder],
) -> float:
    total = sum(abs(p.profit) * 0.9 for p in to_close if p.profit < 0)
    for reduction in to_reduce:
        position = by_id.get(reduction.position_id)
        if position is not None and position.profit < 0:
            total += abs(position.profit) * (reduction.reduction_percentage / 100) * 0.8
    return total + len(hedges) * HEDGE_EXPECTED_OFFSET


def _margin_improvement(
    by_id: Dict[str, Position],
    to_close: Sequence[Position],
    to_reduce: Sequence[PositionReduction],
) -> float:
    total = sum(p.margin_required for p in to_close)
    for reduction in to_reduce:
        position = by_id.get(reduction.position_id)
        if position is not None:
            total += position.margin_required * (reduction.reduction_percentage / 100)
    return total


def _confidence(positions: Sequence[Position], analysis: PositionAnalysis, required: float) -> float:
    confidence = 0.7
    if len(positions) < 5:
        confidence += 0.1
    elif len(positions) > 20:
        confidence -= 0.1

    ratio = analysis.profit_loss_ratio
    if ratio > 1.5:
        confidence += 0.1
    elif ratio < 0.5:
        confidence -= 0.1

    if analysis.total_margin > 0:
        reduction_ratio = required / analysis.total_margin
        if reduction_ratio < 0.2:
            confidence += 0.1
        elif reduction_ratio > 0.6:
            confidence -= 0.2
    return max(0.1, min(0.95, confidence))


__all__ = [
    "HedgeOrder",
    "LossMinimizer",
    "MinimizationPolicy",
    "MinimizationResult",
    "PositionReduction",
    "analyze_positions",
    "net_positions_by_symbol",
    "required_margin_reduction",
    "select_worst_positions",
]

"""Core data model shared by the monitoring, forecasting and emergency layers."""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class RiskLevel(str, Enum):
    """Canonical risk classification derived from the margin level."""

    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    CRITICAL = "critical"


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DETERIORATING = "deteriorating"
    STABLE = "stable"


#: Lower bound (inclusive) of each non-critical level, ordered from safest.
RISK_LEVEL_FLOORS: Tuple[Tuple[RiskLevel, float], ...] = (
    (RiskLevel.SAFE, 200.0),
    (RiskLevel.WARNING, 150.0),
    (RiskLevel.DANGER, 100.0),
)

RISK_LEVEL_SEVERITY: Dict[RiskLevel, int] = {
    RiskLevel.SAFE: 0,
    RiskLevel.WARNING: 1,
    RiskLevel.DANGER: 2,
    RiskLevel.CRITICAL: 3,
}


def risk_level_for(margin_level: float) -> RiskLevel:
    """Return the risk level for ``margin_level`` using the fixed threshold table."""

    for level, floor in RISK_LEVEL_FLOORS:
        if margin_level >= floor:
            return level
    return RiskLevel.CRITICAL


def worst_risk_level(*levels: RiskLevel) -> RiskLevel:
    return max(levels, key=lambda level: RISK_LEVEL_SEVERITY[level])


def calculate_margin_level(equity: float, used_margin: float) -> float:
    """Return ``equity / used_margin`` as a percentage.

    Accounts without used margin have no meaningful ratio; ``math.inf`` is
    returned instead of dividing by zero.
    """

    if used_margin <= 0:
        return math.inf
    return equity / used_margin * 100.0


def required_recovery_amount(equity: float, used_margin: float, target_margin_level: float) -> float:
    """Equity that must be added to lift the account to ``target_margin_level``."""

    target_equity = used_margin * target_margin_level / 100.0
    return max(0.0, target_equity - equity)


def isoformat(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _json_float(value: Optional[float]) -> Optional[float]:
    if value is None or math.isinf(value) or math.isnan(value):
        return None
    return value


class MarginValidationError(ValueError):
    """Raised when an incoming margin reading fails schema validation."""


@dataclass(frozen=True)
class MarginSample:
    """Single immutable margin reading for one account."""

    timestamp: float
    margin_level: float
    equity: float
    free_margin: float
    used_margin: float
    unrealized_pl: float = 0.0
    bonus_amount: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["margin_level"] = _json_float(self.margin_level)
        payload["timestamp"] = isoformat(self.timestamp)
        return payload


@dataclass(frozen=True)
class AccountMarginInfo:
    """Margin telemetry as supplied by an external account source."""

    account_id: str
    balance: float
    equity: float
    free_margin: float
    used_margin: float
    margin_level: float
    bonus_amount: float = 0.0
    last_update: float = field(default_factory=time.time)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "AccountMarginInfo":
        try:
            equity = float(payload["equity"])
            used_margin = float(payload.get("used_margin", payload.get("usedMargin", 0.0)))
            margin_level = payload.get("margin_level", payload.get("marginLevel"))
            return cls(
                account_id=str(payload.get("account_id", payload.get("accountId", ""))),
                balance=float(payload.get("balance", equity)),
                equity=equity,
                free_margin=float(payload.get("free_margin", payload.get("freeMargin", 0.0))),
                used_margin=used_margin,
                margin_level=(
                    float(margin_level)
                    if margin_level is not None
                    else calculate_margin_level(equity, used_margin)
                ),
                bonus_amount=float(payload.get("bonus_amount", payload.get("bonusAmount", 0.0))),
                last_update=float(payload.get("last_update", payload.get("lastUpdate", time.time()))),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MarginValidationError(f"Malformed margin payload: {exc}") from exc

    def validate(self) -> "AccountMarginInfo":
        if not self.account_id or not str(self.account_id).strip():
            raise MarginValidationError("account_id must be a non-empty string")
        for name in ("balance", "equity", "free_margin", "used_margin", "margin_level", "bonus_amount"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or math.isnan(value):
                raise MarginValidationError(f"{name} must be a number, got {value!r}")
        if self.equity < 0:
            raise MarginValidationError(f"equity must be >= 0, got {self.equity}")
        if self.margin_level < 0:
            raise MarginValidationError(f"margin_level must be >= 0, got {self.margin_level}")
        if self.used_margin < 0:
            raise MarginValidationError(f"used_margin must be >= 0, got {self.used_margin}")
        return self

    def to_sample(self) -> MarginSample:
        return MarginSample(
            timestamp=self.last_update,
            margin_level=self.margin_level,
            equity=self.equity,
            free_margin=self.free_margin,
            used_margin=self.used_margin,
            unrealized_pl=self.equity - self.balance,
            bonus_amount=self.bonus_amount,
        )


@dataclass(frozen=True)
class Position:
    """Open position as reported by the position data service."""

    id: str
    symbol: str
    side: str
    lots: float
    open_price: float
    current_price: float
    profit: float
    margin_required: float
    account_id: Optional[str] = None

    @property
    def profit_per_margin(self) -> float:
        if self.margin_required <= 0:
            return 0.0
        return self.profit / self.margin_required

    @property
    def signed_lots(self) -> float:
        return self.lots if self.side == "buy" else -self.lots

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Position":
        return cls(
            id=str(payload["id"]),
            symbol=str(payload["symbol"]),
            side=str(payload.get("side", payload.get("type", "buy"))).lower(),
            lots=float(payload.get("lots", 0.0)),
            open_price=float(payload.get("open_price", payload.get("openPrice", 0.0))),
            current_price=float(payload.get("current_price", payload.get("currentPrice", 0.0))),
            profit=float(payload.get("profit", 0.0)),
            margin_required=float(payload.get("margin_required", payload.get("marginRequired", 0.0))),
            account_id=payload.get("account_id", payload.get("accountId")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RiskPredictions:
    time_to_critical_minutes: Optional[float] = None
    required_recovery: float = 0.0


@dataclass(frozen=True)
class RiskMonitoringState:
    """Canonical per-account risk snapshot.

    ``risk_level`` is not stored; it is always derived from ``margin_level``.
    """

    account_id: str
    margin_level: float
    free_margin: float
    used_margin: float
    balance: float
    equity: float
    bonus_amount: float
    last_update: float
    loss_cut_level: float
    predictions: RiskPredictions = field(default_factory=RiskPredictions)

    @property
    def risk_level(self) -> RiskLevel:
        return risk_level_for(self.margin_level)

    @classmethod
    def from_margin_info(
        cls,
        info: AccountMarginInfo,
        *,
        loss_cut_level: float,
        predictions: Optional[RiskPredictions] = None,
    ) -> "RiskMonitoringState":
        return cls(
            account_id=info.account_id,
            margin_level=info.margin_level,
            free_margin=info.free_margin,
            used_margin=info.used_margin,
            balance=info.balance,
            equity=info.equity,
            bonus_amount=info.bonus_amount,
            last_update=info.last_update,
            loss_cut_level=loss_cut_level,
            predictions=predictions or RiskPredictions(),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "margin_level": _json_float(self.margin_level),
            "free_margin": self.free_margin,
            "used_margin": self.used_margin,
            "balance": self.balance,
            "equity": self.equity,
            "bonus_amount": self.bonus_amount,
            "risk_level": self.risk_level.value,
            "last_update": isoformat(self.last_update),
            "loss_cut_level": self.loss_cut_level,
            "predictions": {
                "time_to_critical_minutes": self.predictions.time_to_critical_minutes,
                "required_recovery": self.predictions.required_recovery,
            },
        }


@dataclass(frozen=True)
class TrendEstimate:
    slope: float
    direction: TrendDirection
    volatility: float
    confidence: float
    sample_count: int
    computed_at: float

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["direction"] = self.direction.value
        payload["computed_at"] = isoformat(self.computed_at)
        return payload


@dataclass(frozen=True)
class ForecastHorizon:
    next_15_minutes: float
    next_30_minutes: float
    next_1_hour: float


@dataclass(frozen=True)
class EarlyWarning:
    level: RiskLevel
    message: str
    time_to_threshold_minutes: Optional[float] = None


@dataclass(frozen=True)
class LossCutForecast:
    """Forward-looking view of one account, replaced wholesale on recompute."""

    account_id: str
    current_margin_level: float
    predicted_loss_cut_time: Optional[float]
    time_to_loss_cut_minutes: Optional[float]
    required_recovery_amount: float
    confidence_level: float
    trend_direction: TrendDirection
    forecast: ForecastHorizon
    risk_level: RiskLevel
    last_update: float
    early_warnings: Tuple[EarlyWarning, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "current_margin_level": _json_float(self.current_margin_level),
            "predicted_loss_cut_time": isoformat(self.predicted_loss_cut_time),
            "time_to_loss_cut_minutes": self.time_to_loss_cut_minutes,
            "required_recovery_amount": self.required_recovery_amount,
            "confidence_level": self.confidence_level,
            "trend_direction": self.trend_direction.value,
            "forecast": asdict(self.forecast),
            "risk_level": self.risk_level.value,
            "last_update": isoformat(self.last_update),
            "early_warnings": [
                {
                    "level": warning.level.value,
                    "message": warning.message,
                    "time_to_threshold_minutes": warning.time_to_threshold_minutes,
                }
                for warning in self.early_warnings
            ],
        }


__all__ = [
    "AccountMarginInfo",
    "EarlyWarning",
    "ForecastHorizon",
    "LossCutForecast",
    "MarginSample",
    "MarginValidationError",
    "Position",
    "RISK_LEVEL_FLOORS",
    "RISK_LEVEL_SEVERITY",
    "RiskLevel",
    "RiskMonitoringState",
    "RiskPredictions",
    "TrendDirection",
    "TrendEstimate",
    "calculate_margin_level",
    "isoformat",
    "required_recovery_amount",
    "risk_level_for",
    "worst_risk_level",
]

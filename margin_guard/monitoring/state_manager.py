"""Per-account risk state of record, alert log and event log."""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, List, Optional

from margin_guard.config.models import ThresholdConfig
from margin_guard.events import (
    AlertRaised,
    EventDispatcher,
    LossCutDetected,
    RiskLevelChanged,
    ValidationRejected,
)
from margin_guard.models import (
    AccountMarginInfo,
    LossCutForecast,
    MarginValidationError,
    RiskLevel,
    RiskMonitoringState,
    RiskPredictions,
    isoformat,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


@dataclass
class RiskAlert:
    id: str
    account_id: str
    severity: str
    margin_level: float
    message: str
    timestamp: float
    acknowledged: bool = False
    auto_resolve: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "severity": self.severity,
            "margin_level": self.margin_level,
            "message": self.message,
            "timestamp": isoformat(self.timestamp),
            "acknowledged": self.acknowledged,
            "auto_resolve": self.auto_resolve,
        }


@dataclass(frozen=True)
class MonitoringLogEntry:
    id: str
    account_id: str
    type: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)


class RiskStateManager:
    """Owns the canonical :class:`RiskMonitoringState` for every account.

    Only this class mutates its maps; other components read through the
    accessor methods and react to the events it publishes.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        *,
        thresholds: Optional[ThresholdConfig] = None,
        clock: Callable[[], float] = time.time,
        stale_after_seconds: float = 60.0,
    ) -> None:
        self._dispatcher = dispatcher
        self._thresholds = thresholds or ThresholdConfig()
        self._clock = clock
        self._stale_after = stale_after_seconds
        self._states: Dict[str, RiskMonitoringState] = {}
        self._alerts: Dict[str, Deque[RiskAlert]] = {}
        self._events: Dict[str, Deque[MonitoringLogEntry]] = {}
        self._margin_history: Dict[str, Deque[float]] = {}
        self._brokers: Dict[str, str] = {}
        self._sequence = itertools.count(1)

    def register_broker(self, account_id: str, broker: str) -> None:
        self._brokers[account_id] = broker

    def update_state(self, info: AccountMarginInfo) -> Optional[RiskMonitoringState]:
        """Validate ``info`` and replace the account's state.

        Invalid readings are logged, published as ``ValidationRejected`` and
        leave the previous state untouched; ``None`` is returned for them.
        """

        try:
            info.validate()
        except MarginValidationError as exc:
            logger.warning("Rejected margin update for %s: %s", info.account_id or "<unknown>", exc)
            self._dispatcher.publish(
                ValidationRejected(account_id=info.account_id, reason=str(exc), timestamp=self._clock())
            )
            return None

        account_id = info.account_id
        previous = self._states.get(account_id)
        predictions = previous.predictions if previous is not None else RiskPredictions()
        state = RiskMonitoringState.from_margin_info(
            info,
            loss_cut_level=self._thresholds.loss_cut_for(self._brokers.get(account_id)),
            predictions=predictions,
        )
        self._states[account_id] = state
        self._append_history(account_id, state.margin_level)
        self._record(
            account_id,
            "margin_level_changed",
            {
                "previous_level": previous.margin_level if previous else None,
                "current_level": state.margin_level,
                "risk_level": state.risk_level.value,
            },
        )

        previous_level = previous.risk_level if previous is not None else None
        if previous_level is not None and previous_level != state.risk_level:
            self._record(
                account_id,
                "risk_level_changed",
                {"message": f"Risk level changed from {previous_level.value} to {state.risk_level.value}"},
            )
            logger.info(
                "Risk level changed",
                extra={
                    "account_id": account_id,
                    "previous": previous_level.value,
                    "current": state.risk_level.value,
                    "margin_level": state.margin_level,
                },
            )
            self._dispatcher.publish(
                RiskLevelChanged(
                    account_id=account_id,
                    previous=previous_level,
                    current=state.risk_level,
                    margin_level=state.margin_level,
                    timestamp=self._clock(),
                )
            )

        if state.risk_level is RiskLevel.CRITICAL:
            if previous_level is not RiskLevel.CRITICAL:
                self._dispatcher.publish(
                    LossCutDetected(account_id=account_id, margin_level=state.margin_level, timestamp=self._clock())
                )
            self._raise_critical_alert(account_id, state.margin_level)
        return state

    def apply_forecast(self, forecast: LossCutForecast) -> Optional[RiskMonitoringState]:
        """Attach forecast-derived predictions to the account's current state."""

        state = self._states.get(forecast.account_id)
        if state is None:
            return None
        updated = replace(
            state,
            predictions=RiskPredictions(
                time_to_critical_minutes=forecast.time_to_loss_cut_minutes,
                required_recovery=forecast.required_recovery_amount,
            ),
        )
        self._states[forecast.account_id] = updated
        return updated

    def _raise_critical_alert(self, account_id: str, margin_level: float) -> RiskAlert:
        now = self._clock()
        alert = RiskAlert(
            id=f"{account_id}-critical-{next(self._sequence)}",
            account_id=account_id,
            severity="critical",
            margin_level=margin_level,
            message=f"Critical margin level: {margin_level:.2f}%",
            timestamp=now,
        )
        alerts = self._alerts.get(account_id)
        if alerts is None:
            alerts = deque(maxlen=HISTORY_LIMIT)
            self._alerts[account_id] = alerts
        alerts.append(alert)
        self._dispatcher.publish(
            AlertRaised(
                account_id=account_id,
                alert_id=alert.id,
                severity=alert.severity,
                margin_level=margin_level,
                message=alert.message,
                timestamp=now,
            )
        )
        return alert

    def _append_history(self, account_id: str, margin_level: float) -> None:
        history = self._margin_history.get(account_id)
        if history is None:
            history = deque(maxlen=HISTORY_LIMIT)
            self._margin_history[account_id] = history
        history.append(margin_level)

    def _record(self, account_id: str, event_type: str, data: Dict[str, Any]) -> None:
        log = self._events.get(account_id)
        if log is None:
            log = deque(maxlen=HISTORY_LIMIT)
            self._events[account_id] = log
        log.append(
            MonitoringLogEntry(
                id=f"{account_id}-{event_type}-{next(self._sequence)}",
                account_id=account_id,
                type=event_type,
                timestamp=self._clock(),
                data=data,
            )
        )

    def get_state(self, account_id: str) -> Optional[RiskMonitoringState]:
        return self._states.get(account_id)

    def all_states(self) -> Dict[str, RiskMonitoringState]:
        return dict(self._states)

    def alerts(self, account_id: str) -> List[RiskAlert]:
        return list(self._alerts.get(account_id, ()))

    def events(self, account_id: str) -> List[MonitoringLogEntry]:
        return list(self._events.get(account_id, ()))

    def margin_level_history(self, account_id: str) -> List[float]:
        return list(self._margin_history.get(account_id, ()))

    def acknowledge_alert(self, alert_id: str) -> bool:
        for alerts in self._alerts.values():
            for alert in alerts:
                if alert.id == alert_id:
                    alert.acknowledged = True
                    logger.info("Alert acknowledged", extra={"account_id": alert.account_id, "alert_id": alert_id})
                    return True
        return False

    def monitoring_status(self) -> Dict[str, Any]:
        now = self._clock()
        errors = [
            f"Account {account_id}: no data for over {int(self._stale_after)} seconds"
            for account_id, state in self._states.items()
            if now - state.last_update > self._stale_after
        ]
        return {
            "is_active": bool(self._states),
            "connected_accounts": list(self._states),
            "last_update": isoformat(now),
            "errors": errors,
        }

    def remove_account(self, account_id: str) -> None:
        self._states.pop(account_id, None)
        self._alerts.pop(account_id, None)
        self._events.pop(account_id, None)
        self._margin_history.pop(account_id, None)
        self._brokers.pop(account_id, None)

    def clear(self) -> None:
        self._states.clear()
        self._alerts.clear()
        self._events.clear()
        self._margin_history.clear()

    def statistics(self) -> Dict[str, Any]:
        states = list(self._states.values())
        levels = {level.value: 0 for level in RiskLevel}
        for state in states:
            levels[state.risk_level.value] += 1
        all_alerts = [alert for alerts in self._alerts.values() for alert in alerts]
        finite_levels = [s.margin_level for s in states if s.margin_level != float("inf")]
        return {
            "total_accounts": len(states),
            "risk_levels": levels,
            "total_alerts": len(all_alerts),
            "unacknowledged_alerts": sum(1 for alert in all_alerts if not alert.acknowledged),
            "average_margin_level": sum(finite_levels) / len(finite_levels) if finite_levels else 0.0,
        }


__all__ = ["HISTORY_LIMIT", "MonitoringLogEntry", "RiskAlert", "RiskStateManager"]

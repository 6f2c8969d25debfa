"""Typed event channel shared by the monitoring and emergency components.

Every event kind is a frozen dataclass carrying a ``kind`` tag.  A single
:class:`EventDispatcher` owns delivery: events published while another event
is being delivered are queued, so handlers always observe publication order.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Deque, Dict, List, Optional, Union

from .models import RiskLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdBreached:
    kind: ClassVar[str] = "threshold_breached"

    account_id: str
    band: str
    margin_level: float
    threshold: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RapidChange:
    kind: ClassVar[str] = "rapid_change"

    account_id: str
    previous_level: float
    current_level: float
    change_percent: float
    direction: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RiskLevelChanged:
    kind: ClassVar[str] = "risk_level_changed"

    account_id: str
    previous: Optional[RiskLevel]
    current: RiskLevel
    margin_level: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LossCutDetected:
    kind: ClassVar[str] = "loss_cut_detected"

    account_id: str
    margin_level: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AlertRaised:
    kind: ClassVar[str] = "alert_raised"

    account_id: str
    alert_id: str
    severity: str
    margin_level: float
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ValidationRejected:
    kind: ClassVar[str] = "validation_rejected"

    account_id: str
    reason: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ForecastUpdated:
    kind: ClassVar[str] = "forecast_updated"

    account_id: str
    risk_level: RiskLevel
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ResponseFinished:
    kind: ClassVar[str] = "response_finished"

    account_id: str
    response_id: str
    status: str
    total_loss_avoidance: float
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EmergencyModeChanged:
    kind: ClassVar[str] = "emergency_mode_changed"

    is_active: bool
    level: Optional[str]
    reason: str
    timestamp: float = field(default_factory=time.time)


Event = Union[
    ThresholdBreached,
    RapidChange,
    RiskLevelChanged,
    LossCutDetected,
    AlertRaised,
    ValidationRejected,
    ForecastUpdated,
    ResponseFinished,
    EmergencyModeChanged,
]

EventHandler = Callable[[Event], None]


class EventDispatcher:
    """Deliver events to subscribers in the order they were published."""

    def __init__(self, *, history_size: int = 500) -> None:
        self._handlers: Dict[Optional[str], List[EventHandler]] = {}
        self._pending: Deque[Event] = deque()
        self._dispatching = False
        self._history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, kind: Optional[str], handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``kind`` (``None`` receives every event).

        Returns a callable that removes the subscription.
        """

        self._handlers.setdefault(kind, []).append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(kind, [])
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        self._pending.append(event)
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                current = self._pending.popleft()
                self._history.append(current)
                self._deliver(current)
        finally:
            self._dispatching = False

    def _deliver(self, event: Event) -> None:
        handlers = list(self._handlers.get(event.kind, ())) + list(self._handlers.get(None, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.kind)

    def history(self, kind: Optional[str] = None) -> List[Event]:
        if kind is None:
            return list(self._history)
        return [event for event in self._history if event.kind == kind]


__all__ = [
    "AlertRaised",
    "EmergencyModeChanged",
    "Event",
    "EventDispatcher",
    "EventHandler",
    "ForecastUpdated",
    "LossCutDetected",
    "RapidChange",
    "ResponseFinished",
    "RiskLevelChanged",
    "ThresholdBreached",
    "ValidationRejected",
]

"""Boundary protocols for margin telemetry, position data and command dispatch.

The core never talks to a broker directly.  Margin readings and open
positions come in through :class:`MarginDataSource` and
:class:`PositionService`; mitigating actions leave through a
:class:`CommandChannel` as abstract :class:`EmergencyCommand` objects whose
outcome is reported back by the collaborator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .models import AccountMarginInfo, Position

logger = logging.getLogger(__name__)


class MarginDataSource(Protocol):
    async def fetch_margin_info(self, account_id: str) -> AccountMarginInfo:
        ...


class PositionService(Protocol):
    async def fetch_positions(self, account_id: str) -> Sequence[Position]:
        ...


@dataclass(frozen=True)
class EmergencyCommand:
    """Broker-agnostic instruction derived from an emergency action."""

    account_id: str
    action_type: str
    target_positions: Tuple[str, ...] = ()
    percentage: Optional[float] = None
    max_loss: Optional[float] = None
    hedge_ratio: Optional[float] = None
    amount: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "account_id": self.account_id,
            "action_type": self.action_type,
            "target_positions": list(self.target_positions),
        }
        for key in ("percentage", "max_loss", "hedge_ratio", "amount"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class CommandRejected(RuntimeError):
    """The collaborator refused a command; ``report`` is what it sent back."""

    def __init__(self, message: str, report: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.report: Dict[str, Any] = dict(report or {})


class CommandChannel(Protocol):
    async def dispatch(self, command: EmergencyCommand) -> Mapping[str, Any]:
        """Execute ``command`` and return the collaborator's report.

        The report may carry ``success`` (``False`` marks a rejection, as does
        raising :class:`CommandRejected`) and a measured ``loss_reduction``.
        """


@dataclass
class DryRunCommandChannel:
    """Command channel that records commands instead of routing them."""

    dispatched: List[EmergencyCommand] = field(default_factory=list)

    async def dispatch(self, command: EmergencyCommand) -> Mapping[str, Any]:
        self.dispatched.append(command)
        logger.info("[dry-run] %s for %s", command.action_type, command.account_id, extra={"command": command.to_payload()})
        return {"success": True, "dry_run": True}


class StaticMarginSource:
    """Margin source backed by readings pushed in by the caller."""

    def __init__(self, readings: Optional[Mapping[str, AccountMarginInfo]] = None) -> None:
        self._readings: Dict[str, AccountMarginInfo] = dict(readings or {})

    def push(self, info: AccountMarginInfo) -> None:
        self._readings[info.account_id] = info

    async def fetch_margin_info(self, account_id: str) -> AccountMarginInfo:
        try:
            return self._readings[account_id]
        except KeyError as exc:
            raise LookupError(f"No margin reading available for {account_id}") from exc


__all__ = [
    "CommandChannel",
    "CommandRejected",
    "DryRunCommandChannel",
    "EmergencyCommand",
    "MarginDataSource",
    "PositionService",
    "StaticMarginSource",
]

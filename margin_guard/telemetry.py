"""Per-channel guard for calls that leave the process.

Every boundary call runs on a named channel: ``command:<action>`` for
broker commands, ``positions`` and ``margin`` for the data feeds.  A
channel opens after ``circuit_breaker_threshold`` consecutive failures and
refuses calls until its cool-off has passed; the first call after that is a
trial, and one more failure reopens it.

Commands that change broker state are sent at most once.  A timed-out
command may still have been executed on the broker side.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from .metrics import MetricRegistry
from .models import isoformat

logger = logging.getLogger(__name__)

COMMAND_CHANNEL_PREFIX = "command:"

_POLICY_FIELDS = (
    "request_timeout",
    "max_retries",
    "retry_backoff",
    "circuit_breaker_threshold",
    "circuit_breaker_reset_s",
)


@dataclass
class ResiliencePolicy:
    """Timeout, retry and circuit settings shared by every channel.

    ``max_retries`` only applies to idempotent calls (feed reads).
    """

    request_timeout: float = 10.0
    max_retries: int = 1
    retry_backoff: float = 0.5
    circuit_breaker_threshold: int = 3
    circuit_breaker_reset_s: float = 30.0

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "ResiliencePolicy":
        if not payload:
            return cls()
        return cls(**{key: payload[key] for key in _POLICY_FIELDS if key in payload})

    def attempts(self, *, idempotent: bool) -> int:
        if not idempotent:
            return 1
        return 1 + max(0, self.max_retries)


class ChannelState(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OPEN = "open"


class CircuitOpenError(RuntimeError):
    """The channel is open; the call was not sent."""

    def __init__(self, channel: str, retry_in: float) -> None:
        super().__init__(f"Channel {channel} is open; next trial in {retry_in:.1f}s")
        self.channel = channel
        self.retry_in = retry_in


@dataclass
class ChannelHealth:
    """Failure accounting and circuit state for one channel."""

    name: str
    failure_threshold: int
    cool_off_seconds: float
    state: ChannelState = ChannelState.UNKNOWN
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    calls: int = 0
    failures: int = 0
    refused: int = 0

    @property
    def is_command(self) -> bool:
        return self.name.startswith(COMMAND_CHANNEL_PREFIX)

    def admit(self, now: float) -> None:
        if self.opened_at is None:
            return
        remaining = self.opened_at + self.cool_off_seconds - now
        if remaining > 0:
            self.refused += 1
            raise CircuitOpenError(self.name, remaining)
        self.opened_at = None
        self.consecutive_failures = max(0, self.failure_threshold - 1)
        self.state = ChannelState.DEGRADED

    def succeeded(self, now: float) -> None:
        self.calls += 1
        self.consecutive_failures = 0
        self.state = ChannelState.HEALTHY
        self.last_error = None
        self.last_success = now

    def failed(self, now: float, error: str) -> None:
        self.calls += 1
        self.failures += 1
        self.consecutive_failures += 1
        self.last_error = error
        self.last_failure = now
        if self.consecutive_failures >= self.failure_threshold:
            self.opened_at = now
            self.state = ChannelState.OPEN
        else:
            self.state = ChannelState.DEGRADED

    def to_payload(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "kind": "command" if self.is_command else "feed",
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_success": isoformat(self.last_success),
            "last_failure": isoformat(self.last_failure),
            "calls": self.calls,
            "failures": self.failures,
            "refused": self.refused,
        }


class Telemetry:
    """Run boundary calls under the channel rules and keep their health."""

    def __init__(
        self,
        *,
        policy: Optional[ResiliencePolicy] = None,
        metrics: Optional[MetricRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy or ResiliencePolicy()
        self.metrics = metrics or MetricRegistry()
        self.channels: Dict[str, ChannelHealth] = {}
        self._clock = clock

    def channel(self, name: str) -> ChannelHealth:
        health = self.channels.get(name)
        if health is None:
            health = ChannelHealth(
                name=name,
                failure_threshold=self.policy.circuit_breaker_threshold,
                cool_off_seconds=self.policy.circuit_breaker_reset_s,
            )
            self.channels[name] = health
        return health

    async def execute_with_resilience(
        self,
        name: str,
        func: Callable[[], Union[Awaitable[Any], Any]],
        *,
        policy: Optional[ResiliencePolicy] = None,
        idempotent: bool = True,
    ) -> Any:
        """Call ``func()`` on channel ``name`` and return its outcome.

        Idempotent calls are retried up to ``policy.max_retries`` times with
        linear backoff; other calls are sent once.  The last error is raised.
        """

        selected = policy or self.policy
        health = self.channel(name)
        labels = {"channel": name}
        try:
            health.admit(self._clock())
        except CircuitOpenError:
            logger.warning("Channel %s is open; call not sent", name)
            self.metrics.inc("channel_short_circuits", labels=labels)
            raise

        attempts = selected.attempts(idempotent=idempotent)
        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                outcome = func()
                if inspect.isawaitable(outcome):
                    outcome = await asyncio.wait_for(outcome, timeout=selected.request_timeout)
            except Exception as exc:
                self.metrics.observe("channel_latency_seconds", time.perf_counter() - started, labels=labels)
                self.metrics.inc("channel_failures", labels=labels)
                health.failed(self._clock(), str(exc) or type(exc).__name__)
                if attempt == attempts or health.state is ChannelState.OPEN:
                    raise
                logger.info("Retrying %s (attempt %s of %s): %s", name, attempt + 1, attempts, exc)
                await asyncio.sleep(selected.retry_backoff * attempt)
            else:
                self.metrics.observe("channel_latency_seconds", time.perf_counter() - started, labels=labels)
                health.succeeded(self._clock())
                return outcome
        raise RuntimeError(f"No attempt made on channel {name}")  # pragma: no cover - attempts is at least one

    def health_snapshot(self) -> Dict[str, Any]:
        unhealthy = (ChannelState.DEGRADED, ChannelState.OPEN)
        return {
            "status": "degraded" if any(h.state in unhealthy for h in self.channels.values()) else "healthy",
            "channels": {name: health.to_payload() for name, health in sorted(self.channels.items())},
            "open_command_channels": sorted(
                name for name, health in self.channels.items() if health.is_command and health.state is ChannelState.OPEN
            ),
        }


__all__ = [
    "COMMAND_CHANNEL_PREFIX",
    "ChannelHealth",
    "ChannelState",
    "CircuitOpenError",
    "ResiliencePolicy",
    "Telemetry",
]

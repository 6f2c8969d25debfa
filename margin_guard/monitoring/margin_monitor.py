"""Per-account polling scheduler with threshold and rapid-change detection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from margin_guard.commands import MarginDataSource
from margin_guard.config.models import MonitorConfig, ThresholdConfig
from margin_guard.events import Event, EventDispatcher, RapidChange, ThresholdBreached, ValidationRejected
from margin_guard.metrics import MetricRegistry
from margin_guard.models import AccountMarginInfo, MarginValidationError, TrendDirection, risk_level_for

from .sample_store import MarginSampleStore
from .state_manager import RiskStateManager

logger = logging.getLogger(__name__)


def classify_trend(window: Tuple[float, ...], *, threshold: float = 5.0) -> TrendDirection:
    """Direction of the last three trend-window entries."""

    if len(window) < 3:
        return TrendDirection.STABLE
    recent = window[-3:]
    change = recent[-1] - recent[0]
    if change > threshold:
        return TrendDirection.IMPROVING
    if change < -threshold:
        return TrendDirection.DETERIORATING
    return TrendDirection.STABLE


class MarginLevelMonitor:
    """Poll each account on its own ``asyncio`` task.

    Readings flow into the sample store and the risk state manager; threshold
    and rapid-change events are published on the shared dispatcher.
    """

    def __init__(
        self,
        store: MarginSampleStore,
        dispatcher: EventDispatcher,
        *,
        source: Optional[MarginDataSource] = None,
        state_manager: Optional[RiskStateManager] = None,
        config: Optional[MonitorConfig] = None,
        thresholds: Optional[ThresholdConfig] = None,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._source = source
        self._state_manager = state_manager
        self.config = config or MonitorConfig()
        self.thresholds = thresholds or ThresholdConfig()
        self._metrics = metrics or MetricRegistry()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._brokers: Dict[str, Optional[str]] = {}

    def start_monitoring(self, account_id: str, *, broker: Optional[str] = None) -> None:
        """Start polling ``account_id``; an existing poller is replaced."""

        if self._source is None:
            raise RuntimeError("A margin data source is required to start polling.")
        existing = self._tasks.pop(account_id, None)
        if existing is not None:
            existing.cancel()
        self._brokers[account_id] = broker
        self._tasks[account_id] = asyncio.get_running_loop().create_task(
            self._poll_loop(account_id), name=f"margin-monitor-{account_id}"
        )
        logger.info("Monitoring started", extra={"account_id": account_id, "interval_ms": self.config.interval_ms})

    async def stop_monitoring(self, account_id: str) -> bool:
        """Cancel the account's poller and wait until it has exited."""

        task = self._tasks.pop(account_id, None)
        if task is None:
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Monitoring stopped", extra={"account_id": account_id})
        return True

    async def remove_account(self, account_id: str) -> bool:
        """Stop polling ``account_id`` and forget its broker."""

        stopped = await self.stop_monitoring(account_id)
        self._brokers.pop(account_id, None)
        return stopped

    async def stop_all(self) -> None:
        for account_id in list(self._tasks):
            await self.stop_monitoring(account_id)

    def is_monitoring(self, account_id: str) -> bool:
        task = self._tasks.get(account_id)
        return task is not None and not task.done()

    def monitored_accounts(self) -> List[str]:
        return list(self._tasks)

    async def update_config(
        self,
        *,
        interval_ms: Optional[int] = None,
        thresholds: Optional[ThresholdConfig] = None,
    ) -> None:
        """Apply new settings; pollers restart when the interval changes."""

        if thresholds is not None:
            self.thresholds = thresholds.validate()
        if interval_ms is None or interval_ms == self.config.interval_ms:
            return
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.config = replace(self.config, interval_ms=interval_ms)
        running = list(self._tasks)
        for account_id in running:
            await self.stop_monitoring(account_id)
        for account_id in running:
            self.start_monitoring(account_id, broker=self._brokers.get(account_id))
        logger.info("Polling interval updated", extra={"interval_ms": interval_ms, "restarted": len(running)})

    async def _poll_loop(self, account_id: str) -> None:
        interval = self.config.interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                info = await self._source.fetch_margin_info(account_id)  # type: ignore[union-attr]
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._metrics.inc("monitor_poll_failures", labels={"account_id": account_id})
                logger.warning("Margin poll failed for %s: %s", account_id, exc)
                continue
            self.process(info)

    def process(self, info: AccountMarginInfo) -> List[Event]:
        """Ingest one reading and return the threshold events it produced."""

        self._metrics.inc("monitor_polls", labels={"account_id": info.account_id or "<unknown>"})
        try:
            info.validate()
        except MarginValidationError as exc:
            logger.warning("Discarding invalid margin reading for %s: %s", info.account_id or "<unknown>", exc)
            self._dispatcher.publish(ValidationRejected(account_id=info.account_id, reason=str(exc)))
            return []

        if not self._store.record(info.account_id, info.to_sample()):
            return []
        events = self.check_thresholds(info.account_id)
        if self._state_manager is not None:
            self._state_manager.update_state(info)
        return events

    def check_thresholds(
        self,
        account_id: str,
        thresholds: Optional[ThresholdConfig] = None,
    ) -> List[Event]:
        """Compare the latest sample with the configured bands.

        Warning, danger and critical bands are exclusive; the loss-cut band is
        reported in addition to critical.  A rapid-change event is added when
        the level moved by at least ``rapid_change_percent`` since the
        previous sample.
        """

        thresholds = thresholds or self.thresholds
        latest = self._store.latest(account_id)
        if latest is None:
            return []
        level = latest.margin_level
        loss_cut = thresholds.loss_cut_for(self._brokers.get(account_id))
        events: List[Event] = []

        def _breach(band: str, threshold: float) -> None:
            events.append(
                ThresholdBreached(
                    account_id=account_id,
                    band=band,
                    margin_level=level,
                    threshold=threshold,
                    timestamp=latest.timestamp,
                )
            )

        if thresholds.danger < level <= thresholds.warning:
            _breach("warning", thresholds.warning)
        if thresholds.critical < level <= thresholds.danger:
            _breach("danger", thresholds.danger)
        if level <= thresholds.critical:
            _breach("critical", thresholds.critical)
        if level <= loss_cut:
            _breach("loss_cut", loss_cut)

        previous = self._store.previous(account_id)
        if previous is not None and previous.margin_level > 0:
            change = level - previous.margin_level
            percent = change / previous.margin_level * 100.0
            if abs(percent) >= thresholds.rapid_change_percent:
                events.append(
                    RapidChange(
                        account_id=account_id,
                        previous_level=previous.margin_level,
                        current_level=level,
                        change_percent=percent,
                        direction="improving" if change > 0 else "deteriorating",
                        timestamp=latest.timestamp,
                    )
                )

        for event in events:
            self._dispatcher.publish(event)
        return events

    def trend_direction(self, account_id: str) -> TrendDirection:
        return classify_trend(self._store.trend_window(account_id))

    def statistics(self) -> Dict[str, Any]:
        latest_levels = []
        for account_id in self._store.accounts():
            sample = self._store.latest(account_id)
            if sample is not None:
                latest_levels.append(sample.margin_level)
        distribution = {"safe": 0, "warning": 0, "danger": 0, "critical": 0}
        for level in latest_levels:
            distribution[risk_level_for(level).value] += 1
        finite = [level for level in latest_levels if level != float("inf")]
        return {
            "monitoring_count": len(self._tasks),
            "average_level": sum(finite) / len(finite) if finite else 0.0,
            "min_level": min(finite) if finite else None,
            "max_level": max(finite) if finite else None,
            "risk_distribution": distribution,
            "polling_interval_ms": self.config.interval_ms,
        }


__all__ = ["MarginLevelMonitor", "classify_trend"]

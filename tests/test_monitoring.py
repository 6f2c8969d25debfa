import asyncio
import logging

import pytest

from margin_guard.commands import StaticMarginSource
from margin_guard.config.models import MonitorConfig, ThresholdConfig
from margin_guard.events import EventDispatcher, LossCutDetected, RiskLevelChanged, ValidationRejected
from margin_guard.metrics import MetricRegistry
from margin_guard.models import AccountMarginInfo, MarginSample, RiskLevel, TrendDirection, risk_level_for
from margin_guard.monitoring import MarginLevelMonitor, MarginSampleStore, RiskStateManager, classify_trend
from margin_guard.monitoring.state_manager import HISTORY_LIMIT


def _info(margin_level: float, ts: float, account_id: str = "acct-1", used: float = 1000.0) -> AccountMarginInfo:
    equity = used * margin_level / 100
    return AccountMarginInfo(
        account_id=account_id,
        balance=1000.0,
        equity=equity,
        free_margin=max(0.0, equity - used),
        used_margin=used,
        margin_level=margin_level,
        last_update=ts,
    )


def _sample(margin_level: float, ts: float) -> MarginSample:
    return MarginSample(
        timestamp=ts, margin_level=margin_level, equity=margin_level * 10, free_margin=0.0, used_margin=1000.0
    )


def test_trend_window_keeps_ten_most_recent_levels():
    store = MarginSampleStore()
    for index in range(15):
        assert store.record("acct-1", _sample(300 - index, float(index)))

    window = store.trend_window("acct-1")
    assert len(window) == 10
    assert window[0] == 295
    assert window[-1] == 286


def test_duplicate_sample_with_new_timestamp_does_not_grow_window_past_limit():
    store = MarginSampleStore(trend_window=10)
    for index in range(12):
        store.record("acct-1", _sample(150.0, float(index)))

    assert len(store.trend_window("acct-1")) == 10


def test_out_of_order_samples_are_rejected(caplog):
    store = MarginSampleStore()
    store.record("acct-1", _sample(200.0, 10.0))
    caplog.set_level(logging.WARNING, "margin_guard")

    assert store.record("acct-1", _sample(190.0, 5.0)) is False
    assert len(store.samples("acct-1")) == 1
    assert any("out-of-order" in record.message for record in caplog.records)


def test_retention_window_purges_old_samples():
    store = MarginSampleStore(retention_seconds=60)
    store.record("acct-1", _sample(200.0, 0.0))
    store.record("acct-1", _sample(190.0, 30.0))
    store.record("acct-1", _sample(180.0, 100.0))

    assert [sample.timestamp for sample in store.samples("acct-1")] == [100.0]
    assert store.previous("acct-1") is None


def test_remove_account_tears_down_buffers():
    store = MarginSampleStore()
    store.record("acct-1", _sample(200.0, 0.0))
    store.remove_account("acct-1")

    assert store.accounts() == []
    assert store.trend_window("acct-1") == ()


def test_state_risk_level_always_matches_threshold_table():
    dispatcher = EventDispatcher()
    manager = RiskStateManager(dispatcher, clock=lambda: 1000.0)
    for ts, level in enumerate([260, 210, 180, 151, 149, 120, 100, 99, 60, 250]):
        state = manager.update_state(_info(level, float(ts)))
        assert state is not None
        assert state.risk_level is risk_level_for(level)


def test_entering_critical_publishes_loss_cut_once_and_raises_alert():
    dispatcher = EventDispatcher()
    manager = RiskStateManager(dispatcher, clock=lambda: 1000.0)

    manager.update_state(_info(180, 1.0))
    manager.update_state(_info(80, 2.0))
    manager.update_state(_info(60, 3.0))

    detections = dispatcher.history(LossCutDetected.kind)
    assert len(detections) == 1
    assert detections[0].margin_level == 80
    assert len(manager.alerts("acct-1")) == 2
    changes = dispatcher.history(RiskLevelChanged.kind)
    assert [(event.previous, event.current) for event in changes] == [(RiskLevel.WARNING, RiskLevel.CRITICAL)]


def test_alert_log_is_bounded_while_an_account_stays_critical():
    dispatcher = EventDispatcher()
    manager = RiskStateManager(dispatcher, clock=lambda: 1000.0)

    for index in range(HISTORY_LIMIT * 3):
        manager.update_state(_info(90 - index * 0.1, float(index)))

    alerts = manager.alerts("acct-1")
    assert len(alerts) == HISTORY_LIMIT
    assert alerts[0].margin_level == pytest.approx(90 - HISTORY_LIMIT * 2 * 0.1)
    assert manager.statistics()["total_alerts"] == HISTORY_LIMIT


def test_invalid_update_leaves_previous_state_untouched():
    dispatcher = EventDispatcher()
    manager = RiskStateManager(dispatcher)
    manager.update_state(_info(180, 1.0))

    bad = AccountMarginInfo(
        account_id="acct-1", balance=1, equity=-5, free_margin=0, used_margin=10, margin_level=10, last_update=2.0
    )
    assert manager.update_state(bad) is None
    assert manager.get_state("acct-1").margin_level == 180
    assert dispatcher.history(ValidationRejected.kind)


def test_broker_specific_loss_cut_level_is_applied():
    manager = RiskStateManager(
        EventDispatcher(), thresholds=ThresholdConfig(broker_loss_cut_levels={"xm": 50.0})
    )
    manager.register_broker("acct-1", "xm")

    state = manager.update_state(_info(180, 1.0))

    assert state.loss_cut_level == 50.0


def test_acknowledge_alert_and_stale_detection():
    now = [1000.0]
    manager = RiskStateManager(EventDispatcher(), clock=lambda: now[0], stale_after_seconds=60)
    manager.update_state(_info(50, 1000.0))
    alert = manager.alerts("acct-1")[0]

    assert manager.acknowledge_alert(alert.id) is True
    assert manager.acknowledge_alert("missing") is False
    assert manager.statistics()["unacknowledged_alerts"] == 0

    now[0] = 1100.0
    status = manager.monitoring_status()
    assert status["errors"] and "acct-1" in status["errors"][0]


def test_threshold_bands_are_exclusive_and_loss_cut_is_additional():
    dispatcher = EventDispatcher()
    store = MarginSampleStore()
    monitor = MarginLevelMonitor(store, dispatcher)

    warning = monitor.process(_info(180, 1.0))
    critical = monitor.process(_info(15, 2.0))

    assert [event.band for event in warning] == ["warning"]
    bands = [getattr(event, "band", None) for event in critical]
    assert bands[:2] == ["critical", "loss_cut"]
    assert critical[-1].kind == "rapid_change"
    assert critical[-1].direction == "deteriorating"


def test_monitor_updates_state_manager_and_discards_invalid_readings():
    dispatcher = EventDispatcher()
    store = MarginSampleStore()
    manager = RiskStateManager(dispatcher)
    monitor = MarginLevelMonitor(store, dispatcher, state_manager=manager)

    monitor.process(_info(220, 1.0))
    bad = AccountMarginInfo(
        account_id="", balance=1, equity=1, free_margin=0, used_margin=1, margin_level=100, last_update=2.0
    )
    assert monitor.process(bad) == []

    assert manager.get_state("acct-1").margin_level == 220
    assert len(store.samples("acct-1")) == 1


def test_classify_trend_uses_last_three_entries():
    assert classify_trend((200.0, 190.0)) is TrendDirection.STABLE
    assert classify_trend((100.0, 200.0, 190.0, 180.0)) is TrendDirection.DETERIORATING
    assert classify_trend((100.0, 110.0, 120.0)) is TrendDirection.IMPROVING
    assert classify_trend((100.0, 101.0, 102.0)) is TrendDirection.STABLE


def test_start_monitoring_requires_a_source():
    monitor = MarginLevelMonitor(MarginSampleStore(), EventDispatcher())

    async def scenario():
        with pytest.raises(RuntimeError):
            monitor.start_monitoring("acct-1")

    asyncio.run(scenario())


def test_polling_loop_feeds_readings_until_stopped():
    source = StaticMarginSource()
    source.push(_info(180, 1.0))
    dispatcher = EventDispatcher()
    store = MarginSampleStore()
    monitor = MarginLevelMonitor(store, dispatcher, source=source, config=MonitorConfig(interval_ms=5))

    async def scenario():
        monitor.start_monitoring("acct-1")
        assert monitor.is_monitoring("acct-1")
        await asyncio.sleep(0.05)
        assert await monitor.stop_monitoring("acct-1") is True
        assert await monitor.stop_monitoring("acct-1") is False

    asyncio.run(scenario())

    # Identical timestamps are accepted; only older ones are rejected.
    assert len(store.samples("acct-1")) >= 1
    assert monitor.monitored_accounts() == []


def test_poll_failures_are_counted_and_do_not_stop_the_loop():
    metrics = MetricRegistry()
    monitor = MarginLevelMonitor(
        MarginSampleStore(),
        EventDispatcher(),
        source=StaticMarginSource(),
        config=MonitorConfig(interval_ms=5),
        metrics=metrics,
    )

    async def scenario():
        monitor.start_monitoring("missing")
        await asyncio.sleep(0.05)
        still_running = monitor.is_monitoring("missing")
        await monitor.stop_all()
        return still_running

    assert asyncio.run(scenario()) is True
    assert metrics.counter("monitor_poll_failures", labels={"account_id": "missing"}) >= 1


def test_update_config_restarts_pollers_with_new_interval():
    source = StaticMarginSource({"acct-1": _info(180, 1.0)})
    monitor = MarginLevelMonitor(
        MarginSampleStore(), EventDispatcher(), source=source, config=MonitorConfig(interval_ms=1000)
    )

    async def scenario():
        monitor.start_monitoring("acct-1")
        await monitor.update_config(interval_ms=10)
        running = monitor.is_monitoring("acct-1")
        await monitor.stop_all()
        return running

    assert asyncio.run(scenario()) is True
    assert monitor.config.interval_ms == 10


def test_monitor_statistics_distribution():
    dispatcher = EventDispatcher()
    monitor = MarginLevelMonitor(MarginSampleStore(), dispatcher)
    monitor.process(_info(250, 1.0, account_id="a"))
    monitor.process(_info(90, 1.0, account_id="b"))

    stats = monitor.statistics()

    assert stats["risk_distribution"]["safe"] == 1
    assert stats["risk_distribution"]["critical"] == 1
    assert stats["min_level"] == 90

import asyncio
import logging

import pytest

from margin_guard.config.models import EmergencyModeConfig
from margin_guard.emergency.mode import (
    EmergencyLevel,
    EmergencyModeManager,
    EmergencyTrigger,
    RecoveryActionType,
    RecoveryResult,
    TriggerType,
    build_recovery_actions,
    estimate_recovery_minutes,
)
from margin_guard.events import EmergencyModeChanged, EventDispatcher


def _trigger(trigger_type=TriggerType.LOSSCUT, severity=EmergencyLevel.CRITICAL, account_id="acct-1", **details):
    return EmergencyTrigger(type=trigger_type, severity=severity, account_id=account_id, details=details)


def test_recovery_estimate_applies_trigger_multiplier():
    assert estimate_recovery_minutes(EmergencyLevel.CRITICAL, TriggerType.LOSSCUT) == 90
    assert estimate_recovery_minutes(EmergencyLevel.HIGH, TriggerType.SYSTEM_ERROR) == 60
    assert estimate_recovery_minutes(EmergencyLevel.LOW, TriggerType.MANUAL) == 5


def test_recovery_checklist_depends_on_level_and_trigger():
    low = [action.id for action in build_recovery_actions(EmergencyLevel.LOW, TriggerType.NETWORK_ISSUE)]
    critical = build_recovery_actions(EmergencyLevel.CRITICAL, TriggerType.LOSSCUT)

    assert low == ["position_validation", "connectivity_test"]
    assert [action.id for action in critical] == [
        "position_validation",
        "margin_check",
        "system_health",
        "connectivity_test",
    ]
    assert [action.required for action in critical] == [True, True, True, False]


def test_critical_activation_suspends_operations_and_requires_manual_intervention():
    mode = EmergencyModeManager(clock=lambda: 500.0)

    state = mode.activate(_trigger(margin_level=18.5))

    assert state.is_active
    assert state.level is EmergencyLevel.CRITICAL
    assert state.manual_intervention_required
    assert not state.auto_recovery_enabled
    assert state.estimated_recovery_time_minutes == 90
    assert "auto_trading" in state.suspended_operations
    assert "manual_trading" in state.allowed_operations
    assert not set(state.suspended_operations) & set(state.allowed_operations)
    assert state.reason == "Loss-cut detected (account: acct-1) margin level: 18.5%"


def test_operation_gating_for_affected_and_other_accounts():
    mode = EmergencyModeManager()
    assert mode.is_operation_allowed("auto_trading")

    mode.activate(_trigger())

    assert not mode.is_operation_allowed("auto_trading", "acct-1")
    assert mode.is_operation_allowed("monitoring", "acct-1")
    assert not mode.is_operation_allowed("new_positions", "acct-2")
    assert mode.is_operation_allowed("manual_trading", "acct-2")


def test_escalation_and_de_escalation_walk_the_levels():
    mode = EmergencyModeManager()
    mode.activate(_trigger(TriggerType.MARGIN_CRITICAL, EmergencyLevel.LOW))

    levels = [mode.escalate().level for _ in range(4)]

    assert levels == [EmergencyLevel.MEDIUM, EmergencyLevel.HIGH, EmergencyLevel.CRITICAL, EmergencyLevel.CRITICAL]
    assert mode.state.manual_intervention_required
    assert not mode.state.auto_recovery_enabled

    state = mode.de_escalate()
    assert state.level is EmergencyLevel.HIGH
    assert not state.manual_intervention_required
    assert state.auto_recovery_enabled


def test_de_escalating_from_low_tries_to_deactivate():
    mode = EmergencyModeManager()
    mode.activate(_trigger(TriggerType.MARGIN_CRITICAL, EmergencyLevel.LOW))

    # Required recovery checks have not run yet.
    assert mode.de_escalate().is_active

    asyncio.run(mode.execute_all_recovery_actions())
    assert not mode.de_escalate().is_active


def test_deactivation_waits_for_manual_request_and_required_checks():
    dispatcher = EventDispatcher()
    seen = []
    mode = EmergencyModeManager(dispatcher=dispatcher, clock=lambda: 700.0)
    mode.add_listener(seen.append)
    mode.activate(_trigger())

    assert mode.deactivate("auto_recovery") is False
    assert mode.deactivate() is False

    assert asyncio.run(mode.execute_all_recovery_actions()) == 4
    assert mode.deactivate() is True
    assert mode.deactivate() is False

    assert not mode.state.is_active
    assert mode.recovery_actions() == []
    assert len(mode.history()) == 1
    assert mode.history()[0].deactivated_at == 700.0
    assert [state.is_active for state in seen] == [True, False]
    events = dispatcher.history(EmergencyModeChanged.kind)
    assert [event.is_active for event in events] == [True, False]


def test_failed_recovery_check_can_be_retried():
    mode = EmergencyModeManager()
    mode.set_recovery_check(RecoveryActionType.MARGIN_CHECK, lambda action, state: False)
    mode.activate(_trigger())

    assert asyncio.run(mode.execute_recovery_action("margin_check")) is False
    action = next(item for item in mode.recovery_actions() if item.id == "margin_check")
    assert action.result is RecoveryResult.FAILED
    assert action.error

    mode.set_recovery_check(RecoveryActionType.MARGIN_CHECK, lambda action, state: True)
    assert asyncio.run(mode.execute_recovery_action("margin_check")) is True
    with pytest.raises(RuntimeError):
        asyncio.run(mode.execute_recovery_action("margin_check"))
    with pytest.raises(KeyError):
        asyncio.run(mode.execute_recovery_action("missing"))


def test_raising_recovery_check_is_recorded(caplog):
    def broken(action, state):
        raise ConnectionError("health endpoint down")

    mode = EmergencyModeManager(recovery_checks={RecoveryActionType.SYSTEM_HEALTH: broken})
    mode.activate(_trigger())
    caplog.set_level(logging.ERROR, "margin_guard")

    assert asyncio.run(mode.execute_recovery_action("system_health")) is False
    action = next(item for item in mode.recovery_actions() if item.id == "system_health")
    assert action.error == "health endpoint down"
    assert any("system_health" in record.message for record in caplog.records)


def test_failing_listener_does_not_break_transitions(caplog):
    def listener(state):
        raise ValueError("boom")

    mode = EmergencyModeManager()
    remove = mode.add_listener(listener)
    caplog.set_level(logging.ERROR, "margin_guard")

    mode.activate(_trigger())
    remove()
    mode.escalate()

    assert mode.is_active
    assert sum("listener failed" in record.message for record in caplog.records) == 1


def test_reactivation_archives_previous_state():
    mode = EmergencyModeManager()
    mode.activate(_trigger(TriggerType.NETWORK_ISSUE, EmergencyLevel.LOW))
    mode.activate(_trigger())

    assert [state.level for state in mode.history()] == [EmergencyLevel.LOW]
    assert mode.state.level is EmergencyLevel.CRITICAL


def test_auto_recovery_deactivates_after_checks_pass():
    config = EmergencyModeConfig(auto_recovery_timeout_minutes=0.0005, auto_deactivate_delay_seconds=0.01)

    async def scenario():
        mode = EmergencyModeManager(config)
        mode.activate(_trigger(TriggerType.MARGIN_CRITICAL, EmergencyLevel.MEDIUM))
        assert mode.state.auto_recovery_enabled
        for _ in range(50):
            if not mode.is_active:
                break
            await asyncio.sleep(0.01)
        await mode.close()
        return mode

    mode = asyncio.run(scenario())

    assert not mode.is_active
    assert mode.history()[0].level is EmergencyLevel.MEDIUM


def test_status_payload_lists_recovery_actions():
    mode = EmergencyModeManager(clock=lambda: 0.0)
    mode.activate(_trigger())

    payload = mode.status()

    assert payload["level"] == "critical"
    assert payload["triggered_by"] == "losscut"
    assert [item["id"] for item in payload["recovery_actions"]][0] == "position_validation"
    assert payload["recovery_actions"][0]["completed"] is False

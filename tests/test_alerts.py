#!/usr/bin/env python3
"""
Tests for AlertDispatcher: alert delivery, resolution and the monitoring sweeps.
"""

import io
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
from rich.console import Console

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.alerts import AlertDispatcher
from workflow_health.models import (
    Alert,
    AlertSeverity,
    AlertType,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowType,
    to_iso,
)
from workflow_health.store import InMemoryWorkflowStore, WorkflowLockRegistry


class AlertTableDownStore(InMemoryWorkflowStore):
    """Workflow records work; the alert table rejects every write."""

    def append_alert(self, alert):
        raise RuntimeError("agent_logs insert failed")


@pytest.fixture
def dispatcher(store, policy, clock):
    return AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                           clock=clock, console_output=False)


def add_execution(store, workflow_id, started_at, **fields):
    execution = WorkflowExecution(workflow_id=workflow_id, started_at=to_iso(started_at), **fields)
    store.insert(execution)
    return execution


def sample_alert(workflow_id="wf-1"):
    return Alert(
        alert_type=AlertType.BOTTLENECK_DETECTED,
        severity=AlertSeverity.WARNING,
        workflow_id=workflow_id,
        message="Bottleneck detected in send_quote: 15m (threshold: 5m)",
        details={"step": "send_quote", "duration": 900},
    )


# =============================================================================
# DELIVERY
# =============================================================================

class TestDelivery:

    def test_dispatch_records_alert_and_messages_operator(self, dispatcher, store):
        alert = sample_alert()
        dispatcher.dispatch(alert)

        assert [a.alert_id for a in store.list_alerts()] == [alert.alert_id]
        message = store.operator_messages[0]
        assert message["from_agent"] == "QuoteWorkflowMonitor"
        assert message["message"] == f"@Kenny - ALERT: {alert.message}"
        assert message["data"]["alert_type"] == "bottleneck_detected"

    def test_trigger_alert_marks_workflow(self, dispatcher, store, clock):
        add_execution(store, "wf-1", clock())
        dispatcher.trigger_alert("wf-1", sample_alert())

        execution = store.get("wf-1")
        assert execution.alert_triggered is True
        assert execution.alert_type == "bottleneck_detected"
        assert execution.has_alert(AlertType.BOTTLENECK_DETECTED)

    def test_slack_webhook_is_posted(self, store, policy, clock):
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False,
                                     slack_webhook_url="https://hooks.slack.test/T000/B000")
        alert = sample_alert()

        with patch("workflow_health.alerts.requests.post") as mock_post:
            mock_post.return_value = MagicMock(status_code=200)
            dispatcher.dispatch(alert)

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "https://hooks.slack.test/T000/B000"
        assert kwargs["timeout"] == 10
        attachment = kwargs["json"]["attachments"][0]
        assert attachment["text"] == alert.message
        assert attachment["color"] == "#ffcc00"

    def test_slack_failure_does_not_raise(self, store, policy, clock):
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False,
                                     slack_webhook_url="https://hooks.slack.test/T000/B000")

        with patch("workflow_health.alerts.requests.post",
                   side_effect=requests.ConnectionError("unreachable")):
            dispatcher.dispatch(sample_alert())

        assert len(store.list_alerts()) == 1

    def test_notifier_errors_are_contained(self, store, policy, clock):
        notifier = MagicMock(side_effect=RuntimeError("pager down"))
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False, notifier=notifier)

        dispatcher.dispatch(sample_alert())
        notifier.assert_called_once()

    def test_alert_store_failure_still_reaches_other_channels(self, policy, clock):
        store = AlertTableDownStore()
        notifier = MagicMock()
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False, notifier=notifier)

        dispatcher.dispatch(sample_alert())

        assert store.list_alerts() == []
        assert len(store.operator_messages) == 1
        notifier.assert_called_once()

    def test_console_panel(self, store, policy, clock):
        buffer = io.StringIO()
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=True,
                                     console=Console(file=buffer, force_terminal=False, width=120))

        dispatcher.dispatch(sample_alert())

        output = buffer.getvalue()
        assert "bottleneck_detected" in output
        assert "Bottleneck detected in send_quote" in output


class TestResolve:

    def test_resolve_keeps_triggered_flag(self, dispatcher, store, clock):
        add_execution(store, "wf-1", clock())
        dispatcher.trigger_alert("wf-1", sample_alert())
        clock.advance(600)

        assert dispatcher.resolve_alert("wf-1") is True

        execution = store.get("wf-1")
        assert execution.alert_triggered is True
        assert execution.alert_resolved_at == to_iso(clock())

    def test_resolve_missing_workflow(self, dispatcher):
        assert dispatcher.resolve_alert("ghost") is False


# =============================================================================
# STUCK WORKFLOWS
# =============================================================================

class TestStuckWorkflows:

    def test_old_active_workflow_is_marked_stuck(self, dispatcher, store, clock):
        add_execution(store, "wf-old", clock(), status=WorkflowStatus.AWAITING_RESPONSES)
        clock.advance(25 * 3600)
        add_execution(store, "wf-new", clock())

        alerts = dispatcher.check_stuck_workflows()

        assert [a.workflow_id for a in alerts] == ["wf-old"]
        assert alerts[0].severity is AlertSeverity.CRITICAL
        assert alerts[0].message == "Workflow stuck in awaiting_responses for over 24 hours"
        assert alerts[0].details["hours_stuck"] == 25
        assert store.get("wf-old").status is WorkflowStatus.STUCK
        assert store.get("wf-new").status is WorkflowStatus.INITIALIZING

    def test_alert_raised_once_per_workflow(self, dispatcher, store, clock):
        add_execution(store, "wf-old", clock())
        clock.advance(30 * 3600)
        assert len(dispatcher.check_stuck_workflows()) == 1

        def reactivate(execution):
            execution.status = WorkflowStatus.DETECTING
        store.update("wf-old", reactivate)

        assert dispatcher.check_stuck_workflows() == []
        assert len(store.list_alerts(alert_type=AlertType.WORKFLOW_STUCK)) == 1

    def test_finished_and_recovering_workflows_are_ignored(self, dispatcher, store, clock):
        add_execution(store, "wf-done", clock(), status=WorkflowStatus.COMPLETED)
        add_execution(store, "wf-rec", clock(), status=WorkflowStatus.RECOVERING)
        clock.advance(48 * 3600)

        assert dispatcher.check_stuck_workflows() == []

    def test_store_errors_return_empty(self, dispatcher, store):
        store.list_executions = MagicMock(side_effect=RuntimeError("db down"))
        assert dispatcher.check_stuck_workflows() == []

    def test_alert_store_failure_keeps_stuck_alert(self, policy, clock):
        store = AlertTableDownStore()
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False)
        add_execution(store, "wf-old", clock())
        add_execution(store, "wf-older", clock() - timedelta(hours=1))
        clock.advance(25 * 3600)

        alerts = dispatcher.check_stuck_workflows()

        assert sorted(a.workflow_id for a in alerts) == ["wf-old", "wf-older"]
        assert store.get("wf-old").status is WorkflowStatus.STUCK
        assert store.get("wf-older").status is WorkflowStatus.STUCK
        assert len(store.operator_messages) == 2


# =============================================================================
# RATE SWEEPS
# =============================================================================

class TestSupplierResponseRates:

    def test_declining_rate_raises_warning(self, dispatcher, store, clock):
        for day in range(3):
            add_execution(store, f"wf-{day}", clock() - timedelta(days=day),
                          suppliers_contacted=10, suppliers_responded=2)

        alerts = dispatcher.monitor_supplier_response_rates()

        assert len(alerts) == 1
        assert alerts[0].alert_type is AlertType.SUPPLIER_NON_RESPONSE
        assert alerts[0].severity is AlertSeverity.WARNING
        assert alerts[0].message == "Supplier response rate declining: 20.0% (last 3 days)"
        assert alerts[0].details["threshold"] == 50

    def test_average_uses_days_present(self, dispatcher, store, clock):
        add_execution(store, "wf-a", clock(), suppliers_contacted=10, suppliers_responded=4)
        add_execution(store, "wf-b", clock() - timedelta(days=1),
                      suppliers_contacted=10, suppliers_responded=2)

        alerts = dispatcher.monitor_supplier_response_rates()

        assert alerts[0].details["days_averaged"] == 2
        assert alerts[0].details["recent_avg_response_rate"] == pytest.approx(30.0)

    def test_healthy_rate_is_quiet(self, dispatcher, store, clock):
        add_execution(store, "wf-a", clock(), suppliers_contacted=10, suppliers_responded=8)
        assert dispatcher.monitor_supplier_response_rates() == []

    def test_no_data_is_quiet(self, dispatcher):
        assert dispatcher.monitor_supplier_response_rates() == []


class TestCustomerAcceptanceRates:

    def test_low_acceptance_raises_error(self, dispatcher, store, clock):
        for week in range(2):
            started = clock() - timedelta(weeks=week)
            for i in range(5):
                add_execution(
                    store, f"wf-{week}-{i}", started,
                    status=WorkflowStatus.COMPLETED,
                    quote_request_id=f"qr-{week}-{i}",
                    metadata={"quote_status": "accepted" if i == 0 else "rejected"},
                )

        alerts = dispatcher.monitor_customer_acceptance_rates()

        assert len(alerts) == 1
        assert alerts[0].alert_type is AlertType.DECLINING_ACCEPTANCE_RATE
        assert alerts[0].severity is AlertSeverity.ERROR
        assert alerts[0].message == "Customer acceptance rate declining: 20.0% (last 2 weeks)"

    def test_healthy_acceptance_is_quiet(self, dispatcher, store, clock):
        for i in range(2):
            add_execution(store, f"wf-{i}", clock(), status=WorkflowStatus.COMPLETED,
                          quote_request_id=f"qr-{i}", metadata={"quote_status": "accepted"})

        assert dispatcher.monitor_customer_acceptance_rates() == []


class TestFailureRates:

    def _add(self, store, clock, completed, failed, workflow_type=WorkflowType.QUOTE_AUTOMATION, prefix="wf"):
        for i in range(completed):
            add_execution(store, f"{prefix}-ok-{i}", clock(), status=WorkflowStatus.COMPLETED,
                          workflow_type=workflow_type)
        for i in range(failed):
            add_execution(store, f"{prefix}-bad-{i}", clock(), status=WorkflowStatus.FAILED,
                          workflow_type=workflow_type)

    def test_rate_at_threshold_does_not_alert(self, dispatcher, store, clock):
        self._add(store, clock, completed=3, failed=1)
        assert dispatcher.monitor_failure_rates() == []

    def test_rate_above_threshold_alerts(self, dispatcher, store, clock):
        self._add(store, clock, completed=2, failed=2)

        alerts = dispatcher.monitor_failure_rates()

        assert len(alerts) == 1
        assert alerts[0].alert_type is AlertType.HIGH_FAILURE_RATE
        assert alerts[0].severity is AlertSeverity.CRITICAL
        assert alerts[0].message == "High workflow failure rate: 50.0%"
        assert alerts[0].details["total_executions"] == 4
        assert alerts[0].details["failed_executions"] == 2

    def test_only_quote_automation_counts(self, dispatcher, store, clock):
        self._add(store, clock, completed=3, failed=1)
        self._add(store, clock, completed=0, failed=5, workflow_type=WorkflowType.MANUAL_QUOTE,
                  prefix="manual")

        assert dispatcher.monitor_failure_rates() == []

    def test_alert_store_failure_keeps_rate_alert(self, policy, clock):
        store = AlertTableDownStore()
        dispatcher = AlertDispatcher(store, WorkflowLockRegistry(), settings=policy["alerts"],
                                     clock=clock, console_output=False)
        self._add(store, clock, completed=1, failed=3)

        alerts = dispatcher.monitor_failure_rates()

        assert [a.alert_type for a in alerts] == [AlertType.HIGH_FAILURE_RATE]
        assert len(store.operator_messages) == 1

"""
Alert dispatcher for the quote workflow.

Raises typed operational alerts, records them on the owning workflow and
in the alert store, and notifies the operator channel (squad message,
console panel, optional Slack webhook).

Sweeps (invoked by an external scheduler):
- check_stuck_workflows
- monitor_supplier_response_rates
- monitor_customer_acceptance_rates
- monitor_failure_rates

Each sweep returns the alerts it raised and never raises itself.
"""

import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from workflow_health.event_log import EventLog, EventType
from workflow_health.models import (
    ACTIVE_STATUSES,
    Alert,
    AlertSeverity,
    AlertType,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowType,
    parse_timestamp,
    to_iso,
    utc_now,
)
from workflow_health.store import WorkflowLockRegistry, WorkflowStore

logger = logging.getLogger("alert_dispatcher")

_is_windows = sys.platform == "win32"

if _is_windows:
    SEVERITY_STYLES = {
        AlertSeverity.WARNING.value: ("yellow", "[!]"),
        AlertSeverity.ERROR.value: ("red", "[x]"),
        AlertSeverity.CRITICAL.value: ("red bold", "[!!!]"),
    }
else:
    SEVERITY_STYLES = {
        AlertSeverity.WARNING.value: ("yellow", "⚠️"),
        AlertSeverity.ERROR.value: ("red", "❌"),
        AlertSeverity.CRITICAL.value: ("red bold", "🚨"),
    }

SLACK_COLORS = {
    AlertSeverity.WARNING.value: "#ffcc00",
    AlertSeverity.ERROR.value: "#ff6600",
    AlertSeverity.CRITICAL.value: "#ff0000",
}


class AlertDispatcher:
    """Creates, records and delivers workflow alerts."""

    def __init__(
        self,
        store: WorkflowStore,
        locks: WorkflowLockRegistry,
        settings: Optional[Dict[str, Any]] = None,
        event_log: Optional[EventLog] = None,
        clock: Callable[[], datetime] = utc_now,
        console_output: Optional[bool] = None,
        slack_webhook_url: Optional[str] = None,
        notifier: Optional[Callable[[Alert], None]] = None,
        console: Optional[Console] = None,
    ):
        self.store = store
        self.locks = locks
        self.settings = settings or {}
        self.event_log = event_log
        self._clock = clock
        self.console_output = (
            self.settings.get("console_output", True) if console_output is None else console_output
        )
        self.slack_webhook_url = slack_webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self.notifier = notifier
        self.console = console or Console(force_terminal=not _is_windows)
        self.operator = self.settings.get("operator", "Kenny")

    # ------------------------------------------------------------------
    # Recording & delivery
    # ------------------------------------------------------------------

    @staticmethod
    def mark_alert(execution: WorkflowExecution, alert: Alert) -> None:
        """Apply an alert to its workflow. alert_triggered is never cleared."""
        execution.alert_triggered = True
        execution.alert_type = alert.alert_type.value
        execution.alert_sent_at = alert.timestamp
        execution.alert_log.append({
            "type": alert.alert_type.value,
            "alert_id": alert.alert_id,
            "severity": alert.severity.value,
            "sent_at": alert.timestamp,
        })

    def trigger_alert(self, workflow_id: str, alert: Alert) -> Alert:
        """Record the alert on the workflow, store it and notify the operator."""
        if alert.workflow_id is None:
            alert.workflow_id = workflow_id
        with self.locks.hold(workflow_id):
            self.store.update(workflow_id, lambda execution: self.mark_alert(execution, alert))
        self.dispatch(alert)
        return alert

    def dispatch(self, alert: Alert) -> None:
        """
        Store the alert and deliver it on every configured channel.

        Each channel is attempted independently; a failing channel is
        logged and never stops delivery on the others.
        """
        log = logger.critical if alert.severity is AlertSeverity.CRITICAL else logger.warning
        log("[%s] %s", alert.alert_type.value, alert.message)

        self._deliver("alert store", alert, self.store.append_alert, alert)
        self._deliver(
            "operator message", alert, self.store.post_operator_message,
            self.operator,
            f"@{self.operator} - ALERT: {alert.message}",
            {
                "alert_id": alert.alert_id,
                "alert_type": alert.alert_type.value,
                "severity": alert.severity.value,
                "workflow_id": alert.workflow_id,
                "details": alert.details,
            },
        )
        if self.event_log is not None:
            self._deliver(
                "event log", alert, self.event_log.log_event,
                EventType.ALERT_TRIGGERED,
                {
                    "alert_id": alert.alert_id,
                    "type": alert.alert_type.value,
                    "severity": alert.severity.value,
                    "message": alert.message,
                },
                workflow_id=alert.workflow_id,
            )
        if self.console_output:
            self._deliver("console", alert, self._print_alert, alert)
        if self.slack_webhook_url:
            self._deliver("slack", alert, self._send_slack_webhook, alert)
        if self.notifier is not None:
            self._deliver("notifier", alert, self.notifier, alert)

    @staticmethod
    def _deliver(channel: str, alert: Alert, send: Callable[..., Any], *args, **kwargs) -> bool:
        try:
            send(*args, **kwargs)
            return True
        except Exception as exc:
            logger.error("Alert %s (%s) not delivered to %s: %s",
                         alert.alert_id, alert.alert_type.value, channel, exc)
            return False

    def resolve_alert(self, workflow_id: str) -> bool:
        """Set alert_resolved_at. Leaves alert_triggered untouched."""
        resolved_at = to_iso(self._clock())

        def apply(execution: WorkflowExecution) -> None:
            execution.alert_resolved_at = resolved_at

        try:
            with self.locks.hold(workflow_id):
                self.store.update(workflow_id, apply)
        except Exception as exc:
            logger.error("Error resolving alert for %s: %s", workflow_id, exc)
            return False

        if self.event_log is not None:
            self.event_log.log_event(EventType.ALERT_RESOLVED, {"resolved_at": resolved_at},
                                     workflow_id=workflow_id)
        return True

    def _print_alert(self, alert: Alert) -> None:
        """Print alert to console with rich formatting."""
        style, emoji = SEVERITY_STYLES.get(alert.severity.value, ("white", "[*]"))
        try:
            title_text = Text(f"{emoji} {alert.alert_type.value}", style=style)
            content = Text()
            content.append(alert.message)
            if alert.details:
                content.append("\n\nDetails:\n", style="dim")
                for key, value in alert.details.items():
                    if key == "trend_data":
                        continue
                    content.append(f"  {key}: ", style="dim")
                    content.append(f"{value}\n")
            if alert.workflow_id:
                content.append(f"\nWorkflow: {alert.workflow_id}", style="dim")
            content.append(f"\nTime: {alert.timestamp}", style="dim")

            self.console.print(Panel(content, title=title_text,
                                     border_style=style.split()[0], padding=(0, 1)))
        except UnicodeEncodeError:
            print(f"[{alert.severity.value.upper()}] {alert.alert_type.value}: {alert.message}")

    def _send_slack_webhook(self, alert: Alert) -> bool:
        payload = {
            "attachments": [
                {
                    "color": SLACK_COLORS.get(alert.severity.value, "#808080"),
                    "title": f"Quote workflow alert: {alert.alert_type.value}",
                    "text": alert.message,
                    "fields": [
                        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                        {"title": "Workflow", "value": alert.workflow_id or "-", "short": True},
                    ],
                    "footer": f"Alert ID: {alert.alert_id}",
                    "ts": int(datetime.now(timezone.utc).timestamp()),
                }
            ]
        }
        for key, value in list(alert.details.items())[:5]:
            if key == "trend_data":
                continue
            payload["attachments"][0]["fields"].append(
                {"title": key, "value": str(value)[:100], "short": True}
            )

        try:
            response = requests.post(self.slack_webhook_url, json=payload, timeout=10)
            return response.status_code == 200
        except requests.RequestException as exc:
            logger.warning("Slack webhook failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def check_stuck_workflows(self) -> List[Alert]:
        """Mark long-running workflows `stuck` and raise workflow_stuck once per workflow."""
        try:
            now = self._clock()
            stuck_hours = self.settings.get("stuck_threshold_hours", 24)
            cutoff = now - timedelta(hours=stuck_hours)
            candidates = self.store.list_executions(statuses=ACTIVE_STATUSES, started_before=cutoff)
        except Exception as exc:
            logger.error("Error checking stuck workflows: %s", exc)
            return []

        alerts: List[Alert] = []
        for candidate in candidates:
            try:
                alert = self._mark_stuck(candidate.workflow_id, now, cutoff, stuck_hours)
            except Exception as exc:
                logger.error("Error marking workflow %s stuck: %s", candidate.workflow_id, exc)
                continue
            if alert is None:
                continue
            alerts.append(alert)
            try:
                self.dispatch(alert)
            except Exception as exc:
                logger.error("Error dispatching stuck alert for %s: %s", candidate.workflow_id, exc)
        return alerts

    def _mark_stuck(self, workflow_id: str, now: datetime, cutoff: datetime,
                    stuck_hours: float) -> Optional[Alert]:
        def apply(execution: WorkflowExecution) -> Optional[Alert]:
            if not execution.is_active or execution.has_alert(AlertType.WORKFLOW_STUCK):
                return None
            started = parse_timestamp(execution.started_at)
            if started >= cutoff:
                return None
            alert = Alert(
                alert_type=AlertType.WORKFLOW_STUCK,
                severity=AlertSeverity.CRITICAL,
                workflow_id=execution.workflow_id,
                message=f"Workflow stuck in {execution.status.value} for over {stuck_hours:g} hours",
                details={
                    "workflow_id": execution.workflow_id,
                    "quote_request_id": execution.quote_request_id,
                    "current_step": execution.current_step,
                    "started_at": execution.started_at,
                    "hours_stuck": round((now - started).total_seconds() / 3600),
                },
            )
            self.mark_alert(execution, alert)
            execution.status = WorkflowStatus.STUCK
            return alert

        with self.locks.hold(workflow_id):
            execution = self.store.get(workflow_id)
            if execution is None or not execution.is_active or execution.has_alert(AlertType.WORKFLOW_STUCK):
                return None
            _, alert = self.store.update(workflow_id, apply)
        return alert

    def monitor_supplier_response_rates(self) -> List[Alert]:
        """Warn when the trailing daily supplier response rate drops below threshold."""
        try:
            trend_days = self.settings.get("supplier_trend_days", 3)
            trends = self.store.supplier_trends(limit=7)
            if not trends:
                return []

            recent = trends[:trend_days]
            recent_avg = sum(t.get("avg_response_rate") or 0 for t in recent) / len(recent)
            threshold = self.settings.get("response_rate_warning_threshold", 0.5) * 100
            if recent_avg >= threshold:
                return []

            alert = Alert(
                alert_type=AlertType.SUPPLIER_NON_RESPONSE,
                severity=AlertSeverity.WARNING,
                message=f"Supplier response rate declining: {recent_avg:.1f}% (last {len(recent)} days)",
                details={
                    "recent_avg_response_rate": recent_avg,
                    "threshold": threshold,
                    "days_averaged": len(recent),
                    "trend_data": trends,
                },
            )
            self.dispatch(alert)
            return [alert]
        except Exception as exc:
            logger.error("Error monitoring supplier response rates: %s", exc)
            return []

    def monitor_customer_acceptance_rates(self) -> List[Alert]:
        """Raise declining_acceptance_rate when recent weekly acceptance is below threshold."""
        try:
            trend_weeks = self.settings.get("acceptance_trend_weeks", 2)
            trends = self.store.customer_acceptance_patterns(limit=4)
            if not trends:
                return []

            recent = trends[:trend_weeks]
            avg_rate = sum(t.get("acceptance_rate") or 0 for t in recent) / len(recent)
            threshold = self.settings.get("acceptance_rate_warning_threshold", 0.3) * 100
            if avg_rate >= threshold:
                return []

            alert = Alert(
                alert_type=AlertType.DECLINING_ACCEPTANCE_RATE,
                severity=AlertSeverity.ERROR,
                message=f"Customer acceptance rate declining: {avg_rate:.1f}% (last {len(recent)} weeks)",
                details={
                    "recent_acceptance_rate": avg_rate,
                    "threshold": threshold,
                    "trend_data": trends,
                },
            )
            self.dispatch(alert)
            return [alert]
        except Exception as exc:
            logger.error("Error monitoring acceptance rates: %s", exc)
            return []

    def monitor_failure_rates(self) -> List[Alert]:
        """Raise high_failure_rate when quote_automation failures exceed the threshold."""
        try:
            metrics = self.store.health_metrics(workflow_type=WorkflowType.QUOTE_AUTOMATION)
            if not metrics:
                return []

            total = sum(m.get("execution_count") or 0 for m in metrics)
            failed = sum(
                m.get("execution_count") or 0 for m in metrics
                if m.get("status") == WorkflowStatus.FAILED.value
            )
            failure_rate = failed / total if total else 0.0
            threshold = self.settings.get("failure_rate_warning_threshold", 0.25)
            if not failure_rate > threshold:
                return []

            alert = Alert(
                alert_type=AlertType.HIGH_FAILURE_RATE,
                severity=AlertSeverity.CRITICAL,
                message=f"High workflow failure rate: {failure_rate * 100:.1f}%",
                details={
                    "failure_rate": failure_rate * 100,
                    "threshold": threshold * 100,
                    "total_executions": total,
                    "failed_executions": failed,
                },
            )
            self.dispatch(alert)
            return [alert]
        except Exception as exc:
            logger.error("Error monitoring failure rates: %s", exc)
            return []

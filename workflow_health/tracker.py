"""
Workflow Execution Tracker
==========================
Records the lifecycle of each quote workflow run: steps, timings, supplier
counters and terminal status.

Features:
- Idempotent step upserts with half-up rounded durations
- Phase duration routing and bottleneck detection on terminal steps
- Failure diagnosis and automated recovery scheduling on failed steps
- Supplier non-response alerting (once per workflow)

Every public method is an entry point for the pipeline driver: it returns a
result dict and never raises. Tracking problems are logged and reported as
{"success": False, "error": ...} so they never fail the workflow being
observed.

Usage:
    tracker.start("wf-123", "quote_automation", quote_request_id="qr-9")
    tracker.update_step_progress("wf-123", "quote_detection", "in_progress")
    tracker.update_step_progress("wf-123", "quote_detection", "completed")
    tracker.complete("wf-123", "completed", {"quote_status": "accepted"})
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from workflow_health.alerts import AlertDispatcher
from workflow_health.bottleneck import PHASE_DURATION_FIELDS, BottleneckDetector
from workflow_health.diagnostics import DiagnosticReport, FailureDiagnosticEngine, circuit_service
from workflow_health.errors import StepTransitionError, WorkflowClosedError
from workflow_health.event_log import EventLog, EventType
from workflow_health.models import (
    TERMINAL_STEP_STATUSES,
    Alert,
    AlertSeverity,
    AlertType,
    IssueKind,
    RecoveryAction,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    WorkflowType,
    elapsed_seconds,
    to_iso,
    utc_now,
)
from workflow_health.recovery import RecoveryCoordinator
from workflow_health.store import WorkflowLockRegistry, WorkflowStore

logger = logging.getLogger("workflow_tracker")

# Steps that move the workflow into a new pipeline status when they start
STEP_WORKFLOW_STATUS: Dict[str, WorkflowStatus] = {
    "quote_detection": WorkflowStatus.DETECTING,
    "contact_suppliers": WorkflowStatus.SUPPLIER_CONTACTED,
    "monitor_responses": WorkflowStatus.AWAITING_RESPONSES,
    "generate_quote_pdf": WorkflowStatus.GENERATING_QUOTE,
}

FINAL_STATUSES = (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


@dataclass
class StepOutcome:
    """Side effects to perform once a step update has been saved."""
    step: str
    status: StepStatus
    changed: bool = True
    duration_seconds: Optional[int] = None
    alerts: List[Alert] = field(default_factory=list)
    report: Optional[DiagnosticReport] = None
    recovery_actions: List[RecoveryAction] = field(default_factory=list)


class WorkflowExecutionTracker:
    """Step lifecycle and timing for quote workflows."""

    def __init__(
        self,
        store: WorkflowStore,
        locks: WorkflowLockRegistry,
        detector: BottleneckDetector,
        diagnostics: FailureDiagnosticEngine,
        recovery: RecoveryCoordinator,
        alerts: AlertDispatcher,
        event_log: Optional[EventLog] = None,
        settings: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.locks = locks
        self.detector = detector
        self.diagnostics = diagnostics
        self.recovery = recovery
        self.alerts = alerts
        self.event_log = event_log
        self.settings = settings or {}
        self._clock = clock
        self.non_response_seconds = self.settings.get("supplier_non_response_seconds", 86400)

    def _log(self, event_type: EventType, workflow_id: str, payload: Dict[str, Any]) -> None:
        if self.event_log is not None:
            self.event_log.log_event(event_type, payload, workflow_id=workflow_id)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def start(
        self,
        workflow_id: str,
        workflow_type: Union[WorkflowType, str] = WorkflowType.QUOTE_AUTOMATION,
        email_log_id: Optional[str] = None,
        quote_request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create the execution record with status `initializing`."""
        try:
            execution = WorkflowExecution(
                workflow_id=workflow_id,
                workflow_type=WorkflowType(workflow_type),
                email_log_id=email_log_id,
                quote_request_id=quote_request_id,
                started_at=to_iso(self._clock()),
                metadata=dict(metadata or {}),
            )
            with self.locks.hold(workflow_id):
                self.store.insert(execution)
        except Exception as exc:
            logger.error("Error starting workflow tracking for %s: %s", workflow_id, exc)
            return {"success": False, "workflow_id": workflow_id, "error": str(exc)}

        logger.info("Started tracking workflow %s (%s)", workflow_id, execution.workflow_type.value)
        self._log(EventType.WORKFLOW_STARTED, workflow_id, {
            "workflow_type": execution.workflow_type.value,
            "email_log_id": email_log_id,
            "quote_request_id": quote_request_id,
        })
        return {"success": True, "workflow_id": workflow_id, "status": execution.status.value}

    # ------------------------------------------------------------------
    # update_step_progress
    # ------------------------------------------------------------------

    def update_step_progress(
        self,
        workflow_id: str,
        step_name: str,
        status: Union[StepStatus, str],
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Upsert a step and run bottleneck / failure handling on terminal transitions."""
        try:
            step_status = StepStatus(status)
            now = self._clock()
            with self.locks.hold(workflow_id):
                execution, outcome = self.store.update(
                    workflow_id,
                    lambda e: self._apply_step(e, step_name, step_status, error, metadata, now),
                )
        except Exception as exc:
            logger.error("Error updating step %s for %s: %s", step_name, workflow_id, exc)
            return {"success": False, "workflow_id": workflow_id, "step": step_name, "error": str(exc)}

        recovery_scheduled = False
        try:
            recovery_scheduled = self._after_step(execution, outcome)
        except Exception as exc:
            logger.error("Error handling step %s side effects for %s: %s", step_name, workflow_id, exc)

        result: Dict[str, Any] = {
            "success": True,
            "workflow_id": workflow_id,
            "step": step_name,
            "status": step_status.value,
            "changed": outcome.changed,
            "duration_seconds": outcome.duration_seconds,
            "bottleneck_detected": any(
                a.alert_type is AlertType.BOTTLENECK_DETECTED for a in outcome.alerts
            ),
            "recovery_scheduled": recovery_scheduled,
        }
        if outcome.report is not None:
            result["diagnostics"] = outcome.report.to_results()
            result["suggestions"] = list(outcome.report.suggestions)
            result["can_auto_recover"] = outcome.report.can_auto_recover
        return result

    def _apply_step(
        self,
        execution: WorkflowExecution,
        step_name: str,
        status: StepStatus,
        error: Optional[str],
        metadata: Optional[Dict[str, Any]],
        now: datetime,
    ) -> StepOutcome:
        if execution.finalized:
            raise WorkflowClosedError(execution.workflow_id)

        outcome = StepOutcome(step=step_name, status=status)
        step = execution.find_step(step_name)
        if step is None:
            step = WorkflowStep(step=step_name)
            execution.steps.append(step)
        elif step.status is status:
            # Repeated update: only metadata may change
            if metadata:
                step.metadata = {**(step.metadata or {}), **metadata}
            outcome.changed = False
            outcome.duration_seconds = step.duration_seconds
            return outcome
        elif step.status in TERMINAL_STEP_STATUSES and status is not StepStatus.IN_PROGRESS:
            raise StepTransitionError(
                f"Step '{step_name}' is already {step.status.value}; cannot move to {status.value}"
            )

        if metadata:
            step.metadata = {**(step.metadata or {}), **metadata}

        if status is StepStatus.IN_PROGRESS:
            running = execution.in_progress_step()
            if running is not None and running is not step:
                raise StepTransitionError(
                    f"Step '{running.step}' is still in progress; cannot start '{step_name}'"
                )
            step.status = status
            step.started_at = to_iso(now)
            step.completed_at = None
            step.duration_seconds = None
            step.error = None
            execution.current_step = step_name
            if step_name in STEP_WORKFLOW_STATUS:
                execution.status = STEP_WORKFLOW_STATUS[step_name]
            return outcome

        step.status = status
        if status is StepStatus.PENDING:
            return outcome
        if status is StepStatus.SKIPPED:
            step.completed_at = to_iso(now)
            return outcome

        # completed / failed
        if step.started_at is None:
            step.started_at = to_iso(now)
        step.completed_at = to_iso(now)
        step.duration_seconds = elapsed_seconds(step.started_at, now)
        step.error = error
        outcome.duration_seconds = step.duration_seconds

        phase = self.detector.phase_for_step(step_name)
        if phase is not None:
            setattr(execution, PHASE_DURATION_FIELDS[phase], step.duration_seconds)

        finding = self.detector.evaluate(step_name, step.duration_seconds)
        if finding is not None:
            self.detector.apply(execution, finding)
            alert = finding.to_alert(execution.workflow_id)
            self.alerts.mark_alert(execution, alert)
            outcome.alerts.append(alert)

        if status is StepStatus.FAILED:
            self._record_failure(execution, step_name, error, now, outcome)
        return outcome

    def _record_failure(self, execution: WorkflowExecution, step_name: str, error: Optional[str],
                        now: datetime, outcome: StepOutcome) -> None:
        message = error or "Unknown error"
        execution.failure_reason = message
        execution.failure_step = step_name
        execution.failure_count += 1
        execution.last_error = message
        execution.error_stack.append({
            "step": step_name,
            "error": message,
            "timestamp": to_iso(now),
        })

        report = self.diagnostics.diagnose(step_name, message, execution)
        execution.diagnostic_results = report.to_results()
        execution.suggested_fixes = list(report.suggestions)
        if any(i.kind is IssueKind.CIRCUIT_BREAKER_TRIGGERED for i in report.classified):
            execution.circuit_breaker_triggered = True
            execution.circuit_breaker_service = circuit_service(message)

        outcome.report = report
        if report.can_auto_recover:
            execution.status = WorkflowStatus.RECOVERING
            outcome.recovery_actions = list(report.recovery_actions)
        else:
            execution.status = WorkflowStatus.FAILED

    def _after_step(self, execution: WorkflowExecution, outcome: StepOutcome) -> bool:
        for alert in outcome.alerts:
            self.alerts.dispatch(alert)

        if outcome.report is not None:
            self._log(EventType.STEP_FAILED, execution.workflow_id, {
                "step": outcome.step,
                "error": execution.last_error,
                "diagnostics": outcome.report.to_results()["diagnostics"],
                "can_auto_recover": outcome.report.can_auto_recover,
            })
        for alert in outcome.alerts:
            self._log(EventType.BOTTLENECK_DETECTED, execution.workflow_id, alert.details)

        if outcome.recovery_actions:
            self.recovery.schedule(execution.workflow_id, outcome.recovery_actions)
            return True
        return False

    # ------------------------------------------------------------------
    # update_supplier_metrics
    # ------------------------------------------------------------------

    def update_supplier_metrics(self, workflow_id: str, contacted: int, responded: int) -> Dict[str, Any]:
        """Update supplier counters; alert once if nobody answered within the wait window."""
        try:
            now = self._clock()
            with self.locks.hold(workflow_id):
                execution, alert = self.store.update(
                    workflow_id,
                    lambda e: self._apply_supplier_metrics(e, contacted, responded, now),
                )
        except Exception as exc:
            logger.error("Error updating supplier metrics for %s: %s", workflow_id, exc)
            return {"success": False, "workflow_id": workflow_id, "error": str(exc)}

        if alert is not None:
            try:
                self.alerts.dispatch(alert)
            except Exception as exc:
                logger.error("Error dispatching supplier alert for %s: %s", workflow_id, exc)

        return {
            "success": True,
            "workflow_id": workflow_id,
            "response_rate": execution.response_rate,
            "alert_raised": alert is not None,
        }

    def _response_wait(self, execution: WorkflowExecution, now: datetime) -> Optional[int]:
        if execution.response_wait_duration is not None:
            return execution.response_wait_duration
        step = execution.find_step("monitor_responses")
        if step is not None and step.status is StepStatus.IN_PROGRESS and step.started_at:
            return elapsed_seconds(step.started_at, now)
        return None

    def _apply_supplier_metrics(self, execution: WorkflowExecution, contacted: int, responded: int,
                                now: datetime) -> Optional[Alert]:
        if contacted < 0 or responded < 0:
            raise ValueError("Supplier counts must be non-negative")
        execution.suppliers_contacted = contacted
        execution.suppliers_responded = responded
        execution.refresh_derived()

        if contacted == 0 or responded != 0 or execution.has_alert(AlertType.SUPPLIER_NON_RESPONSE):
            return None
        wait = self._response_wait(execution, now)
        if wait is None or wait <= self.non_response_seconds:
            return None

        hours = self.non_response_seconds / 3600
        alert = Alert(
            alert_type=AlertType.SUPPLIER_NON_RESPONSE,
            severity=AlertSeverity.WARNING,
            workflow_id=execution.workflow_id,
            message=f"No supplier responses after {contacted} contacts for over {hours:g} hours",
            details={
                "suppliers_contacted": contacted,
                "response_wait_duration": wait,
                "quote_request_id": execution.quote_request_id,
            },
        )
        self.alerts.mark_alert(execution, alert)
        return alert

    # ------------------------------------------------------------------
    # complete / get
    # ------------------------------------------------------------------

    def complete(
        self,
        workflow_id: str,
        status: Union[WorkflowStatus, str] = WorkflowStatus.COMPLETED,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Terminal write. Later step updates are rejected."""
        try:
            final_status = WorkflowStatus(status)
            if final_status not in FINAL_STATUSES:
                raise ValueError(f"complete() requires completed or failed, got {final_status.value}")
            now = self._clock()

            def apply(execution: WorkflowExecution) -> None:
                if execution.finalized:
                    raise WorkflowClosedError(workflow_id)
                execution.status = final_status
                execution.completed_at = to_iso(now)
                execution.metadata.update(metadata or {})
                execution.finalized = True

            with self.locks.hold(workflow_id):
                execution, _ = self.store.update(workflow_id, apply)
        except Exception as exc:
            logger.error("Error completing workflow %s: %s", workflow_id, exc)
            return {"success": False, "workflow_id": workflow_id, "error": str(exc)}

        if self.recovery.cancel(workflow_id):
            logger.info("Cancelled in-flight recovery for completed workflow %s", workflow_id)

        logger.info("Workflow %s finished as %s in %ss",
                    workflow_id, final_status.value, execution.total_duration_seconds)
        self._log(EventType.WORKFLOW_COMPLETED, workflow_id, {
            "status": final_status.value,
            "total_duration_seconds": execution.total_duration_seconds,
        })
        return {
            "success": True,
            "workflow_id": workflow_id,
            "status": final_status.value,
            "total_duration_seconds": execution.total_duration_seconds,
        }

    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        try:
            return self.store.get(workflow_id)
        except Exception as exc:
            logger.error("Error reading workflow %s: %s", workflow_id, exc)
            return None

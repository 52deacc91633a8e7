"""
Workflow Health Engine
======================
Wires the tracker, detector, diagnostics, recovery, alerting, breaker
registry and store into one explicitly constructed service.

Usage:
    from workflow_health import create_engine

    with create_engine() as engine:
        engine.start("wf-123", "quote_automation", quote_request_id="qr-9")
        engine.update_step_progress("wf-123", "quote_detection", "in_progress")
        ...
        alerts = engine.run_monitoring_checks()
"""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from workflow_health.alerts import AlertDispatcher
from workflow_health.bottleneck import BottleneckDetector
from workflow_health.circuit_breaker import CircuitBreakerRegistry
from workflow_health.config import (
    get_alert_settings,
    get_bottleneck_thresholds,
    get_diagnostic_settings,
    get_recovery_settings,
    get_service_definitions,
    get_store_settings,
    load_health_policy,
)
from workflow_health.diagnostics import FailureDiagnosticEngine
from workflow_health.event_log import EventLog
from workflow_health.health import HealthAggregator
from workflow_health.models import Alert, WorkflowExecution, utc_now
from workflow_health.recovery import FollowUpHandler, RecoveryCoordinator, WaitFunction
from workflow_health.store import FileWorkflowStore, WorkflowLockRegistry, WorkflowStore, create_store
from workflow_health.tracker import WorkflowExecutionTracker

logger = logging.getLogger("workflow_health")


class WorkflowHealthEngine:
    """One engine per process (or per test); holds all shared state."""

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        policy: Optional[Dict[str, Any]] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        event_log: Optional[EventLog] = None,
        background_recovery: Optional[bool] = None,
        recovery_executor: Optional[Executor] = None,
        wait: Optional[WaitFunction] = None,
        clock: Callable[[], datetime] = utc_now,
        console_output: Optional[bool] = None,
        slack_webhook_url: Optional[str] = None,
        follow_up_handler: Optional[FollowUpHandler] = None,
        notifier: Optional[Callable[[Alert], None]] = None,
    ):
        self.policy = policy or load_health_policy()
        self.store = store or create_store(get_store_settings(self.policy))
        self.locks = WorkflowLockRegistry()

        if event_log is None:
            path = None
            if isinstance(self.store, FileWorkflowStore):
                path = Path(self.store.directory) / "events.jsonl"
            event_log = EventLog(path)
        self.event_log = event_log

        self.breakers = breakers or CircuitBreakerRegistry(event_log=self.event_log)
        self.breakers.register_services(get_service_definitions(self.policy))

        recovery_settings = get_recovery_settings(self.policy)
        if background_recovery is None:
            background_recovery = bool(recovery_settings.get("background", True))
        if recovery_executor is None and background_recovery:
            recovery_executor = ThreadPoolExecutor(
                max_workers=int(recovery_settings.get("max_workers", 2)),
                thread_name_prefix="workflow-recovery",
            )

        self.detector = BottleneckDetector(get_bottleneck_thresholds(self.policy))
        self.diagnostics = FailureDiagnosticEngine(get_diagnostic_settings(self.policy))
        self.recovery = RecoveryCoordinator(
            self.store,
            self.locks,
            event_log=self.event_log,
            wait=wait,
            executor=recovery_executor,
            follow_up_handler=follow_up_handler,
        )
        self.alerts = AlertDispatcher(
            self.store,
            self.locks,
            settings=get_alert_settings(self.policy),
            event_log=self.event_log,
            clock=clock,
            console_output=console_output,
            slack_webhook_url=slack_webhook_url,
            notifier=notifier,
        )
        self.tracker = WorkflowExecutionTracker(
            self.store,
            self.locks,
            self.detector,
            self.diagnostics,
            self.recovery,
            self.alerts,
            event_log=self.event_log,
            settings=get_alert_settings(self.policy),
            clock=clock,
        )
        self.health = HealthAggregator(self.store, self.alerts, self.breakers)

    def __enter__(self) -> "WorkflowHealthEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # Tracker entry points

    def start(self, workflow_id: str, workflow_type="quote_automation", email_log_id: Optional[str] = None,
              quote_request_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.tracker.start(workflow_id, workflow_type, email_log_id, quote_request_id, metadata)

    def update_step_progress(self, workflow_id: str, step_name: str, status, error: Optional[str] = None,
                             metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.tracker.update_step_progress(workflow_id, step_name, status, error, metadata)

    def update_supplier_metrics(self, workflow_id: str, contacted: int, responded: int) -> Dict[str, Any]:
        return self.tracker.update_supplier_metrics(workflow_id, contacted, responded)

    def complete(self, workflow_id: str, status="completed",
                 metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.tracker.complete(workflow_id, status, metadata)

    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        return self.tracker.get(workflow_id)

    # Alerts

    def check_stuck_workflows(self) -> List[Alert]:
        return self.alerts.check_stuck_workflows()

    def monitor_supplier_response_rates(self) -> List[Alert]:
        return self.alerts.monitor_supplier_response_rates()

    def monitor_customer_acceptance_rates(self) -> List[Alert]:
        return self.alerts.monitor_customer_acceptance_rates()

    def monitor_failure_rates(self) -> List[Alert]:
        return self.alerts.monitor_failure_rates()

    def resolve_alert(self, workflow_id: str) -> bool:
        return self.alerts.resolve_alert(workflow_id)

    # Health

    def get_health_summary(self) -> Optional[Dict[str, Any]]:
        return self.health.get_health_summary()

    def run_monitoring_checks(self) -> List[Alert]:
        return self.health.run_monitoring_checks()

    def record_resilience_snapshot(self) -> int:
        return self.health.record_resilience_snapshot()

    # Operator overrides

    def cancel_recovery(self, workflow_id: str) -> bool:
        return self.recovery.cancel(workflow_id)

    def schedule_recovery(self, workflow_id: str, actions) -> Future:
        return self.recovery.schedule(workflow_id, actions)

    def reset_breaker(self, service_name: str) -> bool:
        return self.breakers.reset(service_name)

    def reset_all_breakers(self) -> None:
        self.breakers.reset_all()

    def shutdown(self, wait: bool = True) -> None:
        self.recovery.shutdown(wait=wait)


def create_engine(policy_path: Optional[Path] = None, **overrides) -> WorkflowHealthEngine:
    """Build an engine from the health policy file (or WORKFLOW_HEALTH_CONFIG)."""
    policy = overrides.pop("policy", None) or load_health_policy(policy_path)
    return WorkflowHealthEngine(policy=policy, **overrides)

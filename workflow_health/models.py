"""
Workflow Health Data Model
==========================
Records shared by the tracker, diagnostics, recovery and alerting layers.

- WorkflowExecution: one end-to-end run of the quote pipeline
- WorkflowStep: a named step inside a run with timing and status
- Alert: an append-only operational alert
- DiagnosticIssue: tagged union of the known failure categories
- RecoveryAction: an automated remediation descriptor

All timestamps are ISO-8601 strings in UTC so records serialize to JSON,
the file store and Supabase rows without conversion.
"""

import math
import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def elapsed_seconds(started_at: str, ended: datetime) -> int:
    """Whole seconds between two instants, rounded half-up and never negative."""
    delta = (ended - parse_timestamp(started_at)).total_seconds()
    return max(0, int(math.floor(delta + 0.5)))


def format_duration(seconds: float) -> str:
    """Human readable duration: 45s, 12m, 1.5h, 2.0d."""
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    if seconds < 86400:
        return f"{seconds / 3600:.1f}h"
    return f"{seconds / 86400:.1f}d"


# =============================================================================
# ENUMS
# =============================================================================

class WorkflowType(Enum):
    """Kinds of tracked workflows."""
    QUOTE_AUTOMATION = "quote_automation"
    MANUAL_QUOTE = "manual_quote"
    APPROVAL = "approval"
    FOLLOW_UP = "follow_up"


class WorkflowStatus(Enum):
    """Workflow execution lifecycle status."""
    INITIALIZING = "initializing"
    DETECTING = "detecting"
    SUPPLIER_CONTACTED = "supplier_contacted"
    AWAITING_RESPONSES = "awaiting_responses"
    GENERATING_QUOTE = "generating_quote"
    RECOVERING = "recovering"
    COMPLETED = "completed"
    FAILED = "failed"
    STUCK = "stuck"


# Statuses a stuck-workflow sweep treats as still running
ACTIVE_STATUSES = (
    WorkflowStatus.INITIALIZING,
    WorkflowStatus.DETECTING,
    WorkflowStatus.SUPPLIER_CONTACTED,
    WorkflowStatus.AWAITING_RESPONSES,
    WorkflowStatus.GENERATING_QUOTE,
)


class StepStatus(Enum):
    """Individual step status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class AlertType(Enum):
    WORKFLOW_STUCK = "workflow_stuck"
    SUPPLIER_NON_RESPONSE = "supplier_non_response"
    DECLINING_ACCEPTANCE_RATE = "declining_acceptance_rate"
    HIGH_FAILURE_RATE = "high_failure_rate"
    BOTTLENECK_DETECTED = "bottleneck_detected"


class AlertSeverity(Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class IssueKind(Enum):
    """Known failure categories plus an explicit unclassified tag."""
    CIRCUIT_BREAKER_TRIGGERED = "circuit_breaker_triggered"
    NO_SUPPLIERS_AVAILABLE = "no_suppliers_available"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    EMAIL_SERVICE_FAILURE = "email_service_failure"
    PDF_GENERATION_FAILURE = "pdf_generation_failure"
    NO_SUPPLIER_RESPONSES = "no_supplier_responses"
    UNCLASSIFIED = "unclassified"


class IssueSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryActionType(Enum):
    WAIT_FOR_CIRCUIT_BREAKER_RESET = "wait_for_circuit_breaker_reset"
    RETRY_WITH_EXTENDED_TIMEOUT = "retry_with_extended_timeout"
    RETRY_EMAIL_SEND = "retry_email_send"
    SEND_SUPPLIER_FOLLOW_UPS = "send_supplier_follow_ups"


# =============================================================================
# DIAGNOSTICS & RECOVERY
# =============================================================================

@dataclass(frozen=True)
class DiagnosticIssue:
    """One classified failure. `kind` is the tag of the union."""
    kind: IssueKind
    severity: IssueSeverity
    description: str
    suggested_fixes: tuple = ()
    automated_fix_available: bool = False

    @classmethod
    def unclassified(cls, error: str) -> "DiagnosticIssue":
        return cls(
            kind=IssueKind.UNCLASSIFIED,
            severity=IssueSeverity.MEDIUM,
            description=f"No known signature matched: {error[:200]}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue": self.kind.value,
            "severity": self.severity.value,
            "description": self.description,
            "suggested_fixes": list(self.suggested_fixes),
            "automated_fix_available": self.automated_fix_available,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiagnosticIssue":
        return cls(
            kind=IssueKind(data["issue"]),
            severity=IssueSeverity(data["severity"]),
            description=data.get("description", ""),
            suggested_fixes=tuple(data.get("suggested_fixes", [])),
            automated_fix_available=bool(data.get("automated_fix_available", False)),
        )


@dataclass(frozen=True)
class RecoveryAction:
    """Recovery descriptor; only the parameter matching `action` is set."""
    action: RecoveryActionType
    delay_seconds: Optional[float] = None
    timeout_multiplier: Optional[float] = None
    backoff_seconds: Optional[float] = None
    quote_request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action": self.action.value}
        for name in ("delay_seconds", "timeout_multiplier", "backoff_seconds", "quote_request_id"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.action is RecoveryActionType.SEND_SUPPLIER_FOLLOW_UPS:
            data.setdefault("quote_request_id", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoveryAction":
        return cls(
            action=RecoveryActionType(data["action"]),
            delay_seconds=data.get("delay_seconds"),
            timeout_multiplier=data.get("timeout_multiplier"),
            backoff_seconds=data.get("backoff_seconds"),
            quote_request_id=data.get("quote_request_id"),
        )


# =============================================================================
# ALERTS
# =============================================================================

@dataclass
class Alert:
    """An operational alert. Never mutated after creation."""
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    workflow_id: Optional[str] = None
    timestamp: str = ""
    alert_id: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = to_iso(utc_now())
        if not self.alert_id:
            self.alert_id = str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "workflow_id": self.workflow_id,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        return cls(
            alert_type=AlertType(data["type"]),
            severity=AlertSeverity(data["severity"]),
            message=data.get("message", ""),
            details=data.get("details") or {},
            workflow_id=data.get("workflow_id"),
            timestamp=data.get("timestamp", ""),
            alert_id=data.get("alert_id", ""),
        )


# =============================================================================
# WORKFLOW EXECUTION
# =============================================================================

@dataclass
class WorkflowStep:
    """A single named step of a workflow run."""
    step: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "status": self.status.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowStep":
        data = dict(data)
        data["status"] = StepStatus(data.get("status", "pending"))
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class WorkflowExecution:
    """Row of the quote_workflow_executions table."""
    workflow_id: str
    workflow_type: WorkflowType = WorkflowType.QUOTE_AUTOMATION
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    steps: List[WorkflowStep] = field(default_factory=list)
    current_step: Optional[str] = None
    email_log_id: Optional[str] = None
    quote_request_id: Optional[str] = None
    started_at: str = field(default_factory=lambda: to_iso(utc_now()))
    completed_at: Optional[str] = None
    total_duration_seconds: Optional[int] = None

    # Phase durations (seconds)
    detection_duration: Optional[int] = None
    supplier_contact_duration: Optional[int] = None
    response_wait_duration: Optional[int] = None
    quote_generation_duration: Optional[int] = None
    approval_duration: Optional[int] = None
    send_duration: Optional[int] = None

    suppliers_contacted: int = 0
    suppliers_responded: int = 0
    response_rate: Optional[float] = None

    failure_reason: Optional[str] = None
    failure_step: Optional[str] = None
    failure_count: int = 0
    last_error: Optional[str] = None
    error_stack: List[Dict[str, Any]] = field(default_factory=list)

    bottleneck_detected: bool = False
    bottleneck_step: Optional[str] = None
    bottleneck_duration: Optional[int] = None
    bottleneck_threshold_exceeded_by: Optional[int] = None

    recovery_attempted: bool = False
    recovery_actions: List[Dict[str, Any]] = field(default_factory=list)
    recovery_successful: Optional[bool] = None

    diagnostic_results: Dict[str, Any] = field(default_factory=dict)
    suggested_fixes: List[str] = field(default_factory=list)

    alert_triggered: bool = False
    alert_type: Optional[str] = None
    alert_sent_at: Optional[str] = None
    alert_resolved_at: Optional[str] = None
    alert_log: List[Dict[str, Any]] = field(default_factory=list)

    circuit_breaker_triggered: bool = False
    circuit_breaker_service: Optional[str] = None

    finalized: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0
    updated_at: Optional[str] = None

    def find_step(self, step_name: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step == step_name:
                return step
        return None

    def in_progress_step(self) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.status is StepStatus.IN_PROGRESS:
                return step
        return None

    def has_alert(self, alert_type: AlertType) -> bool:
        return any(entry.get("type") == alert_type.value for entry in self.alert_log)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def refresh_derived(self) -> None:
        """Recompute columns the database trigger would maintain."""
        if self.completed_at and self.started_at:
            self.total_duration_seconds = elapsed_seconds(
                self.started_at, parse_timestamp(self.completed_at)
            )
        else:
            self.total_duration_seconds = None
        if self.suppliers_contacted > 0:
            self.response_rate = round(self.suppliers_responded / self.suppliers_contacted * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["workflow_type"] = self.workflow_type.value
        data["status"] = self.status.value
        data["steps"] = [step.to_dict() for step in self.steps]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["workflow_type"] = WorkflowType(values.get("workflow_type", "quote_automation"))
        values["status"] = WorkflowStatus(values.get("status", "initializing"))
        values["steps"] = [WorkflowStep.from_dict(s) for s in values.get("steps") or []]
        for list_field in ("error_stack", "recovery_actions", "suggested_fixes", "alert_log"):
            if values.get(list_field) is None:
                values[list_field] = []
        for dict_field in ("diagnostic_results", "metadata"):
            if values.get(dict_field) is None:
                values[dict_field] = {}
        return cls(**values)

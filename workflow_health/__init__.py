"""
Quote workflow health and resilience engine.
"""

from workflow_health.alerts import AlertDispatcher
from workflow_health.bottleneck import BottleneckDetector, BottleneckFinding
from workflow_health.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    ResilienceMetrics,
    ServiceHealth,
    with_circuit_breaker,
)
from workflow_health.diagnostics import DiagnosticReport, FailureDiagnosticEngine
from workflow_health.engine import WorkflowHealthEngine, create_engine
from workflow_health.errors import (
    CircuitOpenError,
    RecoveryCancelledError,
    StaleWriteError,
    StepTransitionError,
    UnknownRecoveryActionError,
    WorkflowClosedError,
    WorkflowExistsError,
    WorkflowHealthError,
    WorkflowNotFoundError,
)
from workflow_health.event_log import EventLog, EventType
from workflow_health.health import HealthAggregator
from workflow_health.models import (
    Alert,
    AlertSeverity,
    AlertType,
    DiagnosticIssue,
    IssueKind,
    IssueSeverity,
    RecoveryAction,
    RecoveryActionType,
    StepStatus,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
    WorkflowType,
    format_duration,
)
from workflow_health.recovery import RecoveryCoordinator
from workflow_health.retry import RetryPolicy
from workflow_health.store import (
    FileWorkflowStore,
    InMemoryWorkflowStore,
    SupabaseWorkflowStore,
    WorkflowLockRegistry,
    WorkflowStore,
    create_store,
)
from workflow_health.tracker import WorkflowExecutionTracker

__all__ = [
    "Alert",
    "AlertDispatcher",
    "AlertSeverity",
    "AlertType",
    "BottleneckDetector",
    "BottleneckFinding",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "DiagnosticIssue",
    "DiagnosticReport",
    "EventLog",
    "EventType",
    "FailureDiagnosticEngine",
    "FileWorkflowStore",
    "HealthAggregator",
    "InMemoryWorkflowStore",
    "IssueKind",
    "IssueSeverity",
    "RecoveryAction",
    "RecoveryActionType",
    "RecoveryCancelledError",
    "RecoveryCoordinator",
    "ResilienceMetrics",
    "RetryPolicy",
    "ServiceHealth",
    "StaleWriteError",
    "StepStatus",
    "StepTransitionError",
    "SupabaseWorkflowStore",
    "UnknownRecoveryActionError",
    "WorkflowClosedError",
    "WorkflowExecution",
    "WorkflowExecutionTracker",
    "WorkflowExistsError",
    "WorkflowHealthError",
    "WorkflowHealthEngine",
    "WorkflowLockRegistry",
    "WorkflowNotFoundError",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowStore",
    "WorkflowType",
    "create_engine",
    "create_store",
    "format_duration",
    "with_circuit_breaker",
]

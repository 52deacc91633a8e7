"""
Exception types for the workflow health engine.
"""

from typing import Optional


class WorkflowHealthError(Exception):
    """Base class for all engine errors."""


class WorkflowNotFoundError(WorkflowHealthError):
    """Raised when a workflow_id has no execution record."""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow execution '{workflow_id}' not found")


class WorkflowExistsError(WorkflowHealthError):
    """Raised when tracking is started twice for the same workflow_id."""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow execution '{workflow_id}' already exists")


class WorkflowClosedError(WorkflowHealthError):
    """Raised when a completed workflow receives further step updates."""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow execution '{workflow_id}' is complete; no further updates allowed")


class StepTransitionError(WorkflowHealthError):
    """Raised when a step update would break the step lifecycle."""


class StaleWriteError(WorkflowHealthError):
    """Raised when a save loses an optimistic version check."""
    def __init__(self, workflow_id: str, expected_version: int, actual_version: Optional[int] = None):
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"Stale write for '{workflow_id}': expected version {expected_version}"
        if actual_version is not None:
            msg += f", found {actual_version}"
        super().__init__(msg)


class RecoveryCancelledError(WorkflowHealthError):
    """Raised inside a recovery run once an operator cancels it."""
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Recovery cancelled for '{workflow_id}'")


class UnknownRecoveryActionError(WorkflowHealthError):
    """Raised for a recovery action the coordinator cannot execute."""


class CircuitOpenError(WorkflowHealthError):
    """Raised when a call is rejected because the service circuit is OPEN."""
    def __init__(self, service_name: str, time_until_retry: Optional[float] = None):
        self.service_name = service_name
        self.time_until_retry = time_until_retry
        msg = f"Circuit breaker open for {service_name}"
        if time_until_retry:
            msg += f" - retry in {time_until_retry:.1f}s"
        super().__init__(msg)

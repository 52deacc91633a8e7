"""
Recovery Coordinator
====================
Executes the recovery actions proposed by the diagnostic engine.

A run marks the workflow `recovering`, persists the action list, then
executes the actions one after another. If every action completes the
workflow returns to `initializing` so its orchestrator can retry it; the
first action that raises aborts the run and leaves the workflow `failed`.
This component never re-invokes business logic itself.

Runs are submitted to a small thread pool and return futures, so waits
(circuit breaker reset, email back-off) never block the caller. Each run
carries a cancel event; an operator cancel counts as a failed action.

Usage:
    coordinator = RecoveryCoordinator(store, locks, event_log,
                                      executor=ThreadPoolExecutor(max_workers=2))
    future = coordinator.schedule("wf-1", report.recovery_actions)
    coordinator.cancel("wf-1")
"""

import logging
import threading
from concurrent.futures import Executor, Future
from typing import Callable, Dict, List, Optional, Sequence

from workflow_health.errors import RecoveryCancelledError, UnknownRecoveryActionError
from workflow_health.event_log import EventLog, EventType
from workflow_health.models import (
    RecoveryAction,
    RecoveryActionType,
    WorkflowExecution,
    WorkflowStatus,
    to_iso,
    utc_now,
)
from workflow_health.store import WorkflowLockRegistry, WorkflowStore

logger = logging.getLogger("recovery_coordinator")

# wait(seconds, cancel_event) blocks for up to `seconds` or until cancelled
WaitFunction = Callable[[float, threading.Event], object]
FollowUpHandler = Callable[[str, Optional[str]], None]


def _event_wait(seconds: float, cancel_event: threading.Event) -> bool:
    return cancel_event.wait(seconds)


class RecoveryCoordinator:
    """Runs recovery action sequences, one active run per workflow."""

    def __init__(
        self,
        store: WorkflowStore,
        locks: WorkflowLockRegistry,
        event_log: Optional[EventLog] = None,
        wait: Optional[WaitFunction] = None,
        executor: Optional[Executor] = None,
        follow_up_handler: Optional[FollowUpHandler] = None,
    ):
        self.store = store
        self.locks = locks
        self.event_log = event_log
        self.executor = executor
        self.follow_up_handler = follow_up_handler
        self._wait = wait or _event_wait
        self._cancel_events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, workflow_id: str, actions: Sequence[RecoveryAction]) -> Future:
        """
        Submit a recovery run. Without an executor the run happens inline
        and the returned future is already resolved.
        """
        cancel_event = threading.Event()
        with self._lock:
            previous = self._cancel_events.get(workflow_id)
            if previous is not None:
                previous.set()
                logger.info("Superseding running recovery for %s", workflow_id)
            self._cancel_events[workflow_id] = cancel_event

        if self.executor is None:
            future: Future = Future()
            try:
                future.set_result(self._run(workflow_id, list(actions), cancel_event))
            except Exception as exc:
                logger.error("Recovery for %s could not run: %s", workflow_id, exc)
                future.set_exception(exc)
            finally:
                self._forget(workflow_id, cancel_event)
            return future

        future = self.executor.submit(self._run, workflow_id, list(actions), cancel_event)
        with self._lock:
            self._futures[workflow_id] = future
        future.add_done_callback(lambda f: self._on_done(workflow_id, cancel_event, f))
        return future

    def attempt_recovery(self, workflow_id: str, actions: Sequence[RecoveryAction]) -> bool:
        """Run recovery in the calling thread and return whether it succeeded."""
        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[workflow_id] = cancel_event
        try:
            return self._run(workflow_id, list(actions), cancel_event)
        finally:
            self._forget(workflow_id, cancel_event)

    def cancel(self, workflow_id: str) -> bool:
        """Cancel the active run for a workflow. Returns False if none is running."""
        with self._lock:
            cancel_event = self._cancel_events.get(workflow_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.warning("Recovery for %s cancelled by operator", workflow_id)
        return True

    def is_running(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._cancel_events

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        if cancel_pending:
            with self._lock:
                events = list(self._cancel_events.values())
            for cancel_event in events:
                cancel_event.set()
        if self.executor is not None:
            self.executor.shutdown(wait=wait)

    def _forget(self, workflow_id: str, cancel_event: threading.Event) -> None:
        with self._lock:
            if self._cancel_events.get(workflow_id) is cancel_event:
                del self._cancel_events[workflow_id]
            self._futures.pop(workflow_id, None)

    def _on_done(self, workflow_id: str, cancel_event: threading.Event, future: Future) -> None:
        self._forget(workflow_id, cancel_event)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Recovery for %s could not run: %s", workflow_id, exc)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _log(self, event_type: EventType, workflow_id: str, payload: Dict) -> None:
        if self.event_log is not None:
            self.event_log.log_event(event_type, payload, workflow_id=workflow_id)

    def _run(self, workflow_id: str, actions: List[RecoveryAction], cancel_event: threading.Event) -> bool:
        def begin(execution: WorkflowExecution) -> bool:
            if execution.finalized:
                return False
            execution.status = WorkflowStatus.RECOVERING
            execution.recovery_attempted = True
            execution.recovery_actions = [action.to_dict() for action in actions]
            execution.recovery_successful = None
            return True

        with self.locks.hold(workflow_id):
            _, started = self.store.update(workflow_id, begin)
        if not started:
            logger.info("Workflow %s is complete; recovery not started", workflow_id)
            return False

        logger.info("Attempting recovery for %s with %d action(s)", workflow_id, len(actions))
        self._log(EventType.RECOVERY_STARTED, workflow_id,
                  {"actions": [action.to_dict() for action in actions]})

        try:
            for index, action in enumerate(actions):
                if cancel_event.is_set():
                    raise RecoveryCancelledError(workflow_id)
                self._execute(workflow_id, action, cancel_event)
                self._log(EventType.RECOVERY_ACTION, workflow_id,
                          {"index": index, **action.to_dict()})
        except Exception as exc:
            logger.error("Recovery failed for %s: %s", workflow_id, exc)
            self._finish(workflow_id, success=False, error=exc)
            return False

        return self._finish(workflow_id, success=True)

    def _execute(self, workflow_id: str, action: RecoveryAction, cancel_event: threading.Event) -> None:
        kind = action.action
        if kind is RecoveryActionType.WAIT_FOR_CIRCUIT_BREAKER_RESET:
            self._pause(workflow_id, action.delay_seconds or 0, cancel_event)
        elif kind is RecoveryActionType.RETRY_EMAIL_SEND:
            self._pause(workflow_id, action.backoff_seconds or 0, cancel_event)
        elif kind is RecoveryActionType.RETRY_WITH_EXTENDED_TIMEOUT:
            self._extend_timeout(workflow_id, action.timeout_multiplier or 1)
        elif kind is RecoveryActionType.SEND_SUPPLIER_FOLLOW_UPS:
            self._request_follow_ups(workflow_id, action.quote_request_id)
        else:
            raise UnknownRecoveryActionError(f"Cannot execute recovery action {kind!r}")

    def _pause(self, workflow_id: str, seconds: float, cancel_event: threading.Event) -> None:
        logger.info("Recovery for %s waiting %ss", workflow_id, seconds)
        self._wait(seconds, cancel_event)
        if cancel_event.is_set():
            raise RecoveryCancelledError(workflow_id)

    def _extend_timeout(self, workflow_id: str, multiplier: float) -> None:
        def apply(execution: WorkflowExecution) -> None:
            execution.metadata["timeout_multiplier"] = multiplier

        with self.locks.hold(workflow_id):
            self.store.update(workflow_id, apply)
        logger.info("Timeout multiplier for %s set to %s", workflow_id, multiplier)

    def _request_follow_ups(self, workflow_id: str, quote_request_id: Optional[str]) -> None:
        self._log(EventType.SUPPLIER_FOLLOW_UP_REQUESTED, workflow_id, {
            "quote_request_id": quote_request_id,
            "action": "send_follow_up_emails",
        })
        if self.follow_up_handler is not None:
            self.follow_up_handler(workflow_id, quote_request_id)
        logger.info("Supplier follow-ups requested for %s (quote request %s)", workflow_id, quote_request_id)

    def _finish(self, workflow_id: str, success: bool, error: Optional[Exception] = None) -> bool:
        """Record the run outcome. Returns False if the workflow was completed meanwhile."""
        def apply(execution: WorkflowExecution) -> bool:
            # complete() is terminal; a late recovery result leaves the record as written
            if execution.finalized:
                return False
            execution.recovery_successful = success
            if success:
                execution.status = WorkflowStatus.INITIALIZING
                execution.completed_at = None
            else:
                execution.status = WorkflowStatus.FAILED
                execution.error_stack.append({
                    "step": "recovery",
                    "error": str(error),
                    "timestamp": to_iso(utc_now()),
                })
            return True

        with self.locks.hold(workflow_id):
            _, applied = self.store.update(workflow_id, apply)

        if not applied:
            logger.info("Workflow %s was completed during recovery; outcome not applied", workflow_id)
            self._log(EventType.RECOVERY_FAILED, workflow_id,
                      {"recovery_successful": False, "error": "workflow completed during recovery"})
            return False
        if success:
            logger.info("Recovery succeeded for %s; workflow is retryable", workflow_id)
            self._log(EventType.RECOVERY_COMPLETED, workflow_id, {"recovery_successful": True})
        else:
            self._log(EventType.RECOVERY_FAILED, workflow_id,
                      {"recovery_successful": False, "error": str(error)})
        return success

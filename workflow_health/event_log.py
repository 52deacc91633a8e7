"""
Operator event log for the workflow health engine.
Writes structured events to JSONL format.
"""

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("event_log")


class EventType(Enum):
    """Classification of workflow health events."""
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    STEP_FAILED = "step_failed"
    BOTTLENECK_DETECTED = "bottleneck_detected"
    RECOVERY_STARTED = "recovery_started"
    RECOVERY_ACTION = "recovery_action"
    RECOVERY_COMPLETED = "recovery_completed"
    RECOVERY_FAILED = "recovery_failed"
    SUPPLIER_FOLLOW_UP_REQUESTED = "recovery_action_supplier_follow_up"
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_RESOLVED = "alert_resolved"
    CIRCUIT_STATE_CHANGED = "circuit_state_changed"


class EventLog:
    """
    Append-only JSONL event store.

    Events are also kept in memory (most recent `max_in_memory`) so
    callers without a file path, tests included, can inspect them.
    """

    def __init__(self, path: Optional[Path] = None, agent_name: str = "QuoteWorkflowMonitor",
                 max_in_memory: int = 1000):
        self.path = Path(path) if path else None
        self.agent_name = agent_name
        self.max_in_memory = max_in_memory
        self._events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: EventType,
        payload: Dict[str, Any],
        workflow_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log an event.

        Args:
            event_type: The type of event being logged
            payload: Event-specific data
            workflow_id: Workflow the event belongs to, if any
            metadata: Optional additional context

        Returns:
            The generated event_id
        """
        event_id = str(uuid.uuid4())
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_id": event_id,
            "event_type": event_type.value,
            "agent_name": self.agent_name,
            "workflow_id": workflow_id,
            "payload": payload,
        }
        if metadata:
            event["metadata"] = metadata

        with self._lock:
            self._events.append(event)
            if len(self._events) > self.max_in_memory:
                self._events = self._events[-self.max_in_memory:]

            if self.path is not None:
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a", encoding="utf-8") as f:
                        f.write(json.dumps(event, default=str) + "\n")
                except OSError as exc:
                    logger.warning("Failed to write event %s to %s: %s", event_type.value, self.path, exc)

        return event_id

    def events(self, event_type: Optional[EventType] = None,
               workflow_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return in-memory events, optionally filtered."""
        with self._lock:
            events = list(self._events)
        if event_type is not None:
            events = [e for e in events if e["event_type"] == event_type.value]
        if workflow_id is not None:
            events = [e for e in events if e["workflow_id"] == workflow_id]
        return events

#!/usr/bin/env python3
"""
Persistence for workflow executions, alerts and operator messages.

Backends:
- InMemoryWorkflowStore: single process, used by tests
- FileWorkflowStore: JSON per workflow under .hive-mind/, JSONL side tables
- SupabaseWorkflowStore: quote_workflow_executions table plus the
  aggregated monitoring views

Every backend applies an optimistic version check on save() and derives
total_duration_seconds / response_rate before writing. Writers for the same
workflow are additionally serialized in-process through WorkflowLockRegistry.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from workflow_health.errors import (
    StaleWriteError,
    WorkflowExistsError,
    WorkflowHealthError,
    WorkflowNotFoundError,
)
from workflow_health.models import (
    Alert,
    AlertType,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowType,
    parse_timestamp,
    to_iso,
    utc_now,
)

logger = logging.getLogger("workflow_store")

EXECUTIONS_TABLE = "quote_workflow_executions"
AGENT_NAME = "QuoteWorkflowMonitor"


class WorkflowLockRegistry:
    """One re-entrant lock per workflow_id, shared by every writer."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, workflow_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[workflow_id] = lock
            return lock

    @contextmanager
    def hold(self, workflow_id: str) -> Iterator[None]:
        lock = self.lock_for(workflow_id)
        with lock:
            yield


def _avg(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


def _pct(part: int, whole: int) -> Optional[float]:
    if not whole:
        return None
    return round(part / whole * 100, 2)


def _day_of(timestamp: str) -> str:
    return parse_timestamp(timestamp).date().isoformat()


def _week_of(timestamp: str) -> str:
    day = parse_timestamp(timestamp).date()
    return (day - timedelta(days=day.weekday())).isoformat()


class WorkflowStore(ABC):
    """
    Storage interface.

    Subclasses implement the record operations; the aggregated views are
    computed here from list_executions() unless the backend can read them
    directly (Supabase views).
    """

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    @abstractmethod
    def insert(self, execution: WorkflowExecution) -> WorkflowExecution:
        raise NotImplementedError

    @abstractmethod
    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        raise NotImplementedError

    @abstractmethod
    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        """
        Persist `execution` if the stored version still equals
        execution.version, then bump the version.

        Raises:
            WorkflowNotFoundError: no stored record
            StaleWriteError: another writer saved first
        """
        raise NotImplementedError

    @abstractmethod
    def list_executions(
        self,
        statuses: Optional[Sequence[WorkflowStatus]] = None,
        workflow_type: Optional[WorkflowType] = None,
        started_before: Optional[datetime] = None,
    ) -> List[WorkflowExecution]:
        raise NotImplementedError

    @abstractmethod
    def append_alert(self, alert: Alert) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_alerts(self, workflow_id: Optional[str] = None,
                    alert_type: Optional[AlertType] = None) -> List[Alert]:
        raise NotImplementedError

    @abstractmethod
    def post_operator_message(self, to_agent: str, message: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_resilience_metrics(self, rows: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    def require(self, workflow_id: str) -> WorkflowExecution:
        execution = self.get(workflow_id)
        if execution is None:
            raise WorkflowNotFoundError(workflow_id)
        return execution

    def update(self, workflow_id: str, mutate: Callable[[WorkflowExecution], Any],
               attempts: int = 3) -> Tuple[WorkflowExecution, Any]:
        """
        Read-modify-write with retry on StaleWriteError.

        `mutate` must be safe to re-run against a freshly read record.
        Returns the saved execution and whatever `mutate` returned.
        """
        for attempt in range(1, attempts + 1):
            execution = self.require(workflow_id)
            result = mutate(execution)
            try:
                self.save(execution)
                return execution, result
            except StaleWriteError as exc:
                if attempt == attempts:
                    raise
                logger.warning("Retrying update of %s after stale write (attempt %d): %s",
                               workflow_id, attempt, exc)
        raise StaleWriteError(workflow_id, -1)

    @staticmethod
    def _prepare(execution: WorkflowExecution) -> None:
        execution.refresh_derived()
        execution.updated_at = to_iso(utc_now())

    @staticmethod
    def _matches(
        execution: WorkflowExecution,
        statuses: Optional[Sequence[WorkflowStatus]],
        workflow_type: Optional[WorkflowType],
        started_before: Optional[datetime],
    ) -> bool:
        if statuses is not None and execution.status not in statuses:
            return False
        if workflow_type is not None and execution.workflow_type is not workflow_type:
            return False
        if started_before is not None and parse_timestamp(execution.started_at) >= started_before:
            return False
        return True

    # ------------------------------------------------------------------
    # Aggregated views
    # ------------------------------------------------------------------

    def supplier_trends(self, limit: int = 7) -> List[Dict[str, Any]]:
        """Daily supplier response trends, newest day first."""
        by_day: Dict[str, List[WorkflowExecution]] = {}
        for execution in self.list_executions():
            if execution.suppliers_contacted > 0:
                by_day.setdefault(_day_of(execution.started_at), []).append(execution)

        rows = []
        for day in sorted(by_day, reverse=True):
            group = by_day[day]
            completed = sum(1 for e in group if e.status is WorkflowStatus.COMPLETED)
            rows.append({
                "date": day,
                "avg_response_rate": _avg(e.response_rate for e in group),
                "avg_suppliers_contacted": _avg(e.suppliers_contacted for e in group),
                "avg_suppliers_responded": _avg(e.suppliers_responded for e in group),
                "avg_response_wait_duration": _avg(e.response_wait_duration for e in group),
                "workflow_count": len(group),
                "completion_rate": _pct(completed, len(group)),
            })
        return rows[:limit]

    def customer_acceptance_patterns(self, limit: int = 4) -> List[Dict[str, Any]]:
        """
        Weekly acceptance of sent quotes, newest week first.

        The customer's decision is read from metadata["quote_status"]
        ("accepted" / "rejected") recorded at completion.
        """
        by_week: Dict[str, List[WorkflowExecution]] = {}
        for execution in self.list_executions(statuses=[WorkflowStatus.COMPLETED]):
            by_week.setdefault(_week_of(execution.started_at), []).append(execution)

        rows = []
        for week in sorted(by_week, reverse=True):
            group = by_week[week]
            sent = {e.quote_request_id for e in group if e.quote_request_id}
            accepted = {e.quote_request_id for e in group
                        if e.quote_request_id and e.metadata.get("quote_status") == "accepted"}
            rejected = {e.quote_request_id for e in group
                        if e.quote_request_id and e.metadata.get("quote_status") == "rejected"}
            rows.append({
                "week": week,
                "quotes_sent": len(sent),
                "quotes_accepted": len(accepted),
                "quotes_rejected": len(rejected),
                "acceptance_rate": _pct(len(accepted), len(sent)),
                "avg_time_to_send_seconds": _avg(e.total_duration_seconds for e in group),
            })
        return rows[:limit]

    def health_metrics(self, workflow_type: Optional[WorkflowType] = None) -> List[Dict[str, Any]]:
        """Execution counts and averages grouped by (workflow_type, status)."""
        groups: Dict[tuple, List[WorkflowExecution]] = {}
        for execution in self.list_executions(workflow_type=workflow_type):
            key = (execution.workflow_type.value, execution.status.value)
            groups.setdefault(key, []).append(execution)

        rows = []
        for (wf_type, status), group in sorted(groups.items()):
            attempted = [e for e in group if e.recovery_attempted]
            rows.append({
                "workflow_type": wf_type,
                "status": status,
                "execution_count": len(group),
                "avg_duration_seconds": _avg(e.total_duration_seconds for e in group),
                "avg_detection_duration": _avg(e.detection_duration for e in group),
                "avg_supplier_contact_duration": _avg(e.supplier_contact_duration for e in group),
                "avg_response_wait_duration": _avg(e.response_wait_duration for e in group),
                "avg_quote_generation_duration": _avg(e.quote_generation_duration for e in group),
                "avg_approval_duration": _avg(e.approval_duration for e in group),
                "avg_send_duration": _avg(e.send_duration for e in group),
                "avg_supplier_response_rate": _avg(e.response_rate for e in group),
                "bottleneck_count": sum(1 for e in group if e.bottleneck_detected),
                "recovery_attempt_count": len(attempted),
                "recovery_success_rate": _pct(
                    sum(1 for e in attempted if e.recovery_successful), len(attempted)
                ),
                "alert_count": sum(1 for e in group if e.alert_triggered),
            })
        return rows

    def bottleneck_analysis(self, limit: int = 10) -> List[Dict[str, Any]]:
        groups: Dict[str, List[WorkflowExecution]] = {}
        for execution in self.list_executions():
            if execution.bottleneck_detected and execution.bottleneck_step:
                groups.setdefault(execution.bottleneck_step, []).append(execution)

        rows = [
            {
                "bottleneck_step": step,
                "occurrence_count": len(group),
                "avg_bottleneck_duration": _avg(e.bottleneck_duration for e in group),
                "max_bottleneck_duration": max((e.bottleneck_duration or 0) for e in group),
                "avg_threshold_exceeded_by": _avg(e.bottleneck_threshold_exceeded_by for e in group),
                "led_to_failure_count": sum(1 for e in group if e.status is WorkflowStatus.FAILED),
            }
            for step, group in groups.items()
        ]
        rows.sort(key=lambda r: r["occurrence_count"], reverse=True)
        return rows[:limit]

    def failure_analysis(self, limit: int = 10) -> List[Dict[str, Any]]:
        groups: Dict[tuple, List[WorkflowExecution]] = {}
        for execution in self.list_executions(statuses=[WorkflowStatus.FAILED]):
            groups.setdefault((execution.failure_step, execution.failure_reason), []).append(execution)

        rows = []
        for (step, reason), group in groups.items():
            fixes: List[str] = []
            for execution in group:
                for fix in execution.suggested_fixes:
                    if fix not in fixes:
                        fixes.append(fix)
            rows.append({
                "failure_step": step,
                "failure_reason": reason,
                "failure_count": len(group),
                "avg_retry_count": _avg(e.failure_count for e in group),
                "recovery_attempted_count": sum(1 for e in group if e.recovery_attempted),
                "recovery_successful_count": sum(1 for e in group if e.recovery_successful),
                "avg_duration_before_failure": _avg(e.total_duration_seconds for e in group),
                "circuit_breaker_count": sum(1 for e in group if e.circuit_breaker_triggered),
                "common_suggested_fixes": fixes[:5],
            })
        rows.sort(key=lambda r: r["failure_count"], reverse=True)
        return rows[:limit]

    def alert_summary(self) -> List[Dict[str, Any]]:
        groups: Dict[str, List[WorkflowExecution]] = {}
        for execution in self.list_executions():
            if execution.alert_triggered and execution.alert_type:
                groups.setdefault(execution.alert_type, []).append(execution)

        rows = []
        for alert_type, group in groups.items():
            resolution_times = [
                (parse_timestamp(e.alert_resolved_at) - parse_timestamp(e.alert_sent_at)).total_seconds()
                for e in group
                if e.alert_resolved_at and e.alert_sent_at
            ]
            unresolved = sorted(
                (e for e in group if not e.alert_resolved_at),
                key=lambda e: e.alert_sent_at or "",
                reverse=True,
            )
            rows.append({
                "alert_type": alert_type,
                "alert_count": len(group),
                "resolved_count": len(group) - len(unresolved),
                "unresolved_count": len(unresolved),
                "avg_resolution_time_seconds": _avg(resolution_times),
                "unresolved_workflow_ids": [e.workflow_id for e in unresolved],
            })
        rows.sort(key=lambda r: r["alert_count"], reverse=True)
        return rows


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryWorkflowStore(WorkflowStore):
    """Dict-backed store. Records are copied in and out through to_dict()."""

    def __init__(self):
        self._executions: Dict[str, Dict[str, Any]] = {}
        self.alerts: List[Dict[str, Any]] = []
        self.operator_messages: List[Dict[str, Any]] = []
        self.resilience_metrics: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def insert(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            if execution.workflow_id in self._executions:
                raise WorkflowExistsError(execution.workflow_id)
            self._prepare(execution)
            execution.version = 1
            self._executions[execution.workflow_id] = execution.to_dict()
        return execution

    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        with self._lock:
            data = self._executions.get(workflow_id)
        return WorkflowExecution.from_dict(data) if data else None

    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            current = self._executions.get(execution.workflow_id)
            if current is None:
                raise WorkflowNotFoundError(execution.workflow_id)
            if current["version"] != execution.version:
                raise StaleWriteError(execution.workflow_id, execution.version, current["version"])
            self._prepare(execution)
            execution.version += 1
            self._executions[execution.workflow_id] = execution.to_dict()
        return execution

    def list_executions(self, statuses=None, workflow_type=None, started_before=None) -> List[WorkflowExecution]:
        with self._lock:
            rows = list(self._executions.values())
        executions = [WorkflowExecution.from_dict(row) for row in rows]
        return [e for e in executions if self._matches(e, statuses, workflow_type, started_before)]

    def append_alert(self, alert: Alert) -> None:
        with self._lock:
            self.alerts.append(alert.to_dict())

    def list_alerts(self, workflow_id=None, alert_type=None) -> List[Alert]:
        with self._lock:
            rows = list(self.alerts)
        alerts = [Alert.from_dict(row) for row in rows]
        if workflow_id is not None:
            alerts = [a for a in alerts if a.workflow_id == workflow_id]
        if alert_type is not None:
            alerts = [a for a in alerts if a.alert_type is alert_type]
        return alerts

    def post_operator_message(self, to_agent: str, message: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self.operator_messages.append({
                "from_agent": AGENT_NAME,
                "to_agent": to_agent,
                "message": message,
                "data": data,
                "created_at": to_iso(utc_now()),
            })

    def record_resilience_metrics(self, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self.resilience_metrics.extend(rows)


# =============================================================================
# FILE
# =============================================================================

class FileWorkflowStore(WorkflowStore):
    """
    File-backed store.

    Layout:
        {directory}/workflows/{workflow_id}.json
        {directory}/alerts.jsonl
        {directory}/operator_messages.jsonl
        {directory}/resilience_metrics.jsonl
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory else (
            Path(__file__).resolve().parent.parent / ".hive-mind" / "workflow_health"
        )
        self.workflows_dir = self.directory / "workflows"
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        self.alerts_file = self.directory / "alerts.jsonl"
        self.messages_file = self.directory / "operator_messages.jsonl"
        self.metrics_file = self.directory / "resilience_metrics.jsonl"
        self._lock = threading.Lock()

    def _path(self, workflow_id: str) -> Path:
        safe_id = "".join(c if c.isalnum() or c in "-_." else "_" for c in workflow_id)
        return self.workflows_dir / f"{safe_id}.json"

    def _read(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(workflow_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, execution: WorkflowExecution) -> None:
        path = self._path(execution.workflow_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(execution.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)

    def _append_jsonl(self, path: Path, payload: Dict[str, Any]) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")

    def _read_jsonl(self, path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        rows = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed line in %s", path)
        return rows

    def insert(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            if self._path(execution.workflow_id).exists():
                raise WorkflowExistsError(execution.workflow_id)
            self._prepare(execution)
            execution.version = 1
            self._write(execution)
        return execution

    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        with self._lock:
            data = self._read(workflow_id)
        return WorkflowExecution.from_dict(data) if data else None

    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        with self._lock:
            current = self._read(execution.workflow_id)
            if current is None:
                raise WorkflowNotFoundError(execution.workflow_id)
            if current.get("version", 0) != execution.version:
                raise StaleWriteError(execution.workflow_id, execution.version, current.get("version"))
            self._prepare(execution)
            execution.version += 1
            self._write(execution)
        return execution

    def list_executions(self, statuses=None, workflow_type=None, started_before=None) -> List[WorkflowExecution]:
        executions = []
        with self._lock:
            paths = sorted(self.workflows_dir.glob("*.json"))
            for path in paths:
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        executions.append(WorkflowExecution.from_dict(json.load(f)))
                except (OSError, json.JSONDecodeError, ValueError) as exc:
                    logger.warning("Skipping unreadable workflow file %s: %s", path, exc)
        return [e for e in executions if self._matches(e, statuses, workflow_type, started_before)]

    def append_alert(self, alert: Alert) -> None:
        with self._lock:
            self._append_jsonl(self.alerts_file, alert.to_dict())

    def list_alerts(self, workflow_id=None, alert_type=None) -> List[Alert]:
        with self._lock:
            rows = self._read_jsonl(self.alerts_file)
        alerts = [Alert.from_dict(row) for row in rows]
        if workflow_id is not None:
            alerts = [a for a in alerts if a.workflow_id == workflow_id]
        if alert_type is not None:
            alerts = [a for a in alerts if a.alert_type is alert_type]
        return alerts

    def post_operator_message(self, to_agent: str, message: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._append_jsonl(self.messages_file, {
                "from_agent": AGENT_NAME,
                "to_agent": to_agent,
                "message": message,
                "data": data,
                "created_at": to_iso(utc_now()),
            })

    def record_resilience_metrics(self, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                self._append_jsonl(self.metrics_file, row)


# =============================================================================
# SUPABASE
# =============================================================================

class SupabaseWorkflowStore(WorkflowStore):
    """
    Supabase-backed store.

    Reads the monitoring views created by the quote workflow migration
    instead of aggregating client-side.
    """

    def __init__(self, client=None, url: Optional[str] = None, key: Optional[str] = None):
        self._client = client
        self.url = url or os.getenv("SUPABASE_URL")
        self.key = key or os.getenv("SUPABASE_KEY")

    @property
    def client(self):
        if self._client is None:
            if not self.url or not self.key:
                raise WorkflowHealthError("SUPABASE_URL and SUPABASE_KEY must be set for the supabase store")
            from supabase import create_client
            self._client = create_client(self.url, self.key)
        return self._client

    def _table(self, name: str = EXECUTIONS_TABLE):
        return self.client.table(name)

    @staticmethod
    def _row(execution: WorkflowExecution) -> Dict[str, Any]:
        row = execution.to_dict()
        row.pop("updated_at", None)  # maintained by the table trigger
        return row

    def insert(self, execution: WorkflowExecution) -> WorkflowExecution:
        if self.get(execution.workflow_id) is not None:
            raise WorkflowExistsError(execution.workflow_id)
        self._prepare(execution)
        execution.version = 1
        self._table().insert(self._row(execution)).execute()
        return execution

    def get(self, workflow_id: str) -> Optional[WorkflowExecution]:
        result = self._table().select("*").eq("workflow_id", workflow_id).limit(1).execute()
        if not result.data:
            return None
        return WorkflowExecution.from_dict(result.data[0])

    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        expected = execution.version
        self._prepare(execution)
        execution.version = expected + 1
        result = (
            self._table()
            .update(self._row(execution))
            .eq("workflow_id", execution.workflow_id)
            .eq("version", expected)
            .execute()
        )
        if not result.data:
            execution.version = expected
            current = self.get(execution.workflow_id)
            if current is None:
                raise WorkflowNotFoundError(execution.workflow_id)
            raise StaleWriteError(execution.workflow_id, expected, current.version)
        return execution

    def list_executions(self, statuses=None, workflow_type=None, started_before=None) -> List[WorkflowExecution]:
        query = self._table().select("*")
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        if workflow_type is not None:
            query = query.eq("workflow_type", workflow_type.value)
        if started_before is not None:
            query = query.lt("started_at", to_iso(started_before))
        result = query.execute()
        return [WorkflowExecution.from_dict(row) for row in result.data or []]

    def append_alert(self, alert: Alert) -> None:
        self._table("agent_logs").insert({
            "workflow_id": alert.workflow_id,
            "agent_name": AGENT_NAME,
            "event_type": f"alert_{alert.alert_type.value}",
            "timestamp": alert.timestamp,
            "context": {
                "alert_id": alert.alert_id,
                "severity": alert.severity.value,
                "message": alert.message,
                "details": alert.details,
            },
        }).execute()

    def list_alerts(self, workflow_id=None, alert_type=None) -> List[Alert]:
        query = (
            self._table("agent_logs")
            .select("*")
            .eq("agent_name", AGENT_NAME)
            .like("event_type", "alert_%")
        )
        if workflow_id is not None:
            query = query.eq("workflow_id", workflow_id)
        if alert_type is not None:
            query = query.eq("event_type", f"alert_{alert_type.value}")
        result = query.order("timestamp").execute()

        alerts = []
        for row in result.data or []:
            context = row.get("context") or {}
            try:
                alerts.append(Alert.from_dict({
                    "type": row["event_type"][len("alert_"):],
                    "severity": context.get("severity", "warning"),
                    "message": context.get("message", ""),
                    "details": context.get("details"),
                    "workflow_id": row.get("workflow_id"),
                    "timestamp": row.get("timestamp", ""),
                    "alert_id": context.get("alert_id", ""),
                }))
            except ValueError:
                logger.warning("Skipping unrecognised alert row: %s", row.get("event_type"))
        return alerts

    def post_operator_message(self, to_agent: str, message: str, data: Dict[str, Any]) -> None:
        self._table("squad_messages").insert({
            "from_agent": AGENT_NAME,
            "to_agent": to_agent,
            "message": message,
            "task_id": None,
            "data": data,
        }).execute()

    def record_resilience_metrics(self, rows: List[Dict[str, Any]]) -> None:
        if rows:
            self._table("resilience_metrics").insert(rows).execute()

    # Views

    def supplier_trends(self, limit: int = 7) -> List[Dict[str, Any]]:
        result = (
            self._table("quote_workflow_supplier_trends")
            .select("*").order("date", desc=True).limit(limit).execute()
        )
        return result.data or []

    def customer_acceptance_patterns(self, limit: int = 4) -> List[Dict[str, Any]]:
        result = (
            self._table("quote_workflow_customer_acceptance_patterns")
            .select("*").order("week", desc=True).limit(limit).execute()
        )
        return result.data or []

    def health_metrics(self, workflow_type: Optional[WorkflowType] = None) -> List[Dict[str, Any]]:
        query = self._table("quote_workflow_health_metrics").select("*")
        if workflow_type is not None:
            query = query.eq("workflow_type", workflow_type.value)
        return query.execute().data or []

    def bottleneck_analysis(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._table("quote_workflow_bottlenecks").select("*").limit(limit).execute().data or []

    def failure_analysis(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._table("quote_workflow_failure_analysis").select("*").limit(limit).execute().data or []

    def alert_summary(self) -> List[Dict[str, Any]]:
        return self._table("quote_workflow_alert_summary").select("*").execute().data or []


def create_store(settings: Optional[Dict[str, Any]] = None) -> WorkflowStore:
    """Build the store named by the `store` policy block."""
    settings = settings or {}
    backend = (settings.get("backend") or "memory").lower()
    if backend == "memory":
        return InMemoryWorkflowStore()
    if backend == "file":
        return FileWorkflowStore(settings.get("directory"))
    if backend == "supabase":
        return SupabaseWorkflowStore(url=settings.get("url"), key=settings.get("key"))
    raise ValueError(f"Unknown workflow store backend: {backend}")

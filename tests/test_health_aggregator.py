#!/usr/bin/env python3
"""
Tests for HealthAggregator summaries and monitoring runs.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.models import AlertType


def finish(engine, clock, workflow_id, status="completed", step_seconds=60):
    engine.start(workflow_id, quote_request_id=f"qr-{workflow_id}")
    engine.update_step_progress(workflow_id, "quote_detection", "in_progress")
    clock.advance(step_seconds)
    if status == "completed":
        engine.update_step_progress(workflow_id, "quote_detection", "completed")
    else:
        engine.update_step_progress(workflow_id, "quote_detection", "failed",
                                    error="Quote generation failed: template missing")
    metadata = {"quote_status": "accepted"} if status == "completed" else None
    engine.complete(workflow_id, status, metadata)


class TestHealthSummary:

    def test_summary_sections(self, engine, clock):
        finish(engine, clock, "wf-1")
        finish(engine, clock, "wf-2", step_seconds=400)
        finish(engine, clock, "wf-3", status="failed")

        summary = engine.get_health_summary()

        assert set(summary) >= {"metrics", "bottlenecks", "failures", "alerts", "resilience", "timestamp"}
        statuses = {row["status"]: row["execution_count"] for row in summary["metrics"]}
        assert statuses == {"completed": 2, "failed": 1}
        assert summary["bottlenecks"][0]["bottleneck_step"] == "quote_detection"
        assert summary["failures"][0]["failure_step"] == "quote_detection"
        assert summary["alerts"][0]["alert_type"] == "bottleneck_detected"
        assert summary["resilience"]["overall"] == "Healthy"

    def test_open_breaker_shows_in_resilience(self, engine):
        engine.breakers.register("gmail-api")
        engine.breakers.register("pdf-generation")
        engine.breakers.force_open("gmail-api")

        resilience = engine.get_health_summary()["resilience"]

        assert resilience["overall"] == "Degraded"
        assert "gmail-api circuit breaker is OPEN" in resilience["alerts"]

    def test_store_failure_returns_none(self, engine, store):
        store.health_metrics = MagicMock(side_effect=RuntimeError("view missing"))
        assert engine.get_health_summary() is None


class TestMonitoringChecks:

    def test_runs_every_sweep(self, engine, clock):
        engine.start("wf-stuck")
        finish(engine, clock, "wf-ok")
        finish(engine, clock, "wf-bad-1", status="failed")
        finish(engine, clock, "wf-bad-2", status="failed")
        clock.advance(25 * 3600)

        alerts = engine.run_monitoring_checks()

        kinds = [alert.alert_type for alert in alerts]
        assert AlertType.WORKFLOW_STUCK in kinds
        assert AlertType.HIGH_FAILURE_RATE in kinds

    def test_quiet_pipeline(self, engine, clock):
        finish(engine, clock, "wf-ok")
        assert engine.run_monitoring_checks() == []


class TestResilienceSnapshot:

    def test_snapshot_rows_are_stored(self, engine, store):
        engine.breakers.register("gmail-api")
        engine.breakers.register("supabase")

        assert engine.health.record_resilience_snapshot() == 2
        assert {row["service_name"] for row in store.resilience_metrics} == {"gmail-api", "supabase"}

    def test_format_duration(self, engine):
        assert engine.health.format_duration(45) == "45s"
        assert engine.health.format_duration(2400) == "40m"
        assert engine.health.format_duration(5400) == "1.5h"

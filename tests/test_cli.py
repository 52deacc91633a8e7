#!/usr/bin/env python3
"""
Tests for the workflow-health command line interface.
"""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.cli import build_parser, main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "health_policy.yaml"
    path.write_text(yaml.safe_dump({
        "alerts": {"console_output": False},
        "recovery": {"background": False},
        "store": {"backend": "memory"},
        "services": {
            "gmail-api": {"failure_threshold": 3, "degradation": "queue_email"},
            "supabase": {"failure_threshold": 5},
        },
    }), encoding="utf-8")
    return str(path)


class TestParser:

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_reset_breaker_args(self):
        args = build_parser().parse_args(["reset-breaker", "--all"])
        assert args.all is True
        assert args.service is None

    def test_snapshot_command(self):
        assert build_parser().parse_args(["snapshot"]).command == "snapshot"


class TestCommands:

    def test_sweep_without_alerts(self, config_path, capsys):
        assert main(["--config", config_path, "sweep"]) == 0
        assert "No alerts raised" in capsys.readouterr().out

    def test_sweep_json_lists_alerts(self, engine, clock, capsys):
        engine.start("wf-1")
        clock.advance(30 * 3600)

        with patch("workflow_health.cli.create_engine", return_value=engine):
            assert main(["--json", "sweep"]) == 0

        alerts = json.loads(capsys.readouterr().out)
        assert [a["type"] for a in alerts] == ["workflow_stuck"]

    def test_summary_json(self, config_path, capsys):
        assert main(["--config", config_path, "--json", "summary"]) == 0

        summary = json.loads(capsys.readouterr().out)
        assert summary["metrics"] == []
        assert summary["resilience"]["overall"] == "Healthy"

    def test_summary_unavailable(self, engine, store):
        store.health_metrics = lambda workflow_type=None: 1 / 0
        with patch("workflow_health.cli.create_engine", return_value=engine):
            assert main(["summary"]) == 1

    def test_breakers_json(self, config_path, capsys):
        assert main(["--config", config_path, "--json", "breakers"]) == 0

        status = json.loads(capsys.readouterr().out)
        assert set(status) == {"gmail-api", "supabase"}
        assert status["gmail-api"]["state"] == "CLOSED"

    def test_reset_breaker(self, config_path):
        assert main(["--config", config_path, "reset-breaker", "gmail-api"]) == 0
        assert main(["--config", config_path, "reset-breaker", "fax-api"]) == 1
        assert main(["--config", config_path, "reset-breaker"]) == 2
        assert main(["--config", config_path, "reset-breaker", "--all"]) == 0

    def test_resolve_alert(self, engine, config_path):
        engine.start("wf-1")
        with patch("workflow_health.cli.create_engine", return_value=engine):
            assert main(["resolve-alert", "wf-1"]) == 0
            assert main(["resolve-alert", "ghost"]) == 1
        assert engine.get("wf-1").alert_resolved_at is not None

    def test_snapshot_records_a_row_per_service(self, engine, store, capsys):
        engine.breakers.register("gmail-api")
        engine.breakers.register("supabase")

        with patch("workflow_health.cli.create_engine", return_value=engine):
            assert main(["--json", "snapshot"]) == 0

        assert json.loads(capsys.readouterr().out) == {"rows": 2}
        assert {row["service_name"] for row in store.resilience_metrics} == {"gmail-api", "supabase"}
        assert all(row["circuit_state"] == "CLOSED" for row in store.resilience_metrics)

    def test_snapshot_store_failure_records_nothing(self, engine, store, capsys):
        engine.breakers.register("gmail-api")
        store.record_resilience_metrics = lambda rows: 1 / 0

        with patch("workflow_health.cli.create_engine", return_value=engine):
            assert main(["--json", "snapshot"]) == 0

        assert json.loads(capsys.readouterr().out) == {"rows": 0}

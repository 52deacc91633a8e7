#!/usr/bin/env python3
"""
Tests for health policy loading.
"""

import sys
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.circuit_breaker import CircuitBreakerRegistry
from workflow_health.config import (
    CONFIG_PATH,
    DEFAULT_POLICY,
    get_alert_settings,
    get_bottleneck_thresholds,
    get_service_definitions,
    get_store_settings,
    load_health_policy,
)


@pytest.fixture
def policy_file(tmp_path):
    path = tmp_path / "health_policy.yaml"
    path.write_text(yaml.safe_dump({
        "alerts": {"stuck_threshold_hours": 12, "operator": "Dana"},
        "bottleneck_thresholds": {"send": 120},
    }), encoding="utf-8")
    return path


class TestLoadPolicy:

    def test_file_values_merge_over_defaults(self, policy_file):
        policy = load_health_policy(policy_file)

        assert get_alert_settings(policy)["stuck_threshold_hours"] == 12
        assert get_alert_settings(policy)["operator"] == "Dana"
        assert get_alert_settings(policy)["failure_rate_warning_threshold"] == 0.25
        assert get_bottleneck_thresholds(policy)["send"] == 120
        assert get_bottleneck_thresholds(policy)["quote_generation"] == 1800

    def test_defaults_are_not_mutated(self, policy_file):
        load_health_policy(policy_file)
        assert DEFAULT_POLICY["alerts"]["stuck_threshold_hours"] == 24

    def test_missing_file_uses_defaults(self, tmp_path):
        policy = load_health_policy(tmp_path / "absent.yaml")
        assert policy["bottleneck_thresholds"] == DEFAULT_POLICY["bottleneck_thresholds"]

    def test_env_overrides_store(self, policy_file, monkeypatch, tmp_path):
        monkeypatch.setenv("WORKFLOW_STORE_BACKEND", "File")
        monkeypatch.setenv("WORKFLOW_STORE_DIR", str(tmp_path / "state"))

        store = get_store_settings(load_health_policy(policy_file))

        assert store["backend"] == "file"
        assert store["directory"] == str(tmp_path / "state")

    def test_config_env_var(self, policy_file, monkeypatch):
        monkeypatch.setenv("WORKFLOW_HEALTH_CONFIG", str(policy_file))
        policy = load_health_policy(force_reload=True)
        try:
            assert policy["alerts"]["operator"] == "Dana"
        finally:
            monkeypatch.delenv("WORKFLOW_HEALTH_CONFIG")
            load_health_policy(force_reload=True)


class TestShippedPolicy:

    def test_services_register(self):
        policy = load_health_policy(CONFIG_PATH)
        services = get_service_definitions(policy)

        registry = CircuitBreakerRegistry()
        registry.register_services(services)

        assert set(registry.breakers) == {"gmail-api", "pdf-generation", "ai-completion", "supabase"}
        gmail = registry.get_breaker("gmail-api")
        assert gmail.config.failure_threshold == 3
        assert gmail.config.call_timeout_seconds == 15
        assert gmail.retry_policy.max_retries == 3
        assert gmail.degradation_strategy is not None

    def test_unknown_degradation_is_rejected(self):
        registry = CircuitBreakerRegistry()
        with pytest.raises(ValueError, match="Unknown degradation strategy"):
            registry.register_services({"fax-api": {"degradation": "carrier_pigeon"}})

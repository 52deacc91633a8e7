"""
Configuration loader for the workflow health policy.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


CONFIG_PATH = Path(__file__).parent.parent / "config" / "health_policy.yaml"

DEFAULT_POLICY: Dict[str, Any] = {
    "bottleneck_thresholds": {
        "detection": 300,
        "supplier_contact": 600,
        "response_wait": 172800,
        "quote_generation": 1800,
        "approval": 14400,
        "send": 300,
    },
    "alerts": {
        "stuck_threshold_hours": 24,
        "supplier_non_response_seconds": 86400,
        "response_rate_warning_threshold": 0.5,
        "acceptance_rate_warning_threshold": 0.3,
        "failure_rate_warning_threshold": 0.25,
        "supplier_trend_days": 3,
        "acceptance_trend_weeks": 2,
        "operator": "Kenny",
        "console_output": True,
    },
    "diagnostics": {
        "circuit_breaker_reset_delay_seconds": 300,
        "timeout_multiplier": 2,
        "email_retry_backoff_seconds": 60,
    },
    "recovery": {
        "background": True,
        "max_workers": 2,
    },
    "store": {
        "backend": "memory",
        "directory": ".hive-mind/workflow_health",
    },
    "services": {},
}

_cached_policy: Optional[Dict[str, Any]] = None


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(policy: Dict[str, Any]) -> Dict[str, Any]:
    backend = os.getenv("WORKFLOW_STORE_BACKEND")
    if backend:
        policy["store"]["backend"] = backend.strip().lower()
    directory = os.getenv("WORKFLOW_STORE_DIR")
    if directory:
        policy["store"]["directory"] = directory.strip()
    return policy


def load_health_policy(path: Optional[Path] = None, force_reload: bool = False) -> Dict[str, Any]:
    """
    Load and parse the health policy, merged over the built-in defaults.

    Args:
        path: Explicit policy file. Defaults to WORKFLOW_HEALTH_CONFIG or
              config/health_policy.yaml.
        force_reload: If True, bypass cache and reload from disk

    Returns:
        Parsed policy dictionary
    """
    global _cached_policy

    if _cached_policy is not None and not force_reload and path is None:
        return _cached_policy

    config_path = Path(path or os.getenv("WORKFLOW_HEALTH_CONFIG") or CONFIG_PATH)
    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    policy = _apply_env_overrides(_deep_merge(DEFAULT_POLICY, data))
    if path is None:
        _cached_policy = policy
    return policy


def get_bottleneck_thresholds(policy: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
    """Per-phase duration thresholds in seconds."""
    return (policy or load_health_policy())["bottleneck_thresholds"]


def get_alert_settings(policy: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Alert sweep thresholds and operator channel settings.

    Rates are fractions (0.25 == 25%).
    """
    return (policy or load_health_policy())["alerts"]


def get_diagnostic_settings(policy: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (policy or load_health_policy())["diagnostics"]


def get_recovery_settings(policy: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (policy or load_health_policy())["recovery"]


def get_store_settings(policy: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return (policy or load_health_policy())["store"]


def get_service_definitions(policy: Optional[Dict[str, Any]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Circuit breaker service definitions keyed by service name.

    Returns:
        Dict of service name -> breaker settings, optional `retry` block and
        optional `degradation` strategy name
    """
    return (policy or load_health_policy()).get("services") or {}

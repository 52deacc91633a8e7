"""
Health roll-ups for dashboards and the CLI.
"""

import logging
from typing import Any, Dict, List, Optional

from workflow_health.alerts import AlertDispatcher
from workflow_health.circuit_breaker import CircuitBreakerRegistry
from workflow_health.models import Alert, format_duration, to_iso, utc_now
from workflow_health.store import WorkflowStore

logger = logging.getLogger("health_aggregator")


class HealthAggregator:
    """Combines workflow views, alert state and breaker health into one summary."""

    def __init__(self, store: WorkflowStore, alerts: AlertDispatcher,
                 breakers: Optional[CircuitBreakerRegistry] = None):
        self.store = store
        self.alerts = alerts
        self.breakers = breakers

    def get_health_summary(self) -> Optional[Dict[str, Any]]:
        """
        Current health of the quote pipeline.

        Returns:
            Dict with metrics, top bottlenecks, top failures, alert summary
            and resilience summary, or None if the store could not be read
        """
        try:
            summary = {
                "metrics": self.store.health_metrics(),
                "bottlenecks": self.store.bottleneck_analysis(limit=10),
                "failures": self.store.failure_analysis(limit=10),
                "alerts": self.store.alert_summary(),
                "timestamp": to_iso(utc_now()),
            }
        except Exception as exc:
            logger.error("Error getting health summary: %s", exc)
            return None

        if self.breakers is not None:
            summary["resilience"] = self.breakers.get_health_summary()
        return summary

    def run_monitoring_checks(self) -> List[Alert]:
        """Run every sweep and return the alerts raised."""
        alerts: List[Alert] = []
        alerts.extend(self.alerts.check_stuck_workflows())
        alerts.extend(self.alerts.monitor_supplier_response_rates())
        alerts.extend(self.alerts.monitor_customer_acceptance_rates())
        alerts.extend(self.alerts.monitor_failure_rates())
        logger.info("Monitoring checks raised %d alert(s)", len(alerts))
        return alerts

    def record_resilience_snapshot(self) -> int:
        """Persist one resilience_metrics row per service. Returns the row count."""
        if self.breakers is None:
            return 0
        rows = self.breakers.metrics_snapshot()
        try:
            self.store.record_resilience_metrics(rows)
        except Exception as exc:
            logger.error("Error recording resilience metrics: %s", exc)
            return 0
        return len(rows)

    @staticmethod
    def format_duration(seconds: float) -> str:
        return format_duration(seconds)

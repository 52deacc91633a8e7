"""
Bottleneck detection for quote pipeline steps.

Each terminal step duration is compared against the threshold of the
pipeline phase the step belongs to. Violations are recorded on the
execution (the flag is sticky; the detail reflects the latest violation)
and turned into `bottleneck_detected` alerts by the caller.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from workflow_health.models import (
    Alert,
    AlertSeverity,
    AlertType,
    WorkflowExecution,
    format_duration,
)

logger = logging.getLogger("bottleneck_detector")

# Step name -> pipeline phase
STEP_PHASE_MAP: Dict[str, str] = {
    "quote_detection": "detection",
    "contact_suppliers": "supplier_contact",
    "monitor_responses": "response_wait",
    "generate_quote_pdf": "quote_generation",
    "create_approval_task": "approval",
    "send_quote": "send",
}

# Pipeline phase -> WorkflowExecution duration field
PHASE_DURATION_FIELDS: Dict[str, str] = {
    phase: f"{phase}_duration" for phase in STEP_PHASE_MAP.values()
}


@dataclass
class BottleneckFinding:
    step: str
    phase: str
    duration: int
    threshold: int

    @property
    def excess(self) -> int:
        return self.duration - self.threshold

    @property
    def severity(self) -> AlertSeverity:
        if self.excess > self.threshold:
            return AlertSeverity.CRITICAL
        return AlertSeverity.WARNING

    def to_alert(self, workflow_id: str) -> Alert:
        return Alert(
            alert_type=AlertType.BOTTLENECK_DETECTED,
            severity=self.severity,
            workflow_id=workflow_id,
            message=(
                f"Bottleneck detected in {self.step}: {format_duration(self.duration)} "
                f"(threshold: {format_duration(self.threshold)})"
            ),
            details={
                "step": self.step,
                "phase": self.phase,
                "duration": self.duration,
                "threshold": self.threshold,
                "exceeded_by": self.excess,
            },
        )


class BottleneckDetector:
    """Compares step durations with the per-phase thresholds."""

    def __init__(self, thresholds: Dict[str, int]):
        self.thresholds = dict(thresholds)

    @staticmethod
    def phase_for_step(step_name: str) -> Optional[str]:
        """
        Resolve a step to its phase. Phase names themselves are accepted
        too, so callers may report `quote_generation` directly.
        """
        if step_name in STEP_PHASE_MAP:
            return STEP_PHASE_MAP[step_name]
        if step_name in PHASE_DURATION_FIELDS:
            return step_name
        return None

    def threshold_for_step(self, step_name: str) -> Optional[int]:
        phase = self.phase_for_step(step_name)
        if phase is None:
            return None
        return self.thresholds.get(phase)

    def evaluate(self, step_name: str, duration: int) -> Optional[BottleneckFinding]:
        """Return a finding if `duration` is strictly over the step's threshold."""
        phase = self.phase_for_step(step_name)
        threshold = self.threshold_for_step(step_name)
        if phase is None or threshold is None or duration <= threshold:
            return None
        return BottleneckFinding(step=step_name, phase=phase, duration=duration, threshold=threshold)

    @staticmethod
    def apply(execution: WorkflowExecution, finding: BottleneckFinding) -> None:
        """Record the finding on the execution; never clears the flag."""
        execution.bottleneck_detected = True
        execution.bottleneck_step = finding.step
        execution.bottleneck_duration = finding.duration
        execution.bottleneck_threshold_exceeded_by = finding.excess
        logger.warning(
            "Bottleneck in %s for %s: %ss (threshold %ss, +%ss)",
            finding.step, execution.workflow_id, finding.duration, finding.threshold, finding.excess,
        )

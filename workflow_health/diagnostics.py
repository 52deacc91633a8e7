"""
Failure Diagnostic Engine
=========================
Classifies a failed step's error text into known failure categories and
proposes recovery actions.

Classification is an ordered table of (predicate, builder) rules. It is
heuristic and order-sensitive: every matching rule contributes its issue,
suggestion and recovery action in table order, and the first match sets
the report's primary severity and leading suggestion. An error that no
rule matches is not an error here; the report carries a single
UNCLASSIFIED marker and no suggestions.

Usage:
    engine = FailureDiagnosticEngine()
    report = engine.diagnose("send_quote", "Circuit breaker open for gmail-service", execution)
    if report.can_auto_recover:
        ...
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from workflow_health.models import (
    DiagnosticIssue,
    IssueKind,
    IssueSeverity,
    RecoveryAction,
    RecoveryActionType,
    WorkflowExecution,
    to_iso,
    utc_now,
)

logger = logging.getLogger("failure_diagnostics")

_CIRCUIT_OPEN = re.compile(r"circuit breaker\b.*\bopen", re.IGNORECASE)
_CIRCUIT_SERVICE = re.compile(r"circuit breaker open for\s+([\w.\-]+)", re.IGNORECASE)
_EMAIL_FAILED = re.compile(r"email send failed", re.IGNORECASE)


def circuit_service(error: str) -> Optional[str]:
    """Extract the service name from a 'Circuit breaker open for <service>' message."""
    match = _CIRCUIT_SERVICE.search(error or "")
    return match.group(1) if match else None


@dataclass
class DiagnosticMatch:
    """What one rule contributes to a report."""
    issue: DiagnosticIssue
    suggestion: str
    action: Optional[RecoveryAction] = None


@dataclass
class DiagnosticContext:
    step: str
    error: str
    execution: Optional[WorkflowExecution]


@dataclass
class DiagnosticRule:
    name: str
    predicate: Callable[[DiagnosticContext], bool]
    builder: Callable[[DiagnosticContext], DiagnosticMatch]


@dataclass
class DiagnosticReport:
    issues: List[DiagnosticIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    recovery_actions: List[RecoveryAction] = field(default_factory=list)
    execution_context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: to_iso(utc_now()))

    @property
    def classified(self) -> List[DiagnosticIssue]:
        return [i for i in self.issues if i.kind is not IssueKind.UNCLASSIFIED]

    @property
    def can_auto_recover(self) -> bool:
        return any(i.automated_fix_available for i in self.classified)

    @property
    def primary_issue(self) -> Optional[DiagnosticIssue]:
        return self.issues[0] if self.issues else None

    @property
    def primary_severity(self) -> Optional[IssueSeverity]:
        classified = self.classified
        return classified[0].severity if classified else None

    def to_results(self) -> Dict[str, Any]:
        """Payload stored in WorkflowExecution.diagnostic_results."""
        return {
            "diagnostics": [issue.to_dict() for issue in self.classified],
            "unclassified": not self.classified,
            "primary_severity": self.primary_severity.value if self.primary_severity else None,
            "can_auto_recover": self.can_auto_recover,
            "execution_context": self.execution_context,
            "timestamp": self.timestamp,
        }


class FailureDiagnosticEngine:
    """Runs the ordered rule table against a failed step."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        settings = settings or {}
        self.circuit_breaker_reset_delay = settings.get("circuit_breaker_reset_delay_seconds", 300)
        self.timeout_multiplier = settings.get("timeout_multiplier", 2)
        self.email_retry_backoff = settings.get("email_retry_backoff_seconds", 60)
        self.rules: List[DiagnosticRule] = self._default_rules()

    # ------------------------------------------------------------------
    # Rule table
    # ------------------------------------------------------------------

    def _default_rules(self) -> List[DiagnosticRule]:
        return [
            DiagnosticRule("circuit_breaker_open", self._is_circuit_open, self._circuit_open),
            DiagnosticRule("no_suppliers_found", self._is_no_suppliers, self._no_suppliers),
            DiagnosticRule("timeout", self._is_timeout, self._timeout),
            DiagnosticRule("email_send_failure", self._is_email_failure, self._email_failure),
            DiagnosticRule("pdf_generation_failure", self._is_pdf_failure, self._pdf_failure),
            DiagnosticRule("zero_supplier_responses", self._is_no_responses, self._no_responses),
        ]

    @staticmethod
    def _is_circuit_open(ctx: DiagnosticContext) -> bool:
        return bool(_CIRCUIT_OPEN.search(ctx.error))

    def _circuit_open(self, ctx: DiagnosticContext) -> DiagnosticMatch:
        minutes = round(self.circuit_breaker_reset_delay / 60)
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.CIRCUIT_BREAKER_TRIGGERED,
                severity=IssueSeverity.HIGH,
                description="Circuit breaker is open, indicating repeated failures in a service",
                suggested_fixes=(
                    f"Wait for circuit breaker timeout ({minutes} minutes)",
                    "Check service health and logs",
                    "Verify external service availability",
                ),
                automated_fix_available=True,
            ),
            suggestion="Wait for circuit breaker to reset and retry",
            action=RecoveryAction(
                RecoveryActionType.WAIT_FOR_CIRCUIT_BREAKER_RESET,
                delay_seconds=self.circuit_breaker_reset_delay,
            ),
        )

    @staticmethod
    def _is_no_suppliers(ctx: DiagnosticContext) -> bool:
        return "No suppliers found" in ctx.error or "No suitable suppliers" in ctx.error

    @staticmethod
    def _no_suppliers(ctx: DiagnosticContext) -> DiagnosticMatch:
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.NO_SUPPLIERS_AVAILABLE,
                severity=IssueSeverity.CRITICAL,
                description="No suppliers found for the requested products",
                suggested_fixes=(
                    "Add suppliers to the database",
                    "Review product categories and supplier specialties",
                    "Check supplier_products table for coverage",
                ),
            ),
            suggestion="Add relevant suppliers to database or expand supplier network",
        )

    @staticmethod
    def _is_timeout(ctx: DiagnosticContext) -> bool:
        return "timeout" in ctx.error or "timed out" in ctx.error

    def _timeout(self, ctx: DiagnosticContext) -> DiagnosticMatch:
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.TIMEOUT_EXCEEDED,
                severity=IssueSeverity.MEDIUM,
                description="Operation exceeded timeout threshold",
                suggested_fixes=(
                    "Increase timeout configuration",
                    "Optimize the slow operation",
                    "Check network connectivity",
                ),
                automated_fix_available=True,
            ),
            suggestion="Retry with extended timeout",
            action=RecoveryAction(
                RecoveryActionType.RETRY_WITH_EXTENDED_TIMEOUT,
                timeout_multiplier=self.timeout_multiplier,
            ),
        )

    @staticmethod
    def _is_email_failure(ctx: DiagnosticContext) -> bool:
        return bool(_EMAIL_FAILED.search(ctx.error)) or "Gmail" in ctx.error

    def _email_failure(self, ctx: DiagnosticContext) -> DiagnosticMatch:
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.EMAIL_SERVICE_FAILURE,
                severity=IssueSeverity.HIGH,
                description="Email service encountered an error",
                suggested_fixes=(
                    "Verify Gmail API credentials",
                    "Check email service rate limits",
                    "Verify recipient email address format",
                ),
                automated_fix_available=True,
            ),
            suggestion="Retry email send with exponential backoff",
            action=RecoveryAction(
                RecoveryActionType.RETRY_EMAIL_SEND,
                backoff_seconds=self.email_retry_backoff,
            ),
        )

    @staticmethod
    def _is_pdf_failure(ctx: DiagnosticContext) -> bool:
        return "Quote generation failed" in ctx.error or "PDF" in ctx.error

    @staticmethod
    def _pdf_failure(ctx: DiagnosticContext) -> DiagnosticMatch:
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.PDF_GENERATION_FAILURE,
                severity=IssueSeverity.HIGH,
                description="Quote PDF generation failed",
                suggested_fixes=(
                    "Check quote template configuration",
                    "Verify all required data is present",
                    "Check PDF generation service status",
                ),
            ),
            suggestion="Review quote data completeness and template configuration",
        )

    @staticmethod
    def _is_no_responses(ctx: DiagnosticContext) -> bool:
        execution = ctx.execution
        return (
            ctx.step == "monitor_responses"
            and execution is not None
            and execution.suppliers_contacted > 0
            and execution.suppliers_responded == 0
        )

    @staticmethod
    def _no_responses(ctx: DiagnosticContext) -> DiagnosticMatch:
        return DiagnosticMatch(
            issue=DiagnosticIssue(
                kind=IssueKind.NO_SUPPLIER_RESPONSES,
                severity=IssueSeverity.HIGH,
                description="No suppliers responded within timeout period",
                suggested_fixes=(
                    "Send follow-up emails to suppliers",
                    "Call suppliers directly",
                    "Use alternative suppliers",
                    "Extend response timeout for this request",
                ),
                automated_fix_available=True,
            ),
            suggestion="Send automated follow-up to non-responding suppliers",
            action=RecoveryAction(
                RecoveryActionType.SEND_SUPPLIER_FOLLOW_UPS,
                quote_request_id=ctx.execution.quote_request_id,
            ),
        )

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    def diagnose(self, step: str, error: Optional[str],
                 execution: Optional[WorkflowExecution] = None) -> DiagnosticReport:
        """Run every rule in order and collect the matches."""
        ctx = DiagnosticContext(step=step, error=error or "", execution=execution)
        report = DiagnosticReport(execution_context={
            "failed_step": step,
            "error_message": ctx.error,
            "suppliers_contacted": execution.suppliers_contacted if execution else None,
            "suppliers_responded": execution.suppliers_responded if execution else None,
            "current_step": execution.current_step if execution else None,
        })

        for rule in self.rules:
            if not rule.predicate(ctx):
                continue
            match = rule.builder(ctx)
            report.issues.append(match.issue)
            report.suggestions.append(match.suggestion)
            if match.action is not None:
                report.recovery_actions.append(match.action)
            logger.debug("Rule %s matched failure in %s", rule.name, step)

        if not report.issues:
            report.issues.append(DiagnosticIssue.unclassified(ctx.error))
            logger.info("No diagnostic rule matched failure in %s: %s", step, ctx.error[:200])

        return report

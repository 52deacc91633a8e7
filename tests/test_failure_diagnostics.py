#!/usr/bin/env python3
"""
Tests for the failure diagnostic rule table.
"""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from workflow_health.diagnostics import FailureDiagnosticEngine, circuit_service
from workflow_health.models import (
    DiagnosticIssue,
    IssueKind,
    IssueSeverity,
    RecoveryAction,
    RecoveryActionType,
    WorkflowExecution,
)


@pytest.fixture
def diagnostics():
    return FailureDiagnosticEngine()


def kinds(report):
    return [issue.kind for issue in report.issues]


class TestRuleMatching:

    def test_circuit_breaker_open(self, diagnostics):
        report = diagnostics.diagnose("send_quote", "Circuit breaker open for gmail-service")

        assert kinds(report) == [IssueKind.CIRCUIT_BREAKER_TRIGGERED]
        assert report.can_auto_recover is True
        assert report.primary_severity is IssueSeverity.HIGH
        assert report.recovery_actions == [
            RecoveryAction(RecoveryActionType.WAIT_FOR_CIRCUIT_BREAKER_RESET, delay_seconds=300)
        ]
        assert report.recovery_actions[0].to_dict() == {
            "action": "wait_for_circuit_breaker_reset",
            "delay_seconds": 300,
        }
        assert report.suggestions == ["Wait for circuit breaker to reset and retry"]

    def test_no_suppliers_is_manual(self, diagnostics):
        report = diagnostics.diagnose("contact_suppliers", "No suitable suppliers for category 'steel'")

        assert kinds(report) == [IssueKind.NO_SUPPLIERS_AVAILABLE]
        assert report.primary_severity is IssueSeverity.CRITICAL
        assert report.can_auto_recover is False
        assert report.recovery_actions == []

    def test_timeout(self, diagnostics):
        report = diagnostics.diagnose("generate_quote_pdf", "Request timed out after 30s")

        assert kinds(report) == [IssueKind.TIMEOUT_EXCEEDED]
        assert report.recovery_actions[0].timeout_multiplier == 2

    def test_email_failure(self, diagnostics):
        report = diagnostics.diagnose("send_quote", "Email send failed: 429 from Gmail")

        assert kinds(report) == [IssueKind.EMAIL_SERVICE_FAILURE]
        assert report.recovery_actions[0].action is RecoveryActionType.RETRY_EMAIL_SEND
        assert report.recovery_actions[0].backoff_seconds == 60

    def test_pdf_failure(self, diagnostics):
        report = diagnostics.diagnose("generate_quote_pdf", "PDF renderer crashed")

        assert kinds(report) == [IssueKind.PDF_GENERATION_FAILURE]
        assert report.can_auto_recover is False

    def test_zero_responses_on_monitor_step(self, diagnostics):
        execution = WorkflowExecution(workflow_id="wf-1", quote_request_id="qr-7",
                                      suppliers_contacted=4, suppliers_responded=0)
        report = diagnostics.diagnose("monitor_responses", "Response window closed", execution)

        assert kinds(report) == [IssueKind.NO_SUPPLIER_RESPONSES]
        assert report.recovery_actions[0].quote_request_id == "qr-7"
        assert report.recovery_actions[0].to_dict() == {
            "action": "send_supplier_follow_ups",
            "quote_request_id": "qr-7",
        }

    def test_zero_responses_requires_monitor_step(self, diagnostics):
        execution = WorkflowExecution(workflow_id="wf-1", suppliers_contacted=4, suppliers_responded=0)
        report = diagnostics.diagnose("contact_suppliers", "Response window closed", execution)

        assert kinds(report) == [IssueKind.UNCLASSIFIED]


class TestRuleOrdering:

    def test_all_matches_contribute_in_table_order(self, diagnostics):
        report = diagnostics.diagnose(
            "generate_quote_pdf",
            "PDF upload timeout; Email send failed while notifying",
        )

        assert kinds(report) == [
            IssueKind.TIMEOUT_EXCEEDED,
            IssueKind.EMAIL_SERVICE_FAILURE,
            IssueKind.PDF_GENERATION_FAILURE,
        ]
        assert [a.action for a in report.recovery_actions] == [
            RecoveryActionType.RETRY_WITH_EXTENDED_TIMEOUT,
            RecoveryActionType.RETRY_EMAIL_SEND,
        ]
        assert report.suggestions[0] == "Retry with extended timeout"
        assert report.primary_severity is IssueSeverity.MEDIUM

    def test_manual_first_match_still_recoverable_by_later_rule(self, diagnostics):
        report = diagnostics.diagnose("contact_suppliers", "No suppliers found (lookup timeout)")

        assert report.primary_severity is IssueSeverity.CRITICAL
        assert report.can_auto_recover is True


class TestUnclassified:

    def test_unmatched_error_has_marker_and_no_suggestions(self, diagnostics):
        report = diagnostics.diagnose("quote_detection", "ZeroDivisionError: division by zero")

        assert kinds(report) == [IssueKind.UNCLASSIFIED]
        assert report.classified == []
        assert report.suggestions == []
        assert report.recovery_actions == []
        assert report.can_auto_recover is False
        assert report.primary_severity is None

        results = report.to_results()
        assert results["diagnostics"] == []
        assert results["unclassified"] is True

    def test_missing_error_text(self, diagnostics):
        report = diagnostics.diagnose("quote_detection", None)
        assert kinds(report) == [IssueKind.UNCLASSIFIED]


class TestHelpers:

    @pytest.mark.parametrize("error,service", [
        ("Circuit breaker open for gmail-service", "gmail-service"),
        ("Circuit breaker open for pdf-generation - retry in 12.0s", "pdf-generation"),
        ("Circuit breaker is OPEN", None),
        ("boom", None),
    ])
    def test_circuit_service(self, error, service):
        assert circuit_service(error) == service

    def test_custom_delays_from_settings(self):
        engine = FailureDiagnosticEngine({"circuit_breaker_reset_delay_seconds": 120,
                                          "email_retry_backoff_seconds": 15})

        report = engine.diagnose("send_quote", "Circuit breaker open for gmail-api")
        assert report.recovery_actions[0].delay_seconds == 120
        assert report.issues[0].suggested_fixes[0] == "Wait for circuit breaker timeout (2 minutes)"

    def test_issue_round_trips_through_dict(self):
        issue = DiagnosticIssue(
            kind=IssueKind.TIMEOUT_EXCEEDED,
            severity=IssueSeverity.MEDIUM,
            description="Operation exceeded timeout threshold",
            suggested_fixes=("Increase timeout configuration",),
            automated_fix_available=True,
        )
        assert DiagnosticIssue.from_dict(issue.to_dict()) == issue

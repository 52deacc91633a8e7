#!/usr/bin/env python3
"""
Workflow Health CLI
===================
Operator entry point for the quote workflow health engine.

Commands:
    sweep            Run the four monitoring sweeps
    summary          Show the workflow health summary
    breakers         Show circuit breaker status
    reset-breaker    Reset one breaker (or --all)
    resolve-alert    Mark a workflow's alert resolved
    snapshot         Persist a resilience metrics row per service

Usage:
    workflow-health sweep
    workflow-health summary --json
    workflow-health reset-breaker gmail-api
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from workflow_health.engine import create_engine
from workflow_health.models import format_duration

console = Console()


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_sweep(engine, args) -> int:
    alerts = engine.run_monitoring_checks()
    if args.json:
        _print_json([alert.to_dict() for alert in alerts])
        return 0

    if not alerts:
        console.print("[green]No alerts raised[/green]")
        return 0
    table = Table(title=f"Alerts raised ({len(alerts)})")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Workflow")
    table.add_column("Message")
    for alert in alerts:
        table.add_row(alert.alert_type.value, alert.severity.value, alert.workflow_id or "-", alert.message)
    console.print(table)
    return 0


def _cmd_summary(engine, args) -> int:
    summary = engine.get_health_summary()
    if summary is None:
        console.print("[red]Health summary unavailable - see logs[/red]")
        return 1
    if args.json:
        _print_json(summary)
        return 0

    metrics = Table(title="Workflow metrics")
    for column in ("Type", "Status", "Count", "Avg duration"):
        metrics.add_column(column)
    for row in summary["metrics"]:
        avg = row.get("avg_duration_seconds")
        metrics.add_row(row["workflow_type"], row["status"], str(row["execution_count"]),
                        format_duration(avg) if avg is not None else "-")
    console.print(metrics)

    bottlenecks = Table(title="Top bottlenecks")
    for column in ("Step", "Occurrences", "Avg duration"):
        bottlenecks.add_column(column)
    for row in summary["bottlenecks"]:
        avg = row.get("avg_bottleneck_duration")
        bottlenecks.add_row(row["bottleneck_step"], str(row["occurrence_count"]),
                            format_duration(avg) if avg is not None else "-")
    console.print(bottlenecks)

    failures = Table(title="Top failures")
    for column in ("Step", "Reason", "Count"):
        failures.add_column(column)
    for row in summary["failures"]:
        failures.add_row(str(row["failure_step"]), str(row["failure_reason"])[:80], str(row["failure_count"]))
    console.print(failures)

    resilience = summary.get("resilience") or {}
    console.print(f"Resilience: [bold]{resilience.get('overall', 'n/a')}[/bold]")
    for alert in resilience.get("alerts", []):
        console.print(f"  [yellow]- {alert}[/yellow]")
    return 0


def _cmd_breakers(engine, args) -> int:
    status = engine.breakers.get_status()
    if args.json:
        _print_json(status)
        return 0

    table = Table(title="Circuit breakers")
    for column in ("Service", "State", "Failures", "Trips", "Degraded"):
        table.add_column(column)
    for name, info in status.items():
        color = {"CLOSED": "green", "OPEN": "red", "HALF_OPEN": "yellow"}.get(info["state"], "white")
        table.add_row(
            name,
            f"[{color}]{info['state']}[/{color}]",
            f"{info['consecutive_failures']}/{info['failure_threshold']}",
            str(info["metrics"]["circuit_breaker_trips"]),
            "yes" if info["degradation_active"] else "no",
        )
    console.print(table)
    return 0


def _cmd_reset_breaker(engine, args) -> int:
    if args.all:
        engine.reset_all_breakers()
        console.print("[green]All circuit breakers reset[/green]")
        return 0
    if not args.service:
        console.print("[red]Specify a service name or --all[/red]")
        return 2
    if not engine.reset_breaker(args.service):
        console.print(f"[red]Unknown service: {args.service}[/red]")
        return 1
    console.print(f"[green]{args.service} reset to CLOSED[/green]")
    return 0


def _cmd_snapshot(engine, args) -> int:
    rows = engine.record_resilience_snapshot()
    if args.json:
        _print_json({"rows": rows})
        return 0
    console.print(f"[green]Recorded {rows} resilience metrics row(s)[/green]")
    return 0


def _cmd_resolve_alert(engine, args) -> int:
    if not engine.resolve_alert(args.workflow_id):
        console.print(f"[red]Could not resolve alert for {args.workflow_id}[/red]")
        return 1
    console.print(f"[green]Alert resolved for {args.workflow_id}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="workflow-health", description="Quote workflow health engine")
    parser.add_argument("--config", help="Path to health policy YAML (default: config/health_policy.yaml)")
    parser.add_argument("--json", action="store_true", help="Print machine readable JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("sweep", help="Run the monitoring sweeps")
    sub.add_parser("summary", help="Show the health summary")
    sub.add_parser("breakers", help="Show circuit breaker status")

    reset = sub.add_parser("reset-breaker", help="Reset a circuit breaker")
    reset.add_argument("service", nargs="?", help="Service name, e.g. gmail-api")
    reset.add_argument("--all", action="store_true", help="Reset every breaker")

    resolve = sub.add_parser("resolve-alert", help="Resolve a workflow alert")
    resolve.add_argument("workflow_id")
    sub.add_parser("snapshot", help="Record a resilience metrics snapshot")
    return parser


COMMANDS = {
    "sweep": _cmd_sweep,
    "summary": _cmd_summary,
    "breakers": _cmd_breakers,
    "reset-breaker": _cmd_reset_breaker,
    "resolve-alert": _cmd_resolve_alert,
    "snapshot": _cmd_snapshot,
}


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    engine = create_engine(args.config, background_recovery=False,
                           console_output=False if args.json else None)
    try:
        return COMMANDS[args.command](engine, args)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    sys.exit(main())

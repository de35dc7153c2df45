#!/usr/bin/env python3
"""
wsflood/reporting.py - Run report presentation
Console summary of a finished run and JSON export
"""

import json
import logging
import os
from typing import Optional

from wsflood.engines.orchestrator import RunReport
from wsflood.metrics.aggregator import MetricsSnapshot, TrendSummary

logger = logging.getLogger(__name__)


def _format_trend(trend: TrendSummary) -> str:
    if trend.count == 0:
        return "no samples"
    return (f"avg={trend.avg:.1f}ms min={trend.min:.1f}ms med={trend.med:.1f}ms "
            f"p(90)={trend.p90:.1f}ms p(95)={trend.p95:.1f}ms max={trend.max:.1f}ms")


def _print_metrics(snapshot: MetricsSnapshot, indent: str = "  "):
    print(f"{indent}Connections: {snapshot.connect_succeeded}/{snapshot.attempted} succeeded "
          f"({snapshot.connect_success_rate * 100:.2f}%), {snapshot.connect_failed} failed")
    print(f"{indent}Messages: {snapshot.sent} sent, {snapshot.received} received")
    print(f"{indent}Errors: {snapshot.errors}  Rejected by target: {snapshot.rejected}")
    if snapshot.dropped or snapshot.forced_closes:
        print(f"{indent}Dropped arrivals: {snapshot.dropped}  Forced closes: {snapshot.forced_closes}")
    print(f"{indent}ws_connecting: {_format_trend(snapshot.connect_latency)}")
    print(f"{indent}ws_session_duration: {_format_trend(snapshot.session_duration)}")


def print_run_report(report: RunReport):
    """Print formatted run results"""
    print("\n" + "=" * 80)
    print("WSFLOOD - WEBSOCKET LOAD TEST RESULTS")
    print("=" * 80)

    duration = 0.0
    if report.started_at and report.finished_at:
        duration = report.finished_at - report.started_at
    print(f"Run state: {report.state.value}  Duration: {duration:.2f} seconds")
    if report.abort_reason:
        print(f"Aborted: {report.abort_reason}")
    for error in report.setup_errors:
        print(f"Setup error: {error}")

    for result in report.scenarios:
        print(f"\nScenario '{result.name}': {result.status.value.upper()}")
        if result.error:
            print(f"  Error: {result.error}")
        if result.sessions_started:
            print(f"  Sessions started: {result.sessions_started}  Peak concurrency: {result.peak_concurrency}")
        if result.metrics is not None and result.metrics.attempted:
            _print_metrics(result.metrics)
        for finding in result.findings:
            verdict = "enforced" if finding.enforced else "NOT ENFORCED"
            print(f"  [{finding.check}] {verdict}: {finding.detail}")

    if report.global_metrics is not None:
        print(f"\nTotals:")
        _print_metrics(report.global_metrics)

    if report.thresholds:
        print(f"\nThresholds:")
        for result in report.thresholds:
            mark = "PASS" if result.passed else "FAIL"
            observed = "n/a" if result.observed is None else f"{result.observed:.4f}"
            print(f"  [{mark}] {result.name} (observed {observed})")

    print(f"\nOverall: {'PASSED' if report.overall_passed else 'FAILED'}")
    print("=" * 80)


def write_json_report(report: RunReport, path: str, indent: Optional[int] = 2) -> str:
    """Write the report as JSON; parent directories are created as needed"""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(report.to_dict(), f, indent=indent)
    logger.info(f"Run report written to {path}")
    return path

#!/usr/bin/env python3
"""
test_aggregator.py - Metrics aggregation, sampling and snapshots
"""

import threading

import pytest

from wsflood.core.base_classes import SessionOutcome
from wsflood.metrics.aggregator import (
    LatencyReservoir, MetricsAggregator, MetricsRegistry, MetricsSnapshot, TrendSummary, percentile
)


def _ok(latency=10.0, sent=1, received=1, scenario="s"):
    return SessionOutcome(scenario, "id", True, connect_latency_ms=latency,
                          connected_at=100.0, closed_at=100.5, sent=sent, received=received)


def _failed(scenario="s"):
    return SessionOutcome(scenario, "id", False, error="503")


def test_percentile_interpolates():
    values = [1.0, 2.0, 3.0, 4.0]
    assert percentile(values, 0) == 1.0
    assert percentile(values, 50) == pytest.approx(2.5)
    assert percentile(values, 100) == 4.0
    assert percentile([], 95) == 0.0
    with pytest.raises(ValueError):
        percentile(values, 101)


def test_reservoir_is_bounded_but_keeps_exact_extremes():
    reservoir = LatencyReservoir(capacity=100, seed=1)
    for value in range(1000):
        reservoir.add(float(value))

    samples, count, total, low, high = reservoir.copy_state()
    assert len(samples) == 100
    assert count == 1000
    assert total == sum(range(1000))
    assert (low, high) == (0.0, 999.0)


def test_trend_summary_from_samples():
    summary = TrendSummary.build([30.0, 10.0, 20.0], 3, 60.0, 10.0, 30.0)
    assert summary.count == 3
    assert summary.avg == pytest.approx(20.0)
    assert summary.med == pytest.approx(20.0)
    assert summary.max == 30.0
    assert summary.percentile(100) == 30.0
    assert TrendSummary.build([], 0, 0.0, None, None) == TrendSummary()


def test_counters_and_success_rate_exclude_drops():
    aggregator = MetricsAggregator("s")
    aggregator.record(_ok(sent=3, received=2))
    aggregator.record(_ok(sent=1, received=0))
    aggregator.record(_failed())
    aggregator.record_dropped(5)

    snapshot = aggregator.snapshot()
    assert snapshot.attempted == 3
    assert snapshot.connect_succeeded == 2
    assert snapshot.connect_failed == 1
    assert snapshot.sent == 4
    assert snapshot.received == 2
    assert snapshot.dropped == 5
    assert snapshot.connect_success_rate == pytest.approx(2 / 3)
    assert snapshot.connect_failure_rate == pytest.approx(1 / 3)
    assert snapshot.connect_latency.count == 2
    assert snapshot.session_duration.avg == pytest.approx(500.0)


def test_empty_snapshot_rates_are_zero():
    snapshot = MetricsAggregator("s").snapshot()
    assert snapshot.connect_success_rate == 0.0
    assert snapshot.error_rate == 0.0
    assert snapshot.connect_latency.count == 0


def test_error_rate_covers_send_attempts():
    snapshot = MetricsSnapshot(scope="s", sent=9, errors=1)
    assert snapshot.error_rate == pytest.approx(0.1)


def test_forced_close_is_counted_without_failing_connects():
    aggregator = MetricsAggregator("s")
    aggregator.record(SessionOutcome("s", "a", False, forced=True))
    aggregator.record(SessionOutcome("s", "b", True, connected_at=1.0, closed_at=2.0, forced=True))

    snapshot = aggregator.snapshot()
    assert snapshot.attempted == 1
    assert snapshot.connect_failed == 0
    assert snapshot.forced_closes == 2


def test_snapshot_is_idempotent_and_frozen():
    aggregator = MetricsAggregator("s", seed=3)
    for latency in (5.0, 15.0, 25.0):
        aggregator.record(_ok(latency=latency))

    first = aggregator.snapshot()
    second = aggregator.snapshot()
    assert first == second
    with pytest.raises(AttributeError):
        first.sent = 100


def test_concurrent_recording_from_threads_loses_nothing():
    aggregator = MetricsAggregator("s", reservoir_size=500)
    per_thread = 2000

    def worker():
        for index in range(per_thread):
            aggregator.record(_ok(latency=float(index)) if index % 4 else _failed())
            if index % 10 == 0:
                aggregator.record_dropped()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = aggregator.snapshot()
    assert snapshot.attempted == 8 * per_thread
    assert snapshot.connect_failed == 8 * per_thread // 4
    assert snapshot.connect_succeeded + snapshot.connect_failed == snapshot.attempted
    assert snapshot.dropped == 8 * per_thread // 10
    assert snapshot.connect_latency.count == snapshot.connect_succeeded
    assert len(snapshot.connect_latency.samples) == 500


def test_registry_feeds_scenario_and_global_scopes():
    registry = MetricsRegistry()
    registry.recorder_for("a").record(_ok(scenario="a"))
    registry.recorder_for("b").record(_failed(scenario="b"))
    registry.recorder_for("b").record_dropped(2)

    global_snapshot, per_scenario = registry.snapshot_all()
    assert global_snapshot.scope == MetricsRegistry.GLOBAL_SCOPE
    assert global_snapshot.attempted == 2
    assert global_snapshot.dropped == 2
    assert per_scenario["a"].connect_succeeded == 1
    assert per_scenario["b"].connect_failed == 1
    assert per_scenario["b"].to_dict()["dropped"] == 2

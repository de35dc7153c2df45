#!/usr/bin/env python3
"""
wsflood/metrics/aggregator.py - Thread-safe session metrics aggregation
Counters plus reservoir-sampled latency distributions, exposed as frozen snapshots
"""

import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Any

from wsflood.core.base_classes import SessionOutcome

logger = logging.getLogger(__name__)

DEFAULT_RESERVOIR_SIZE = 50000


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Linear-interpolated percentile of an already sorted sequence"""
    if not 0 <= pct <= 100:
        raise ValueError(f"percentile must be 0-100, got {pct}")
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    rank = (len(sorted_values) - 1) * (pct / 100.0)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(sorted_values[lower])
    weight = rank - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


class LatencyReservoir:
    """Bounded uniform sample of observed values (Algorithm R)

    Exact until ``capacity`` values have been seen. Count, min, max and mean
    always cover every observation. Not synchronised, the owner locks.
    """

    def __init__(self, capacity: int = DEFAULT_RESERVOIR_SIZE, seed: Optional[int] = None):
        self.capacity = capacity
        self.samples: List[float] = []
        self.count = 0
        self.total = 0.0
        self.min_value: Optional[float] = None
        self.max_value: Optional[float] = None
        self._rng = random.Random(seed)

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min_value = value if self.min_value is None else min(self.min_value, value)
        self.max_value = value if self.max_value is None else max(self.max_value, value)
        if len(self.samples) < self.capacity:
            self.samples.append(value)
            return
        slot = self._rng.randrange(self.count)
        if slot < self.capacity:
            self.samples[slot] = value

    def copy_state(self) -> Tuple[List[float], int, float, Optional[float], Optional[float]]:
        return list(self.samples), self.count, self.total, self.min_value, self.max_value


@dataclass(frozen=True)
class TrendSummary:
    """Distribution summary of a latency-like metric, in milliseconds"""
    count: int = 0
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    med: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    samples: Tuple[float, ...] = field(default=(), repr=False)

    @classmethod
    def build(cls, samples: List[float], count: int, total: float,
              min_value: Optional[float], max_value: Optional[float]) -> 'TrendSummary':
        if count == 0:
            return cls()
        ordered = tuple(sorted(samples))
        return cls(
            count=count,
            min=min_value or 0.0,
            max=max_value or 0.0,
            avg=total / count,
            med=percentile(ordered, 50),
            p90=percentile(ordered, 90),
            p95=percentile(ordered, 95),
            p99=percentile(ordered, 99),
            samples=ordered,
        )

    def percentile(self, pct: float) -> float:
        return percentile(self.samples, pct)

    def to_dict(self) -> Dict[str, float]:
        return {
            'count': self.count,
            'min': round(self.min, 3),
            'avg': round(self.avg, 3),
            'med': round(self.med, 3),
            'p90': round(self.p90, 3),
            'p95': round(self.p95, 3),
            'p99': round(self.p99, 3),
            'max': round(self.max, 3),
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable point-in-time copy of aggregated metrics"""
    scope: str
    attempted: int = 0
    connect_succeeded: int = 0
    connect_failed: int = 0
    sent: int = 0
    received: int = 0
    errors: int = 0
    rejected: int = 0
    dropped: int = 0
    forced_closes: int = 0
    connect_latency: TrendSummary = field(default_factory=TrendSummary)
    session_duration: TrendSummary = field(default_factory=TrendSummary)
    taken_at: float = field(default=0.0, compare=False)

    @property
    def connect_success_rate(self) -> float:
        """Share of connect attempts that succeeded; harness drops are not attempts"""
        if self.attempted == 0:
            return 0.0
        return self.connect_succeeded / self.attempted

    @property
    def connect_failure_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.connect_failed / self.attempted

    @property
    def error_rate(self) -> float:
        """Failed sends relative to every send attempt"""
        attempts = self.sent + self.errors
        if attempts == 0:
            return 0.0
        return self.errors / attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope': self.scope,
            'attempted': self.attempted,
            'connect_succeeded': self.connect_succeeded,
            'connect_failed': self.connect_failed,
            'connect_success_rate': round(self.connect_success_rate, 6),
            'sent': self.sent,
            'received': self.received,
            'errors': self.errors,
            'rejected': self.rejected,
            'dropped': self.dropped,
            'forced_closes': self.forced_closes,
            'connect_latency_ms': self.connect_latency.to_dict(),
            'session_duration_ms': self.session_duration.to_dict(),
        }


class MetricsAggregator:
    """Accumulates SessionOutcomes from many concurrent sessions

    ``record`` and ``record_dropped`` may be called from any thread or task.
    ``snapshot`` holds the lock only while copying raw state; sorting and
    percentile computation happen outside it.
    """

    def __init__(self, scope: str, reservoir_size: int = DEFAULT_RESERVOIR_SIZE, seed: Optional[int] = None):
        self.scope = scope
        self._lock = threading.Lock()
        self._attempted = 0
        self._connect_succeeded = 0
        self._connect_failed = 0
        self._sent = 0
        self._received = 0
        self._errors = 0
        self._rejected = 0
        self._dropped = 0
        self._forced_closes = 0
        self._connect_latency = LatencyReservoir(reservoir_size, seed)
        self._session_duration = LatencyReservoir(reservoir_size, seed)

    def record(self, outcome: SessionOutcome) -> None:
        duration_ms = outcome.session_duration_ms
        with self._lock:
            if not outcome.connect_succeeded and outcome.forced:
                # Cancelled by the harness mid-handshake, not a target failure
                self._forced_closes += 1
                return
            self._attempted += 1
            if outcome.connect_succeeded:
                self._connect_succeeded += 1
                self._connect_latency.add(outcome.connect_latency_ms)
                if duration_ms is not None:
                    self._session_duration.add(duration_ms)
            else:
                self._connect_failed += 1
            self._sent += outcome.sent
            self._received += outcome.received
            self._errors += outcome.errors
            self._rejected += outcome.rejected
            if outcome.forced:
                self._forced_closes += 1

    def record_dropped(self, count: int = 1) -> None:
        """Count arrivals the harness dropped at its own pool ceiling"""
        with self._lock:
            self._dropped += count

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            counters = (
                self._attempted, self._connect_succeeded, self._connect_failed,
                self._sent, self._received, self._errors, self._rejected,
                self._dropped, self._forced_closes,
            )
            latency_state = self._connect_latency.copy_state()
            duration_state = self._session_duration.copy_state()

        (attempted, succeeded, failed, sent, received,
         errors, rejected, dropped, forced) = counters
        return MetricsSnapshot(
            scope=self.scope,
            attempted=attempted,
            connect_succeeded=succeeded,
            connect_failed=failed,
            sent=sent,
            received=received,
            errors=errors,
            rejected=rejected,
            dropped=dropped,
            forced_closes=forced,
            connect_latency=TrendSummary.build(*latency_state),
            session_duration=TrendSummary.build(*duration_state),
            taken_at=time.time(),
        )


class ScenarioRecorder:
    """Records one scenario's outcomes into its own and the global aggregator"""

    def __init__(self, scenario: MetricsAggregator, global_aggregator: MetricsAggregator):
        self.scenario = scenario
        self.global_aggregator = global_aggregator

    def record(self, outcome: SessionOutcome) -> None:
        self.scenario.record(outcome)
        self.global_aggregator.record(outcome)

    def record_dropped(self, count: int = 1) -> None:
        self.scenario.record_dropped(count)
        self.global_aggregator.record_dropped(count)


class MetricsRegistry:
    """Per-scenario aggregators plus the run-wide one"""

    GLOBAL_SCOPE = "global"

    def __init__(self, reservoir_size: int = DEFAULT_RESERVOIR_SIZE, seed: Optional[int] = None):
        self.reservoir_size = reservoir_size
        self.seed = seed
        self.global_aggregator = MetricsAggregator(self.GLOBAL_SCOPE, reservoir_size, seed)
        self.scenarios: Dict[str, MetricsAggregator] = {}

    def recorder_for(self, scenario: str) -> ScenarioRecorder:
        if scenario not in self.scenarios:
            self.scenarios[scenario] = MetricsAggregator(scenario, self.reservoir_size, self.seed)
        return ScenarioRecorder(self.scenarios[scenario], self.global_aggregator)

    def snapshot_all(self) -> Tuple[MetricsSnapshot, Dict[str, MetricsSnapshot]]:
        per_scenario = {name: aggregator.snapshot() for name, aggregator in self.scenarios.items()}
        return self.global_aggregator.snapshot(), per_scenario

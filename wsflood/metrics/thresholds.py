#!/usr/bin/env python3
"""
wsflood/metrics/thresholds.py - Threshold parsing and evaluation
k6-style expressions such as ``rate>0.999`` or ``p(95)<200`` evaluated read-only
against metrics snapshots
"""

import logging
import operator
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Any

from wsflood.core.errors import ConfigError
from wsflood.metrics.aggregator import MetricsSnapshot, TrendSummary

logger = logging.getLogger(__name__)


class MetricType(Enum):
    RATE = "rate"
    TREND = "trend"
    COUNTER = "counter"


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    metric_type: MetricType
    extract: Callable[[MetricsSnapshot], Any]
    description: str = ""


METRICS: Dict[str, MetricDefinition] = {
    definition.name: definition for definition in (
        MetricDefinition("checks", MetricType.RATE, lambda s: s.connect_success_rate,
                         "share of connect attempts that succeeded"),
        MetricDefinition("connect_success_rate", MetricType.RATE, lambda s: s.connect_success_rate,
                         "share of connect attempts that succeeded"),
        MetricDefinition("connect_failure_rate", MetricType.RATE, lambda s: s.connect_failure_rate,
                         "share of connect attempts that failed"),
        MetricDefinition("ws_error_rate", MetricType.RATE, lambda s: s.error_rate,
                         "share of send attempts that failed"),
        MetricDefinition("ws_connecting", MetricType.TREND, lambda s: s.connect_latency,
                         "connect latency in milliseconds"),
        MetricDefinition("ws_session_duration", MetricType.TREND, lambda s: s.session_duration,
                         "time connected in milliseconds"),
        MetricDefinition("ws_sessions", MetricType.COUNTER, lambda s: s.attempted,
                         "sessions attempted"),
        MetricDefinition("ws_connect_failed", MetricType.COUNTER, lambda s: s.connect_failed,
                         "sessions whose connect failed"),
        MetricDefinition("ws_msgs_sent", MetricType.COUNTER, lambda s: s.sent,
                         "messages sent"),
        MetricDefinition("ws_msgs_received", MetricType.COUNTER, lambda s: s.received,
                         "messages received"),
        MetricDefinition("ws_errors", MetricType.COUNTER, lambda s: s.errors,
                         "send/receive errors"),
        MetricDefinition("ws_rejected", MetricType.COUNTER, lambda s: s.rejected,
                         "sessions the target rejected with a policy close"),
        MetricDefinition("dropped_iterations", MetricType.COUNTER, lambda s: s.dropped,
                         "arrivals dropped at the harness pool ceiling"),
    )
}

_ALLOWED_AGGREGATIONS = {
    MetricType.RATE: {"rate"},
    MetricType.COUNTER: {"count"},
    MetricType.TREND: {"avg", "min", "max", "med", "p", "count"},
}

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION_RE = re.compile(
    r"^\s*(?P<agg>rate|count|avg|min|max|med|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?)\s*$"
)
_METRIC_KEY_RE = re.compile(r"^\s*(?P<metric>[a-z_]+)\s*(?:\{\s*scenario\s*:\s*(?P<scenario>[^}\s]+)\s*\})?\s*$")


@dataclass(frozen=True)
class ThresholdSpec:
    """One parsed threshold expression"""
    metric: str
    expression: str
    aggregation: str
    op: str
    value: float
    percentile: Optional[float] = None
    scenario: Optional[str] = None
    abort_on_fail: bool = False

    @property
    def name(self) -> str:
        key = self.metric if not self.scenario else f"{self.metric}{{scenario:{self.scenario}}}"
        return f"{key}: {self.expression}"

    def observe(self, snapshot: MetricsSnapshot) -> float:
        """Pull the aggregated value this threshold compares"""
        raw = METRICS[self.metric].extract(snapshot)
        if isinstance(raw, TrendSummary):
            if self.aggregation == "p":
                return raw.percentile(self.percentile)
            if self.aggregation == "count":
                return float(raw.count)
            return float(getattr(raw, self.aggregation))
        return float(raw)

    def check(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.value)


@dataclass(frozen=True)
class ThresholdResult:
    spec: ThresholdSpec
    observed: Optional[float]
    passed: bool

    @property
    def name(self) -> str:
        return self.spec.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'metric': self.spec.metric,
            'scenario': self.spec.scenario,
            'expression': self.spec.expression,
            'observed': self.observed,
            'passed': self.passed,
        }


def parse_threshold(metric_key: str, expression: str, abort_on_fail: bool = False) -> ThresholdSpec:
    """Parse ``metric[{scenario:name}]`` and an expression into a ThresholdSpec"""
    key_match = _METRIC_KEY_RE.match(metric_key)
    if not key_match:
        raise ConfigError(f"invalid threshold metric '{metric_key}'")
    metric = key_match.group("metric")
    if metric not in METRICS:
        raise ConfigError(f"unknown threshold metric '{metric}' (known: {', '.join(sorted(METRICS))})")

    match = _EXPRESSION_RE.match(expression)
    if not match:
        raise ConfigError(f"invalid threshold expression '{expression}' for metric '{metric}'")

    aggregation = match.group("agg")
    pct = None
    if aggregation.startswith("p("):
        aggregation = "p"
        pct = float(match.group("pct"))
        if pct > 100:
            raise ConfigError(f"percentile out of range in '{expression}'")

    metric_type = METRICS[metric].metric_type
    if aggregation not in _ALLOWED_AGGREGATIONS[metric_type]:
        raise ConfigError(f"'{aggregation}' is not valid for {metric_type.value} metric '{metric}'")

    return ThresholdSpec(
        metric=metric,
        expression=expression.strip(),
        aggregation=aggregation,
        op=match.group("op"),
        value=float(match.group("value")),
        percentile=pct,
        scenario=key_match.group("scenario"),
        abort_on_fail=abort_on_fail,
    )


class ThresholdEvaluator:
    """Evaluates a fixed set of thresholds; has no effect on metrics state"""

    def __init__(self, specs: List[ThresholdSpec]):
        self.specs = list(specs)

    def evaluate(self, global_snapshot: MetricsSnapshot,
                 per_scenario: Optional[Dict[str, MetricsSnapshot]] = None) -> List[ThresholdResult]:
        per_scenario = per_scenario or {}
        results = []
        for spec in self.specs:
            snapshot = global_snapshot if spec.scenario is None else per_scenario.get(spec.scenario)
            if snapshot is None:
                logger.warning(f"Threshold '{spec.name}' references a scenario with no metrics")
                results.append(ThresholdResult(spec, None, False))
                continue
            observed = spec.observe(snapshot)
            results.append(ThresholdResult(spec, observed, spec.check(observed)))
        return results

    @staticmethod
    def verdict(results: List[ThresholdResult]) -> bool:
        return all(result.passed for result in results)

    def unknown_scenarios(self, scenario_names: List[str]) -> List[str]:
        return sorted({spec.scenario for spec in self.specs
                       if spec.scenario is not None and spec.scenario not in scenario_names})

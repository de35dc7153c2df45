#!/usr/bin/env python3
"""
wsflood/metrics/findings.py - Target enforcement findings
Derives whether the target limited message rate, connection count or rejected
malformed input, from a scenario's metrics snapshot alone
"""

from dataclasses import dataclass, asdict
from typing import Dict, List, Any

from wsflood.core.base_classes import FlowKind, ScenarioConfig
from wsflood.metrics.aggregator import MetricsSnapshot


@dataclass(frozen=True)
class Finding:
    check: str
    enforced: bool
    detail: str

    @property
    def vulnerable(self) -> bool:
        return not self.enforced

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), 'vulnerable': self.vulnerable}


def _rate_limiting(config: ScenarioConfig, snapshot: MetricsSnapshot) -> Finding:
    expected = config.flow.send.message_count * snapshot.connect_succeeded
    # Sessions the harness closed early never had the chance to send everything
    shortfall = snapshot.sent < expected and snapshot.forced_closes == 0
    enforced = snapshot.errors > 0 or snapshot.rejected > 0 or shortfall
    detail = (f"{snapshot.sent}/{expected} messages accepted, "
              f"{snapshot.errors} errors, {snapshot.rejected} policy closes")
    return Finding("rate_limiting", enforced, detail)


def _connection_limiting(config: ScenarioConfig, snapshot: MetricsSnapshot) -> Finding:
    enforced = snapshot.connect_failed > 0 or snapshot.rejected > 0
    detail = f"{snapshot.connect_succeeded}/{snapshot.attempted} connections accepted"
    return Finding("connection_limiting", enforced, detail)


def _input_validation(config: ScenarioConfig, snapshot: MetricsSnapshot) -> Finding:
    enforced = snapshot.rejected > 0 or snapshot.errors > 0
    detail = (f"{snapshot.rejected} sessions closed by policy, {snapshot.errors} send errors, "
              f"{snapshot.received} responses")
    return Finding("input_validation", enforced, detail)


def assess_scenario(config: ScenarioConfig, snapshot: MetricsSnapshot) -> List[Finding]:
    """Findings relevant to the scenario's flow; empty when nothing connected"""
    if snapshot.attempted == 0:
        return []
    kind = config.flow.kind
    if kind == FlowKind.MESSAGE_SPAM:
        return [_rate_limiting(config, snapshot)]
    if kind in (FlowKind.MULTI_CONNECT, FlowKind.RECONNECT_SPIKE):
        return [_connection_limiting(config, snapshot)]
    if kind == FlowKind.MALFORMED_INJECTION:
        return [_input_validation(config, snapshot)]
    return []

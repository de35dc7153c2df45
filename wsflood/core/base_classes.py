#!/usr/bin/env python3
"""
wsflood/core/base_classes.py - Core data model for the load harness
Flows, stages, scenario configuration and per-session outcomes
"""

import random
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from string import Template
from typing import Dict, List, Optional, Tuple, Any

from wsflood.core.errors import ConfigError


class FlowKind(Enum):
    """Behaviour templates a session can follow"""
    STABLE = "stable"
    INTERMITTENT = "intermittent"
    RECONNECT_SPIKE = "reconnect_spike"
    MESSAGE_SPAM = "message_spam"
    MULTI_CONNECT = "multi_connect"
    MALFORMED_INJECTION = "malformed_injection"


class SendMode(Enum):
    """How a session sends its payloads once connected"""
    NONE = "none"
    SINGLE = "single"
    REPEATED = "repeated"
    SEQUENCE = "sequence"


class ExecutorMode(Enum):
    """Arrival pattern of a scenario"""
    CONSTANT_CONCURRENCY = "constant_concurrency"
    RAMPING_ARRIVAL_RATE = "ramping_arrival_rate"
    RAMPING_CONCURRENCY = "ramping_concurrency"


class SessionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class Stage:
    """A timed ramp target for concurrency or arrival rate"""
    target: float
    duration: float  # seconds, 0 means jump immediately


@dataclass(frozen=True)
class HoldPolicy:
    """How long a session keeps its connection open after sending"""
    min_seconds: float
    max_seconds: float

    @classmethod
    def fixed(cls, seconds: float) -> 'HoldPolicy':
        return cls(seconds, seconds)

    def sample(self, rng: random.Random) -> float:
        if self.max_seconds <= self.min_seconds:
            return self.min_seconds
        return rng.uniform(self.min_seconds, self.max_seconds)


@dataclass(frozen=True)
class SendPolicy:
    """Which payloads a session sends and at what cadence"""
    mode: SendMode = SendMode.NONE
    payloads: Tuple[str, ...] = ()
    count: int = 0
    interval: float = 0.0

    @property
    def message_count(self) -> int:
        if self.mode == SendMode.NONE or not self.payloads:
            return 0
        if self.mode == SendMode.SINGLE:
            return 1
        if self.mode == SendMode.SEQUENCE:
            return len(self.payloads)
        return self.count


@dataclass(frozen=True)
class Flow:
    """Named behaviour template: send policy, hold policy and payload handling"""
    name: str
    kind: FlowKind
    hold: HoldPolicy
    send: SendPolicy = field(default_factory=SendPolicy)
    malformed: bool = False

    def render_payload(self, seq: int, variables: Dict[str, Any]) -> str:
        """Payload number ``seq`` of a session, rendered at call time

        Malformed flows send their payloads untouched, every other flow
        substitutes ``$name`` placeholders from ``variables`` plus ``$seq``
        and ``$timestamp`` (milliseconds since the epoch).
        """
        templates = self.send.payloads
        if self.send.mode == SendMode.REPEATED:
            raw = templates[seq % len(templates)]
        else:
            raw = templates[seq]
        if self.malformed:
            return raw
        values = {key: str(value) for key, value in variables.items()}
        values['seq'] = str(seq)
        values['timestamp'] = str(int(time.time() * 1000))
        return Template(raw).safe_substitute(values)

    def render_payloads(self, variables: Dict[str, Any]) -> List[str]:
        return [self.render_payload(seq, variables) for seq in range(self.send.message_count)]


@dataclass(frozen=True)
class ConnectionParams:
    """Everything a session needs to reach the target"""
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    connect_timeout: float = 10.0
    close_timeout: float = 5.0


@dataclass(frozen=True)
class ScenarioConfig:
    """Static configuration of one scenario, never mutated after load"""
    name: str
    flow: Flow
    mode: ExecutorMode
    stages: Tuple[Stage, ...] = ()
    start_offset: float = 0.0
    constant_value: Optional[int] = None
    duration: Optional[float] = None
    start_value: float = 0.0
    time_unit: float = 1.0
    pool_limit: Optional[int] = None
    graceful_stop: float = 30.0

    def validate(self) -> None:
        """Check scenario invariants, raising ConfigError on the first violation"""
        if not self.name:
            raise ConfigError("scenario name is required")
        if self.start_offset < 0:
            raise ConfigError(f"start offset must be non-negative, got {self.start_offset}", self.name)
        if self.graceful_stop < 0:
            raise ConfigError(f"graceful stop must be non-negative, got {self.graceful_stop}", self.name)
        if self.pool_limit is not None and self.pool_limit < 1:
            raise ConfigError(f"pool limit must be at least 1, got {self.pool_limit}", self.name)
        for index, stage in enumerate(self.stages):
            if stage.duration < 0:
                raise ConfigError(f"stage {index} has negative duration {stage.duration}", self.name)
            if stage.target < 0:
                raise ConfigError(f"stage {index} has negative target {stage.target}", self.name)

        if self.mode == ExecutorMode.CONSTANT_CONCURRENCY:
            if self.constant_value is None:
                raise ConfigError("constant concurrency requires a constant value (vus)", self.name)
            if self.constant_value < 0:
                raise ConfigError(f"constant value must be non-negative, got {self.constant_value}", self.name)
            if self.duration is None and not self.stages:
                raise ConfigError("constant concurrency requires a duration", self.name)
        else:
            if not self.stages:
                raise ConfigError(f"{self.mode.value} requires at least one stage", self.name)
            if self.start_value < 0:
                raise ConfigError(f"start value must be non-negative, got {self.start_value}", self.name)

        if self.mode == ExecutorMode.RAMPING_ARRIVAL_RATE:
            if self.time_unit <= 0:
                raise ConfigError(f"time unit must be positive, got {self.time_unit}", self.name)
            if self.pool_limit is None:
                raise ConfigError("ramping arrival rate requires a pool limit (max_vus)", self.name)

        if self.duration is not None and self.duration < 0:
            raise ConfigError(f"duration must be non-negative, got {self.duration}", self.name)

    @property
    def total_duration(self) -> float:
        """Scenario run time, excluding start offset and drain"""
        if self.stages:
            return sum(stage.duration for stage in self.stages)
        return self.duration or 0.0

    @property
    def span(self) -> float:
        """End of the scenario on the run clock"""
        return self.start_offset + self.total_duration

    @property
    def effective_pool_limit(self) -> int:
        """Concurrent session ceiling, defaulting to the highest concurrency target"""
        if self.pool_limit is not None:
            return self.pool_limit
        if self.mode == ExecutorMode.CONSTANT_CONCURRENCY:
            return max(int(self.constant_value or 0), 1)
        peak = max([self.start_value] + [stage.target for stage in self.stages])
        return max(int(peak), 1)


@dataclass(frozen=True)
class SessionOutcome:
    """Immutable result of one session, reported exactly once"""
    scenario: str
    session_id: str
    connect_succeeded: bool
    connect_latency_ms: float = 0.0
    connected_at: Optional[float] = None
    closed_at: Optional[float] = None
    sent: int = 0
    received: int = 0
    errors: int = 0
    rejected: int = 0
    forced: bool = False
    close_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def session_duration_ms(self) -> Optional[float]:
        if self.connected_at is None or self.closed_at is None:
            return None
        return (self.closed_at - self.connected_at) * 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

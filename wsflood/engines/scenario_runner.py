#!/usr/bin/env python3
"""
wsflood/engines/scenario_runner.py - Runs one scenario from start offset to drain
Binds a ScenarioConfig to its arrival controller and session pool
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from wsflood.core.base_classes import ConnectionParams, ScenarioConfig
from wsflood.core.context import RunContext
from wsflood.engines.arrival import ArrivalController, create_arrival_controller
from wsflood.engines.session_pool import SessionPool
from wsflood.metrics.aggregator import MetricsSnapshot
from wsflood.transport.base import Transport

logger = logging.getLogger(__name__)


class ScenarioStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ScenarioResult:
    """Final state of one scenario, handed to the orchestrator"""
    name: str
    status: ScenarioStatus
    metrics: Optional[MetricsSnapshot] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    sessions_started: int = 0
    peak_concurrency: int = 0
    findings: List[Any] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status.value,
            'error': self.error,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration': self.duration,
            'sessions_started': self.sessions_started,
            'peak_concurrency': self.peak_concurrency,
            'metrics': self.metrics.to_dict() if self.metrics else None,
            'findings': [finding.to_dict() for finding in self.findings],
        }


class ScenarioRunner:
    """Runs one scenario: wait for the offset, drive arrivals, drain

    ``validate`` raises ConfigError before anything starts; every failure after
    that is captured in the ScenarioResult instead of propagating.
    """

    def __init__(self, config: ScenarioConfig, params: ConnectionParams, transport: Transport,
                 context: RunContext):
        self.config = config
        self.params = params
        self.transport = transport
        self.context = context
        self.status = ScenarioStatus.PENDING
        self.recorder = context.metrics.recorder_for(config.name)
        self.pool: Optional[SessionPool] = None
        self.controller: Optional[ArrivalController] = None

    def validate(self) -> None:
        self.config.validate()

    async def run(self) -> ScenarioResult:
        config = self.config
        result = ScenarioResult(name=config.name, status=self.status)

        if await self.context.sleep_until(config.start_offset):
            logger.info(f"Scenario '{config.name}' aborted before its start offset")
            return self._result(result, ScenarioStatus.ABORTED)

        seed = self.context.options.seed
        rng = random.Random(f"{seed}:{config.name}") if seed is not None else random.Random()
        self.pool = SessionPool(config, self.params, self.transport, self.recorder, rng)
        self.controller = create_arrival_controller(config, self.context, self.recorder)

        self.status = ScenarioStatus.RUNNING
        result.started_at = time.time()
        logger.info(f"Scenario '{config.name}' started: {config.mode.value}, flow '{config.flow.name}', "
                    f"{config.total_duration:.1f}s, pool limit {self.pool.limit}")

        try:
            await self.controller.drive(self.pool)
        except Exception as e:
            logger.error(f"Scenario '{config.name}' failed while running: {e}")
            result.error = str(e)
        finally:
            self.status = ScenarioStatus.DRAINING
            await self._drain()

        if result.error:
            final = ScenarioStatus.FAILED
        elif self.context.aborted:
            final = ScenarioStatus.ABORTED
        else:
            final = ScenarioStatus.COMPLETED
        return self._result(result, final)

    async def _drain(self) -> None:
        if self.context.aborted:
            graceful_stop = 0.0
        else:
            graceful_stop = self.config.graceful_stop
        close_grace = max(self.params.close_timeout, self.context.options.abort_grace)
        logger.debug(f"Scenario '{self.config.name}' draining {self.pool.active_count} sessions")
        await self.pool.drain(graceful_stop, close_grace, interrupt=self.context.abort_event)

    def _result(self, result: ScenarioResult, status: ScenarioStatus) -> ScenarioResult:
        self.status = status
        result.status = status
        result.finished_at = time.time()
        result.metrics = self.recorder.scenario.snapshot()
        if self.pool is not None:
            result.sessions_started = self.pool.started
            result.peak_concurrency = self.pool.peak_active
        logger.info(f"Scenario '{self.config.name}' {status.value}: "
                    f"{result.metrics.connect_succeeded}/{result.metrics.attempted} connects, "
                    f"{result.metrics.dropped} dropped")
        return result

#!/usr/bin/env python3
"""
wsflood/engines/orchestrator.py - Runs every scenario of a run and produces the report
Shared run clock, per-scenario failure isolation, live threshold checks and abort
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Any

from wsflood.core.base_classes import ConnectionParams, ScenarioConfig
from wsflood.core.context import RunContext, RunOptions
from wsflood.core.errors import ConfigError
from wsflood.engines.scenario_runner import ScenarioResult, ScenarioRunner, ScenarioStatus
from wsflood.metrics.aggregator import MetricsRegistry, MetricsSnapshot
from wsflood.metrics.findings import assess_scenario
from wsflood.metrics.thresholds import ThresholdEvaluator, ThresholdResult, ThresholdSpec
from wsflood.transport.base import Transport

logger = logging.getLogger(__name__)


class RunState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    DRAINING = "draining"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RunReport:
    """Everything the presentation layer needs about a finished run"""
    state: RunState
    scenarios: List[ScenarioResult] = field(default_factory=list)
    thresholds: List[ThresholdResult] = field(default_factory=list)
    overall_passed: bool = False
    global_metrics: Optional[MetricsSnapshot] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    abort_reason: Optional[str] = None
    setup_errors: List[str] = field(default_factory=list)

    def scenario(self, name: str) -> Optional[ScenarioResult]:
        for result in self.scenarios:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'overall_passed': self.overall_passed,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'abort_reason': self.abort_reason,
            'setup_errors': self.setup_errors,
            'global_metrics': self.global_metrics.to_dict() if self.global_metrics else None,
            'per_scenario': [result.to_dict() for result in self.scenarios],
            'thresholds': [result.to_dict() for result in self.thresholds],
        }


class Orchestrator:
    """Starts all scenario runners against one shared run-start timestamp

    Run states: pending -> running -> draining -> completed, or failed when
    the setup is unusable. Mid-run failures never fail the run; they show up in
    the per-scenario results and the metrics.
    """

    def __init__(self, scenarios: Sequence[ScenarioConfig], params: ConnectionParams, transport: Transport,
                 thresholds: Sequence[ThresholdSpec] = (), options: Optional[RunOptions] = None):
        self.scenarios = list(scenarios)
        self.params = params
        self.transport = transport
        self.options = options or RunOptions()
        self.evaluator = ThresholdEvaluator(list(thresholds))
        self.metrics = MetricsRegistry(seed=self.options.seed)
        self.context: Optional[RunContext] = None
        self.state = RunState.PENDING
        self.runners: Dict[str, ScenarioRunner] = {}
        self._pending_abort: Optional[str] = None

    def abort(self, reason: str = "operator interrupt") -> None:
        """Stop all arrivals and drain every scenario within the abort grace"""
        logger.warning(f"Aborting run: {reason}")
        if self.context is None:
            self._pending_abort = reason
            return
        self.context.abort(reason)
        if self.state == RunState.RUNNING:
            self.state = RunState.DRAINING

    async def run(self) -> RunReport:
        self.context = RunContext(self.metrics, self.options)
        report = RunReport(state=RunState.PENDING, started_at=time.time())
        failed_setup: List[ScenarioResult] = []

        for config in self.scenarios:
            try:
                if config.name in self.runners:
                    raise ConfigError("duplicate scenario name", config.name)
                runner = ScenarioRunner(config, self.params, self.transport, self.context)
                runner.validate()
                self.runners[config.name] = runner
            except ConfigError as e:
                logger.error(f"Scenario setup failed: {e}")
                failed_setup.append(ScenarioResult(name=config.name, status=ScenarioStatus.FAILED, error=str(e)))

        unknown = self.evaluator.unknown_scenarios(list(self.runners) + [r.name for r in failed_setup])
        if unknown:
            report.setup_errors.append(f"thresholds reference unknown scenarios: {', '.join(unknown)}")
        if not self.runners:
            report.setup_errors.append("no runnable scenarios")
        if report.setup_errors:
            for error in report.setup_errors:
                logger.error(f"Run setup failed: {error}")
            return self._finish(report, RunState.FAILED, failed_setup)

        span = max(runner.config.span for runner in self.runners.values())
        logger.info(f"Starting run: {len(self.runners)} scenarios, {span:.1f}s planned span")
        self.context.start()
        self.state = RunState.RUNNING
        if self._pending_abort:
            self.context.abort(self._pending_abort)

        tasks = {name: asyncio.create_task(runner.run(), name=f"scenario-{name}")
                 for name, runner in self.runners.items()}
        background = [asyncio.create_task(self._mark_draining(span))]
        if self._live_interval() is not None:
            background.append(asyncio.create_task(self._monitor_thresholds()))

        try:
            outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

        results = list(failed_setup)
        for name, outcome in zip(tasks, outcomes):
            if isinstance(outcome, BaseException):
                # Isolated: one scenario collapsing never takes siblings down
                logger.error(f"Scenario '{name}' crashed: {outcome!r}")
                outcome = ScenarioResult(
                    name=name,
                    status=ScenarioStatus.FAILED,
                    error=str(outcome) or type(outcome).__name__,
                    metrics=self.metrics.scenarios[name].snapshot(),
                )
            results.append(outcome)

        return self._finish(report, RunState.COMPLETED, results)

    def _finish(self, report: RunReport, state: RunState, results: List[ScenarioResult]) -> RunReport:
        global_snapshot, per_scenario = self.metrics.snapshot_all()
        configs = {config.name: config for config in self.scenarios}

        for result in results:
            if result.metrics is None:
                result.metrics = per_scenario.get(result.name) or MetricsSnapshot(scope=result.name)
            config = configs.get(result.name)
            if config is not None and result.status != ScenarioStatus.FAILED:
                result.findings = assess_scenario(config, result.metrics)

        self.state = state
        report.state = state
        report.scenarios = sorted(results, key=lambda r: list(configs).index(r.name) if r.name in configs else 0)
        report.global_metrics = global_snapshot
        report.finished_at = time.time()
        report.abort_reason = self.context.abort_reason if self.context else None

        if state == RunState.COMPLETED:
            report.thresholds = self.evaluator.evaluate(global_snapshot, per_scenario)
        scenarios_ok = all(result.status != ScenarioStatus.FAILED for result in results)
        report.overall_passed = (
            state == RunState.COMPLETED
            and scenarios_ok
            and report.abort_reason is None
            and self.evaluator.verdict(report.thresholds)
        )
        logger.info(f"Run {state.value}: overall {'PASSED' if report.overall_passed else 'FAILED'}")
        return report

    async def _mark_draining(self, span: float) -> None:
        await self.context.sleep(span)
        if self.state == RunState.RUNNING:
            self.state = RunState.DRAINING
            logger.info("Run span elapsed, draining scenarios")

    def _live_interval(self) -> Optional[float]:
        if self.options.evaluation_interval:
            return self.options.evaluation_interval
        if any(spec.abort_on_fail for spec in self.evaluator.specs):
            return 1.0
        return None

    async def _monitor_thresholds(self) -> None:
        """Evaluate thresholds on a fixed cadence, aborting on abort_on_fail breaches"""
        interval = self._live_interval()
        reported = set()
        while not await self.context.sleep(interval):
            global_snapshot, per_scenario = self.metrics.snapshot_all()
            for result in self.evaluator.evaluate(global_snapshot, per_scenario):
                if result.passed:
                    continue
                scope = global_snapshot if result.spec.scenario is None else per_scenario.get(result.spec.scenario)
                if scope is None or scope.attempted == 0:
                    # Nothing measured yet
                    continue
                if result.name not in reported:
                    reported.add(result.name)
                    logger.warning(f"Threshold '{result.name}' crossed (observed {result.observed})")
                if result.spec.abort_on_fail:
                    self.abort(f"threshold '{result.name}' crossed")
                    return

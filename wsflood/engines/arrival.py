#!/usr/bin/env python3
"""
wsflood/engines/arrival.py - Arrival controllers
Decide when sessions start: constant concurrency, ramping concurrency and
ramping arrival rate, all driven from a fixed wall-clock tick
"""

import abc
import logging
import math
from typing import List, Sequence

from wsflood.core.base_classes import ExecutorMode, ScenarioConfig, Stage
from wsflood.core.context import RunContext
from wsflood.core.errors import ConfigError, PoolExhausted
from wsflood.engines.session_pool import SessionPool
from wsflood.metrics.aggregator import ScenarioRecorder

logger = logging.getLogger(__name__)

# Guards floor() against float error when an integral lands on a whole number
_EPSILON = 1e-9


class StageProfile:
    """Piecewise-linear target over time

    Starts at ``start_value`` and moves linearly to each stage target over the
    stage duration. A zero-duration stage jumps straight to its target. With no
    stages the profile stays at ``start_value`` for ``duration`` seconds.
    """

    def __init__(self, start_value: float, stages: Sequence[Stage], duration: float = 0.0):
        self.start_value = float(start_value)
        self.stages: List[Stage] = list(stages)
        if self.stages:
            self.duration = sum(stage.duration for stage in self.stages)
        else:
            self.duration = float(duration)

    def value_at(self, elapsed: float) -> float:
        value = self.start_value
        offset = 0.0
        for stage in self.stages:
            end = offset + stage.duration
            if elapsed < end:
                progress = (elapsed - offset) / stage.duration
                return value + (stage.target - value) * progress
            value = stage.target
            offset = end
        return value

    def integral(self, elapsed: float) -> float:
        """Area under the profile from 0 to ``elapsed``, clamped to the profile duration"""
        elapsed = min(max(elapsed, 0.0), self.duration)
        if not self.stages:
            return self.start_value * elapsed

        area = 0.0
        value = self.start_value
        offset = 0.0
        for stage in self.stages:
            if elapsed <= offset:
                break
            if stage.duration > 0:
                covered = min(elapsed, offset + stage.duration) - offset
                end_value = value + (stage.target - value) * (covered / stage.duration)
                area += (value + end_value) / 2.0 * covered
            value = stage.target
            offset += stage.duration
        return area


class ArrivalController(abc.ABC):
    """Drives a SessionPool for the length of one scenario"""

    def __init__(self, config: ScenarioConfig, profile: StageProfile, context: RunContext):
        self.config = config
        self.profile = profile
        self.context = context

    @property
    def duration(self) -> float:
        return self.profile.duration

    @abc.abstractmethod
    async def drive(self, pool: SessionPool) -> None:
        """Start sessions until the scenario duration elapses or the run aborts"""


class ConcurrencyController(ArrivalController):
    """Closed loop: keep the number of live sessions on the profile's target

    A finished session wakes the loop so its replacement starts straight away;
    the tick catches ramp changes in between. Above target the most recently
    started sessions are asked to close early.
    """

    async def drive(self, pool: SessionPool) -> None:
        tick = self.context.options.tick_interval
        loop_start = self.context.now()
        warned = False

        while not self.context.aborted:
            pool.changed.clear()
            elapsed = self.context.now() - loop_start
            if elapsed >= self.duration:
                break

            target = math.floor(self.profile.value_at(elapsed) + _EPSILON)
            if target > pool.limit:
                if not warned:
                    logger.warning(f"Scenario '{self.config.name}': target {target} exceeds pool limit "
                                   f"{pool.limit}, clamped to the limit")
                    warned = True
                target = pool.limit

            # Sessions still closing hold their slot; the shortfall they cause
            # is filled when they finish and wake the loop
            shortfall = target - pool.running_count
            for _ in range(min(shortfall, pool.free_slots)):
                await pool.start()
            surplus = pool.running_count - target
            if surplus > 0:
                pool.retire(surplus)

            remaining = self.duration - (self.context.now() - loop_start)
            await self._wait(pool, min(tick, remaining))

    async def _wait(self, pool: SessionPool, timeout: float) -> None:
        if self.context.aborted:
            return
        await pool.wait_for_change(timeout)


class ArrivalRateController(ArrivalController):
    """Open loop: start sessions at the profile's rate regardless of completions

    The number of arrivals due by time t is the integral of the rate up to t;
    each tick launches the arrivals that became due since the previous tick.
    Arrivals finding the pool full are dropped and counted separately.
    """

    def __init__(self, config: ScenarioConfig, profile: StageProfile, context: RunContext,
                 recorder: ScenarioRecorder):
        super().__init__(config, profile, context)
        self.recorder = recorder
        self.launched = 0
        self.dropped = 0

    def due_by(self, elapsed: float) -> int:
        return math.floor(self.profile.integral(elapsed) / self.config.time_unit + _EPSILON)

    async def drive(self, pool: SessionPool) -> None:
        tick = self.context.options.tick_interval
        loop_start = self.context.now()

        while True:
            elapsed = min(self.context.now() - loop_start, self.duration)
            due = self.due_by(elapsed) - (self.launched + self.dropped)
            for _ in range(due):
                try:
                    await pool.start()
                    self.launched += 1
                except PoolExhausted:
                    self.dropped += 1
                    self.recorder.record_dropped()

            if elapsed >= self.duration:
                break
            if await self.context.sleep(min(tick, self.duration - elapsed)):
                break

        if self.dropped:
            logger.warning(f"Scenario '{self.config.name}': {self.dropped} arrivals dropped at pool limit {pool.limit}")


def create_arrival_controller(config: ScenarioConfig, context: RunContext,
                              recorder: ScenarioRecorder) -> ArrivalController:
    """Build the controller matching the scenario's executor mode"""
    if config.mode == ExecutorMode.CONSTANT_CONCURRENCY:
        profile = StageProfile(config.constant_value or 0, (), config.total_duration)
        return ConcurrencyController(config, profile, context)
    if config.mode == ExecutorMode.RAMPING_CONCURRENCY:
        profile = StageProfile(config.start_value, config.stages)
        return ConcurrencyController(config, profile, context)
    if config.mode == ExecutorMode.RAMPING_ARRIVAL_RATE:
        profile = StageProfile(config.start_value, config.stages)
        return ArrivalRateController(config, profile, context, recorder)
    raise ConfigError(f"unsupported executor mode {config.mode}", config.name)

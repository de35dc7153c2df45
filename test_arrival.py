#!/usr/bin/env python3
"""
test_arrival.py - Stage profiles, concurrency control and arrival-rate scheduling
"""

import asyncio

import pytest

from conftest import ListRecorder, make_flow
from wsflood.core.base_classes import ExecutorMode, ScenarioConfig, Stage
from wsflood.core.context import RunContext, RunOptions
from wsflood.engines.arrival import (
    ArrivalRateController, ConcurrencyController, StageProfile, create_arrival_controller
)
from wsflood.engines.session_pool import SessionPool
from wsflood.transport.stub_transport import StubTransport


def test_stage_profile_interpolates_linearly():
    profile = StageProfile(0, [Stage(10, 1.0), Stage(10, 2.0)])

    assert profile.duration == 3.0
    assert profile.value_at(0.0) == 0.0
    assert profile.value_at(0.5) == pytest.approx(5.0)
    assert profile.value_at(2.0) == pytest.approx(10.0)
    assert profile.value_at(10.0) == pytest.approx(10.0)


def test_stage_profile_integral_is_area_under_ramp():
    profile = StageProfile(0, [Stage(10, 1.0), Stage(10, 2.0)])

    assert profile.integral(1.0) == pytest.approx(5.0)
    assert profile.integral(3.0) == pytest.approx(25.0)
    # Clamped to the profile duration
    assert profile.integral(100.0) == pytest.approx(25.0)
    assert profile.integral(-1.0) == 0.0


def test_zero_duration_stage_jumps_to_target():
    profile = StageProfile(0, [Stage(5, 0.0), Stage(5, 1.0)])

    assert profile.value_at(0.0) == pytest.approx(5.0)
    assert profile.integral(1.0) == pytest.approx(5.0)


def test_flat_profile_without_stages():
    profile = StageProfile(3, [], duration=2.0)

    assert profile.value_at(1.5) == 3.0
    assert profile.integral(1.0) == pytest.approx(3.0)
    assert profile.integral(5.0) == pytest.approx(6.0)


def test_due_arrivals_scale_with_time_unit():
    config = ScenarioConfig("r", make_flow(), ExecutorMode.RAMPING_ARRIVAL_RATE,
                            stages=(Stage(10, 1.0),), start_value=10, time_unit=2.0, pool_limit=5)
    controller = ArrivalRateController(config, StageProfile(10, config.stages), RunContext(), ListRecorder())

    assert controller.due_by(1.0) == 5
    assert controller.due_by(0.5) == 2


def test_controller_factory_matches_executor():
    context = RunContext()
    recorder = context.metrics.recorder_for("x")
    constant = ScenarioConfig("x", make_flow(), ExecutorMode.CONSTANT_CONCURRENCY, constant_value=2, duration=1.0)
    ramping = ScenarioConfig("x", make_flow(), ExecutorMode.RAMPING_CONCURRENCY, stages=(Stage(2, 1.0),))
    rate = ScenarioConfig("x", make_flow(), ExecutorMode.RAMPING_ARRIVAL_RATE, stages=(Stage(2, 1.0),),
                          pool_limit=2)

    assert isinstance(create_arrival_controller(constant, context, recorder), ConcurrencyController)
    assert isinstance(create_arrival_controller(ramping, context, recorder), ConcurrencyController)
    assert isinstance(create_arrival_controller(rate, context, recorder), ArrivalRateController)
    assert create_arrival_controller(constant, context, recorder).duration == 1.0


async def _drive(config, params, transport, tick=0.02):
    context = RunContext(options=RunOptions(tick_interval=tick))
    recorder = context.metrics.recorder_for(config.name)
    pool = SessionPool(config, params, transport, recorder)
    controller = create_arrival_controller(config, context, recorder)
    await controller.drive(pool)
    return context, recorder, pool, controller


@pytest.mark.asyncio
async def test_constant_concurrency_never_exceeds_target_and_replaces(params):
    config = ScenarioConfig("c", make_flow(hold=0.05), ExecutorMode.CONSTANT_CONCURRENCY,
                            constant_value=5, duration=0.5)
    transport = StubTransport()

    _, recorder, pool, _ = await _drive(config, params, transport)
    await pool.drain(1.0, 0.5)

    assert pool.peak_active == 5
    assert transport.peak_connections <= 5
    assert pool.started > 5
    snapshot = recorder.scenario.snapshot()
    assert snapshot.attempted == pool.started
    assert snapshot.connect_succeeded == snapshot.attempted
    assert snapshot.errors == 0


@pytest.mark.asyncio
async def test_ramping_concurrency_retires_newest_sessions(params):
    config = ScenarioConfig("r", make_flow(hold=10.0), ExecutorMode.RAMPING_CONCURRENCY,
                            stages=(Stage(4, 0.2), Stage(4, 0.3), Stage(0, 0.1)))

    _, recorder, pool, _ = await _drive(config, params, StubTransport())
    await pool.drain(0.0, 0.5)

    assert pool.peak_active == 4
    assert pool.started == 4
    snapshot = recorder.scenario.snapshot()
    assert snapshot.connect_succeeded == 4
    assert snapshot.forced_closes == 4


@pytest.mark.asyncio
async def test_arrival_rate_hits_exact_count(params):
    config = ScenarioConfig("a", make_flow(hold=0.0), ExecutorMode.RAMPING_ARRIVAL_RATE,
                            stages=(Stage(20, 0.5), Stage(20, 0.5)), pool_limit=50)

    _, recorder, pool, controller = await _drive(config, params, StubTransport())
    await pool.drain(1.0, 0.5)

    assert controller.launched == 15
    assert controller.dropped == 0
    assert recorder.scenario.snapshot().attempted == 15


@pytest.mark.asyncio
async def test_arrivals_beyond_pool_limit_are_dropped(params):
    config = ScenarioConfig("d", make_flow(hold=1.0), ExecutorMode.RAMPING_ARRIVAL_RATE,
                            stages=(Stage(100, 0.3),), start_value=100, pool_limit=2)

    context, recorder, pool, controller = await _drive(config, params, StubTransport())
    assert pool.active_count == 2
    await pool.drain(0.0, 0.5)

    assert controller.launched == 2
    assert controller.dropped == 28
    snapshot = recorder.scenario.snapshot()
    assert snapshot.dropped == 28
    assert snapshot.attempted == 2
    assert snapshot.connect_success_rate == 1.0
    global_snapshot, _ = context.metrics.snapshot_all()
    assert global_snapshot.dropped == 28


async def _drive_sampled(config, params, transport, window, tick=0.02, period=0.02):
    """Drive a scenario while recording ``pool.running_count`` inside ``window`` (seconds from start)"""
    context = RunContext(options=RunOptions(tick_interval=tick))
    recorder = context.metrics.recorder_for(config.name)
    pool = SessionPool(config, params, transport, recorder)
    controller = create_arrival_controller(config, context, recorder)
    samples = []

    async def sample():
        loop = asyncio.get_running_loop()
        origin = loop.time()
        await asyncio.sleep(window[0])
        while loop.time() - origin < window[1]:
            samples.append(pool.running_count)
            await asyncio.sleep(period)

    await asyncio.gather(controller.drive(pool), sample())
    return pool, samples


@pytest.mark.asyncio
async def test_constant_concurrency_holds_target_after_warm_up(params):
    config = ScenarioConfig("c", make_flow(hold=0.05), ExecutorMode.CONSTANT_CONCURRENCY,
                            constant_value=5, duration=0.6)

    pool, samples = await _drive_sampled(config, params, StubTransport(), window=(0.1, 0.5))
    await pool.drain(1.0, 0.5)

    assert samples
    assert min(samples) == 5
    assert max(samples) == 5


@pytest.mark.asyncio
async def test_ramp_back_up_does_not_wait_for_closing_sessions(params):
    config = ScenarioConfig("r", make_flow(hold=10.0), ExecutorMode.RAMPING_CONCURRENCY,
                            stages=(Stage(4, 0.0), Stage(4, 0.3), Stage(0, 0.0), Stage(0, 0.1),
                                    Stage(4, 0.0), Stage(4, 0.6)),
                            pool_limit=8)
    transport = StubTransport(close_latency=0.3)

    pool, samples = await _drive_sampled(config, params, transport, window=(0.5, 0.95))
    await pool.drain(0.0, 1.0)

    # The retired sessions are still closing until about 0.7s
    assert samples
    assert min(samples) == 4
    assert pool.started == 8
    assert pool.peak_active == 8


@pytest.mark.asyncio
async def test_ramp_back_up_queues_for_slots_held_by_closing_sessions(params):
    config = ScenarioConfig("r", make_flow(hold=10.0), ExecutorMode.RAMPING_CONCURRENCY,
                            stages=(Stage(4, 0.0), Stage(4, 0.3), Stage(0, 0.0), Stage(0, 0.1),
                                    Stage(4, 0.0), Stage(4, 0.7)))
    transport = StubTransport(close_latency=0.2)

    pool, samples = await _drive_sampled(config, params, transport, window=(0.8, 1.05))
    await pool.drain(0.0, 1.0)

    assert pool.limit == 4
    assert pool.peak_active == 4
    assert pool.started == 8
    assert samples
    assert min(samples) == 4

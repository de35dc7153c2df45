#!/usr/bin/env python3
"""
test_session.py - Session lifecycle against the stub transport
"""

import asyncio
import json

import pytest

from conftest import make_flow, wait_for_state
from wsflood.core.base_classes import ConnectionParams, FlowKind, HoldPolicy, SendMode, SessionState
from wsflood.core.flows import customize_flow
from wsflood.engines.session import Session
from wsflood.metrics.aggregator import MetricsAggregator
from wsflood.transport.stub_transport import StubTransport


def _non_json_close(data):
    return None if data.startswith("{") and data.endswith("}") else 1007


@pytest.mark.asyncio
async def test_connect_failure_reports_zero_traffic(params, recorder):
    transport = StubTransport(connect_failure_rate=1.0)
    session = Session("s", make_flow(), params, transport, recorder)

    outcome = await session.run()

    assert outcome.connect_succeeded is False
    assert (outcome.sent, outcome.received, outcome.errors, outcome.rejected) == (0, 0, 0, 0)
    assert outcome.forced is False
    assert "stub connect failure" in outcome.error
    assert recorder.outcomes == [outcome]
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_connect_timeout_counts_as_failed_connect(recorder):
    params = ConnectionParams(url="ws://stub.local/ws", connect_timeout=0.05)
    transport = StubTransport(connect_latency=1.0)

    outcome = await Session("s", make_flow(), params, transport, recorder).run()

    assert outcome.connect_succeeded is False
    assert "timed out" in outcome.error


@pytest.mark.asyncio
async def test_single_send_is_echoed_and_closed_cleanly(params, recorder):
    transport = StubTransport()
    outcome = await Session("s", make_flow(hold=0.05), params, transport, recorder).run()

    assert outcome.connect_succeeded is True
    assert outcome.sent == 1
    assert outcome.received == 1
    assert outcome.errors == 0
    assert outcome.forced is False
    assert outcome.session_duration_ms >= 40
    assert transport.open_connections == 0
    assert transport.connections[0].headers["Authorization"] == "Bearer test-token"


@pytest.mark.asyncio
async def test_send_errors_are_counted_and_flow_continues(params, recorder):
    transport = StubTransport(reject_send=lambda data: True)
    flow = make_flow(mode=SendMode.REPEATED, count=5, hold=0.0)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 0
    assert outcome.errors == 5
    assert transport.rejected_sends == 5


@pytest.mark.asyncio
async def test_policy_close_ends_session_as_rejection(params, recorder):
    transport = StubTransport(message_limit=3)
    flow = make_flow(mode=SendMode.REPEATED, count=10, interval=0.001, hold=0.5)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 3
    assert outcome.rejected == 1
    assert outcome.errors == 0
    assert outcome.close_code == 1008
    assert outcome.received <= 3
    # Peer close skips the hold
    assert outcome.session_duration_ms < 400


@pytest.mark.asyncio
async def test_unexpected_peer_close_is_an_error(params, recorder):
    transport = StubTransport(close_on=lambda data: 1011 if "boom" in data else None)
    flow = make_flow(mode=SendMode.SEQUENCE, payloads=('{"a": 1}', '{"boom": 1}', '{"c": 3}'), hold=0.0)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 1
    assert outcome.errors == 1
    assert outcome.rejected == 0
    assert outcome.close_code == 1011


@pytest.mark.asyncio
async def test_malformed_payloads_reach_a_tolerant_target(params, recorder):
    transport = StubTransport(echo=False)
    flow = customize_flow("bad", FlowKind.MALFORMED_INJECTION, hold=HoldPolicy.fixed(0.0), interval=0.001)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 10
    assert outcome.rejected == 0
    sent = transport.connections[0].sent
    assert sent[0] == "not json"
    assert "A" * 1000000 in sent
    assert sent[-1] == "\x00\x00\x00"


@pytest.mark.asyncio
async def test_malformed_payload_rejected_by_strict_target(params, recorder):
    transport = StubTransport(close_on=_non_json_close)
    flow = customize_flow("bad", FlowKind.MALFORMED_INJECTION, hold=HoldPolicy.fixed(0.0), interval=0.001)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 0
    assert outcome.rejected == 1
    assert outcome.errors == 0
    assert outcome.close_code == 1007


@pytest.mark.asyncio
async def test_send_schedule_respects_interval(params, recorder):
    transport = StubTransport(echo=False)
    flow = make_flow(mode=SendMode.REPEATED, count=5, interval=0.05, hold=0.0)

    outcome = await Session("s", flow, params, transport, recorder).run()

    assert outcome.sent == 5
    # 4 gaps of 50ms between the first and last send
    assert outcome.session_duration_ms >= 190


@pytest.mark.asyncio
async def test_request_close_skips_hold_and_marks_forced(params, recorder):
    transport = StubTransport()
    session = Session("s", make_flow(hold=10.0), params, transport, recorder)
    task = asyncio.create_task(session.run())

    await wait_for_state(session, SessionState.OPEN)
    session.request_close()
    outcome = await asyncio.wait_for(task, timeout=2.0)

    assert outcome.connect_succeeded is True
    assert outcome.forced is True
    assert outcome.sent == 1
    assert len(recorder.outcomes) == 1


@pytest.mark.asyncio
async def test_cancelled_session_still_reports_once(params, recorder):
    transport = StubTransport()
    session = Session("s", make_flow(hold=10.0), params, transport, recorder)
    task = asyncio.create_task(session.run())

    await wait_for_state(session, SessionState.OPEN)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(recorder.outcomes) == 1
    outcome = recorder.outcomes[0]
    assert outcome.connect_succeeded is True
    assert outcome.forced is True
    assert outcome.sent == 1


@pytest.mark.asyncio
async def test_cancel_during_connect_is_not_a_target_failure(params):
    aggregator = MetricsAggregator("s")
    transport = StubTransport(connect_latency=0.5)
    session = Session("s", make_flow(), params, transport, aggregator)
    task = asyncio.create_task(session.run())

    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.outcome.connect_succeeded is False
    assert session.outcome.forced is True
    snapshot = aggregator.snapshot()
    assert snapshot.attempted == 0
    assert snapshot.connect_failed == 0
    assert snapshot.forced_closes == 1


@pytest.mark.asyncio
async def test_session_variables_are_rendered(params, recorder):
    transport = StubTransport(echo=False)
    flow = make_flow(payloads=('{"id": "$solicitation_id", "session": "$session", "n": $seq}',), hold=0.0)

    await Session("s", flow, params, transport, recorder, session_id="abc").run()

    assert transport.connections[0].sent == ['{"id": "12345", "session": "abc", "n": 0}']


@pytest.mark.asyncio
async def test_timestamp_is_taken_at_each_send(params, recorder):
    transport = StubTransport(echo=False)
    flow = make_flow(payloads=('{"t": $timestamp}',), mode=SendMode.REPEATED, count=3, interval=0.05, hold=0.0)

    await Session("s", flow, params, transport, recorder).run()

    stamps = [json.loads(data)["t"] for data in transport.connections[0].sent]
    assert len(stamps) == 3
    assert stamps[0] < stamps[1] < stamps[2]
    assert stamps[2] - stamps[0] >= 80


@pytest.mark.asyncio
async def test_cancel_during_slow_close_stops_listener(recorder):
    params = ConnectionParams(url="ws://stub.local/ws", connect_timeout=1.0, close_timeout=5.0)
    transport = StubTransport(close_latency=2.0)
    session = Session("s", make_flow(hold=10.0), params, transport, recorder)
    task = asyncio.create_task(session.run())

    await wait_for_state(session, SessionState.OPEN)
    session.request_close()
    await wait_for_state(session, SessionState.CLOSING)
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.listener is not None
    assert session.listener.done()
    assert transport.open_connections == 0
    assert len(recorder.outcomes) == 1
    assert recorder.outcomes[0].forced is True

#!/usr/bin/env python3
"""
conftest.py - Shared pytest helpers for the wsflood test modules
"""

import asyncio
from typing import List

import pytest

from wsflood.core.base_classes import (
    ConnectionParams, Flow, FlowKind, HoldPolicy, SendMode, SendPolicy, SessionOutcome, SessionState
)


class ListRecorder:
    """Outcome recorder that keeps everything in memory"""

    def __init__(self):
        self.outcomes: List[SessionOutcome] = []
        self.dropped = 0

    def record(self, outcome: SessionOutcome) -> None:
        self.outcomes.append(outcome)

    def record_dropped(self, count: int = 1) -> None:
        self.dropped += count


def make_flow(kind: FlowKind = FlowKind.STABLE, hold: float = 0.05, payloads=('{"hello": "world"}',),
              mode: SendMode = SendMode.SINGLE, count: int = 0, interval: float = 0.0,
              malformed: bool = False, name: str = "test-flow") -> Flow:
    return Flow(
        name=name,
        kind=kind,
        hold=HoldPolicy.fixed(hold),
        send=SendPolicy(mode, tuple(payloads), count=count, interval=interval),
        malformed=malformed,
    )


async def wait_for_state(session, state: SessionState, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"session stuck in {session.state}, expected {state}")
        await asyncio.sleep(0.005)


@pytest.fixture
def params() -> ConnectionParams:
    return ConnectionParams(
        url="ws://stub.local/ws",
        headers={"Authorization": "Bearer test-token"},
        variables={"solicitation_id": "12345"},
        connect_timeout=1.0,
        close_timeout=0.5,
    )


@pytest.fixture
def recorder() -> ListRecorder:
    return ListRecorder()

#!/usr/bin/env python3
"""
wsflood/engines/session_pool.py - Bounded pool of in-flight sessions for one scenario
Admission through a semaphore sized to the pool ceiling, retirement and draining
"""

import asyncio
import logging
import random
from typing import Dict, List, Optional, Set

from wsflood.core.base_classes import ConnectionParams, ScenarioConfig
from wsflood.core.errors import PoolExhausted
from wsflood.engines.session import OutcomeRecorder, Session
from wsflood.transport.base import Transport

logger = logging.getLogger(__name__)


class SessionPool:
    """Owns every running session of a scenario

    The semaphore is the pool-limit counter: a slot is taken before a session
    task exists and released by the task's done callback, so the in-flight
    count can never exceed ``limit``.
    """

    def __init__(self, config: ScenarioConfig, params: ConnectionParams, transport: Transport,
                 recorder: OutcomeRecorder, rng: Optional[random.Random] = None):
        self.config = config
        self.params = params
        self.transport = transport
        self.recorder = recorder
        self.limit = config.effective_pool_limit
        self._rng = rng or random.Random()
        self._slots = asyncio.Semaphore(self.limit)
        self._sessions: Dict[asyncio.Task, Session] = {}
        self.changed = asyncio.Event()

        self.started = 0
        self.finished = 0
        self.peak_active = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def running_count(self) -> int:
        """Sessions not already asked to close"""
        return sum(1 for session in self._sessions.values() if not session.close_requested)

    @property
    def free_slots(self) -> int:
        return self.limit - len(self._sessions)

    @property
    def at_capacity(self) -> bool:
        return self._slots.locked()

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    async def start(self) -> Session:
        """Admit and launch one session, raising PoolExhausted when every slot is taken"""
        if self._slots.locked():
            raise PoolExhausted(f"scenario '{self.config.name}' reached its pool limit of {self.limit}")
        await self._slots.acquire()

        self.started += 1
        session = Session(
            scenario=self.config.name,
            flow=self.config.flow,
            params=self.params,
            transport=self.transport,
            recorder=self.recorder,
            rng=random.Random(self._rng.getrandbits(64)),
            session_id=f"{self.config.name}-{self.started}",
        )
        task = asyncio.create_task(session.run(), name=session.session_id)
        self._sessions[task] = session
        task.add_done_callback(self._on_done)
        self.peak_active = max(self.peak_active, len(self._sessions))
        return session

    def _on_done(self, task: asyncio.Task) -> None:
        session = self._sessions.pop(task, None)
        self._slots.release()
        self.finished += 1
        self.changed.set()

        if session is not None and session.outcome is None:
            # Cancelled before its first step ran
            session.abandon()
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session {task.get_name()} crashed: {task.exception()!r}")

    def retire(self, count: int) -> int:
        """Ask the ``count`` most recently started running sessions to close early"""
        retired = 0
        for session in reversed(list(self._sessions.values())):
            if retired >= count:
                break
            if not session.close_requested:
                session.request_close()
                retired += 1
        return retired

    async def wait_for_change(self, timeout: float) -> None:
        """Return when a session finishes or after ``timeout`` seconds"""
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self.changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def drain(self, graceful_stop: float, close_grace: float,
                    interrupt: Optional[asyncio.Event] = None) -> None:
        """Let sessions finish, then ask them to close, then cancel them

        ``graceful_stop`` bounds the natural finish (cut short when ``interrupt``
        fires), ``close_grace`` bounds the cooperative close; whatever is left
        afterwards is cancelled.
        """
        pending = set(self._sessions)
        if not pending:
            return

        if graceful_stop > 0:
            pending = await self._await_sessions(pending, graceful_stop, interrupt)
        if pending:
            logger.info(f"Scenario '{self.config.name}': closing {len(pending)} sessions after graceful stop")
            for task in pending:
                session = self._sessions.get(task)
                if session is not None:
                    session.request_close()
            _, pending = await asyncio.wait(pending, timeout=close_grace)
        if pending:
            logger.warning(f"Scenario '{self.config.name}': force-terminating {len(pending)} sessions")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _await_sessions(self, pending: Set[asyncio.Task], timeout: float,
                              interrupt: Optional[asyncio.Event]) -> Set[asyncio.Task]:
        if interrupt is None:
            _, pending = await asyncio.wait(pending, timeout=timeout)
            return pending

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interrupt_waiter = asyncio.ensure_future(interrupt.wait())
        try:
            while pending and not interrupt.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.wait(pending | {interrupt_waiter}, timeout=remaining,
                                   return_when=asyncio.FIRST_COMPLETED)
                pending = {task for task in pending if not task.done()}
        finally:
            interrupt_waiter.cancel()
        return pending

#!/usr/bin/env python3
"""
wsflood/engines/session.py - One WebSocket session lifecycle
Connect, send on a bounded tick schedule, hold, close; reports its outcome exactly once
"""

import asyncio
import logging
import random
import time
import uuid
from typing import Optional, Protocol

from wsflood.core.base_classes import ConnectionParams, Flow, SessionOutcome, SessionState
from wsflood.core.errors import ConnectError, ConnectionLost, MalformedPayloadRejected, SendError
from wsflood.transport.base import REJECTION_CLOSE_CODES, Connection, Transport

logger = logging.getLogger(__name__)


class OutcomeRecorder(Protocol):
    def record(self, outcome: SessionOutcome) -> None:
        ...


class Session:
    """Runs one flow against the target

    State machine: connecting -> open -> closing -> closed, or
    connecting -> closed when the connect fails. ``request_close`` asks the
    session to skip its remaining sends and hold; cancelling the task that
    runs ``run`` is the hard stop. Both still produce an outcome.
    """

    def __init__(self, scenario: str, flow: Flow, params: ConnectionParams, transport: Transport,
                 recorder: OutcomeRecorder, rng: Optional[random.Random] = None,
                 session_id: Optional[str] = None):
        self.scenario = scenario
        self.flow = flow
        self.params = params
        self.transport = transport
        self.recorder = recorder
        self.rng = rng or random.Random()
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self.state = SessionState.CONNECTING
        self.connection: Optional[Connection] = None
        self.listener: Optional[asyncio.Task] = None
        self.outcome: Optional[SessionOutcome] = None

        self._stop = asyncio.Event()
        self._close_requested = False
        self._forced = False
        self._cancelled = False
        self._connect_succeeded = False
        self._connect_latency_ms = 0.0
        self._connected_at: Optional[float] = None
        self._closed_at: Optional[float] = None
        self._sent = 0
        self._received = 0
        self._errors = 0
        self._rejected = 0
        self._rejection_seen = False
        self._error: Optional[str] = None

    @property
    def close_requested(self) -> bool:
        return self._close_requested

    def request_close(self) -> None:
        """Cooperative 'close now': stop sending and holding, then close"""
        if not self._close_requested:
            self._close_requested = True
            self._forced = self.state in (SessionState.CONNECTING, SessionState.OPEN)
            self._stop.set()

    def abandon(self) -> SessionOutcome:
        """Finalize a session whose task was cancelled before it ever ran"""
        self._forced = True
        self._cancelled = True
        return self._finish()

    async def run(self) -> SessionOutcome:
        try:
            if not await self._connect():
                return self._finish()

            self.state = SessionState.OPEN
            self.listener = asyncio.create_task(self._listen())
            try:
                await self._send_all()
                if not self._stop.is_set():
                    await self._pause(self.flow.hold.sample(self.rng))
            finally:
                self.state = SessionState.CLOSING
                try:
                    await self._close()
                finally:
                    self.listener.cancel()
                    await asyncio.gather(self.listener, return_exceptions=True)
            return self._finish()
        except asyncio.CancelledError:
            self._forced = True
            self._cancelled = True
            raise
        finally:
            # Reports on every exit path, including hard cancellation
            self._finish()

    async def _connect(self) -> bool:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            self.connection = await asyncio.wait_for(
                self.transport.connect(self.params.url, self.params.headers),
                timeout=self.params.connect_timeout,
            )
        except ConnectError as e:
            self._error = str(e)
            logger.debug(f"Session {self.session_id} connect failed: {e}")
            return False
        except asyncio.TimeoutError:
            self._error = f"connect timed out after {self.params.connect_timeout}s"
            logger.debug(f"Session {self.session_id} {self._error}")
            return False

        self._connect_latency_ms = (loop.time() - started) * 1000.0
        self._connect_succeeded = True
        self._connected_at = time.time()
        return True

    async def _send_all(self) -> None:
        """Send the flow's payloads at absolute tick deadlines, bounded by the message count"""
        variables = dict(self.params.variables)
        variables.setdefault('session', self.session_id)
        loop = asyncio.get_running_loop()
        first_tick = loop.time()
        interval = self.flow.send.interval

        for index in range(self.flow.send.message_count):
            if self._stop.is_set():
                return
            if index and interval > 0:
                delay = first_tick + index * interval - loop.time()
                if await self._pause(delay):
                    return
            payload = self.flow.render_payload(index, variables)
            try:
                await self.connection.send(payload)
                self._sent += 1
            except MalformedPayloadRejected as e:
                self._note_rejection()
                logger.debug(f"Session {self.session_id} payload {index} rejected: {e}")
                self._stop.set()
                return
            except ConnectionLost as e:
                if e.close_code in REJECTION_CLOSE_CODES:
                    self._note_rejection()
                else:
                    self._errors += 1
                    self._error = str(e)
                self._stop.set()
                return
            except SendError as e:
                self._errors += 1
                self._error = str(e)
                if self.connection.closed:
                    self._stop.set()
                    return

    async def _listen(self) -> None:
        try:
            async for _ in self.connection.messages():
                self._received += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Session {self.session_id} receive error: {e}")
            self._errors += 1
            self._error = str(e)
        # Peer-initiated close ends the session with whatever was accumulated
        if self.state == SessionState.OPEN and self.connection.closed:
            if self.connection.close_code in REJECTION_CLOSE_CODES:
                self._note_rejection()
            self._stop.set()

    async def _pause(self, seconds: float) -> bool:
        """Wait up to ``seconds``; True when the session was told to stop meanwhile"""
        if self._stop.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _close(self) -> None:
        connection = self.connection
        if connection is None or connection.closed:
            return
        try:
            await asyncio.wait_for(connection.close(1000, "done"), timeout=self.params.close_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Session {self.session_id} close handshake timed out")
        except Exception as e:
            logger.debug(f"Session {self.session_id} close failed: {e}")

    def _note_rejection(self) -> None:
        if not self._rejection_seen:
            self._rejection_seen = True
            self._rejected += 1

    def _finish(self) -> SessionOutcome:
        if self.outcome is not None:
            return self.outcome
        self.state = SessionState.CLOSED
        if self._connect_succeeded:
            self._closed_at = time.time()
            close_code = self.connection.close_code if self.connection is not None else None
            self.outcome = SessionOutcome(
                scenario=self.scenario,
                session_id=self.session_id,
                connect_succeeded=True,
                connect_latency_ms=self._connect_latency_ms,
                connected_at=self._connected_at,
                closed_at=self._closed_at,
                sent=self._sent,
                received=self._received,
                errors=self._errors,
                rejected=self._rejected,
                forced=self._forced,
                close_code=close_code,
                error=self._error,
            )
        else:
            # Failed connects never contribute to send/receive tallies; forced
            # here means the harness cancelled the attempt itself
            self.outcome = SessionOutcome(
                scenario=self.scenario,
                session_id=self.session_id,
                connect_succeeded=False,
                forced=self._cancelled,
                error=self._error,
            )
        try:
            self.recorder.record(self.outcome)
        except Exception as e:
            logger.error(f"Failed to record outcome of session {self.session_id}: {e}")
        return self.outcome

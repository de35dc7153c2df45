#!/usr/bin/env python3
"""
wsflood/transport/stub_transport.py - In-memory transport for dry runs and tests
Simulates connect failures, latency, send rejections, target-side closes and
connection caps without touching the network
"""

import asyncio
import logging
import random
from typing import AsyncIterator, Callable, Dict, List, Optional

from wsflood.core.errors import ConnectError, ConnectionLost, MalformedPayloadRejected, SendError
from wsflood.transport.base import REJECTION_CLOSE_CODES, Connection, Payload, Transport

logger = logging.getLogger(__name__)

_CLOSED = object()


class StubConnection(Connection):
    """Connection whose peer is a set of predicates"""

    def __init__(self, transport: 'StubTransport', connection_id: int, url: str, headers: Dict[str, str]):
        self.transport = transport
        self.connection_id = connection_id
        self.url = url
        self.headers = dict(headers)
        self.sent: List[Payload] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._close_code: Optional[int] = None

    async def send(self, data: Payload) -> None:
        if self._closed:
            raise ConnectionLost("connection already closed", close_code=self._close_code)

        transport = self.transport
        close_code = transport.close_on(data) if transport.close_on else None
        if close_code is None and transport.message_limit is not None and len(self.sent) >= transport.message_limit:
            close_code = 1008
        if close_code is not None:
            self._peer_close(close_code)
            if close_code in REJECTION_CLOSE_CODES:
                raise MalformedPayloadRejected(f"stub target closed with code {close_code}", close_code=close_code)
            raise ConnectionLost(f"stub target closed with code {close_code}", close_code=close_code)

        if transport.reject_send and transport.reject_send(data):
            transport.rejected_sends += 1
            raise SendError(f"stub rejected payload of {len(data)} bytes")

        self.sent.append(data)
        transport.total_sent += 1
        if transport.echo:
            self._inbox.put_nowait(data)
        await asyncio.sleep(0)

    async def messages(self) -> AsyncIterator[Payload]:
        while True:
            item = await self._inbox.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        try:
            await asyncio.sleep(self.transport.close_latency)
        finally:
            if not self._closed:
                self._closed = True
                self.transport._release(self)
                self._inbox.put_nowait(_CLOSED)

    def _peer_close(self, code: int) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_code = code
        self.transport._release(self)
        self._inbox.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code


class StubTransport(Transport):
    """Scriptable fake target

    Args:
        connect_failure_rate: probability that a connect raises ConnectError
        connect_latency: fixed delay, or (low, high) range, before a connect resolves
        reject_send: predicate, True makes ``send`` raise SendError
        close_on: returns a close code to make the target close on that payload
        message_limit: per-connection message count after which the target closes with 1008
        max_connections: concurrent connection cap, extra connects fail with 503
        close_latency: seconds the close handshake takes
        echo: reflect every accepted message back to the sender
    """

    def __init__(self,
                 connect_failure_rate: float = 0.0,
                 connect_latency: object = 0.0,
                 reject_send: Optional[Callable[[Payload], bool]] = None,
                 close_on: Optional[Callable[[Payload], Optional[int]]] = None,
                 message_limit: Optional[int] = None,
                 max_connections: Optional[int] = None,
                 close_latency: float = 0.0,
                 echo: bool = True,
                 seed: Optional[int] = None):
        self.connect_failure_rate = connect_failure_rate
        self.connect_latency = connect_latency
        self.reject_send = reject_send
        self.close_on = close_on
        self.message_limit = message_limit
        self.max_connections = max_connections
        self.close_latency = close_latency
        self.echo = echo
        self._rng = random.Random(seed)

        self.connections: List[StubConnection] = []
        self.open_connections = 0
        self.peak_connections = 0
        self.connect_attempts = 0
        self.failed_connects = 0
        self.rejected_sends = 0
        self.total_sent = 0

    def _latency(self) -> float:
        if isinstance(self.connect_latency, (tuple, list)):
            low, high = self.connect_latency
            return self._rng.uniform(low, high)
        return float(self.connect_latency)

    async def connect(self, url: str, headers: Dict[str, str]) -> Connection:
        self.connect_attempts += 1
        latency = self._latency()
        if latency > 0:
            await asyncio.sleep(latency)

        if self._rng.random() < self.connect_failure_rate:
            self.failed_connects += 1
            raise ConnectError("stub connect failure", status_code=503)
        if self.max_connections is not None and self.open_connections >= self.max_connections:
            self.failed_connects += 1
            raise ConnectError("stub connection limit reached", status_code=503)

        connection = StubConnection(self, len(self.connections), url, headers)
        self.connections.append(connection)
        self.open_connections += 1
        self.peak_connections = max(self.peak_connections, self.open_connections)
        return connection

    def _release(self, connection: StubConnection) -> None:
        self.open_connections -= 1

    def stats(self) -> Dict[str, int]:
        return {
            'connect_attempts': self.connect_attempts,
            'failed_connects': self.failed_connects,
            'open_connections': self.open_connections,
            'peak_connections': self.peak_connections,
            'total_sent': self.total_sent,
            'rejected_sends': self.rejected_sends,
        }

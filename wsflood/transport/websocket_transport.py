#!/usr/bin/env python3
"""
wsflood/transport/websocket_transport.py - Transport backed by the websockets library
Maps websockets exceptions onto the harness error taxonomy
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus, InvalidURI
from websockets.protocol import State

from wsflood.core.errors import ConnectError, ConnectionLost, MalformedPayloadRejected, SendError
from wsflood.transport.base import REJECTION_CLOSE_CODES, Connection, Payload, Transport

logger = logging.getLogger(__name__)


def _received_close_code(exc: ConnectionClosed) -> Optional[int]:
    if exc.rcvd is not None:
        return exc.rcvd.code
    return None


class WebSocketConnection(Connection):
    """Wrapper around a websockets client connection"""

    def __init__(self, websocket: ClientConnection):
        self.websocket = websocket

    async def send(self, data: Payload) -> None:
        try:
            await self.websocket.send(data)
        except ConnectionClosed as e:
            code = _received_close_code(e)
            if code in REJECTION_CLOSE_CODES:
                raise MalformedPayloadRejected(f"target closed with code {code}: {e}", close_code=code) from e
            raise ConnectionLost(f"connection closed during send: {e}", close_code=code) from e
        except (TypeError, ValueError) as e:
            raise SendError(f"payload not sendable: {e}") from e
        except OSError as e:
            raise SendError(f"socket error during send: {e}") from e

    async def messages(self) -> AsyncIterator[Payload]:
        try:
            async for message in self.websocket:
                yield message
        except ConnectionClosed as e:
            logger.debug(f"Connection closed while receiving: {e}")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code, reason)

    @property
    def closed(self) -> bool:
        return self.websocket.state in (State.CLOSING, State.CLOSED)

    @property
    def close_code(self) -> Optional[int]:
        return self.websocket.close_code


class WebSocketTransport(Transport):
    """Opens real WebSocket connections to the target"""

    def __init__(self, open_timeout: float = 10.0, close_timeout: float = 5.0,
                 max_size: Optional[int] = None, ping_interval: Optional[float] = 20.0):
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.max_size = max_size
        self.ping_interval = ping_interval
        logger.debug(f"WebSocketTransport using websockets {websockets.__version__}")

    async def connect(self, url: str, headers: Dict[str, str]) -> Connection:
        try:
            websocket = await connect(
                url,
                additional_headers=headers,
                open_timeout=self.open_timeout,
                close_timeout=self.close_timeout,
                max_size=self.max_size,
                ping_interval=self.ping_interval,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            raise ConnectError(f"handshake rejected with HTTP {status}", status_code=status) from e
        except (InvalidHandshake, InvalidURI) as e:
            raise ConnectError(f"handshake failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise ConnectError(f"connect timed out after {self.open_timeout}s") from e
        except OSError as e:
            raise ConnectError(f"socket error: {e}") from e
        return WebSocketConnection(websocket)

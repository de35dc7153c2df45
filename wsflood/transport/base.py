#!/usr/bin/env python3
"""
wsflood/transport/base.py - Transport capability consumed by sessions
The engine only depends on these two abstract classes
"""

import abc
from typing import AsyncIterator, Dict, Optional, Union

# Close codes a target uses to refuse traffic: unsupported data, invalid
# payload, policy violation, message too big
REJECTION_CLOSE_CODES = frozenset({1003, 1007, 1008, 1009})

Payload = Union[str, bytes]


class Connection(abc.ABC):
    """One open WebSocket connection"""

    @abc.abstractmethod
    async def send(self, data: Payload) -> None:
        """Send one message

        Raises SendError (ConnectionLost when the socket is gone) or
        MalformedPayloadRejected when the target closed with a rejection code.
        """

    @abc.abstractmethod
    def messages(self) -> AsyncIterator[Payload]:
        """Iterate inbound messages until the connection closes"""

    @abc.abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Start the close handshake and wait for it to finish"""

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        """True once the connection is closing or closed"""

    @property
    @abc.abstractmethod
    def close_code(self) -> Optional[int]:
        """Close code received from the peer, if any"""


class Transport(abc.ABC):
    """Factory for connections to the target"""

    @abc.abstractmethod
    async def connect(self, url: str, headers: Dict[str, str]) -> Connection:
        """Open a connection or raise ConnectError"""

    async def aclose(self) -> None:
        """Release transport-wide resources"""

#!/usr/bin/env python3
"""
wsflood/core/errors.py - Harness error taxonomy
Per-session errors are absorbed into metrics, only ConfigError propagates
"""

from typing import Optional


class HarnessError(Exception):
    """Base class for every error raised by the harness"""


class ConnectError(HarnessError):
    """Handshake, auth or socket failure while opening a connection"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SendError(HarnessError):
    """A send failed mid-flow"""


class ConnectionLost(SendError):
    """The connection closed underneath a send"""

    def __init__(self, message: str, close_code: Optional[int] = None):
        super().__init__(message)
        self.close_code = close_code


class MalformedPayloadRejected(HarnessError):
    """The target explicitly rejected a payload - a validation signal, not a harness error"""

    def __init__(self, message: str, close_code: Optional[int] = None):
        super().__init__(message)
        self.close_code = close_code


class ConfigError(HarnessError):
    """Invalid scenario, threshold or run file configuration"""

    def __init__(self, message: str, scenario: Optional[str] = None):
        super().__init__(message)
        self.scenario = scenario

    def __str__(self) -> str:
        message = super().__str__()
        if self.scenario:
            return f"scenario '{self.scenario}': {message}"
        return message


class PoolExhausted(HarnessError):
    """An arrival was dropped because the scenario pool ceiling was reached"""

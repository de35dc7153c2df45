#!/usr/bin/env python3
"""
wsflood/core/flows.py - Built-in flow catalogue
Default send/hold behaviour for every flow kind plus the payload sets they use
"""

import json
from dataclasses import replace
from typing import Dict, List, Optional, Any

from wsflood.core.base_classes import Flow, FlowKind, HoldPolicy, SendMode, SendPolicy
from wsflood.core.errors import ConfigError

# IoT publish message used by the device-style flows
DEVICE_PAYLOAD = json.dumps({
    "topic": "my.iot",
    "payload": "SGVsbG8gV29ybGQ=",  # "Hello World"
    "target_brokers": ["ligmaNats"],
})

# Chat message formats rotated by the spam flow
CHAT_TEMPLATES = (
    '{"type": "message", "solicitation_id": "$solicitation_id", "text": "Test message $seq", "timestamp": $timestamp}',
    '{"message": "Spam $seq", "solicitation_id": "$solicitation_id"}',
    '{"content": "Content $seq", "chat_id": "$solicitation_id"}',
)

CONNECTION_TEST_TEMPLATE = '{"type": "message", "solicitation_id": "$solicitation_id", "text": "Connection $session test"}'

MALFORMED_PAYLOADS = (
    "not json",
    '{"invalid": json}',
    json.dumps({"solicitation_id": "' OR '1'='1"}),
    json.dumps({"solicitation_id": "../../../etc/passwd"}),
    "A" * 1000000,
    json.dumps({"text": '<script>alert("xss")</script>'}),
    json.dumps({"solicitation_id": -1}),
    json.dumps({"solicitation_id": None}),
    "",
    "\x00\x00\x00",
)

BUILTIN_FLOWS: Dict[FlowKind, Flow] = {
    FlowKind.STABLE: Flow(
        name="stable",
        kind=FlowKind.STABLE,
        hold=HoldPolicy.fixed(60.0),
        send=SendPolicy(SendMode.SINGLE, (DEVICE_PAYLOAD,)),
    ),
    FlowKind.INTERMITTENT: Flow(
        name="intermittent",
        kind=FlowKind.INTERMITTENT,
        hold=HoldPolicy(1.0, 3.0),
        send=SendPolicy(SendMode.SINGLE, (DEVICE_PAYLOAD,)),
    ),
    FlowKind.RECONNECT_SPIKE: Flow(
        name="reconnect_spike",
        kind=FlowKind.RECONNECT_SPIKE,
        hold=HoldPolicy(1.0, 3.0),
        send=SendPolicy(SendMode.SINGLE, (DEVICE_PAYLOAD,)),
    ),
    FlowKind.MESSAGE_SPAM: Flow(
        name="message_spam",
        kind=FlowKind.MESSAGE_SPAM,
        hold=HoldPolicy.fixed(2.0),
        send=SendPolicy(SendMode.REPEATED, CHAT_TEMPLATES, count=1000, interval=0.01),
    ),
    FlowKind.MULTI_CONNECT: Flow(
        name="multi_connect",
        kind=FlowKind.MULTI_CONNECT,
        hold=HoldPolicy.fixed(1.0),
        send=SendPolicy(SendMode.SINGLE, (CONNECTION_TEST_TEMPLATE,)),
    ),
    FlowKind.MALFORMED_INJECTION: Flow(
        name="malformed_injection",
        kind=FlowKind.MALFORMED_INJECTION,
        hold=HoldPolicy.fixed(1.0),
        send=SendPolicy(SendMode.SEQUENCE, MALFORMED_PAYLOADS, interval=0.2),
        malformed=True,
    ),
}


def parse_flow_kind(value: str) -> FlowKind:
    """Accept 'message_spam', 'message-spam' or 'MessageSpam' style names"""
    normalized = value.strip().replace("-", "_")
    if normalized.isupper():
        normalized = normalized.lower()
    elif normalized and not normalized.islower():
        # CamelCase -> snake_case
        normalized = "".join(
            f"_{char.lower()}" if char.isupper() and index else char.lower()
            for index, char in enumerate(normalized)
        )
    try:
        return FlowKind(normalized)
    except ValueError:
        valid = ", ".join(kind.value for kind in FlowKind)
        raise ConfigError(f"unknown flow kind '{value}' (expected one of: {valid})")


def get_builtin_flow(kind: FlowKind) -> Flow:
    return BUILTIN_FLOWS[kind]


def customize_flow(
    name: str,
    kind: FlowKind,
    hold: Optional[HoldPolicy] = None,
    messages: Optional[List[Any]] = None,
    count: Optional[int] = None,
    interval: Optional[float] = None,
    mode: Optional[SendMode] = None,
) -> Flow:
    """Derive a named flow from the built-in template of ``kind``

    Message entries that are not strings are JSON encoded, so YAML mappings can
    be used as payload templates.
    """
    base = BUILTIN_FLOWS[kind]
    send = base.send

    if messages is not None:
        payloads = tuple(m if isinstance(m, str) else json.dumps(m) for m in messages)
        send = replace(send, payloads=payloads)
        if send.mode == SendMode.NONE and payloads:
            send = replace(send, mode=SendMode.SINGLE)
    if mode is not None:
        send = replace(send, mode=mode)
    if count is not None:
        if count < 0:
            raise ConfigError(f"flow '{name}': message count must be non-negative, got {count}")
        send = replace(send, count=count)
    if interval is not None:
        if interval < 0:
            raise ConfigError(f"flow '{name}': send interval must be non-negative, got {interval}")
        send = replace(send, interval=interval)

    if hold is not None and (hold.min_seconds < 0 or hold.max_seconds < hold.min_seconds):
        raise ConfigError(f"flow '{name}': invalid hold range {hold.min_seconds}-{hold.max_seconds}")
    if send.mode == SendMode.REPEATED and send.count and not send.payloads:
        raise ConfigError(f"flow '{name}': repeated sends need at least one message template")

    return replace(base, name=name, send=send, hold=hold or base.hold)

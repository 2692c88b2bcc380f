"""
Gateway subsystem: transport, wire codec, heartbeat and session state machine.
"""

from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.gateway.heartbeat import HeartbeatMonitor
from backstube.core.gateway.protocol import GatewayFrame, Opcode, decode_frame
from backstube.core.gateway.session import (
    ConnectionAttempt,
    HeartbeatRecord,
    Session,
    SessionState,
)
from backstube.core.gateway.state_machine import GatewayMetrics, SessionStateMachine
from backstube.core.gateway.transport import Transport, WebSocketTransport

__all__ = [
    "BackoffPolicy",
    "ConnectionAttempt",
    "GatewayFrame",
    "GatewayMetrics",
    "HeartbeatMonitor",
    "HeartbeatRecord",
    "Opcode",
    "Session",
    "SessionState",
    "SessionStateMachine",
    "Transport",
    "WebSocketTransport",
    "decode_frame",
]

"""
Event dispatch subsystem.

Gateway DISPATCH frames flow through `EventDispatcher`, which consults the
`CommandRegistry` and hands one `Invocation` per matching handler to the
bounded `HandlerPool`. Failures are reported to an `ErrorSink`.
"""

from backstube.core.event.dispatcher import EventDispatcher
from backstube.core.event.errors import ErrorSink, LoggingErrorSink
from backstube.core.event.metrics import DispatcherMetrics, DispatcherMetricsRecorder
from backstube.core.event.pool import HandlerPool
from backstube.core.event.registry import CommandRegistry
from backstube.core.event.router import EventRouter
from backstube.core.event.types import (
    GatewayEvent,
    HandlerResult,
    Invocation,
    RegisteredHandler,
    TriggerKind,
)

__all__ = [
    "CommandRegistry",
    "DispatcherMetrics",
    "DispatcherMetricsRecorder",
    "ErrorSink",
    "EventDispatcher",
    "EventRouter",
    "GatewayEvent",
    "HandlerPool",
    "HandlerResult",
    "Invocation",
    "LoggingErrorSink",
    "RegisteredHandler",
    "TriggerKind",
]

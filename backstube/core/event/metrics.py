"""
Dispatcher and handler-pool metrics.

`DispatcherMetricsRecorder` is the mutable counter set owned by the
dispatcher and pool; `DispatcherMetrics` is the immutable snapshot handed to
the health loop.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DispatcherMetrics:
    """
    Immutable snapshot of dispatcher metrics.

    Examples
    --------
    >>> metrics = recorder.snapshot(queue_depth=0)
    >>> metrics.get_summary()["error_rate"]
    0.0
    """

    events_dispatched: dict[str, int] = field(default_factory=dict)
    handler_errors: dict[str, int] = field(default_factory=dict)
    invocations_submitted: int = 0
    invocations_completed: int = 0
    invocations_dropped: int = 0
    handler_timeouts: int = 0
    replayed_events: int = 0
    unhandled_events: int = 0
    queue_depth: int = 0

    def get_summary(self) -> dict[str, Any]:
        total_errors = sum(self.handler_errors.values())
        error_rate = (total_errors / max(1, self.invocations_completed)) * 100.0
        return {
            "total_events_dispatched": sum(self.events_dispatched.values()),
            "events_by_type": dict(self.events_dispatched),
            "total_errors": total_errors,
            "errors_by_handler": dict(self.handler_errors),
            "invocations_submitted": self.invocations_submitted,
            "invocations_completed": self.invocations_completed,
            "invocations_dropped": self.invocations_dropped,
            "handler_timeouts": self.handler_timeouts,
            "replayed_events": self.replayed_events,
            "unhandled_events": self.unhandled_events,
            "queue_depth": self.queue_depth,
            "error_rate": round(error_rate, 2),
        }


class DispatcherMetricsRecorder:
    def __init__(self) -> None:
        self._events: defaultdict[str, int] = defaultdict(int)
        self._errors: defaultdict[str, int] = defaultdict(int)
        self.invocations_submitted = 0
        self.invocations_completed = 0
        self.invocations_dropped = 0
        self.handler_timeouts = 0
        self.replayed_events = 0
        self.unhandled_events = 0

    def record_event(self, event_name: str) -> None:
        self._events[event_name] += 1

    def record_error(self, handler_id: str) -> None:
        self._errors[handler_id] += 1

    def snapshot(self, queue_depth: int = 0) -> DispatcherMetrics:
        return DispatcherMetrics(
            events_dispatched=dict(self._events),
            handler_errors=dict(self._errors),
            invocations_submitted=self.invocations_submitted,
            invocations_completed=self.invocations_completed,
            invocations_dropped=self.invocations_dropped,
            handler_timeouts=self.handler_timeouts,
            replayed_events=self.replayed_events,
            unhandled_events=self.unhandled_events,
            queue_depth=queue_depth,
        )

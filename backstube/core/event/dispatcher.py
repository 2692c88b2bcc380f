"""
EventDispatcher: routes application frames to registered handlers.

Called inline by the session state machine for every DISPATCH frame, so
frames are processed in exact arrival order. For each frame the dispatcher

1. advances `session.sequence_watermark` to `max(current, seq)`,
2. decodes a `GatewayEvent` (including command detection),
3. submits one `Invocation` per matching handler to the `HandlerPool`.

Replayed frames (sequence at or below the watermark) leave the watermark
unchanged and are still delivered; the server only replays events the
client has not yet seen.
"""

from __future__ import annotations

import time
from typing import Optional

from backstube.core.event.metrics import DispatcherMetrics
from backstube.core.event.pool import HandlerPool
from backstube.core.event.registry import CommandRegistry
from backstube.core.event.types import GatewayEvent, Invocation
from backstube.core.exceptions import ProtocolError
from backstube.core.gateway.protocol import GatewayFrame
from backstube.core.gateway.session import Session
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)


class EventDispatcher:
    def __init__(
        self,
        registry: CommandRegistry,
        pool: HandlerPool,
        session: Session,
        command_prefix: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.session = session
        self.command_prefix = command_prefix
        self.metrics = pool.metrics

    async def on_frame(self, frame: GatewayFrame) -> None:
        if not frame.is_dispatch:
            return

        advanced = self.session.observe_sequence(frame.s)
        if frame.s is not None and not advanced:
            self.metrics.replayed_events += 1
            logger.debug(
                "Replayed sequence delivered",
                extra={
                    "sequence": frame.s,
                    "sequence_watermark": self.session.sequence_watermark,
                    "event_type": frame.t,
                },
            )

        try:
            event = GatewayEvent.from_frame(frame, self.command_prefix)
        except (AttributeError, TypeError, ValueError) as exc:
            raise ProtocolError(
                "Malformed dispatch payload",
                details={"event_type": frame.t, "sequence": frame.s, "error": str(exc)},
            ) from exc
        self.metrics.record_event(event.name)
        await self.dispatch(event)

    async def dispatch(self, event: GatewayEvent) -> int:
        """Submit `event` to every matching handler; returns the number submitted."""
        handlers = self.registry.lookup(event)
        if not handlers:
            self.metrics.unhandled_events += 1
            return 0

        enqueued_at = time.monotonic()
        submitted = 0
        for handler in handlers:
            if await self.pool.submit(Invocation(handler, event, enqueued_at)):
                submitted += 1
        return submitted

    def get_metrics_snapshot(self) -> DispatcherMetrics:
        return self.metrics.snapshot(queue_depth=self.pool.backlog)

"""
Heartbeat monitor.

Keeps one connection alive at the interval the server announced in HELLO
and detects silent failures: a tick that finds the previous heartbeat still
unacknowledged declares the connection dead. At most one heartbeat is ever
in flight.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Awaitable, Callable, Optional

from backstube.core.gateway.session import HeartbeatRecord
from backstube.core.logging.logger import get_logger

logger = get_logger(__name__)


class HeartbeatMonitor:
    """
    Per-connection heartbeat task.

    Parameters
    ----------
    send_heartbeat:
        Coroutine function that writes one heartbeat frame.
    on_dead:
        Coroutine function called with the interval once the connection is
        declared dead (missed ack or failed send). The monitor stops itself
        before calling it.
    jitter:
        Returns a float in [0, 1); the first beat waits `interval * jitter()`.
    """

    def __init__(
        self,
        send_heartbeat: Callable[[], Awaitable[None]],
        on_dead: Callable[[float], Awaitable[None]],
        jitter: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._send_heartbeat = send_heartbeat
        self._on_dead = on_dead
        self._jitter = jitter
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self.record = HeartbeatRecord()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latency(self) -> Optional[float]:
        return self.record.latency

    def start(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError(f"heartbeat interval must be > 0, got {interval}")
        if self.running:
            # One monitor per connection; a restart replaces the old timer.
            self._task.cancel()
        self.record = HeartbeatRecord(interval=interval)
        self._task = asyncio.create_task(self._run(interval), name="gateway-heartbeat")
        logger.debug(
            "Heartbeat started", extra={"heartbeat_interval_seconds": interval}
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def acknowledge(self) -> None:
        now = self._clock()
        record = self.record
        if record.ack_pending and record.last_sent is not None:
            record.latency = now - record.last_sent
        record.ack_pending = False
        record.last_ack = now
        record.acks_received += 1

    async def beat_now(self) -> bool:
        """
        Answer a server heartbeat request immediately.

        Skipped (returns False) while a heartbeat is awaiting its ack, so a
        request never puts a second heartbeat in flight.
        """
        if self.record.ack_pending:
            logger.debug("Server heartbeat request ignored; ack pending")
            return False
        await self._beat()
        return True

    async def _beat(self) -> None:
        self.record.ack_pending = True
        self.record.last_sent = self._clock()
        await self._send_heartbeat()
        self.record.beats_sent += 1

    async def _run(self, interval: float) -> None:
        await asyncio.sleep(interval * self._jitter())
        while True:
            if self.record.ack_pending:
                logger.warning(
                    "Heartbeat ack missed; declaring connection dead",
                    extra={
                        "heartbeat_interval_seconds": interval,
                        "last_sent": self.record.last_sent,
                        "last_ack": self.record.last_ack,
                    },
                )
                self._task = None
                await self._on_dead(interval)
                return

            try:
                await self._beat()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "Heartbeat send failed; declaring connection dead",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                self._task = None
                await self._on_dead(interval)
                return

            await asyncio.sleep(interval)

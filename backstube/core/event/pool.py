"""
HandlerPool: bounded worker pool for handler invocations.

Purpose
-------
Run handler callbacks off the gateway receive path with bounded
concurrency, per-invocation timeouts and full error isolation.

Design Decisions
----------------
- Message passing: the dispatcher puts `Invocation` values on a bounded
  `asyncio.Queue`; N worker tasks take them in FIFO order and produce
  `HandlerResult` values. A full queue applies backpressure to the caller.
- Async callbacks are awaited directly; sync callbacks run in the default
  thread pool executor so they never block the event loop.
- A failing or timed-out handler becomes a `HandlerError` reported to the
  `ErrorSink`; it never reaches the dispatcher or the gateway.
- `shutdown()` stops intake, gives already-submitted invocations up to the
  drain timeout, then cancels the workers.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from typing import Any, Deque, List, Optional

from backstube.core.config.manager import ConfigManager
from backstube.core.event.errors import ErrorSink, LoggingErrorSink
from backstube.core.event.metrics import DispatcherMetricsRecorder
from backstube.core.event.types import GatewayEvent, HandlerResult, Invocation, RegisteredHandler
from backstube.core.exceptions import HandlerError
from backstube.core.logging.logger import LogContext, get_logger

logger = get_logger(__name__)


class HandlerPool:
    """
    Bounded pool of handler workers.

    Example
    -------
    >>> pool = HandlerPool(size=4)
    >>> pool.start()
    >>> await pool.submit(Invocation(handler, event))
    >>> await pool.shutdown()
    """

    def __init__(
        self,
        size: Optional[int] = None,
        queue_size: Optional[int] = None,
        handler_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        error_sink: Optional[ErrorSink] = None,
        metrics: Optional[DispatcherMetricsRecorder] = None,
        result_history: int = 256,
    ) -> None:
        self.size = size if size is not None else int(ConfigManager.get("dispatcher.pool_size", 8))
        if self.size < 1:
            raise ValueError("pool size must be >= 1")
        self._queue_size = (
            queue_size if queue_size is not None else int(ConfigManager.get("dispatcher.queue_size", 1000))
        )
        self._handler_timeout = (
            handler_timeout
            if handler_timeout is not None
            else float(ConfigManager.get("dispatcher.handler_timeout_seconds", 30.0))
        )
        self._drain_timeout = (
            drain_timeout
            if drain_timeout is not None
            else float(ConfigManager.get("dispatcher.drain_timeout_seconds", 10.0))
        )
        self.error_sink: ErrorSink = error_sink or LoggingErrorSink()
        self.metrics = metrics or DispatcherMetricsRecorder()

        self._queue: asyncio.Queue[Invocation] = asyncio.Queue(maxsize=self._queue_size)
        self._workers: List[asyncio.Task[None]] = []
        self._accepting = False
        self.results: Deque[HandlerResult] = deque(maxlen=result_history)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._accepting

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"handler-worker-{index}")
            for index in range(self.size)
        ]
        logger.info(
            "Handler pool started",
            extra={
                "pool_size": self.size,
                "queue_size": self._queue_size,
                "handler_timeout_seconds": self._handler_timeout,
            },
        )

    async def submit(self, invocation: Invocation) -> bool:
        """
        Queue one invocation; waits while the queue is full.

        Returns False (and drops the invocation) once shutdown has begun.
        """
        if not self._accepting:
            self.metrics.invocations_dropped += 1
            logger.warning(
                "Handler pool not accepting work; invocation dropped",
                extra={
                    "handler_id": invocation.handler.identifier,
                    "event_name": invocation.event.name,
                },
            )
            return False
        await self._queue.put(invocation)
        self.metrics.invocations_submitted += 1
        return True

    async def join(self) -> None:
        """Wait until every submitted invocation has produced a result."""
        await self._queue.join()

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        if not self._workers:
            self._accepting = False
            return

        self._accepting = False
        timeout = self._drain_timeout if drain_timeout is None else drain_timeout

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Handler pool drain timed out; cancelling workers",
                extra={"pending": self._queue.qsize(), "drain_timeout_seconds": timeout},
            )

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        # Anything still queued after cancellation is abandoned
        abandoned = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            abandoned += 1
        self.metrics.invocations_dropped += abandoned

        logger.info(
            "Handler pool stopped",
            extra={
                "abandoned": abandoned,
                "completed": self.metrics.invocations_completed,
            },
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, index: int) -> None:
        while True:
            invocation = await self._queue.get()
            try:
                result = await self.invoke(invocation)
                self.results.append(result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Error sink failures; the worker keeps serving the queue
                logger.error(
                    "Handler pool worker error",
                    extra={
                        "worker": index,
                        "handler_id": invocation.handler.identifier,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def invoke(self, invocation: Invocation) -> HandlerResult:
        """Run one invocation with timeout and error isolation."""
        handler = invocation.handler
        event = invocation.event
        started = time.perf_counter()
        error: Optional[HandlerError] = None
        value: Any = None

        try:
            async with LogContext(
                event_name=event.name,
                sequence=event.sequence,
                command=event.command,
                guild_id=event.guild_id,
                user_id=event.user_id,
                component="handler",
                handler_id=handler.identifier,
            ):
                value = await asyncio.wait_for(
                    self._call(handler, event), timeout=self._handler_timeout
                )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as exc:
            self.metrics.handler_timeouts += 1
            error = HandlerError(handler.identifier, event.name, exc)
        except Exception as exc:
            error = HandlerError(handler.identifier, event.name, exc)

        duration = time.perf_counter() - started
        self.metrics.invocations_completed += 1

        if error is not None:
            self.metrics.record_error(handler.identifier)
            with LogContext(
                event_name=event.name, sequence=event.sequence, handler_id=handler.identifier
            ):
                self.error_sink.report(error)
        else:
            logger.debug(
                "Handler completed",
                extra={
                    "handler_id": handler.identifier,
                    "duration_ms": round(duration * 1000, 2),
                },
            )

        return HandlerResult(
            handler_id=handler.identifier,
            event_name=event.name,
            sequence=event.sequence,
            value=value,
            error=error,
            duration_seconds=duration,
        )

    @staticmethod
    async def _call(handler: RegisteredHandler, event: GatewayEvent) -> Any:
        callback = handler.callback
        if inspect.iscoroutinefunction(callback):
            return await callback(event)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, callback, event)
        if inspect.isawaitable(result):
            # Callable objects with an async __call__
            return await result
        return result

"""
Gateway session state machine.

Purpose
-------
Own exactly one gateway connection at a time and drive it through the
session lifecycle: connect, receive HELLO, identify or resume, stay READY,
and recover from every transient failure with exponential backoff.

State Diagram
-------------
DISCONNECTED -> CONNECTING -> IDENTIFYING -> READY
READY -> RECONNECTING -> RESUMING -> READY         (session kept)
READY -> RECONNECTING -> CONNECTING -> IDENTIFYING  (session cleared)
RESUMING -> RECONNECTING -> CONNECTING              (resume rejected)
any -> CLOSING -> DISCONNECTED                      (stop requested)

Failure Semantics
-----------------
- Network errors, protocol errors, dead heartbeats, server RECONNECT and
  INVALID_SESSION are transient: counted, backed off, retried forever.
- A READY without `session_id` / `resume_gateway_url`, or a fatal close code
  (4004, 4010-4014), raises `ConfigurationError` out of `run()`.
- Close codes 4007/4009 and a non-resumable INVALID_SESSION clear the
  session so the next connection identifies from scratch.

Concurrency
-----------
`run()` is the only task that mutates `Session` and `ConnectionAttempt`.
The heartbeat task only writes frames (through the shared send lock) and, on
a missed ack, closes the socket so `run()` observes the failure.
"""

from __future__ import annotations

import asyncio
import random
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Protocol, Tuple

import discord

from backstube.core.config.manager import ConfigManager
from backstube.core.exceptions import (
    ConfigurationError,
    ConnectionClosed,
    DeadConnectionError,
    NetworkError,
    ProtocolError,
    ReconnectRequested,
    SessionInvalid,
)
from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.gateway.heartbeat import HeartbeatMonitor
from backstube.core.gateway.protocol import (
    FATAL_CLOSE_CODES,
    NORMAL_CLOSE_CODE,
    RECONNECT_CLOSE_CODE,
    SESSION_RESET_CLOSE_CODES,
    GatewayFrame,
    Opcode,
    decode_frame,
    default_intents,
    describe_close_code,
    gateway_endpoint,
    heartbeat_frame,
    identify_frame,
    resume_frame,
)
from backstube.core.gateway.session import ConnectionAttempt, Session, SessionState
from backstube.core.gateway.transport import Transport
from backstube.core.logging.logger import get_logger, set_log_context
from backstube.core.ratelimit.limiter import RateLimiter

logger = get_logger(__name__)

SEND_BUCKET = "gateway.send"
IDENTIFY_BUCKET = "gateway.identify"

_TRANSIENT_ERRORS = (NetworkError, ProtocolError, SessionInvalid, ReconnectRequested)


class FrameSink(Protocol):
    async def on_frame(self, frame: GatewayFrame) -> None: ...


@dataclass(slots=True)
class GatewayMetrics:
    connects_attempted: int = 0
    connects_failed: int = 0
    backoff_waits: int = 0
    identifies: int = 0
    resumes: int = 0
    ready_events: int = 0
    resumed_events: int = 0
    reconnects: int = 0
    heartbeats_sent: int = 0
    heartbeat_acks: int = 0
    dead_connections: int = 0
    sessions_invalidated: int = 0
    frames_received: int = 0
    dispatches: int = 0


class SessionStateMachine:
    """
    Single-connection gateway session driver.

    Example
    -------
    >>> machine = SessionStateMachine(transport, limiter, dispatcher, Session(),
    ...                               token=Config.DISCORD_TOKEN,
    ...                               gateway_url="wss://gateway.discord.gg")
    >>> await machine.run()   # returns after request_stop()
    """

    def __init__(
        self,
        transport: Transport,
        limiter: RateLimiter,
        dispatcher: FrameSink,
        session: Session,
        *,
        token: str,
        gateway_url: str,
        intents: Optional[discord.Intents] = None,
        backoff: Optional[BackoffPolicy] = None,
        hello_timeout: Optional[float] = None,
        properties: Optional[Mapping[str, str]] = None,
        heartbeat_jitter: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._limiter = limiter
        self._dispatcher = dispatcher
        self.session = session
        self._token = token
        self.gateway_url = gateway_url
        self._intents = intents or default_intents()
        self._backoff = backoff or BackoffPolicy.from_config()
        self._hello_timeout = (
            hello_timeout
            if hello_timeout is not None
            else float(ConfigManager.get("gateway.hello_timeout_seconds", 20.0))
        )
        self._properties = dict(
            properties or ConfigManager.get("gateway.properties", {}) or {}
        )
        self._clock = clock

        self.attempt = ConnectionAttempt()
        self.metrics = GatewayMetrics()
        self.transitions: Deque[Tuple[SessionState, SessionState]] = deque(maxlen=256)

        self._connection: Any = None
        self._send_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._ready_event = asyncio.Event()
        self._close_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_dead = False
        self._heartbeat = HeartbeatMonitor(
            self._send_heartbeat,
            self._on_heartbeat_dead,
            jitter=heartbeat_jitter,
            clock=clock,
        )

        self._configure_buckets()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def heartbeat(self) -> HeartbeatMonitor:
        return self._heartbeat

    @property
    def latency(self) -> Optional[float]:
        return self._heartbeat.latency

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempt_count": self.attempt.attempt_count,
            "session_id": self.session.session_id,
            "sequence_watermark": self.session.sequence_watermark,
            "latency_ms": round(self.latency * 1000, 2) if self.latency is not None else None,
            **asdict(self.metrics),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Keep a session alive until `request_stop()`.

        Raises
        ------
        ConfigurationError
            On credentials or capability problems that retrying cannot fix.
        """
        logger.info(
            "Gateway session machine starting",
            extra={"gateway_url": self.gateway_url, "intents": self._intents.value},
        )
        try:
            while not self._stop_event.is_set():
                if self.attempt.attempt_count > 0:
                    self._transition(SessionState.RECONNECTING)
                    if not await self._wait_backoff():
                        break

                try:
                    await self._run_connection()
                except _TRANSIENT_ERRORS as exc:
                    if self._stop_event.is_set():
                        break
                    self._handle_connection_loss(exc)
        finally:
            await self._heartbeat.stop()
            if self._connection is not None:
                await self._transport.close(self._connection, NORMAL_CLOSE_CODE)
                self._connection = None
            self._ready_event.clear()
            self._transition(SessionState.CLOSING)
            self._transition(SessionState.DISCONNECTED)
            logger.info(
                "Gateway session machine stopped",
                extra={"metrics": asdict(self.metrics)},
            )

    def request_stop(self) -> None:
        """Ask `run()` to finish. Safe to call from any task, any number of times."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.info("Gateway stop requested", extra={"state": self.state.value})

        connection = self._connection
        if connection is not None:
            # Wakes a pending receive_next in run()
            self._close_task = asyncio.get_running_loop().create_task(
                self._transport.close(connection, NORMAL_CLOSE_CODE)
            )

    async def stop(self) -> None:
        self.request_stop()
        if self._close_task is not None:
            await self._close_task

    async def wait_until_ready(self) -> None:
        await self._ready_event.wait()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _run_connection(self) -> None:
        resuming = self.session.resumable
        base_url = self.session.resume_url if resuming and self.session.resume_url else self.gateway_url
        self._transition(SessionState.RESUMING if resuming else SessionState.CONNECTING)

        self.metrics.connects_attempted += 1
        try:
            connection = await self._transport.connect(gateway_endpoint(base_url))
        except NetworkError:
            self.metrics.connects_failed += 1
            raise

        self._connection = connection
        self._heartbeat_dead = False
        self._limiter.reset(SEND_BUCKET)

        if self._stop_event.is_set():
            # Stop landed while connect() was in flight
            await self._transport.close(connection, NORMAL_CLOSE_CODE)
            self._connection = None
            return

        try:
            interval = await self._await_hello(connection)
            self._heartbeat.start(interval)

            if resuming:
                await self._send_resume()
            else:
                await self._send_identify()
                self._transition(SessionState.IDENTIFYING)

            await self._read_loop(connection)
        finally:
            await self._heartbeat.stop()
            self._ready_event.clear()
            self._connection = None
            close_code = NORMAL_CLOSE_CODE if self._stop_event.is_set() else RECONNECT_CLOSE_CODE
            await self._transport.close(connection, close_code)

    async def _await_hello(self, connection: Any) -> float:
        try:
            raw = await asyncio.wait_for(
                self._transport.receive_next(connection),
                timeout=self._hello_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise NetworkError(
                "Timed out waiting for HELLO",
                details={"hello_timeout_seconds": self._hello_timeout},
            ) from exc

        frame = decode_frame(raw)
        self.metrics.frames_received += 1
        if frame.op != Opcode.HELLO:
            raise ProtocolError("Expected HELLO as first frame", details={"op": frame.op})

        interval_ms = frame.d.get("heartbeat_interval") if isinstance(frame.d, dict) else None
        if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            raise ProtocolError(
                "HELLO without a valid heartbeat_interval",
                details={"heartbeat_interval": interval_ms},
            )
        return interval_ms / 1000.0

    async def _read_loop(self, connection: Any) -> None:
        while True:
            try:
                raw = await self._transport.receive_next(connection)
            except ConnectionClosed as exc:
                if self._heartbeat_dead:
                    raise DeadConnectionError(self._heartbeat.record.interval) from exc
                raise

            if self._heartbeat_dead:
                raise DeadConnectionError(self._heartbeat.record.interval)

            frame = decode_frame(raw)
            self.metrics.frames_received += 1
            await self._handle_frame(frame)

    async def _handle_frame(self, frame: GatewayFrame) -> None:
        op = frame.op

        if op == Opcode.DISPATCH:
            if frame.t == "READY":
                self._handle_ready(frame)
            elif frame.t == "RESUMED":
                self._handle_resumed()
            self.metrics.dispatches += 1
            await self._dispatcher.on_frame(frame)
        elif op == Opcode.HEARTBEAT_ACK:
            self._heartbeat.acknowledge()
            self.metrics.heartbeat_acks += 1
        elif op == Opcode.HEARTBEAT:
            await self._heartbeat.beat_now()
        elif op == Opcode.RECONNECT:
            raise ReconnectRequested()
        elif op == Opcode.INVALID_SESSION:
            self.metrics.sessions_invalidated += 1
            raise SessionInvalid(resumable=bool(frame.d))
        else:
            logger.debug("Ignoring unexpected opcode", extra={"op": int(op)})

    def _handle_ready(self, frame: GatewayFrame) -> None:
        data = frame.d if isinstance(frame.d, dict) else {}
        session_id = data.get("session_id")
        resume_url = data.get("resume_gateway_url")

        if not isinstance(session_id, str) or not session_id:
            raise ConfigurationError("gateway.ready", "READY payload has no session_id")
        if not isinstance(resume_url, str) or not resume_url:
            raise ConfigurationError("gateway.ready", "READY payload has no resume_gateway_url")

        application = data.get("application")
        application = application if isinstance(application, dict) else {}
        user = data.get("user")
        user = user if isinstance(user, dict) else {}
        self.session.establish(
            session_id=session_id,
            resume_url=resume_url,
            application_id=_snowflake(application.get("id")),
            user_id=_snowflake(user.get("id")),
        )
        self.attempt.reset()
        self.metrics.ready_events += 1
        set_log_context(session_id=session_id)
        self._transition(SessionState.READY)
        self._ready_event.set()

        logger.info(
            "Gateway session ready",
            extra={
                "session_id": session_id,
                "guild_count": len(data.get("guilds") or []),
                "application_id": self.session.application_id,
            },
        )

    def _handle_resumed(self) -> None:
        self.attempt.reset()
        self.metrics.resumed_events += 1
        self._transition(SessionState.READY)
        self._ready_event.set()
        logger.info(
            "Gateway session resumed",
            extra={
                "session_id": self.session.session_id,
                "sequence_watermark": self.session.sequence_watermark,
            },
        )

    def _handle_connection_loss(self, exc: Exception) -> None:
        attempt = self.attempt.record_failure()
        self.metrics.reconnects += 1

        if isinstance(exc, ConnectionClosed):
            code = exc.code
            if code in FATAL_CLOSE_CODES:
                raise _fatal_close_error(code) from exc
            if code in SESSION_RESET_CLOSE_CODES:
                self.session.clear()
        elif isinstance(exc, SessionInvalid) and not exc.resumable:
            self.session.clear()

        if isinstance(exc, DeadConnectionError):
            self.metrics.dead_connections += 1

        logger.warning(
            "Gateway connection lost",
            extra={
                "error_code": getattr(exc, "error_code", type(exc).__name__),
                "error": exc.message if hasattr(exc, "message") else str(exc),
                "close_code": getattr(exc, "code", None),
                "close_reason": describe_close_code(getattr(exc, "code", None))
                if isinstance(exc, ConnectionClosed)
                else None,
                "attempt": attempt,
                "will_resume": self.session.resumable,
            },
        )

    async def _wait_backoff(self) -> bool:
        """Sleep out the backoff delay. Returns False if stop was requested."""
        delay = self._backoff.delay(self.attempt.attempt_count - 1)
        self.attempt.backoff_deadline = self._clock() + delay
        self.metrics.backoff_waits += 1
        logger.info(
            "Waiting before reconnect",
            extra={
                "attempt": self.attempt.attempt_count,
                "delay_seconds": round(delay, 3),
            },
        )
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    # ------------------------------------------------------------------
    # Outbound frames
    # ------------------------------------------------------------------

    def _configure_buckets(self) -> None:
        send_limit = int(ConfigManager.get("gateway.send_bucket.limit", 120))
        reserve = int(ConfigManager.get("gateway.heartbeat_reserve", 3))
        self._limiter.configure(
            SEND_BUCKET,
            limit=max(1, send_limit - reserve),
            period=float(ConfigManager.get("gateway.send_bucket.period_seconds", 60.0)),
        )
        self._limiter.configure(
            IDENTIFY_BUCKET,
            limit=int(ConfigManager.get("gateway.identify_bucket.limit", 1)),
            period=float(ConfigManager.get("gateway.identify_bucket.period_seconds", 5.0)),
        )

    async def send(self, payload: str) -> None:
        """Write an application frame on the current connection."""
        await self._send(payload, bucket=SEND_BUCKET)

    async def _send(self, payload: str, bucket: Optional[str]) -> None:
        if bucket is not None:
            await self._limiter.acquire(bucket)
        connection = self._connection
        if connection is None:
            raise ConnectionClosed(None, "not connected")
        async with self._send_lock:
            await self._transport.send(connection, payload)

    async def _send_identify(self) -> None:
        await self._limiter.acquire(IDENTIFY_BUCKET)
        await self._send(
            identify_frame(self._token, self._intents, self._properties),
            bucket=SEND_BUCKET,
        )
        self.metrics.identifies += 1
        logger.info("IDENTIFY sent", extra={"intents": self._intents.value})

    async def _send_resume(self) -> None:
        await self._send(
            resume_frame(
                self._token,
                self.session.session_id,
                self.session.sequence_watermark,
            ),
            bucket=SEND_BUCKET,
        )
        self.metrics.resumes += 1
        logger.info(
            "RESUME sent",
            extra={
                "session_id": self.session.session_id,
                "sequence_watermark": self.session.sequence_watermark,
            },
        )

    async def _send_heartbeat(self) -> None:
        # Heartbeats bypass the send bucket; its limit already excludes them.
        await self._send(heartbeat_frame(self.session.sequence_watermark), bucket=None)
        self.metrics.heartbeats_sent += 1

    async def _on_heartbeat_dead(self, interval: float) -> None:
        self._heartbeat_dead = True
        connection = self._connection
        if connection is not None:
            await self._transport.close(connection, RECONNECT_CLOSE_CODE)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        old_state = self.session.state
        if old_state is new_state:
            return
        self.session.state = new_state
        self.transitions.append((old_state, new_state))
        logger.info(
            "Gateway state transition",
            extra={
                "from_state": old_state.value,
                "to_state": new_state.value,
                "attempt": self.attempt.attempt_count,
            },
        )


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _fatal_close_error(code: int) -> ConfigurationError:
    reason = describe_close_code(code)
    if code == 4004:
        return ConfigurationError("DISCORD_TOKEN", f"gateway rejected the token ({reason})")
    if code in (4013, 4014):
        return ConfigurationError("gateway.intents", f"gateway rejected the intents ({reason})")
    return ConfigurationError("gateway", f"gateway closed with fatal code {code} ({reason})")

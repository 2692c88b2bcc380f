"""
BotRuntime: wires the gateway stack together and owns its lifetime.

Purpose
-------
Construct one of each component (rate limiter, transport, REST client,
session, handler pool, dispatcher, session state machine), run the state
machine until shutdown, and release every resource on the way out.

Startup Order
-------------
1. Freeze the command registry
2. Start the handler pool and health monitoring
3. Resolve the gateway URL (`GET /gateway/bot` unless configured)
4. Run the session state machine until stopped or a fatal error

Shutdown
--------
`shutdown()` is idempotent and safe from any task (signal handlers, handler
invocations). It asks the state machine to stop, waits up to
`runtime.shutdown_grace_seconds` for it to close the socket, then cancels it.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional

import discord

from backstube.bot.lifecycle import RuntimeLifecycle
from backstube.core.config.config import Config
from backstube.core.config.manager import ConfigManager
from backstube.core.event.dispatcher import EventDispatcher
from backstube.core.event.errors import ErrorSink
from backstube.core.event.pool import HandlerPool
from backstube.core.event.registry import CommandRegistry
from backstube.core.exceptions import ConfigurationError, HTTPException, NetworkError
from backstube.core.gateway.session import Session
from backstube.core.gateway.state_machine import SessionStateMachine
from backstube.core.gateway.transport import Transport, WebSocketTransport
from backstube.core.http.client import RestClient
from backstube.core.logging.logger import get_logger
from backstube.core.ratelimit.limiter import RateLimiter

logger = get_logger(__name__)

FALLBACK_GATEWAY_URL = "wss://gateway.discord.gg"


class BotRuntime:
    """
    Example
    -------
    >>> runtime = BotRuntime(Config.DISCORD_TOKEN, registry)
    >>> await runtime.start()        # returns after shutdown()
    """

    def __init__(
        self,
        token: str,
        registry: CommandRegistry,
        *,
        gateway_url: Optional[str] = None,
        command_prefix: Optional[str] = None,
        intents: Optional[discord.Intents] = None,
        transport: Optional[Transport] = None,
        limiter: Optional[RateLimiter] = None,
        rest: Optional[RestClient] = None,
        pool: Optional[HandlerPool] = None,
        error_sink: Optional[ErrorSink] = None,
        shutdown_grace: Optional[float] = None,
    ) -> None:
        if not token:
            raise ConfigurationError("DISCORD_TOKEN", "a bot token is required")

        self.registry = registry
        self.limiter = limiter or RateLimiter()
        self.transport = transport or WebSocketTransport()
        self.rest = rest or RestClient(token, self.limiter, base_url=Config.API_BASE_URL)
        self.session = Session()
        self.pool = pool or HandlerPool(error_sink=error_sink)
        self.dispatcher = EventDispatcher(
            registry,
            self.pool,
            self.session,
            command_prefix if command_prefix is not None else Config.COMMAND_PREFIX,
        )

        self._configured_gateway_url = gateway_url if gateway_url is not None else Config.GATEWAY_URL
        self.machine = SessionStateMachine(
            self.transport,
            self.limiter,
            self.dispatcher,
            self.session,
            token=token,
            gateway_url=self._configured_gateway_url or FALLBACK_GATEWAY_URL,
            intents=intents,
        )
        self.lifecycle = RuntimeLifecycle(self)

        self._shutdown_grace = (
            shutdown_grace
            if shutdown_grace is not None
            else float(ConfigManager.get("runtime.shutdown_grace_seconds", 5.0))
        )
        self._machine_task: Optional[asyncio.Task[None]] = None
        self._resolve_task: Optional[asyncio.Task[str]] = None
        self._shutdown_requested = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._machine_task is not None and not self._machine_task.done()

    async def wait_until_ready(self) -> None:
        await self.machine.wait_until_ready()
        self.lifecycle.mark_ready()

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        return {
            **self.lifecycle.get_metrics_snapshot(),
            "rate_limiter": asdict(self.limiter.metrics),
            "buckets": self.limiter.snapshot(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Run the bot until `shutdown()`.

        Raises
        ------
        ConfigurationError
            When the token, intents or gateway handshake are unusable.
        """
        if self._machine_task is not None:
            raise RuntimeError("BotRuntime.start() called twice")

        self.lifecycle.mark_started()
        self.registry.freeze()
        self.pool.start()
        self.lifecycle.start_health_monitoring()

        ready_watch: Optional[asyncio.Task[None]] = None
        try:
            if self._shutdown_requested:
                return

            self._resolve_task = asyncio.create_task(
                self._resolve_gateway_url(), name="gateway-resolve"
            )
            try:
                self.machine.gateway_url = await self._resolve_task
            except asyncio.CancelledError:
                if not self._shutdown_requested:
                    raise
                return
            finally:
                self._resolve_task = None
            if self._shutdown_requested:
                return

            self._machine_task = asyncio.create_task(self.machine.run(), name="gateway-session")
            ready_watch = asyncio.create_task(self.wait_until_ready(), name="ready-watch")
            await asyncio.wait({self._machine_task})
            if not self._machine_task.cancelled():
                # Re-raises ConfigurationError from the machine
                self._machine_task.result()
        finally:
            if ready_watch is not None:
                ready_watch.cancel()
            task = self._machine_task
            if task is not None and not task.done():
                self.machine.request_stop()
                task.cancel()
                await asyncio.wait({task})
            await self._release()

    async def shutdown(self) -> None:
        """Request a graceful stop. Idempotent."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Runtime shutdown requested")

        self.machine.request_stop()
        resolving = self._resolve_task
        if resolving is not None and not resolving.done():
            # start() is still fetching the gateway URL over REST
            resolving.cancel()
            return

        task = self._machine_task
        if task is None or task.done() or task is asyncio.current_task():
            return

        done, _ = await asyncio.wait({task}, timeout=self._shutdown_grace)
        if not done:
            logger.warning(
                "Gateway did not stop within grace period; cancelling",
                extra={"shutdown_grace_seconds": self._shutdown_grace},
            )
            task.cancel()

    async def _release(self) -> None:
        await self.lifecycle.stop()
        await self.pool.shutdown()
        await self.rest.aclose()
        await self.transport.aclose()
        logger.info(
            "Runtime stopped",
            extra={"dispatcher": self.dispatcher.get_metrics_snapshot().get_summary()},
        )

    async def _resolve_gateway_url(self) -> str:
        if self._configured_gateway_url:
            return self._configured_gateway_url

        try:
            data = await self.rest.get_gateway_bot()
        except (NetworkError, HTTPException) as exc:
            logger.warning(
                "Could not fetch gateway URL; using fallback",
                extra={"error": exc.to_dict(), "gateway_url": FALLBACK_GATEWAY_URL},
            )
            return FALLBACK_GATEWAY_URL

        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            logger.warning(
                "GET /gateway/bot returned no url; using fallback",
                extra={"gateway_url": FALLBACK_GATEWAY_URL},
            )
            return FALLBACK_GATEWAY_URL

        session_limit = data.get("session_start_limit") or {}
        logger.info(
            "Gateway URL resolved",
            extra={
                "gateway_url": url,
                "shards": data.get("shards"),
                "session_starts_remaining": session_limit.get("remaining"),
            },
        )
        return url

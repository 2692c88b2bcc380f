"""
Runtime lifecycle monitoring for Backstube.

Purpose
-------
Keep a periodic, structured health record of a running `BotRuntime`:
gateway state, heartbeat latency, reconnect attempts and handler pool
backlog. Separates observability concerns from the runtime's wiring.

Responsibilities
----------------
- Background health loop at `runtime.health_check_interval_seconds`
- Startup timing and summary logging
- Metrics snapshot for diagnostics

Non-Responsibilities
--------------------
- Reconnecting (handled by SessionStateMachine)
- Handler execution (handled by HandlerPool)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from backstube.core.config.manager import ConfigManager
from backstube.core.gateway.session import SessionState
from backstube.core.logging.logger import get_logger, get_logging_health

if TYPE_CHECKING:
    from backstube.bot.runtime import BotRuntime

logger = get_logger(__name__)


@dataclass
class HealthSample:
    """One health loop observation."""

    state: str
    healthy: bool
    latency_ms: Optional[float]
    attempt_count: int
    pool_backlog: int
    taken_at: float


@dataclass
class RuntimeMetrics:
    """Runtime metrics for the bot process."""

    started_at: Optional[float] = None
    startup_time_ms: Optional[float] = None
    health_checks_performed: int = 0
    health_checks_failed: int = 0
    unhealthy_samples: int = 0
    last_health_check: Optional[float] = None
    last_sample: Optional[HealthSample] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class RuntimeLifecycle:
    """
    Health monitoring for a `BotRuntime`.

    Handles:
    - startup timing
    - background health sampling
    - stopping the health loop on shutdown
    """

    def __init__(self, runtime: "BotRuntime", interval: Optional[float] = None) -> None:
        self.runtime = runtime
        self.metrics = RuntimeMetrics()
        self._health_task: Optional[asyncio.Task[None]] = None
        self._is_shutting_down = False
        self._health_check_interval: float = (
            interval
            if interval is not None
            else float(ConfigManager.get("runtime.health_check_interval_seconds", 60))
        )
        self._slow_latency_ms: float = float(
            ConfigManager.get("runtime.slow_heartbeat_latency_ms", 1000.0)
        )

    # ════════════════════════════════════════════════════════════════════════
    # STARTUP
    # ════════════════════════════════════════════════════════════════════════

    def mark_started(self) -> None:
        self.metrics.started_at = time.perf_counter()

    def mark_ready(self) -> None:
        if self.metrics.started_at is None or self.metrics.startup_time_ms is not None:
            return
        self.metrics.startup_time_ms = (time.perf_counter() - self.metrics.started_at) * 1000
        logger.info(
            "Bot startup complete",
            extra={
                "total_time_ms": round(self.metrics.startup_time_ms, 2),
                "handlers": len(self.runtime.registry),
                "commands": self.runtime.registry.command_names(),
            },
        )

    # ════════════════════════════════════════════════════════════════════════
    # HEALTH MONITORING
    # ════════════════════════════════════════════════════════════════════════

    def start_health_monitoring(self) -> None:
        """Start background health monitoring task."""
        if self._health_task is not None:
            logger.warning("Health monitoring already running")
            return

        self._is_shutting_down = False
        self._health_task = asyncio.create_task(
            self._health_monitor_loop(), name="runtime-health"
        )
        logger.info(
            "Health monitoring started",
            extra={"interval_seconds": self._health_check_interval},
        )

    async def _health_monitor_loop(self) -> None:
        while not self._is_shutting_down:
            try:
                await asyncio.sleep(self._health_check_interval)
                self.check_health()

            except asyncio.CancelledError:
                logger.debug("Health monitor loop cancelled")
                raise

            except Exception as exc:
                self.metrics.health_checks_failed += 1
                logger.error(
                    "Error in health monitor loop",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                    exc_info=True,
                )

    def check_health(self) -> HealthSample:
        """Take one health sample and log it."""
        machine = self.runtime.machine
        latency = machine.latency
        latency_ms = round(latency * 1000, 2) if latency is not None else None

        sample = HealthSample(
            state=machine.state.value,
            healthy=machine.state is SessionState.READY,
            latency_ms=latency_ms,
            attempt_count=machine.attempt.attempt_count,
            pool_backlog=self.runtime.pool.backlog,
            taken_at=time.time(),
        )

        self.metrics.health_checks_performed += 1
        self.metrics.last_health_check = sample.taken_at
        self.metrics.last_sample = sample

        if not sample.healthy:
            self.metrics.unhealthy_samples += 1
            logger.warning(
                "Gateway not ready",
                extra={"state": sample.state, "attempt": sample.attempt_count},
            )
        elif latency_ms is not None and latency_ms > self._slow_latency_ms:
            logger.warning(
                "High heartbeat latency",
                extra={"latency_ms": latency_ms, "threshold_ms": self._slow_latency_ms},
            )
        else:
            logger.debug(
                "Health check",
                extra={
                    "state": sample.state,
                    "latency_ms": latency_ms,
                    "pool_backlog": sample.pool_backlog,
                },
            )
        return sample

    # ════════════════════════════════════════════════════════════════════════
    # SHUTDOWN
    # ════════════════════════════════════════════════════════════════════════

    async def stop(self) -> None:
        self._is_shutting_down = True
        task = self._health_task
        self._health_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Health monitoring stopped")

    # ════════════════════════════════════════════════════════════════════════
    # METRICS
    # ════════════════════════════════════════════════════════════════════════

    def get_metrics_snapshot(self) -> Dict[str, Any]:
        sample = self.metrics.last_sample
        return {
            "startup_time_ms": self.metrics.startup_time_ms,
            "health_checks_performed": self.metrics.health_checks_performed,
            "health_checks_failed": self.metrics.health_checks_failed,
            "unhealthy_samples": self.metrics.unhealthy_samples,
            "last_health_check": self.metrics.last_health_check,
            "last_sample": None
            if sample is None
            else {
                "state": sample.state,
                "healthy": sample.healthy,
                "latency_ms": sample.latency_ms,
                "attempt_count": sample.attempt_count,
                "pool_backlog": sample.pool_backlog,
            },
            "gateway": self.runtime.machine.get_metrics_snapshot(),
            "dispatcher": self.runtime.dispatcher.get_metrics_snapshot().get_summary(),
            "logging": asdict(get_logging_health()),
        }

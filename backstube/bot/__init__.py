"""
Bot runtime layer for Backstube.

Purpose
-------
Expose the process-level types used by the entry point and by tests:

- Runtime wiring and lifetime (BotRuntime)
- Health monitoring and metrics (RuntimeLifecycle, RuntimeMetrics, HealthSample)

Design Notes
------------
- This module only re-exports; it has no side effects.

Example
-------
    from backstube.bot import BotRuntime

    runtime = BotRuntime(Config.DISCORD_TOKEN, registry)
    await runtime.start()
"""

from __future__ import annotations

from backstube.bot.lifecycle import HealthSample, RuntimeLifecycle, RuntimeMetrics
from backstube.bot.runtime import BotRuntime

__all__ = [
    # Runtime
    "BotRuntime",
    # Lifecycle management
    "HealthSample",
    "RuntimeLifecycle",
    "RuntimeMetrics",
]

"""
Backstube - Application Entry Point
===================================

Bootstrap
---------
- Logging setup
- Config validation
- ConfigManager initialization
- Command registry + feature modules
- Bot runtime
- SIGINT / SIGTERM -> graceful shutdown
"""

from __future__ import annotations

import asyncio
import signal
import sys

from backstube.bot.runtime import BotRuntime
from backstube.core.config.config import Config
from backstube.core.config.errors import ConfigError
from backstube.core.config.manager import ConfigManager
from backstube.core.event.registry import CommandRegistry
from backstube.core.exceptions import ConfigurationError
from backstube.core.logging.logger import get_logger, setup_logging, shutdown_logging
from backstube.modules.moderation import SlowmodeCommand
from backstube.modules.voice import setup_voice

logger = get_logger(__name__)


# ============================================================================
# Application Bootstrap
# ============================================================================

def build_runtime() -> BotRuntime:
    """Construct the runtime and register every feature module."""
    registry = CommandRegistry()
    runtime = BotRuntime(Config.DISCORD_TOKEN, registry)

    SlowmodeCommand(runtime.rest, runtime.session).register(registry)

    if Config.VOICE_CATEGORY_ID is not None:
        setup_voice(registry, runtime.rest, Config.VOICE_CATEGORY_ID)
        logger.info(
            "Voice channel manager enabled",
            extra={"category_id": Config.VOICE_CATEGORY_ID},
        )

    logger.info(
        "Runtime built",
        extra={"handlers": len(registry), "commands": registry.command_names()},
    )
    return runtime


def _startup() -> BotRuntime:
    logger.info("========== BACKSTUBE INITIALIZATION START ==========")

    Config.validate()
    logger.info("✓ Configuration validated")

    ConfigManager.initialize(Config.PROJECT_ROOT / "config")
    logger.info("✓ Config manager initialized")

    runtime = build_runtime()
    logger.info("✓ Runtime initialized")
    return runtime


def _install_signal_handlers(runtime: BotRuntime) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig: signal.Signals) -> None:
        logger.info("Signal received; shutting down", extra={"signal": sig.name})
        loop.create_task(runtime.shutdown())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform", extra={"signal": sig.name})


# ============================================================================
# Application Entrypoint
# ============================================================================

async def main() -> int:
    """
    Backstube entry point.

    Returns the process exit status: 0 after a graceful shutdown, 1 on a
    configuration error.
    """
    try:
        runtime = _startup()
    except (ConfigurationError, ConfigError) as exc:
        logger.critical("Startup failed: invalid configuration", extra={"error": str(exc)})
        return 1

    _install_signal_handlers(runtime)

    try:
        logger.info("Starting Backstube gateway session")
        await runtime.start()
    except ConfigurationError as exc:
        logger.critical("Fatal configuration error", extra={"error": exc.to_dict()})
        return 1

    logger.info("========== SHUTDOWN COMPLETE ==========")
    return 0


def run() -> None:
    setup_logging()
    exit_code = 1
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot manually stopped via keyboard interrupt.")
        exit_code = 0
    finally:
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    run()

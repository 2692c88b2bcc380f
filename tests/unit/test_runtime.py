"""
Unit tests for BotRuntime and RuntimeLifecycle.

The runtime runs against the in-memory FakeGateway and a mocked REST client;
tests cover startup wiring, gateway URL resolution, fatal errors and
graceful shutdown.
"""

import asyncio

import pytest

from backstube.bot.lifecycle import RuntimeLifecycle
from backstube.bot.runtime import FALLBACK_GATEWAY_URL, BotRuntime
from backstube.core.config.manager import ConfigManager
from backstube.core.event.registry import CommandRegistry
from backstube.core.exceptions import ConfigurationError, NetworkError, RegistryFrozenError
from backstube.core.gateway.session import SessionState
from tests.fakes import wait_for_condition


def build_runtime(gateway, rest, registry=None, gateway_url="wss://gateway.test"):
    ConfigManager.set_override("gateway.identify_bucket.period_seconds", 0.01)
    ConfigManager.set_override("gateway.backoff.base_seconds", 0.01)
    ConfigManager.set_override("gateway.backoff.max_seconds", 0.05)
    return BotRuntime(
        "test-token",
        registry if registry is not None else CommandRegistry(),
        gateway_url=gateway_url,
        command_prefix="!",
        transport=gateway,
        rest=rest,
        shutdown_grace=1.0,
    )


@pytest.mark.asyncio
class TestStartAndShutdown:
    async def test_runs_until_shutdown_and_releases_resources(self, gateway, mock_rest):
        """Events reach handlers while READY; shutdown closes with 1000 and releases everything."""
        registry = CommandRegistry()
        seen = []

        @registry.listener("GUILD_CREATE")
        async def on_guild(event):
            seen.append(event.payload["id"])

        runtime = build_runtime(gateway, mock_rest, registry)
        start = asyncio.create_task(runtime.start())

        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)
        assert runtime.is_running
        gateway.dispatch("GUILD_CREATE", {"id": "10"})
        await wait_for_condition(lambda: seen == ["10"])

        await runtime.shutdown()
        await asyncio.wait_for(start, timeout=2.0)

        assert not runtime.is_running
        assert runtime.machine.state is SessionState.DISCONNECTED
        assert gateway.connections[0].close_code == 1000
        assert gateway.aclosed
        assert not runtime.pool.running
        mock_rest.aclose.assert_awaited_once()
        mock_rest.get_gateway_bot.assert_not_called()

    async def test_malformed_interaction_does_not_stop_runtime(self, gateway, mock_rest):
        registry = CommandRegistry()
        seen = []

        @registry.listener("GUILD_CREATE")
        async def on_guild(event):
            seen.append(event.payload["id"])

        runtime = build_runtime(gateway, mock_rest, registry)
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)

        gateway.dispatch("INTERACTION_CREATE", {"type": 2, "data": ["slowmode"], "member": []})
        gateway.dispatch("GUILD_CREATE", {"id": "11"})
        await wait_for_condition(lambda: seen == ["11"])

        assert runtime.is_running
        assert not start.done()

        await runtime.shutdown()
        await asyncio.wait_for(start, timeout=2.0)

    async def test_registry_frozen_after_start(self, gateway, mock_rest):
        registry = CommandRegistry()
        runtime = build_runtime(gateway, mock_rest, registry)
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)

        with pytest.raises(RegistryFrozenError):
            registry.register("READY", lambda event: None)

        await runtime.shutdown()
        await start

    async def test_shutdown_is_idempotent(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)

        await asyncio.gather(runtime.shutdown(), runtime.shutdown())
        await runtime.shutdown()
        await asyncio.wait_for(start, timeout=2.0)

        assert gateway.connect_attempts == 1

    async def test_shutdown_before_start_skips_connecting(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)

        await runtime.shutdown()
        await runtime.start()

        assert gateway.connect_attempts == 0
        mock_rest.aclose.assert_awaited_once()

    async def test_start_twice_rejected(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)
        await runtime.shutdown()
        await start

        with pytest.raises(RuntimeError):
            await runtime.start()

    async def test_fatal_close_code_propagates(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)

        gateway.drop(4004, "Authentication failed.")

        with pytest.raises(ConfigurationError) as excinfo:
            await asyncio.wait_for(start, timeout=2.0)
        assert excinfo.value.config_key == "DISCORD_TOKEN"
        mock_rest.aclose.assert_awaited_once()

    async def test_empty_token_rejected(self, gateway, mock_rest):
        with pytest.raises(ConfigurationError):
            BotRuntime("", CommandRegistry(), transport=gateway, rest=mock_rest)


@pytest.mark.asyncio
class TestGatewayResolution:
    async def test_gateway_url_fetched_from_rest(self, gateway, mock_rest):
        mock_rest.get_gateway_bot.return_value = {
            "url": "wss://resolved.gateway.test",
            "shards": 1,
            "session_start_limit": {"remaining": 999},
        }
        runtime = build_runtime(gateway, mock_rest, gateway_url="")
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)
        await runtime.shutdown()
        await start

        assert gateway.connections[0].endpoint.startswith("wss://resolved.gateway.test")

    async def test_network_failure_uses_fallback(self, gateway, mock_rest):
        mock_rest.get_gateway_bot.side_effect = NetworkError("REST request failed")
        runtime = build_runtime(gateway, mock_rest, gateway_url="")
        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.machine.wait_until_ready(), timeout=2.0)
        await runtime.shutdown()
        await start

        assert gateway.connections[0].endpoint.startswith(FALLBACK_GATEWAY_URL)

    async def test_shutdown_while_resolving_gateway_url_is_prompt(self, gateway, mock_rest):
        """A slow gateway lookup does not hold shutdown for its full duration."""

        async def slow_lookup():
            await asyncio.sleep(5)
            return {"url": "wss://late.gateway.test"}

        mock_rest.get_gateway_bot.side_effect = slow_lookup
        runtime = build_runtime(gateway, mock_rest, gateway_url="")
        start = asyncio.create_task(runtime.start())
        await wait_for_condition(lambda: mock_rest.get_gateway_bot.await_count == 1)

        await runtime.shutdown()
        await asyncio.wait_for(start, timeout=1.0)

        assert gateway.connect_attempts == 0
        assert not runtime.is_running
        mock_rest.aclose.assert_awaited_once()

    async def test_missing_url_uses_fallback(self, gateway, mock_rest):
        mock_rest.get_gateway_bot.return_value = {"shards": 1}
        runtime = build_runtime(gateway, mock_rest, gateway_url="")

        assert await runtime._resolve_gateway_url() == FALLBACK_GATEWAY_URL

    async def test_rejected_token_is_fatal(self, gateway, mock_rest):
        mock_rest.get_gateway_bot.side_effect = ConfigurationError(
            "DISCORD_TOKEN", "REST API rejected the bot token (401)"
        )
        runtime = build_runtime(gateway, mock_rest, gateway_url="")

        with pytest.raises(ConfigurationError):
            await runtime.start()

        assert gateway.connect_attempts == 0
        mock_rest.aclose.assert_awaited_once()


@pytest.mark.asyncio
class TestLifecycle:
    async def test_health_sample_reflects_state(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)

        idle = runtime.lifecycle.check_health()
        assert idle.state == "disconnected"
        assert idle.healthy is False

        start = asyncio.create_task(runtime.start())
        await asyncio.wait_for(runtime.wait_until_ready(), timeout=2.0)
        ready = runtime.lifecycle.check_health()
        snapshot = runtime.get_metrics_snapshot()
        await runtime.shutdown()
        await start

        assert ready.healthy is True
        assert ready.pool_backlog == 0
        assert runtime.lifecycle.metrics.unhealthy_samples == 1
        assert runtime.lifecycle.metrics.startup_time_ms is not None
        assert snapshot["gateway"]["state"] == "ready"
        assert "rate_limiter" in snapshot
        assert snapshot["logging"]["records_dropped"] == 0
        assert "gateway.identify" in snapshot["buckets"]

    async def test_health_loop_samples_periodically(self, gateway, mock_rest):
        runtime = build_runtime(gateway, mock_rest)
        lifecycle = RuntimeLifecycle(runtime, interval=0.01)

        lifecycle.start_health_monitoring()
        await wait_for_condition(lambda: lifecycle.metrics.health_checks_performed >= 2)
        await lifecycle.stop()
        await lifecycle.stop()

        assert lifecycle.metrics.health_checks_failed == 0
        assert lifecycle.get_metrics_snapshot()["last_sample"]["state"] == "disconnected"

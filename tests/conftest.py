"""
Pytest configuration and fixtures for the Backstube test suite.

Purpose
-------
Shared fixtures for unit tests: isolated ConfigManager state, fast backoff
and heartbeat settings, the in-memory gateway double, and REST mocks.

Architecture Notes
------------------
- Unit tests use mocks and in-memory fakes (fast, isolated, no network)
- Async tests are marked explicitly with `@pytest.mark.asyncio`
- ConfigManager is reset around every test so overrides never leak
"""

from __future__ import annotations

from typing import Generator

import pytest

from backstube.core.config.manager import ConfigManager
from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.ratelimit.limiter import RateLimiter
from tests.fakes import FakeGateway

# ============================================================================
# CONFIG FIXTURES
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_config_manager() -> Generator[None, None, None]:
    """Fresh ConfigManager state for every test."""
    ConfigManager.reset()
    yield
    ConfigManager.reset()


# ============================================================================
# GATEWAY FIXTURES
# ============================================================================


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    """Deterministic millisecond backoff: 0.01, 0.02, 0.04 ... capped at 0.05."""
    return BackoffPolicy(base=0.01, max_delay=0.05, jitter_ratio=0.0)


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ============================================================================
# REST FIXTURES
# ============================================================================


@pytest.fixture
def mock_rest(mocker):
    """
    Mock RestClient for module tests.

    Every endpoint is an AsyncMock; configure return values per test.
    """
    rest = mocker.MagicMock()
    for name in (
        "get_gateway_bot",
        "get_channel",
        "get_guild_channels",
        "create_guild_channel",
        "modify_channel",
        "delete_channel",
        "modify_guild_channel_positions",
        "create_interaction_response",
        "bulk_overwrite_global_commands",
        "aclose",
    ):
        setattr(rest, name, mocker.AsyncMock())
    return rest

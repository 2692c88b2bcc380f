"""
Unit tests for RestClient and Route.

The aiohttp session is replaced with a scripted double so retry, rate limit
and error mapping paths run without a network.
"""

from collections import deque

import aiohttp
import pytest

from backstube.core.config.manager import ConfigManager
from backstube.core.exceptions import (
    ConfigurationError,
    Forbidden,
    HTTPException,
    NetworkError,
    NotFound,
)
from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.http.client import GLOBAL_BUCKET, RestClient
from backstube.core.http.route import Route
from backstube.core.ratelimit.limiter import RateLimiter


class FakeResponse:
    def __init__(self, status, body=None, headers=None, content_type="application/json"):
        self.status = status
        self._body = body
        self.headers = headers or {}
        self.content_type = content_type

    async def json(self):
        return self._body

    async def text(self):
        return self._body or ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Returns scripted responses (or raises scripted errors) in order."""

    def __init__(self, *outcomes):
        self.outcomes = deque(outcomes)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        outcome = self.outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def make_client(session, limiter=None, max_retries=3):
    return RestClient(
        "secret-token",
        limiter or RateLimiter(),
        base_url="https://discord.test/api/v10/",
        session=session,
        backoff=BackoffPolicy(base=0.001, max_delay=0.005, jitter_ratio=0.0),
        max_retries=max_retries,
        request_timeout=1.0,
    )


class TestRoute:
    def test_url_path_quotes_parameters(self):
        route = Route("post", "/interactions/{interaction_id}/{interaction_token}/callback",
                      interaction_id=9, interaction_token="a/b c")

        assert route.method == "POST"
        assert route.url_path == "/interactions/9/a%2Fb%20c/callback"

    def test_bucket_key_uses_major_parameter(self):
        first = Route("PATCH", "/channels/{channel_id}", channel_id=1)
        second = Route("PATCH", "/channels/{channel_id}", channel_id=2)

        assert first.bucket_key == "PATCH /channels/{channel_id}:1"
        assert first.bucket_key != second.bucket_key
        assert Route("GET", "/gateway/bot").bucket_key == "GET /gateway/bot:-"


@pytest.mark.asyncio
class TestRequest:
    async def test_success_returns_json_and_sends_headers(self):
        session = FakeSession(FakeResponse(200, {"id": "5", "name": "general"}))
        rest = make_client(session)

        data = await rest.modify_channel(5, rate_limit_per_user=30, reason="Slowmode set by 7")

        assert data == {"id": "5", "name": "general"}
        sent = session.requests[0]
        assert sent["method"] == "PATCH"
        assert sent["url"] == "https://discord.test/api/v10/channels/5"
        assert sent["json"] == {"rate_limit_per_user": 30}
        assert sent["headers"]["Authorization"] == "Bot secret-token"
        assert sent["headers"]["X-Audit-Log-Reason"] == "Slowmode set by 7"
        assert sent["headers"]["User-Agent"].startswith("DiscordBot")

    async def test_interaction_callback_is_unauthenticated(self):
        session = FakeSession(FakeResponse(204, content_type=""))
        rest = make_client(session)

        result = await rest.create_interaction_response(9, "tok", {"type": 4})

        assert result is None
        assert "Authorization" not in session.requests[0]["headers"]

    async def test_rate_limit_headers_update_route_bucket(self):
        limiter = RateLimiter()
        session = FakeSession(
            FakeResponse(
                200,
                [],
                headers={
                    "X-RateLimit-Limit": "10",
                    "X-RateLimit-Remaining": "4",
                    "X-RateLimit-Reset-After": "2.5",
                },
            )
        )
        rest = make_client(session, limiter=limiter)

        await rest.get_guild_channels(77)

        bucket = limiter.bucket("GET /guilds/{guild_id}/channels:77")
        assert bucket.limit == 10
        assert bucket.remaining == 4

    async def test_idle_route_buckets_evicted_global_kept(self):
        ConfigManager.set_override("http.route_bucket_idle_seconds", 0.0)
        limiter = RateLimiter()
        full_window = {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "5",
            "X-RateLimit-Reset-After": "0",
        }
        session = FakeSession(
            FakeResponse(200, [], headers=full_window),
            FakeResponse(200, [], headers=full_window),
        )
        rest = make_client(session, limiter=limiter)

        await rest.get_guild_channels(1)
        await rest.get_guild_channels(2)

        assert not limiter.has_bucket("GET /guilds/{guild_id}/channels:1")
        assert limiter.has_bucket("GET /guilds/{guild_id}/channels:2")
        assert limiter.has_bucket(GLOBAL_BUCKET)
        assert limiter.metrics.evictions == 1

    async def test_429_blocks_route_bucket_and_retries(self):
        limiter = RateLimiter()
        session = FakeSession(
            FakeResponse(429, {"message": "You are being rate limited.", "retry_after": 0.01, "global": False}),
            FakeResponse(200, {"ok": True}),
        )
        rest = make_client(session, limiter=limiter)

        data = await rest.get_channel(3)

        assert data == {"ok": True}
        assert len(session.requests) == 2
        assert limiter.metrics.blocks == 1

    async def test_global_429_blocks_global_bucket(self, mocker):
        limiter = RateLimiter()
        block = mocker.spy(limiter, "block")
        session = FakeSession(
            FakeResponse(429, {"retry_after": 0.01, "global": True}),
            FakeResponse(200, {}),
        )
        rest = make_client(session, limiter=limiter)

        await rest.get_channel(3)

        block.assert_called_once_with(GLOBAL_BUCKET, 0.01)

    async def test_server_errors_retried_with_backoff(self):
        session = FakeSession(
            FakeResponse(502, "Bad Gateway", content_type="text/plain"),
            FakeResponse(500, None),
            FakeResponse(200, {"url": "wss://gateway.discord.gg"}),
        )
        rest = make_client(session)

        data = await rest.get_gateway_bot()

        assert data == {"url": "wss://gateway.discord.gg"}
        assert len(session.requests) == 3

    async def test_connection_errors_exhaust_retries(self):
        session = FakeSession(*[aiohttp.ClientConnectionError("refused") for _ in range(3)])
        rest = make_client(session, max_retries=2)

        with pytest.raises(NetworkError):
            await rest.get_gateway_bot()

        assert len(session.requests) == 3

    async def test_persistent_server_error_raises_http_exception(self):
        session = FakeSession(FakeResponse(503, None), FakeResponse(503, None))
        rest = make_client(session, max_retries=1)

        with pytest.raises(HTTPException) as excinfo:
            await rest.get_channel(1)

        assert excinfo.value.status == 503

    @pytest.mark.parametrize(
        "status, expected",
        [(403, Forbidden), (404, NotFound), (400, HTTPException)],
    )
    async def test_client_errors_not_retried(self, status, expected):
        session = FakeSession(FakeResponse(status, {"message": "nope", "code": 0}))
        rest = make_client(session)

        with pytest.raises(expected):
            await rest.delete_channel(8)

        assert len(session.requests) == 1

    async def test_unauthorized_is_configuration_error(self):
        session = FakeSession(FakeResponse(401, {"message": "401: Unauthorized"}))
        rest = make_client(session)

        with pytest.raises(ConfigurationError) as excinfo:
            await rest.get_gateway_bot()

        assert excinfo.value.config_key == "DISCORD_TOKEN"


@pytest.mark.asyncio
class TestEndpoints:
    async def test_create_guild_channel_payload(self):
        session = FakeSession(FakeResponse(201, {"id": "900"}))
        rest = make_client(session)

        await rest.create_guild_channel(
            1, name="🔊voice 2", channel_type=2, parent_id=50, user_limit=2, reason="auto"
        )

        assert session.requests[0]["json"] == {
            "name": "🔊voice 2",
            "type": 2,
            "parent_id": "50",
            "user_limit": 2,
        }

    async def test_aclose_leaves_injected_session_open(self):
        session = FakeSession()
        rest = make_client(session)

        await rest.aclose()

        assert session.closed is False

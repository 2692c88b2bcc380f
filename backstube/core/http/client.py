"""
Rate-limited REST client for the Discord HTTP API.

Purpose
-------
Give feature modules and the runtime a small, typed surface over the REST
endpoints they use, without ever exceeding the platform's rate limits.

Responsibilities
----------------
- Acquire the `global` bucket and the route bucket before every request
- Overwrite route buckets from `X-RateLimit-*` response headers
- Honour 429 responses by blocking the route (or global) bucket for
  `retry_after` and retrying
- Retry 5xx and connection failures with exponential backoff
- Map 401 to `ConfigurationError`, 403 to `Forbidden`, 404 to `NotFound`

Configuration Keys
------------------
- http.max_retries                     : int (default 5)
- http.request_timeout_seconds         : float (default 30.0)
- http.global_bucket.limit/period      : 50 per 1s
- http.default_route_bucket.limit/period : 5 per 5s until headers say otherwise
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import aiohttp

from backstube import __version__
from backstube.core.config.config import DEFAULT_API_BASE_URL
from backstube.core.config.manager import ConfigManager
from backstube.core.exceptions import (
    ConfigurationError,
    Forbidden,
    HTTPException,
    NetworkError,
    NotFound,
)
from backstube.core.gateway.backoff import BackoffPolicy
from backstube.core.http.route import Route
from backstube.core.logging.logger import get_logger
from backstube.core.ratelimit.limiter import RateLimiter

logger = get_logger(__name__)

GLOBAL_BUCKET = "global"
USER_AGENT = f"DiscordBot (https://github.com/backstube/backstube, {__version__})"


class RestClient:
    """
    Example
    -------
    >>> rest = RestClient(Config.DISCORD_TOKEN, limiter)
    >>> channels = await rest.get_guild_channels(guild_id)
    >>> await rest.aclose()
    """

    def __init__(
        self,
        token: str,
        limiter: RateLimiter,
        *,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_retries: Optional[int] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self._token = token
        self._limiter = limiter
        self._base_url = (base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._backoff = backoff or BackoffPolicy.from_config()
        self._max_retries = (
            max_retries if max_retries is not None else int(ConfigManager.get("http.max_retries", 5))
        )
        self._request_timeout = (
            request_timeout
            if request_timeout is not None
            else float(ConfigManager.get("http.request_timeout_seconds", 30.0))
        )

        self._limiter.configure(
            GLOBAL_BUCKET,
            limit=int(ConfigManager.get("http.global_bucket.limit", 50)),
            period=float(ConfigManager.get("http.global_bucket.period_seconds", 1.0)),
        )
        self._route_limit = int(ConfigManager.get("http.default_route_bucket.limit", 5))
        self._route_period = float(ConfigManager.get("http.default_route_bucket.period_seconds", 5.0))
        self._bucket_idle_seconds = float(ConfigManager.get("http.route_bucket_idle_seconds", 300.0))
        self._last_sweep = time.monotonic()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Core request
    # ------------------------------------------------------------------

    async def request(
        self,
        route: Route,
        *,
        json: Any = None,
        reason: Optional[str] = None,
        auth: bool = True,
    ) -> Any:
        """
        Perform one API call with rate limiting and retries.

        Raises
        ------
        ConfigurationError
            On 401; the token is invalid.
        Forbidden / NotFound / HTTPException
            On other non-retryable statuses, or when retries are exhausted.
        NetworkError
            When the API cannot be reached after all retries.
        """
        self._sweep_route_buckets()
        bucket_key = route.bucket_key
        if not self._limiter.has_bucket(bucket_key):
            self._limiter.configure(
                bucket_key, self._route_limit, self._route_period, evictable=True
            )

        url = f"{self._base_url}{route.url_path}"
        headers: Dict[str, str] = {"User-Agent": USER_AGENT}
        if auth:
            headers["Authorization"] = f"Bot {self._token}"
        if reason:
            headers["X-Audit-Log-Reason"] = quote(reason, safe="/ ")

        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries + 1):
            await self._limiter.acquire(GLOBAL_BUCKET)
            await self._limiter.acquire(bucket_key)

            try:
                async with self._get_session().request(
                    route.method, url, json=json, headers=headers
                ) as response:
                    self._limiter.update_from_headers(bucket_key, response.headers)
                    data = await self._read_body(response)
                    status = response.status

                    if 200 <= status < 300:
                        return data

                    if status == 429:
                        retry_after = self._retry_after(response.headers, data)
                        is_global = self._is_global(response.headers, data)
                        self._limiter.block(GLOBAL_BUCKET if is_global else bucket_key, retry_after)
                        last_error = HTTPException(status, route.method, route.path, data)
                        logger.warning(
                            "REST rate limited",
                            extra={
                                "route": bucket_key,
                                "retry_after_seconds": retry_after,
                                "global": is_global,
                                "attempt": attempt + 1,
                            },
                        )
                        continue

                    if status >= 500:
                        last_error = HTTPException(status, route.method, route.path, data)
                        await self._sleep_before_retry(route, attempt, last_error)
                        continue

                    raise self._error_for(status, route, data)

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = NetworkError(
                    "REST request failed",
                    details={
                        "route": bucket_key,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                    },
                )
                await self._sleep_before_retry(route, attempt, last_error)

        logger.error(
            "REST request failed after all retries",
            extra={"route": bucket_key, "attempts": self._max_retries + 1},
        )
        assert last_error is not None
        raise last_error

    def _sweep_route_buckets(self) -> None:
        now = time.monotonic()
        if now - self._last_sweep < self._bucket_idle_seconds:
            return
        self._last_sweep = now
        self._limiter.evict_idle(self._bucket_idle_seconds)

    async def _sleep_before_retry(self, route: Route, attempt: int, error: Exception) -> None:
        if attempt >= self._max_retries:
            return
        delay = self._backoff.delay(attempt)
        logger.warning(
            "REST request failed, retrying",
            extra={
                "route": route.bucket_key,
                "attempt": attempt + 1,
                "error": str(error),
                "retry_delay_seconds": round(delay, 3),
            },
        )
        await asyncio.sleep(delay)

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        if response.status == 204:
            return None
        if response.content_type == "application/json":
            return await response.json()
        text = await response.text()
        return text or None

    @staticmethod
    def _retry_after(headers: Mapping[str, str], data: Any) -> float:
        if isinstance(data, dict) and isinstance(data.get("retry_after"), (int, float)):
            return float(data["retry_after"])
        raw = headers.get("Retry-After") or headers.get("X-RateLimit-Reset-After")
        try:
            return float(raw) if raw is not None else 1.0
        except ValueError:
            return 1.0

    @staticmethod
    def _is_global(headers: Mapping[str, str], data: Any) -> bool:
        if isinstance(data, dict) and data.get("global"):
            return True
        return str(headers.get("X-RateLimit-Global", "")).lower() == "true"

    @staticmethod
    def _error_for(status: int, route: Route, data: Any) -> Exception:
        if status == 401:
            return ConfigurationError("DISCORD_TOKEN", "REST API rejected the bot token (401)")
        if status == 403:
            return Forbidden(status, route.method, route.path, data)
        if status == 404:
            return NotFound(status, route.method, route.path, data)
        return HTTPException(status, route.method, route.path, data)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_gateway_bot(self) -> Dict[str, Any]:
        return await self.request(Route("GET", "/gateway/bot"))

    async def get_channel(self, channel_id: int) -> Dict[str, Any]:
        return await self.request(Route("GET", "/channels/{channel_id}", channel_id=channel_id))

    async def get_guild_channels(self, guild_id: int) -> List[Dict[str, Any]]:
        return await self.request(Route("GET", "/guilds/{guild_id}/channels", guild_id=guild_id))

    async def create_guild_channel(
        self,
        guild_id: int,
        *,
        name: str,
        channel_type: int,
        parent_id: Optional[int] = None,
        user_limit: Optional[int] = None,
        position: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": name, "type": channel_type}
        if parent_id is not None:
            payload["parent_id"] = str(parent_id)
        if user_limit is not None:
            payload["user_limit"] = user_limit
        if position is not None:
            payload["position"] = position
        return await self.request(
            Route("POST", "/guilds/{guild_id}/channels", guild_id=guild_id),
            json=payload,
            reason=reason,
        )

    async def modify_channel(
        self, channel_id: int, *, reason: Optional[str] = None, **fields: Any
    ) -> Dict[str, Any]:
        return await self.request(
            Route("PATCH", "/channels/{channel_id}", channel_id=channel_id),
            json=fields,
            reason=reason,
        )

    async def delete_channel(self, channel_id: int, *, reason: Optional[str] = None) -> Any:
        return await self.request(
            Route("DELETE", "/channels/{channel_id}", channel_id=channel_id),
            reason=reason,
        )

    async def modify_guild_channel_positions(
        self, guild_id: int, positions: List[Dict[str, Any]], *, reason: Optional[str] = None
    ) -> None:
        await self.request(
            Route("PATCH", "/guilds/{guild_id}/channels", guild_id=guild_id),
            json=positions,
            reason=reason,
        )

    async def create_interaction_response(
        self, interaction_id: int, interaction_token: str, payload: Dict[str, Any]
    ) -> None:
        await self.request(
            Route(
                "POST",
                "/interactions/{interaction_id}/{interaction_token}/callback",
                interaction_id=interaction_id,
                interaction_token=interaction_token,
            ),
            json=payload,
            auth=False,
        )

    async def bulk_overwrite_global_commands(
        self, application_id: int, commands: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        return await self.request(
            Route("PUT", "/applications/{application_id}/commands", application_id=application_id),
            json=commands,
        )

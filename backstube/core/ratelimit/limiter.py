"""
In-process rate limiter for Backstube Bot.

Purpose
-------
Serialise outbound requests so the client never exceeds the platform's
rate limits, on both the gateway (sends, identifies) and the REST API
(global and per-route buckets).

Responsibilities
----------------
- `acquire(key)`: suspend until the bucket has budget, then consume one unit
- `update(...)` / `update_from_headers(...)`: overwrite a bucket with the
  server's view and wake its waiter
- `block(key, retry_after)`: zero a bucket after a 429
- `reset(key)`: restore a fresh bucket (used per gateway connection)

Design Decisions
----------------
- One `asyncio.Lock` per bucket. The lock is held while waiting for budget,
  so waiters are granted strictly in arrival order.
- The lock holder waits on the bucket's `changed` event with a timeout equal
  to the time left in the window; server updates set the event so a waiter
  never sleeps on stale information.
- Local accounting never drives `remaining` below zero; server updates are
  clamped the same way.
- Unknown keys are created lazily from defaults so route buckets need no
  pre-registration.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from backstube.core.logging.logger import get_logger
from backstube.core.ratelimit.bucket import Permit, RateBucket

logger = get_logger(__name__)


@dataclass(slots=True)
class RateLimiterMetrics:
    acquires: int = 0
    waits: int = 0
    total_wait_seconds: float = 0.0
    server_updates: int = 0
    blocks: int = 0
    evictions: int = 0


class RateLimiter:
    """
    Token-style buckets keyed by request category.

    Example
    -------
    >>> limiter = RateLimiter()
    >>> limiter.configure("gateway.identify", limit=1, period=5.0)
    >>> permit = await limiter.acquire("gateway.identify")
    """

    def __init__(
        self,
        default_limit: int = 5,
        default_period: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._buckets: Dict[str, RateBucket] = {}
        self._default_limit = default_limit
        self._default_period = default_period
        self._clock = clock
        self.metrics = RateLimiterMetrics()

    # ------------------------------------------------------------------
    # Bucket management
    # ------------------------------------------------------------------

    def configure(
        self, key: str, limit: int, period: float, *, evictable: bool = False
    ) -> RateBucket:
        """
        Create or replace the shape of bucket `key`, keeping its waiters.

        `evictable` buckets may be dropped by `evict_idle()`.
        """
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateBucket(key=key, limit=limit, period=period, evictable=evictable)
            self._buckets[key] = bucket
        else:
            bucket.limit = limit
            bucket.period = period
            bucket.remaining = min(bucket.remaining, limit)
            bucket.evictable = evictable
            bucket.notify()
        bucket.last_used = self._clock()
        return bucket

    def bucket(self, key: str) -> RateBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = RateBucket(
                key=key, limit=self._default_limit, period=self._default_period
            )
            self._buckets[key] = bucket
        return bucket

    def has_bucket(self, key: str) -> bool:
        return key in self._buckets

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(self, key: str) -> Permit:
        """
        Wait until bucket `key` has budget, then consume one unit.

        Cancellation while waiting leaves the bucket untouched.
        """
        bucket = self.bucket(key)
        started = self._clock()
        bucket.last_used = started
        waited = False

        async with bucket.lock:
            while True:
                now = self._clock()
                if now >= bucket.reset_at:
                    bucket.refill(now)

                if bucket.remaining > 0:
                    bucket.remaining -= 1
                    self.metrics.acquires += 1
                    bucket.last_used = self._clock()
                    waited_seconds = bucket.last_used - started
                    if waited:
                        self.metrics.total_wait_seconds += waited_seconds
                    return Permit(
                        key=key,
                        remaining=bucket.remaining,
                        reset_at=bucket.reset_at,
                        waited_seconds=waited_seconds,
                    )

                if not waited:
                    waited = True
                    self.metrics.waits += 1
                    logger.debug(
                        "Rate bucket exhausted; waiting",
                        extra={
                            "bucket": key,
                            "retry_in_seconds": round(bucket.seconds_until_reset(now), 3),
                        },
                    )

                bucket.changed.clear()
                try:
                    await asyncio.wait_for(
                        bucket.changed.wait(),
                        timeout=bucket.seconds_until_reset(now),
                    )
                except asyncio.TimeoutError:
                    pass

    # ------------------------------------------------------------------
    # Server truth
    # ------------------------------------------------------------------

    def update(
        self,
        key: str,
        *,
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
        reset_after: Optional[float] = None,
    ) -> RateBucket:
        """Overwrite bucket `key` with server-reported values."""
        bucket = self.bucket(key)
        if limit is not None and limit > 0:
            bucket.limit = limit
        if remaining is not None:
            bucket.remaining = max(0, min(remaining, bucket.limit))
        if reset_after is not None:
            bucket.reset_at = self._clock() + max(0.0, reset_after)
        self.metrics.server_updates += 1
        bucket.notify()
        return bucket

    def update_from_headers(self, key: str, headers: Mapping[str, str]) -> bool:
        """
        Apply Discord's `X-RateLimit-*` headers to bucket `key`.

        Returns False when the response carried no rate limit headers.
        """
        raw_limit = headers.get("X-RateLimit-Limit")
        raw_remaining = headers.get("X-RateLimit-Remaining")
        raw_reset_after = headers.get("X-RateLimit-Reset-After")

        if raw_remaining is None and raw_reset_after is None:
            return False

        try:
            limit = int(raw_limit) if raw_limit is not None else None
            remaining = int(raw_remaining) if raw_remaining is not None else None
            reset_after = float(raw_reset_after) if raw_reset_after is not None else None
        except ValueError:
            logger.warning(
                "Ignoring malformed rate limit headers",
                extra={
                    "bucket": key,
                    "limit": raw_limit,
                    "remaining": raw_remaining,
                    "reset_after": raw_reset_after,
                },
            )
            return False

        self.update(key, limit=limit, remaining=remaining, reset_after=reset_after)
        return True

    def block(self, key: str, retry_after: float) -> None:
        """Drain bucket `key` until `retry_after` seconds from now."""
        bucket = self.bucket(key)
        bucket.remaining = 0
        bucket.reset_at = self._clock() + max(0.0, retry_after)
        self.metrics.blocks += 1
        bucket.notify()
        logger.warning(
            "Rate bucket blocked by server",
            extra={"bucket": key, "retry_after_seconds": retry_after},
        )

    def evict_idle(self, idle_seconds: float) -> int:
        """Drop evictable buckets that are idle and full; returns how many."""
        now = self._clock()
        stale = [
            key
            for key, bucket in self._buckets.items()
            if bucket.evictable and bucket.is_idle(now, idle_seconds)
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            self.metrics.evictions += len(stale)
            logger.debug("Evicted idle rate buckets", extra={"count": len(stale)})
        return len(stale)

    def reset(self, key: str) -> None:
        """Restore full budget; the next window opens on first use."""
        bucket = self.bucket(key)
        bucket.remaining = bucket.limit
        bucket.reset_at = 0.0
        bucket.notify()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        now = self._clock()
        return {
            key: {
                "limit": bucket.limit,
                "remaining": bucket.remaining,
                "reset_in_seconds": round(bucket.seconds_until_reset(now), 3),
                "locked": bucket.lock.locked(),
            }
            for key, bucket in self._buckets.items()
        }

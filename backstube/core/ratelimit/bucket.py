"""
Rate bucket state.

A bucket is keyed by request category (`"gateway.send"`, `"global"`,
`"PATCH /channels/{channel_id}:123"`) and tracks how many requests may still
be issued before `reset_at`. All fields are mutated by `RateLimiter`, either
while holding `lock` or in a synchronous section with no await.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field


@dataclass(slots=True)
class RateBucket:
    key: str
    limit: int
    period: float
    remaining: int = 0
    reset_at: float = 0.0
    evictable: bool = False
    last_used: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"bucket {self.key!r} limit must be >= 1, got {self.limit}")
        if self.period <= 0:
            raise ValueError(f"bucket {self.key!r} period must be > 0, got {self.period}")
        # reset_at == 0 means the window opens on first use
        self.remaining = self.limit

    def refill(self, now: float) -> None:
        self.remaining = self.limit
        self.reset_at = now + self.period

    def seconds_until_reset(self, now: float) -> float:
        return max(0.0, self.reset_at - now)

    def is_idle(self, now: float, idle_seconds: float) -> bool:
        """Unlocked, unused for `idle_seconds` and back to a full window."""
        if self.lock.locked() or now - self.last_used < idle_seconds:
            return False
        return self.remaining >= self.limit or now >= self.reset_at

    def notify(self) -> None:
        """Wake the task waiting on this bucket so it re-evaluates."""
        self.changed.set()


@dataclass(frozen=True, slots=True)
class Permit:
    """Proof that one request may proceed now."""

    key: str
    remaining: int
    reset_at: float
    waited_seconds: float = 0.0

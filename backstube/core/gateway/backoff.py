"""
Exponential backoff for gateway reconnects and REST retries.

delay(attempt) = min(max_delay, base * 2**attempt), then +/- jitter_ratio,
clamped to [0, max_delay]. With the defaults (base 1s, cap 60s) attempts
0..6 give 1, 2, 4, 8, 16, 32, 60 seconds before jitter.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable

from backstube.core.config.manager import ConfigManager


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base: float = 1.0
    max_delay: float = 60.0
    jitter_ratio: float = 0.1
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("backoff base must be > 0")
        if self.max_delay < self.base:
            raise ValueError("backoff max_delay must be >= base")
        if not 0.0 <= self.jitter_ratio < 1.0:
            raise ValueError("backoff jitter_ratio must be in [0, 1)")

    def compute(self, attempt: int) -> float:
        """Deterministic delay for `attempt` (0-indexed), before jitter."""
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Avoid float overflow on very long outages
        if attempt >= 64:
            return self.max_delay
        return min(self.max_delay, self.base * (2 ** attempt))

    def delay(self, attempt: int) -> float:
        delay = self.compute(attempt)
        if self.jitter_ratio:
            jitter_amount = delay * self.jitter_ratio
            delay += self.rng(-jitter_amount, jitter_amount)
        return min(self.max_delay, max(0.0, delay))

    @classmethod
    def from_config(cls, prefix: str = "gateway.backoff") -> "BackoffPolicy":
        return cls(
            base=float(ConfigManager.get(f"{prefix}.base_seconds", 1.0)),
            max_delay=float(ConfigManager.get(f"{prefix}.max_seconds", 60.0)),
            jitter_ratio=float(ConfigManager.get(f"{prefix}.jitter_ratio", 0.1)),
        )

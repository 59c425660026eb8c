"""Sliding-window rate limiter backed by the key-value store."""
from __future__ import annotations

import math
from dataclasses import dataclass

from .clock import Clock
from .kvstore import KeyValueStore


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    count: int = 0


class RateLimiter:
    """Tracks attempts per key (IP, IP+user, MFA config) to prevent brute force attacks.

    ``hit`` records the attempt and evaluates the limit in one atomic store
    call, so concurrent requests cannot slip past the threshold together.
    """

    def __init__(self, kv: KeyValueStore, clock: Clock, prefix: str = "ratelimit") -> None:
        self.kv = kv
        self.clock = clock
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self.clock.now().timestamp()
        count, oldest = await self.kv.window_hit(self._key(key), now, window_seconds)
        if count > limit:
            return RateLimitDecision(False, self._retry_after(oldest, now, window_seconds), count)
        return RateLimitDecision(True, 0, count)

    async def check(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self.clock.now().timestamp()
        count, oldest = await self.kv.window_count(self._key(key), now, window_seconds)
        if count >= limit and oldest is not None:
            return RateLimitDecision(False, self._retry_after(oldest, now, window_seconds), count)
        return RateLimitDecision(True, 0, count)

    @staticmethod
    def _retry_after(oldest: float, now: float, window_seconds: int) -> int:
        return max(1, math.ceil(oldest + window_seconds - now))

"""Rate limiting behind an injectable interface."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds


class RateLimiter(ABC):
    """Counts requests per key. Swap for a shared-store implementation when scaling out."""

    @abstractmethod
    async def check(self, key: str) -> RateLimitResult:
        ...

    @property
    @abstractmethod
    def limit(self) -> int:
        ...


class InMemoryRateLimiter(RateLimiter):
    """Fixed-window counter held in process memory."""

    def __init__(
        self,
        limit: int,
        interval_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self._limit = limit
        self._interval = interval_seconds
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    async def check(self, key: str) -> RateLimitResult:
        now = self._clock()
        self._evict(now)

        count, reset_at = self._windows.get(key, (0, now + self._interval))
        count += 1
        self._windows[key] = (count, reset_at)

        if count > self._limit:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)
        return RateLimitResult(allowed=True, remaining=self._limit - count, reset_at=reset_at)

    def _evict(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._windows.items() if reset_at <= now]
        for k in expired:
            del self._windows[k]

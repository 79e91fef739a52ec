"""Tests for the in-memory rate limiter."""

from shopchat.core.rate_limit import InMemoryRateLimiter


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def test_allows_up_to_limit_then_blocks():
    limiter = InMemoryRateLimiter(limit=2, interval_seconds=60, clock=Clock())

    first = await limiter.check("1.2.3.4")
    second = await limiter.check("1.2.3.4")
    third = await limiter.check("1.2.3.4")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert (third.allowed, third.remaining) == (False, 0)
    assert third.reset_at == 160.0


async def test_window_resets():
    clock = Clock()
    limiter = InMemoryRateLimiter(limit=1, interval_seconds=10, clock=clock)
    await limiter.check("k")
    assert not (await limiter.check("k")).allowed

    clock.now += 10
    assert (await limiter.check("k")).allowed


async def test_keys_are_independent():
    limiter = InMemoryRateLimiter(limit=1, interval_seconds=60, clock=Clock())
    await limiter.check("a")
    assert (await limiter.check("b")).allowed
    assert limiter.limit == 1

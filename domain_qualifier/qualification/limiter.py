"""
Bounded concurrency for the qualification pipeline.

A ConcurrencyLimiter is an asyncio.Semaphore that also counts in-flight
and peak work. Limiters nest: work acquires a domain slot, then a
stage slot (ranking provider or model).
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Usage:
        limiter = ConcurrencyLimiter("ranking", 25)
        result = await limiter.run(fetch_one, domain)

        async with limiter:
            ...
    """

    def __init__(self, name: str, limit: int):
        if limit < 1:
            raise ValueError(f"{name} limit must be >= 1, got {limit}")
        self.name = name
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.active = 0
        self.peak = 0

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self._semaphore.acquire()
        self.active += 1
        self.peak = max(self.peak, self.active)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.active -= 1
        self._semaphore.release()

    async def run(self, fn: Callable[..., Awaitable[T]], *args) -> T:
        async with self:
            return await fn(*args)

    def within(self, outer: "ConcurrencyLimiter") -> "NestedLimiter":
        """This limiter's slot acquired inside a slot of `outer`."""
        return NestedLimiter(outer, self)

    def __repr__(self) -> str:
        return f"ConcurrencyLimiter({self.name!r}, limit={self.limit}, active={self.active})"


class NestedLimiter:
    """Acquires the outer limiter, then the inner one."""

    def __init__(self, outer: ConcurrencyLimiter, inner: ConcurrencyLimiter):
        self.outer = outer
        self.inner = inner

    async def run(self, fn: Callable[..., Awaitable[T]], *args) -> T:
        async with self.outer:
            async with self.inner:
                return await fn(*args)

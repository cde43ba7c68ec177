"""
Bandwidth limiting for response bodies and intercepted tunnels.

All streams throttled by the same group share one token bucket, so the
configured rate is an aggregate limit across connections.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterable
from collections.abc import AsyncIterator

from tapproxy import exceptions
from tapproxy.utils import human

logger = logging.getLogger(__name__)


class ThrottleGroup:
    def __init__(self, rate: int):
        """
        Args:
            rate: bytes per second, also the maximum burst size.
        """
        if rate < 1:
            raise exceptions.OptionsError(f"Invalid throttle rate: {rate}")
        self.rate = rate
        self.capacity = rate
        self.tokens = float(rate)
        self.last_update = time.monotonic()
        self.lock = asyncio.Lock()

    @classmethod
    def from_kbps(cls, kbps: int) -> ThrottleGroup:
        if kbps < 1:
            raise exceptions.OptionsError(
                f"Invalid throttle value {kbps}, must be a positive integer."
            )
        return cls(kbps * 1024)

    def __repr__(self):
        return f"ThrottleGroup({human.pretty_size(self.rate)}/s)"

    async def consume(self, n: int) -> None:
        """
        Wait until n bytes may be sent. n must not exceed the capacity.
        """
        async with self.lock:
            while True:
                now = time.monotonic()
                self.tokens = min(
                    self.capacity, self.tokens + (now - self.last_update) * self.rate
                )
                self.last_update = now
                if self.tokens >= n:
                    self.tokens -= n
                    return
                await asyncio.sleep((n - self.tokens) / self.rate)

    async def throttle(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """
        Re-emit chunks at the group's rate, splitting those larger than the bucket.
        """
        async for chunk in chunks:
            for i in range(0, len(chunk), self.capacity):
                part = chunk[i : i + self.capacity]
                await self.consume(len(part))
                yield part

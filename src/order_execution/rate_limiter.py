"""
Sliding-window rate limiter shared by all workers

At most ``max_events`` acquisitions within any ``window_seconds`` span.
A caller over the budget waits until the oldest acquisition leaves the
window rather than being rejected.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque


class SlidingWindowRateLimiter:

    def __init__(self, max_events: int = 100, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._events: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self.total_waits = 0

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now"""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_events:
            self._events.append(now)
            return True
        return False

    async def acquire(self) -> None:
        """Wait for a free slot in the window, then take it"""
        # Serialized so waiters are served in arrival order
        async with self._lock:
            while not self.try_acquire():
                self.total_waits += 1
                wait = self._events[0] + self.window_seconds - self._clock()
                await self._sleep(max(wait, 0.001))

    def release(self) -> None:
        """Give back the most recent slot when the start it was taken for did not happen"""
        if self._events:
            self._events.pop()

    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._events)

"""
Timing primitives for the merge pipeline

Backoff math is kept in pure functions and all waiting goes through an
injectable Clock, so the poller and auto-fix loop can be exercised against
simulated time. Cancellation is cooperative: a CancellationToken interrupts
sleeps, it never kills running work.
"""

import asyncio
import random
import time
from typing import Optional, Protocol

from .errors import MergeCancelled


def next_interval(current: float, factor: float = 1.5, cap: float = 120.0) -> float:
    """Grow a poll interval geometrically, never beyond the cap."""
    return min(current * factor, cap)


def jittered(
    interval: float, jitter: float = 0.2, rng: Optional[random.Random] = None
) -> float:
    """Spread an interval uniformly over interval * [1 - jitter, 1 + jitter]."""
    if jitter <= 0:
        return interval
    source = rng or random
    return interval * source.uniform(1.0 - jitter, 1.0 + jitter)


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by asyncio"""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class CancellationToken:
    """Cooperative cancellation shared between a merge attempt and its caller"""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise MergeCancelled(f"merge cancelled: {self.reason}")

    async def sleep(self, clock: Clock, seconds: float) -> None:
        """Sleep on the clock, returning early (and raising) if cancelled."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        sleeper = asyncio.ensure_future(clock.sleep(seconds))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        self.raise_if_cancelled()


async def wait(clock: Clock, seconds: float, token: Optional[CancellationToken]) -> None:
    """Sleep through the token when one is given, otherwise straight on the clock."""
    if token is None:
        await clock.sleep(seconds)
    else:
        await token.sleep(clock, seconds)

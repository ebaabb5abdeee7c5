"""
Clock abstraction.

Components take a clock instead of calling time/asyncio.sleep directly so
tests can run backoff delays, TTLs and inter-execution waits instantly.
"""

import asyncio
import time
from datetime import datetime


class Clock:
    """Real wall clock backed by the running event loop."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        """Local wall-clock datetime derived from time()."""
        return datetime.fromtimestamp(self.time())

    async def sleep(self, seconds: float):
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)


class ManualClock(Clock):
    """
    Virtual clock: sleep() advances time immediately.

    Used by tests and dry runs. Every requested sleep is recorded in
    `sleeps` so callers can assert on delay behaviour.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._mono = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float):
        self._now += seconds
        self._mono += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        if seconds > 0:
            self.advance(seconds)
        # Still yield so interleaved tasks make progress
        await asyncio.sleep(0)


_default_clock = Clock()


def get_clock() -> Clock:
    """Get the process-wide real clock."""
    return _default_clock

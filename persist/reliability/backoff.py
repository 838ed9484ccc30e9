"""
Load Backoff: Fixed Schedule Between Conflicting Load Attempts

A server waiting on another server's lock retries on a fixed schedule
rather than exponential growth: the holder is expected to notice the
release request on its next save (autosave runs every 30s), so waits
ramp up to that interval and stay there.

    attempt:  0  1  2   3   4   5   6   7 ...
    delay:    6  8  10  12  24  30  30  30 ...

There is no attempt limit here; Store applies the optional cap.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Sequence

from persist.core.constants import LOAD_RETRY_DELAYS_S

Sleep = Callable[[float], Awaitable[None]]


class LoadBackoff:
    """
    Backoff schedule with injectable sleep.

    Usage:
        backoff = LoadBackoff()
        delay = await backoff.wait(attempt)
    """

    __slots__ = ("_delays", "_sleep")

    def __init__(
        self,
        delays: Sequence[float] = LOAD_RETRY_DELAYS_S,
        sleep: Optional[Sleep] = None,
    ) -> None:
        if not delays:
            raise ValueError("Backoff schedule must not be empty")
        self._delays = tuple(delays)
        self._sleep = sleep or asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number attempt (0-based), clamped to the last entry."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        return self._delays[min(attempt, len(self._delays) - 1)]

    async def wait(self, attempt: int) -> float:
        """Sleep for delay_for(attempt) and return the delay."""
        delay = self.delay_for(attempt)
        await self._sleep(delay)
        return delay

    @property
    def delays(self) -> tuple[float, ...]:
        return self._delays

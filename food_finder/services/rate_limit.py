"""Coordinated async rate limiter for upstream requests."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Minimum-interval gate shared by every caller of one client.

    Uses an asyncio.Lock + last-issue timestamp so concurrent tasks are
    spaced at least ``min_interval`` seconds apart. ``clock`` and ``sleep``
    can be swapped for fakes in tests.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last_issue: Optional[float] = None

    @property
    def last_issue(self) -> Optional[float]:
        return self._last_issue

    async def wait(self) -> None:
        """Wait until at least ``min_interval`` seconds since the last issued request."""
        async with self._lock:
            if self._last_issue is not None:
                elapsed = self._clock() - self._last_issue
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last_issue = self._clock()

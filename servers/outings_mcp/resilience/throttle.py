"""Minimum-spacing throttle shared by every caller of one upstream."""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger()


class MinIntervalThrottle:
    """Gate that lets callers through at most once per ``interval`` seconds.

    Callers queue on a lock and wait their turn; they never fail. One
    instance is shared between ingestion and search for the geocoder, and
    one per upstream host for feed politeness.
    """

    def __init__(
        self,
        interval: float,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        name: str = "throttle",
    ):
        self.interval = interval
        self.name = name
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> float:
        """Block until the caller may proceed. Returns the time waited."""
        async with self._lock:
            waited = 0.0
            if self._last is not None:
                remaining = self.interval - (self._clock() - self._last)
                if remaining > 0:
                    logger.debug("throttle_wait", throttle=self.name, delay=round(remaining, 3))
                    await self._sleep(remaining)
                    waited = remaining
            self._last = self._clock()
            return waited

    async def __aenter__(self) -> "MinIntervalThrottle":
        await self.wait()
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


class HostThrottles:
    """One MinIntervalThrottle per upstream host, created on first use."""

    def __init__(
        self,
        interval: float,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._throttles: dict[str, MinIntervalThrottle] = {}

    def for_host(self, host: str) -> MinIntervalThrottle:
        key = (host or "").lower()
        if key not in self._throttles:
            self._throttles[key] = MinIntervalThrottle(
                self.interval, clock=self._clock, sleep=self._sleep, name=key
            )
        return self._throttles[key]

"""Inbound request rate limiting, injected into the server."""

import time
from typing import Callable, Optional

import structlog

from ..errors import RateLimitedError

logger = structlog.get_logger()


class RequestRateLimiter:
    """Fixed-window counter per client key.

    Each key gets ``limit`` requests per ``window`` seconds. State lives on
    the instance, so each server (and each test) owns its own limiter.
    """

    def __init__(
        self,
        limit: int = 10,
        window: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if limit < 1 or window <= 0:
            raise ValueError("limit must be >= 1 and window > 0")
        self.limit = limit
        self.window = window
        self._clock = clock or time.monotonic
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_prune = self._clock()

    def hit(self, key: str) -> bool:
        """Count one request for ``key``. False when over budget.

        Expired windows are swept at most once per window length.
        """
        now = self._clock()
        if now - self._last_prune >= self.window:
            self.prune()
            self._last_prune = now
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window:
            started, count = now, 0
        if count >= self.limit:
            self._windows[key] = (started, count)
            return False
        self._windows[key] = (started, count + 1)
        return True

    def retry_after(self, key: str) -> float:
        started, _ = self._windows.get(key, (self._clock(), 0))
        return max(0.0, self.window - (self._clock() - started))

    def check(self, key: str) -> None:
        """Raise RateLimitedError when ``key`` is over budget."""
        if not self.hit(key):
            retry_after = self.retry_after(key)
            logger.warning("rate_limited", client=key, retry_after=round(retry_after, 1))
            raise RateLimitedError(retry_after)

    def prune(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, (started, _) in self._windows.items() if now - started >= self.window]
        for k in expired:
            del self._windows[k]
        return len(expired)

"""Fixed-window token bucket keyed by peer, used to throttle connection attempts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

_LOGGER = logging.getLogger(__name__)


@dataclass
class _Bucket:
    tokens: int
    last_reset: float


class RateLimiter:
    """Allow at most ``rate`` attempts per ``window`` seconds for each key.

    Buckets idle for two windows are dropped; cleanup runs at most once per
    window, piggybacked on ``allow``.
    """

    def __init__(
        self,
        rate: int,
        window: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0 or window <= 0:
            raise ValueError("rate and window must be positive")
        self._rate = rate
        self._window = window
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._last_cleanup = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def allow(self, key: str) -> bool:
        now = self._clock()
        if now - self._last_cleanup >= self._window:
            self.cleanup(now)

        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket(tokens=self._rate, last_reset=now)
        elif now - bucket.last_reset >= self._window:
            bucket.tokens = self._rate
            bucket.last_reset = now

        if bucket.tokens > 0:
            bucket.tokens -= 1
            return True
        _LOGGER.warning("Rate limit exceeded for %s", key)
        return False

    def cleanup(self, now: float | None = None) -> int:
        """Drop idle buckets. Returns how many were removed."""
        now = self._clock() if now is None else now
        self._last_cleanup = now
        expired = [
            key
            for key, bucket in self._buckets.items()
            if now - bucket.last_reset > self._window * 2
        ]
        for key in expired:
            del self._buckets[key]
        return len(expired)

"""Fail-fast token bucket used to gate outbound fetches."""

from __future__ import annotations

import math
import threading
import time
from typing import Callable

import structlog

from .exceptions import RateLimitExceeded

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Token bucket without waiting.

    Tokens are refilled lazily from a monotonic clock each time
    :meth:`acquire` is called: ``floor(elapsed * refill_rate)`` tokens are
    added, capped at ``capacity``. An empty bucket raises
    :class:`RateLimitExceeded` immediately; callers drop the request instead of
    retrying it.
    """

    def __init__(
        self,
        capacity: int = 60,
        refill_rate: float = 1.0,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_rate < 0:
            raise ValueError("refill_rate must not be negative")
        self.capacity = int(capacity)
        self.refill_rate = float(refill_rate)
        self.enabled = enabled
        self._clock = clock
        self._tokens = self.capacity
        self._last_refill = clock()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        return cls(
            settings.bucket_capacity,
            settings.refill_rate,
            enabled=settings.enabled,
        )

    @property
    def tokens(self) -> int:
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        to_add = math.floor((now - self._last_refill) * self.refill_rate)
        if to_add > 0:
            self._tokens = min(self.capacity, self._tokens + to_add)
            self._last_refill = now
            logger.debug("rate_limiter_refilled", added=to_add, tokens=self._tokens)

    def acquire(self) -> None:
        """Consume one token or raise :class:`RateLimitExceeded`."""

        if not self.enabled:
            return
        with self._lock:
            self._refill()
            if self._tokens > 0:
                self._tokens -= 1
                return
        logger.warning("rate_limit_exceeded", capacity=self.capacity, refill_rate=self.refill_rate)
        raise RateLimitExceeded("Rate limit exceeded")


__all__ = ["RateLimiter"]

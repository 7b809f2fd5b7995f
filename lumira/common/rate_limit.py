"""In-process token bucket for public, unauthenticated endpoints."""

import threading
import time
from typing import Callable

from lumira.common.errors import RateLimitError


class TokenBucketLimiter:
    """Token bucket per client key (capacity = refill rate = limit per minute).

    Buckets idle for `idle_ttl_seconds` are dropped; an idle bucket has
    refilled to capacity, so forgetting it changes no decision.
    """

    def __init__(
        self,
        limit_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        idle_ttl_seconds: float = 120.0,
    ) -> None:
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.idle_ttl_seconds = max(idle_ttl_seconds, 60.0)
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now: float) -> None:
        cutoff = now - self.idle_ttl_seconds
        for key in [key for key, (_, updated_at) in self._buckets.items() if updated_at <= cutoff]:
            del self._buckets[key]
        self._last_sweep = now

    def enforce(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.idle_ttl_seconds:
                self._sweep(now)
            tokens, updated_at = self._buckets.get(key, (self.capacity, now))
            elapsed = max(0.0, now - updated_at)
            tokens = min(self.capacity, tokens + elapsed * self.refill_per_sec)
            if tokens < 1.0:
                self._buckets[key] = (tokens, now)
                retry_after = int((1.0 - tokens) / self.refill_per_sec) + 1
                raise RateLimitError(retry_after=retry_after)
            self._buckets[key] = (tokens - 1.0, now)

"""In-memory sliding window rate limiter.

Per-process only: with several workers each one enforces its own limit.
Use ``SqliteRateLimiter`` when workers must share a budget.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable

from src.ratelimit.base import RateLimiter, epoch_millis


class SlidingWindowRateLimiter(RateLimiter):
    """Sliding window rate limiter per identifier.

    Default: 100 requests per 60 000 ms per identifier.

    Eviction: every ``sweep_interval`` checks, identifiers whose newest
    request has left the window are dropped. The map never holds more than
    ``max_identifiers`` entries; the least recently seen identifier goes
    first.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_ms: int = 60_000,
        clock: Callable[[], float] = epoch_millis,
        max_identifiers: int = 10_000,
        sweep_interval: int = 1_000,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        if max_identifiers < 1:
            raise ValueError("max_identifiers must be >= 1")
        self._max_requests = max_requests
        self._window_ms = window_ms
        self._clock = clock
        self._max_identifiers = max_identifiers
        self._sweep_interval = sweep_interval
        self._requests: OrderedDict[str, list[float]] = OrderedDict()
        self._checks_since_sweep = 0
        self._lock = threading.Lock()

    def check_limit(self, identifier: str) -> bool:
        """Return True if the request is within the limit for ``identifier``."""
        now = self._clock()
        with self._lock:
            self._maybe_sweep(now)
            timestamps = [
                t for t in self._requests.get(identifier, ()) if now - t < self._window_ms
            ]

            if len(timestamps) >= self._max_requests:
                self._requests[identifier] = timestamps
                self._requests.move_to_end(identifier)
                return False

            timestamps.append(now)
            self._requests[identifier] = timestamps
            self._requests.move_to_end(identifier)
            while len(self._requests) > self._max_identifiers:
                self._requests.popitem(last=False)
            return True

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._requests.pop(identifier, None)

    def tracked_identifiers(self) -> int:
        with self._lock:
            return len(self._requests)

    def _maybe_sweep(self, now: float) -> None:
        self._checks_since_sweep += 1
        if self._checks_since_sweep < self._sweep_interval:
            return
        self._checks_since_sweep = 0
        stale = [
            key for key, timestamps in self._requests.items()
            if not timestamps or now - timestamps[-1] >= self._window_ms
        ]
        for key in stale:
            del self._requests[key]

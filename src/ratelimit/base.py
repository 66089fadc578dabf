"""Rate limiter contract shared by the in-memory and SQLite backends."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod


def epoch_millis() -> float:
    """Default limiter clock: wall-clock time in milliseconds."""
    return time.time() * 1000


class RateLimiter(ABC):
    """Sliding-window limiter keyed by a client identifier.

    A denied check does not record the request, so a client that keeps
    retrying regains capacity as soon as its oldest allowed request leaves
    the window.
    """

    @abstractmethod
    def check_limit(self, identifier: str) -> bool:
        """Record a request for ``identifier`` and return True if allowed."""

    @abstractmethod
    def reset(self, identifier: str) -> None:
        """Forget all recorded requests for ``identifier``."""

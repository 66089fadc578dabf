"""Request rate limiting backends."""

from src.ratelimit.base import RateLimiter
from src.ratelimit.memory import SlidingWindowRateLimiter
from src.ratelimit.sqlite import SqliteRateLimiter

__all__ = [
    "RateLimiter",
    "SlidingWindowRateLimiter",
    "SqliteRateLimiter",
]

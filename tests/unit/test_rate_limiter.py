"""Tests for the in-memory sliding window rate limiter."""

from __future__ import annotations

import threading

import pytest

from src.ratelimit.memory import SlidingWindowRateLimiter
from tests.conftest import FakeClock


class TestSlidingWindow:
    """Sliding window semantics: trailing window, not calendar buckets."""

    def test_allows_up_to_max_then_denies(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=3, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is False

    def test_capacity_returns_after_window(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=3, window_ms=1000, clock=fake_clock)
        for _ in range(3):
            limiter.check_limit("X")
        assert limiter.check_limit("X") is False
        fake_clock.advance(1001)
        assert limiter.check_limit("X") is True

    def test_window_slides_per_request(self, fake_clock: FakeClock) -> None:
        """Only the oldest request expires, not the whole bucket."""
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("X") is True  # t=0
        fake_clock.advance(600)
        assert limiter.check_limit("X") is True  # t=600
        fake_clock.advance(500)
        # t=1100: first request expired, second still counts
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is False

    def test_request_exactly_window_old_is_expired(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=1, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("X") is True
        fake_clock.advance(999)
        assert limiter.check_limit("X") is False
        fake_clock.advance(1)
        assert limiter.check_limit("X") is True

    def test_denied_requests_do_not_consume_capacity(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=1, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("X") is True
        fake_clock.advance(500)
        assert limiter.check_limit("X") is False
        fake_clock.advance(501)
        assert limiter.check_limit("X") is True


class TestIsolationAndReset:
    def test_identifiers_are_independent(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=1000, clock=fake_clock)
        limiter.check_limit("A")
        limiter.check_limit("A")
        assert limiter.check_limit("A") is False
        assert limiter.check_limit("B") is True

    def test_reset_clears_history(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(max_requests=2, window_ms=1000, clock=fake_clock)
        limiter.check_limit("A")
        limiter.check_limit("A")
        assert limiter.check_limit("A") is False
        limiter.reset("A")
        assert limiter.check_limit("A") is True

    def test_reset_unknown_identifier_is_noop(self) -> None:
        limiter = SlidingWindowRateLimiter()
        limiter.reset("never-seen")
        assert limiter.tracked_identifiers() == 0


class TestEviction:
    def test_stale_identifiers_swept(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(
            max_requests=5, window_ms=1000, clock=fake_clock, sweep_interval=3,
        )
        limiter.check_limit("old-1")
        limiter.check_limit("old-2")
        fake_clock.advance(2000)
        # Third check triggers the sweep before recording "fresh"
        limiter.check_limit("fresh")
        assert limiter.tracked_identifiers() == 1

    def test_lru_cap_evicts_least_recent(self, fake_clock: FakeClock) -> None:
        limiter = SlidingWindowRateLimiter(
            max_requests=1, window_ms=60_000, clock=fake_clock, max_identifiers=2,
        )
        assert limiter.check_limit("a") is True
        assert limiter.check_limit("b") is True
        assert limiter.check_limit("c") is True
        assert limiter.tracked_identifiers() == 2
        # "a" was evicted, so its history is gone
        assert limiter.check_limit("a") is True
        # "c" survived and is still at its limit
        assert limiter.check_limit("c") is False


class TestConfiguration:
    def test_defaults(self) -> None:
        limiter = SlidingWindowRateLimiter()
        assert limiter._max_requests == 100
        assert limiter._window_ms == 60_000

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_requests": 0}, {"window_ms": 0}, {"max_identifiers": 0}],
    )
    def test_rejects_invalid_config(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(**kwargs)

    def test_instances_do_not_share_state(self, fake_clock: FakeClock) -> None:
        strict = SlidingWindowRateLimiter(max_requests=1, window_ms=1000, clock=fake_clock)
        lenient = SlidingWindowRateLimiter(max_requests=5, window_ms=1000, clock=fake_clock)
        strict.check_limit("X")
        assert strict.check_limit("X") is False
        assert lenient.check_limit("X") is True


def test_concurrent_checks_never_exceed_limit() -> None:
    limiter = SlidingWindowRateLimiter(max_requests=50, window_ms=60_000)
    results: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            allowed = limiter.check_limit("shared")
            with lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 50
    assert results.count(False) == 150

"""Tests for the SQLite-backed shared rate limiter."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from src.ratelimit.sqlite import SqliteRateLimiter
from tests.conftest import FakeClock


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "ratelimit.db")


class TestSqliteRateLimiter:
    def test_sliding_window(self, db_path: str, fake_clock: FakeClock) -> None:
        limiter = SqliteRateLimiter(db_path, max_requests=3, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is True
        assert limiter.check_limit("X") is False
        fake_clock.advance(1001)
        assert limiter.check_limit("X") is True

    def test_identifiers_are_independent(self, db_path: str, fake_clock: FakeClock) -> None:
        limiter = SqliteRateLimiter(db_path, max_requests=1, window_ms=1000, clock=fake_clock)
        assert limiter.check_limit("A") is True
        assert limiter.check_limit("A") is False
        assert limiter.check_limit("B") is True

    def test_reset_clears_history(self, db_path: str, fake_clock: FakeClock) -> None:
        limiter = SqliteRateLimiter(db_path, max_requests=1, window_ms=1000, clock=fake_clock)
        limiter.check_limit("A")
        assert limiter.check_limit("A") is False
        limiter.reset("A")
        assert limiter.check_limit("A") is True

    def test_budget_shared_between_instances(self, db_path: str, fake_clock: FakeClock) -> None:
        """Two workers opening the same file share one budget."""
        worker_1 = SqliteRateLimiter(db_path, max_requests=2, window_ms=1000, clock=fake_clock)
        worker_2 = SqliteRateLimiter(db_path, max_requests=2, window_ms=1000, clock=fake_clock)
        assert worker_1.check_limit("X") is True
        assert worker_2.check_limit("X") is True
        assert worker_1.check_limit("X") is False
        assert worker_2.check_limit("X") is False

    def test_sweep_removes_expired_rows(self, db_path: str, fake_clock: FakeClock) -> None:
        limiter = SqliteRateLimiter(
            db_path, max_requests=5, window_ms=1000, clock=fake_clock, sweep_interval=2,
        )
        limiter.check_limit("old")
        fake_clock.advance(5000)
        limiter.check_limit("new")
        limiter.close()

        conn = sqlite3.connect(db_path)
        identifiers = {row[0] for row in conn.execute("SELECT identifier FROM rate_limit_hits")}
        conn.close()
        assert identifiers == {"new"}

    def test_rejects_invalid_config(self, db_path: str) -> None:
        with pytest.raises(ValueError):
            SqliteRateLimiter(db_path, max_requests=0)


def test_one_instance_is_safe_across_threads(db_path: str, fake_clock: FakeClock) -> None:
    """Request handlers call a single limiter from worker threads."""
    limiter = SqliteRateLimiter(db_path, max_requests=50, window_ms=60_000, clock=fake_clock)
    results: list[bool] = []
    errors: list[Exception] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            try:
                allowed = limiter.check_limit("shared")
            except sqlite3.Error as exc:
                with lock:
                    errors.append(exc)
                continue
            with lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    limiter.close()

    assert errors == []
    assert results.count(True) == 50
    assert results.count(False) == 150

"""SQLite-backed sliding log rate limiter.

Shares one budget between every worker process that opens the same
database file. Each check runs inside ``BEGIN IMMEDIATE`` so the
prune-count-insert sequence is atomic across processes.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path

from src.ratelimit.base import RateLimiter, epoch_millis

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS rate_limit_hits (
    identifier TEXT NOT NULL,
    ts REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_hits_identifier
    ON rate_limit_hits(identifier, ts);
"""


class SqliteRateLimiter(RateLimiter):
    """Sliding window limiter whose request log lives in SQLite."""

    def __init__(
        self,
        db_path: str,
        max_requests: int = 100,
        window_ms: int = 60_000,
        clock: Callable[[], float] = epoch_millis,
        sweep_interval: int = 1_000,
        busy_timeout: float = 1.0,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        self._db_path = db_path
        self._max_requests = max_requests
        self._window_ms = window_ms
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._checks_since_sweep = 0
        self._lock = threading.Lock()

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly below.
        self._conn = sqlite3.connect(
            db_path, isolation_level=None, timeout=busy_timeout, check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)

    def check_limit(self, identifier: str) -> bool:
        now = self._clock()
        cutoff = now - self._window_ms
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                self._conn.execute(
                    "DELETE FROM rate_limit_hits WHERE identifier = ? AND ts <= ?",
                    (identifier, cutoff),
                )
                (count,) = self._conn.execute(
                    "SELECT COUNT(*) FROM rate_limit_hits WHERE identifier = ?",
                    (identifier,),
                ).fetchone()
                allowed = count < self._max_requests
                if allowed:
                    self._conn.execute(
                        "INSERT INTO rate_limit_hits (identifier, ts) VALUES (?, ?)",
                        (identifier, now),
                    )
                self._maybe_sweep(cutoff)
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._conn.execute("ROLLBACK")
                raise
        return allowed

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM rate_limit_hits WHERE identifier = ?", (identifier,),
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _maybe_sweep(self, cutoff: float) -> None:
        self._checks_since_sweep += 1
        if self._checks_since_sweep < self._sweep_interval:
            return
        self._checks_since_sweep = 0
        self._conn.execute("DELETE FROM rate_limit_hits WHERE ts <= ?", (cutoff,))

"""SQLite persistence for plans, coin balances, payment history and audit rows.

Every mutation triggered by a payment event runs in a single transaction
together with its history row, its audit row and its idempotency ledger
entry: either all of them are written or none are.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from src.models import AuditEvent, PaymentRecord, PaymentStatus, PlanType, UserAccount

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    plan TEXT NOT NULL DEFAULT 'free',
    plan_expires_at TEXT,
    coin_balance INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

-- Pending coin orders, completed when the gateway confirms payment
CREATE TABLE IF NOT EXISTS coin_purchases (
    order_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    package_type TEXT NOT NULL,
    coins_amount INTEGER NOT NULL,
    price_paid INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    payment_id TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS payment_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    payment_id TEXT,
    order_id TEXT,
    amount REAL NOT NULL,
    plan_type TEXT,
    duration_type TEXT,
    status TEXT NOT NULL,
    payment_method TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_history_user ON payment_history(user_id);

CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT,
    metadata_json TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_logs_user ON audit_logs(user_id);

-- Idempotency ledger: one row per applied gateway event
CREATE TABLE IF NOT EXISTS processed_events (
    event_key TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    processed_at TEXT NOT NULL
);
"""


class StoreError(Exception):
    """Raised when the billing store rejects a read or a mutation."""


class CoinPurchaseError(Exception):
    """Coin order that cannot be credited; nothing was written."""


class BillingStore:
    """SQLite database wrapper for billing state.

    Provides:
    - WAL mode for crash recovery
    - Parameterized queries only
    - One transaction per applied payment event
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # --- Reads ---

    def get_user(self, user_id: str) -> UserAccount | None:
        row = self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return UserAccount(**row) if row else None

    def is_processed(self, event_key: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 AS seen FROM processed_events WHERE event_key = ?", (event_key,),
        )
        return row is not None

    def payment_history(self, user_id: str) -> list[PaymentRecord]:
        rows = self._fetch_all(
            "SELECT user_id, payment_id, order_id, amount, plan_type, duration_type,"
            " status, payment_method FROM payment_history WHERE user_id = ? ORDER BY id",
            (user_id,),
        )
        return [PaymentRecord(**row) for row in rows]

    def audit_logs(self, user_id: str) -> list[AuditEvent]:
        rows = self._fetch_all(
            "SELECT * FROM audit_logs WHERE user_id = ? ORDER BY id", (user_id,),
        )
        return [
            AuditEvent(
                timestamp=row["created_at"],
                user_id=row["user_id"],
                action=row["action"],
                resource_type=row["resource_type"],
                resource_id=row["resource_id"],
                metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else None,
            )
            for row in rows
        ]

    # --- Mutations ---

    def create_coin_purchase(
        self,
        user_id: str,
        order_id: str,
        package_type: str,
        coins_amount: int,
        price_paid: int,
        now: datetime,
    ) -> None:
        """Track a pending coin order created at checkout."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO coin_purchases (order_id, user_id, package_type, coins_amount,"
                " price_paid, status, created_at) VALUES (?, ?, ?, ?, ?, 'pending', ?)",
                (order_id, user_id, package_type, coins_amount, price_paid, now.isoformat()),
            )

    def apply_plan_payment(
        self,
        *,
        event_key: str,
        event_type: str,
        plan: str,
        expires_at: datetime,
        record: PaymentRecord,
        audit: AuditEvent,
        now: datetime,
    ) -> bool:
        """Upgrade a user's plan and record the payment.

        Returns False without touching anything if ``event_key`` was
        already applied.
        """
        with self._transaction() as conn:
            if not self._claim(conn, event_key, event_type, now):
                return False
            conn.execute(
                "INSERT INTO users (id, plan, plan_expires_at, updated_at) VALUES (?, ?, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET plan = excluded.plan,"
                " plan_expires_at = excluded.plan_expires_at, updated_at = excluded.updated_at",
                (record.user_id, plan, expires_at.isoformat(), now.isoformat()),
            )
            self._insert_payment(conn, record, now)
            self._insert_audit(conn, audit)
        return True

    def complete_coin_purchase(
        self,
        *,
        event_key: str,
        event_type: str,
        order_id: str,
        payment_id: str,
        user_id: str,
        audit: AuditEvent,
        now: datetime,
        coins: int | None = None,
        package_type: str | None = None,
        price_paid: int = 0,
    ) -> int | None:
        """Complete a coin order and credit its coins.

        A pending row from checkout wins. Without one, the order is recorded
        as completed from ``coins`` and ``package_type`` carried in the order
        notes. Returns the number of coins credited, or None for a repeat
        delivery.
        """
        with self._transaction() as conn:
            if not self._claim(conn, event_key, event_type, now):
                return None
            purchase = conn.execute(
                "SELECT user_id, coins_amount, status FROM coin_purchases WHERE order_id = ?",
                (order_id,),
            ).fetchone()
            if purchase is None:
                if coins is None or coins < 1:
                    raise CoinPurchaseError(
                        f"No coin purchase found for order {order_id} and no coins in notes",
                    )
                conn.execute(
                    "INSERT INTO coin_purchases (order_id, user_id, package_type, coins_amount,"
                    " price_paid, status, payment_id, created_at, completed_at)"
                    " VALUES (?, ?, ?, ?, ?, 'completed', ?, ?, ?)",
                    (
                        order_id, user_id, package_type or "unknown", coins, price_paid,
                        payment_id, now.isoformat(), now.isoformat(),
                    ),
                )
                credited_user, credited = user_id, coins
            else:
                if purchase["status"] == "completed":
                    raise CoinPurchaseError(
                        f"Coin purchase for order {order_id} already completed",
                    )
                conn.execute(
                    "UPDATE coin_purchases SET status = 'completed', payment_id = ?,"
                    " completed_at = ? WHERE order_id = ?",
                    (payment_id, now.isoformat(), order_id),
                )
                credited_user, credited = purchase["user_id"], int(purchase["coins_amount"])
            conn.execute(
                "INSERT INTO users (id, coin_balance, updated_at) VALUES (?, ?, ?)"
                " ON CONFLICT(id) DO UPDATE SET"
                " coin_balance = users.coin_balance + excluded.coin_balance,"
                " updated_at = excluded.updated_at",
                (credited_user, credited, now.isoformat()),
            )
            self._insert_audit(conn, audit)
        return credited

    def record_payment_failure(
        self,
        *,
        event_key: str,
        event_type: str,
        record: PaymentRecord,
        audit: AuditEvent,
        now: datetime,
    ) -> bool:
        if record.status is not PaymentStatus.FAILED:
            raise ValueError("record_payment_failure expects a failed payment record")
        with self._transaction() as conn:
            if not self._claim(conn, event_key, event_type, now):
                return False
            self._insert_payment(conn, record, now)
            self._insert_audit(conn, audit)
        return True

    def downgrade_expired(self, now: datetime) -> int:
        """Move every user whose paid plan has lapsed back to the free plan."""
        with self._transaction() as conn:
            expired = conn.execute(
                "SELECT id, plan, plan_expires_at FROM users"
                " WHERE plan != ? AND plan_expires_at IS NOT NULL AND plan_expires_at < ?",
                (PlanType.FREE.value, now.isoformat()),
            ).fetchall()
            for row in expired:
                conn.execute(
                    "UPDATE users SET plan = ?, plan_expires_at = NULL, updated_at = ?"
                    " WHERE id = ?",
                    (PlanType.FREE.value, now.isoformat(), row["id"]),
                )
                self._insert_audit(conn, AuditEvent(
                    timestamp=now.isoformat(),
                    user_id=row["id"],
                    action="subscription_expired",
                    resource_type="subscription",
                    resource_id=row["id"],
                    metadata={"previous_plan": row["plan"], "expired_at": row["plan_expires_at"]},
                ))
        if expired:
            logger.info("Downgraded %d expired subscriptions", len(expired))
        return len(expired)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Helpers ---

    @staticmethod
    def _claim(conn: sqlite3.Connection, event_key: str, event_type: str, now: datetime) -> bool:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO processed_events (event_key, event_type, processed_at)"
            " VALUES (?, ?, ?)",
            (event_key, event_type, now.isoformat()),
        )
        return cursor.rowcount == 1

    @staticmethod
    def _insert_payment(conn: sqlite3.Connection, record: PaymentRecord, now: datetime) -> None:
        conn.execute(
            "INSERT INTO payment_history (user_id, payment_id, order_id, amount, plan_type,"
            " duration_type, status, payment_method, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.user_id,
                record.payment_id,
                record.order_id,
                record.amount,
                record.plan_type,
                record.duration_type,
                record.status.value,
                record.payment_method,
                now.isoformat(),
            ),
        )

    @staticmethod
    def _insert_audit(conn: sqlite3.Connection, audit: AuditEvent) -> None:
        conn.execute(
            "INSERT INTO audit_logs (user_id, action, resource_type, resource_id,"
            " metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (
                audit.user_id,
                audit.action,
                audit.resource_type,
                audit.resource_id,
                json.dumps(audit.metadata) if audit.metadata is not None else None,
                audit.timestamp,
            ),
        )

    def _fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self._lock:
            try:
                row = self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        return dict(row) if row else None

    def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc
        return [dict(row) for row in rows]

"""Shared test fixtures for the billing service."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from src.payments.signature import compute_signature
from src.payments.store import BillingStore

WEBHOOK_SECRET = "whsec_test"
KEY_SECRET = "key_secret_test"
FIXED_NOW = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


class FakeClock:
    """Manually advanced millisecond clock for rate limiter tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> BillingStore:
    db = BillingStore(str(tmp_path / "billing.db"))
    yield db
    db.close()


def fixed_clock() -> datetime:
    return FIXED_NOW


# --- Factory functions for webhook payloads ---


def make_payment_entity(**kwargs: Any) -> dict[str, Any]:
    """Factory for a gateway payment entity with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "pay_test123",
        "entity": "payment",
        "amount": 179900,
        "currency": "INR",
        "status": "captured",
        "order_id": "order_test123",
        "notes": {
            "user_id": "user-1",
            "plan_type": "pro",
            "duration_type": "monthly",
        },
    }
    defaults.update(kwargs)
    return defaults


def make_order_entity(**kwargs: Any) -> dict[str, Any]:
    """Factory for a gateway order entity with sensible defaults."""
    defaults: dict[str, Any] = {
        "id": "order_test123",
        "entity": "order",
        "amount": 1799900,
        "amount_paid": 1799900,
        "currency": "INR",
        "status": "paid",
        "notes": {"user_id": "user-1", "plan": "pro", "billing": "yearly"},
    }
    defaults.update(kwargs)
    return defaults


def make_webhook_body(event: str = "payment.captured", **entity: Any) -> bytes:
    """Serialize a webhook body for ``event`` the way the gateway sends it."""
    if event.startswith("order."):
        payload = {"order": {"entity": make_order_entity(**entity)}}
    else:
        payload = {"payment": {"entity": make_payment_entity(**entity)}}
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode()


def sign(body: bytes | str, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(body, secret)

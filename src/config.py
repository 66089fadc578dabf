"""Service configuration read from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from src.payments.gateway import DEFAULT_API_BASE


@dataclass(frozen=True)
class Settings:
    webhook_secret: str | None = None
    key_id: str | None = None
    key_secret: str | None = None
    gateway_base_url: str = DEFAULT_API_BASE
    gateway_timeout_seconds: float = 10.0
    billing_db_path: str = "data/billing.db"
    cron_secret: str | None = None
    rate_limit_max_requests: int = 100
    rate_limit_window_ms: int = 60_000
    rate_limit_max_identifiers: int = 10_000
    rate_limit_backend: str = "memory"  # "memory" or "sqlite"
    rate_limit_db_path: str = "data/ratelimit.db"
    rate_limit_trust_forwarded: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Create Settings from environment variables."""
        env = os.environ
        backend = env.get("RATE_LIMIT_BACKEND", "memory").lower()
        if backend not in ("memory", "sqlite"):
            raise ValueError(f"Unsupported RATE_LIMIT_BACKEND: {backend}")
        trust_forwarded = env.get("RATE_LIMIT_TRUST_FORWARDED", "").lower() in ("1", "true", "yes")
        return cls(
            webhook_secret=env.get("RAZORPAY_WEBHOOK_SECRET") or None,
            key_id=env.get("RAZORPAY_KEY_ID") or None,
            key_secret=env.get("RAZORPAY_KEY_SECRET") or None,
            gateway_base_url=env.get("RAZORPAY_API_BASE", DEFAULT_API_BASE),
            gateway_timeout_seconds=float(env.get("GATEWAY_TIMEOUT_SECONDS", "10")),
            billing_db_path=env.get("BILLING_DB_PATH", "data/billing.db"),
            cron_secret=env.get("CRON_SECRET") or None,
            rate_limit_max_requests=int(env.get("RATE_LIMIT_MAX_REQUESTS", "100")),
            rate_limit_window_ms=int(env.get("RATE_LIMIT_WINDOW_MS", "60000")),
            rate_limit_max_identifiers=int(env.get("RATE_LIMIT_MAX_IDENTIFIERS", "10000")),
            rate_limit_backend=backend,
            rate_limit_db_path=env.get("RATE_LIMIT_DB_PATH", "data/ratelimit.db"),
            rate_limit_trust_forwarded=trust_forwarded,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

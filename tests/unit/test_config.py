"""Tests for environment configuration."""

from __future__ import annotations

import pytest

from src.config import Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RAZORPAY_WEBHOOK_SECRET", "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET",
        "CRON_SECRET", "RATE_LIMIT_BACKEND", "RATE_LIMIT_MAX_REQUESTS",
        "RATE_LIMIT_WINDOW_MS", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.webhook_secret is None
    assert settings.rate_limit_max_requests == 100
    assert settings.rate_limit_window_ms == 60_000
    assert settings.rate_limit_backend == "memory"
    assert settings.log_level == "INFO"


def test_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "whsec")
    monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_key")
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", "rzp_secret")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "5")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "1000")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "SQLite")
    monkeypatch.setenv("GATEWAY_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.webhook_secret == "whsec"
    assert settings.key_id == "rzp_key"
    assert settings.key_secret == "rzp_secret"
    assert settings.rate_limit_max_requests == 5
    assert settings.rate_limit_window_ms == 1000
    assert settings.rate_limit_backend == "sqlite"
    assert settings.gateway_timeout_seconds == 2.5
    assert settings.log_level == "DEBUG"


def test_empty_secret_treated_as_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "")
    assert Settings.from_env().webhook_secret is None


def test_unknown_backend_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")
    with pytest.raises(ValueError, match="redis"):
        Settings.from_env()


@pytest.mark.parametrize(("value", "expected"), [("", False), ("true", True), ("1", True), ("no", False)])
def test_trust_forwarded_flag(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool) -> None:
    monkeypatch.setenv("RATE_LIMIT_TRUST_FORWARDED", value)
    assert Settings.from_env().rate_limit_trust_forwarded is expected

"""Tests for plan expiry and currency conversion."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from src.payments.billing import add_months, compute_expiry, to_major_units


def test_amount_converted_from_paise() -> None:
    assert to_major_units(179900) == 1799


def test_fractional_amount_kept() -> None:
    assert to_major_units(2999) == pytest.approx(29.99)


def test_missing_amount_is_zero() -> None:
    assert to_major_units(None) == 0


class TestComputeExpiry:
    NOW = datetime(2024, 1, 15, 10, 30, tzinfo=UTC)

    def test_monthly(self) -> None:
        assert compute_expiry(self.NOW, "monthly") == datetime(2024, 2, 15, 10, 30, tzinfo=UTC)

    def test_yearly(self) -> None:
        assert compute_expiry(self.NOW, "yearly") == datetime(2025, 1, 15, 10, 30, tzinfo=UTC)

    @pytest.mark.parametrize("cycle", [None, "", "weekly", "YEARLY"])
    def test_unknown_cycle_defaults_to_monthly(self, cycle: str | None) -> None:
        assert compute_expiry(self.NOW, cycle) == datetime(2024, 2, 15, 10, 30, tzinfo=UTC)


class TestAddMonths:
    def test_clamps_to_end_of_short_month(self) -> None:
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)

    def test_crosses_year_boundary(self) -> None:
        assert add_months(datetime(2024, 12, 10), 1) == datetime(2025, 1, 10)

    def test_leap_day_plus_year(self) -> None:
        assert add_months(datetime(2024, 2, 29), 12) == datetime(2025, 2, 28)

"""Billing arithmetic: plan expiry dates and currency unit conversion."""

from __future__ import annotations

import calendar
from datetime import datetime

from src.models import BillingCycle

# Gateway amounts are in the smallest currency unit (paise for INR).
MINOR_UNITS_PER_MAJOR = 100


def to_major_units(amount: int | None) -> float:
    """Convert a gateway amount such as 179900 paise to 1799 rupees."""
    return (amount or 0) / MINOR_UNITS_PER_MAJOR


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole months, clamping to the target month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_expiry(now: datetime, cycle: str | None) -> datetime:
    """Return the plan expiry for a payment made at ``now``.

    ``yearly`` adds one year; ``monthly``, missing or unrecognized cycles add
    one month.
    """
    if cycle == BillingCycle.YEARLY.value:
        return add_months(now, 12)
    return add_months(now, 1)

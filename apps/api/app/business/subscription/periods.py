from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.business.subscription.errors import ValidationError
from app.business.subscription.models import DurationUnit, ensure_utc

_MICROSECONDS_PER_DAY = 86_400 * 1_000_000


@dataclass(frozen=True, slots=True)
class BillingPeriod:
    """Paid coverage from ``start`` to ``end``.

    ``cycle_days`` is the length of one paid cycle when the coverage holds more
    than one (an early renewal keeps the start and extends the end). When unset
    the whole coverage is one cycle.
    """

    start: datetime
    end: datetime
    cycle_days: int | None = None


def add_months(base: datetime, months: int) -> datetime:
    month_index = base.month - 1 + months
    year = base.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def add_duration(start: datetime, amount: int, unit: str) -> datetime:
    if amount <= 0:
        raise ValidationError("duration must be positive", context={"duration": amount, "unit": unit})
    if unit == DurationUnit.DAY:
        return start + timedelta(days=amount)
    if unit == DurationUnit.MONTH:
        return add_months(start, amount)
    raise ValidationError(f"unknown duration unit {unit}", context={"unit": unit})


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end; a partial day counts as a full day."""
    delta = ensure_utc(end) - ensure_utc(start)
    total_microseconds = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return -(-total_microseconds // _MICROSECONDS_PER_DAY)


def days_remaining(end: datetime | None, now: datetime) -> int:
    if end is None:
        return 0
    return max(0, days_between(now, end))


def in_renewal_window(end: datetime | None, now: datetime, window_days: int) -> bool:
    if end is None:
        return False
    return ensure_utc(end) - ensure_utc(now) <= timedelta(days=window_days)


def expiring_soon(end: datetime | None, now: datetime, threshold_days: int) -> bool:
    if end is None:
        return False
    remaining = ensure_utc(end) - ensure_utc(now)
    return timedelta(0) <= remaining <= timedelta(days=threshold_days)


def subtract_duration(end: datetime, amount: int, unit: str) -> datetime:
    if amount <= 0:
        raise ValidationError("duration must be positive", context={"duration": amount, "unit": unit})
    if unit == DurationUnit.DAY:
        return end - timedelta(days=amount)
    if unit == DurationUnit.MONTH:
        return add_months(end, -amount)
    raise ValidationError(f"unknown duration unit {unit}", context={"unit": unit})


def current_period(start: datetime, end: datetime, amount: int, unit: str) -> BillingPeriod:
    """Coverage ``[start, end]`` priced per cycle of ``amount`` ``unit`` ending at ``end``."""
    start = ensure_utc(start)
    end = ensure_utc(end)
    cycle_start = max(start, subtract_duration(end, amount, unit))
    return BillingPeriod(start=start, end=end, cycle_days=days_between(cycle_start, end))

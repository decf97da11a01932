from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.business.subscription.catalog import PlanSnapshot
from app.business.subscription.errors import ProrationError, UnsupportedCurrencyError
from app.business.subscription.periods import BillingPeriod, add_duration, current_period, days_between
from app.business.subscription.proration import proration_calculator


PERIOD_START = datetime(2026, 3, 1, tzinfo=timezone.utc)
PERIOD = BillingPeriod(start=PERIOD_START, end=PERIOD_START + timedelta(days=30))


def _plan(name: str, prices: dict[str, str]) -> PlanSnapshot:
    now = datetime.now(timezone.utc)
    return PlanSnapshot(
        id=uuid.uuid4(),
        name=name,
        description=None,
        prices={code: Decimal(amount) for code, amount in prices.items()},
        billing_frequency="monthly",
        duration=30,
        duration_unit="DAY",
        max_gyms=1,
        max_clients_per_gym=10,
        max_users_per_gym=2,
        features={},
        is_active=True,
        is_public=True,
        sort_order=0,
        created_at=now,
        updated_at=now,
    )


def test_upgrade_mid_period_rounds_the_signed_amount_once() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})

    result = proration_calculator.compute_proration(basic, PERIOD, pro, PERIOD_START + timedelta(days=10), "usd")

    assert result.remaining_days == 20
    assert result.total_days == 30
    assert result.amount == Decimal("33.33")
    assert result.unused_credit == Decimal("19.99")
    assert result.new_charge == Decimal("53.33")
    assert result.currency == "USD"
    assert result.is_renewal is False


def test_downgrade_is_the_negation_of_the_matching_upgrade() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})
    effective = PERIOD_START + timedelta(days=7, hours=3)

    upgrade = proration_calculator.compute_proration(basic, PERIOD, pro, effective, "USD")
    downgrade = proration_calculator.compute_proration(pro, PERIOD, basic, effective, "USD")

    assert upgrade.amount > 0
    assert downgrade.amount < 0
    assert abs(upgrade.amount + downgrade.amount) <= Decimal("0.01")


def test_partial_days_count_as_whole_days() -> None:
    basic = _plan("Basic", {"USD": "30"})
    pro = _plan("Pro", {"USD": "60"})

    result = proration_calculator.compute_proration(
        basic, PERIOD, pro, PERIOD_START + timedelta(days=9, hours=12), "USD"
    )

    assert result.remaining_days == 21
    assert result.amount == Decimal("21.00")


def test_change_at_period_end_is_treated_as_renewal() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})

    result = proration_calculator.compute_proration(basic, PERIOD, pro, PERIOD.end, "USD")

    assert result.is_renewal is True
    assert result.amount == Decimal("0.00")
    assert result.remaining_days == 0


def test_effective_date_before_period_start_is_rejected() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})

    with pytest.raises(ProrationError):
        proration_calculator.compute_proration(basic, PERIOD, pro, PERIOD_START - timedelta(seconds=1), "USD")


def test_zero_length_period_is_rejected() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})
    empty = BillingPeriod(start=PERIOD_START, end=PERIOD_START)

    with pytest.raises(ProrationError):
        proration_calculator.compute_proration(basic, empty, pro, PERIOD_START, "USD")


def test_currency_without_minor_units_rounds_to_whole_amounts() -> None:
    basic = _plan("Basic", {"JPY": "1000"})
    pro = _plan("Pro", {"JPY": "3000"})

    result = proration_calculator.compute_proration(basic, PERIOD, pro, PERIOD_START + timedelta(days=20), "JPY")

    assert result.remaining_days == 10
    assert result.amount == Decimal("667")
    assert result.amount.as_tuple().exponent == 0


def test_exact_half_rounds_to_even() -> None:
    free = _plan("Free", {"USD": "0"})
    tiny = _plan("Tiny", {"USD": "0.25"})

    result = proration_calculator.compute_proration(free, PERIOD, tiny, PERIOD_START + timedelta(days=15), "USD")

    assert result.amount == Decimal("0.12")


def test_missing_price_in_billing_currency_is_rejected() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    euro_only = _plan("Euro", {"EUR": "49.00"})

    with pytest.raises(UnsupportedCurrencyError) as exc_info:
        proration_calculator.compute_proration(basic, PERIOD, euro_only, PERIOD_START, "USD")

    assert exc_info.value.currency == "USD"


def test_cancellation_refund_covers_unused_days() -> None:
    plan = _plan("Basic", {"USD": "30.00"})

    refund = proration_calculator.compute_cancellation_refund(plan, PERIOD, PERIOD_START + timedelta(days=15), "USD")

    assert refund.amount == Decimal("15.00")
    assert refund.remaining_days == 15

    after_end = proration_calculator.compute_cancellation_refund(plan, PERIOD, PERIOD.end + timedelta(days=1), "USD")
    assert after_end.amount == Decimal("0.00")


def test_renewal_charge_is_the_full_price() -> None:
    plan = _plan("Basic", {"USD": "29.99", "JPY": "3200"})

    assert proration_calculator.compute_renewal_charge(plan, "USD") == Decimal("29.99")
    assert proration_calculator.compute_renewal_charge(plan, "jpy") == Decimal("3200")


def test_month_durations_clamp_to_the_last_day_of_the_month() -> None:
    start = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)

    assert add_duration(start, 1, "MONTH") == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert add_duration(start, 12, "MONTH") == datetime(2027, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert days_between(start, start + timedelta(seconds=1)) == 1


def test_prepaid_cycles_are_credited_at_the_cycle_rate() -> None:
    basic = _plan("Basic", {"USD": "29.99"})
    pro = _plan("Pro", {"USD": "79.99"})
    renewed = current_period(PERIOD_START, PERIOD_START + timedelta(days=60), 30, "DAY")

    assert renewed.cycle_days == 30

    result = proration_calculator.compute_proration(basic, renewed, pro, PERIOD_START + timedelta(days=25), "USD")

    assert result.remaining_days == 35
    assert result.total_days == 30
    assert result.amount == Decimal("58.33")


def test_single_cycle_period_matches_the_plain_coverage() -> None:
    period = current_period(PERIOD_START, PERIOD_START + timedelta(days=30), 30, "DAY")

    assert period.cycle_days == 30
    assert period.start == PERIOD_START


def test_refund_before_the_period_starts_is_the_full_price() -> None:
    plan = _plan("Basic", {"USD": "30.00"})

    refund = proration_calculator.compute_cancellation_refund(plan, PERIOD, PERIOD_START - timedelta(days=3), "USD")

    assert refund.amount == Decimal("30.00")
    assert refund.remaining_days == 30

"""
Proration arithmetic.

All intermediate values are exact ``Decimal`` fractions; the signed amount is
rounded exactly once, to the currency's minor unit, with ROUND_HALF_EVEN.
``unused_credit`` and ``new_charge`` are rounded independently for display
and therefore need not sum to ``amount``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.business.subscription.catalog import PlanSnapshot, plan_catalog
from app.business.subscription.errors import ProrationError
from app.business.subscription.models import ensure_utc
from app.business.subscription.money import normalize_currency, quantize_minor
from app.business.subscription.periods import BillingPeriod, days_between


@dataclass(frozen=True, slots=True)
class ProrationResult:
    amount: Decimal
    currency: str
    remaining_days: int
    total_days: int
    unused_credit: Decimal
    new_charge: Decimal
    is_renewal: bool
    description: str


@dataclass(frozen=True, slots=True)
class RefundResult:
    amount: Decimal
    currency: str
    remaining_days: int
    total_days: int


def _period_days(period: BillingPeriod, at: datetime) -> tuple[int, int]:
    """Days left in the coverage and the length of one paid cycle.

    Remaining days may exceed the cycle length when whole cycles were prepaid.
    """
    start = ensure_utc(period.start)
    end = ensure_utc(period.end)
    at = ensure_utc(at)
    coverage_days = days_between(start, end)
    if coverage_days <= 0:
        raise ProrationError(
            "billing period has zero length",
            context={"period_start": start.isoformat(), "period_end": end.isoformat()},
        )
    if at < start:
        raise ProrationError(
            "effective date precedes the current billing period",
            context={"effective_date": at.isoformat(), "period_start": start.isoformat()},
        )
    cycle_days = min(period.cycle_days or coverage_days, coverage_days)
    remaining_days = min(max(days_between(at, end), 0), coverage_days)
    return remaining_days, cycle_days


@dataclass(slots=True)
class ProrationCalculator:
    def compute_proration(
        self,
        current_plan: PlanSnapshot,
        current_period: BillingPeriod,
        new_plan: PlanSnapshot,
        effective_date: datetime,
        currency: str,
    ) -> ProrationResult:
        currency = normalize_currency(currency)
        current_price = plan_catalog.resolve_price(current_plan, currency)
        new_price = plan_catalog.resolve_price(new_plan, currency)
        remaining_days, total_days = _period_days(current_period, effective_date)

        if ensure_utc(effective_date) >= ensure_utc(current_period.end):
            zero = quantize_minor(Decimal("0"), currency)
            return ProrationResult(
                amount=zero,
                currency=currency,
                remaining_days=0,
                total_days=total_days,
                unused_credit=zero,
                new_charge=zero,
                is_renewal=True,
                description=f"{current_plan.name} -> {new_plan.name} at period end; treated as renewal",
            )

        fraction = Decimal(remaining_days) / Decimal(total_days)
        unused_credit = current_price * fraction
        new_charge = new_price * fraction
        amount = quantize_minor(new_charge - unused_credit, currency)
        return ProrationResult(
            amount=amount,
            currency=currency,
            remaining_days=remaining_days,
            total_days=total_days,
            unused_credit=quantize_minor(unused_credit, currency),
            new_charge=quantize_minor(new_charge, currency),
            is_renewal=False,
            description=(
                f"{current_plan.name} -> {new_plan.name}: {remaining_days}/{total_days} days remaining, "
                f"{'charge' if amount >= 0 else 'credit'} {abs(amount)} {currency}"
            ),
        )

    def compute_cancellation_refund(
        self,
        plan: PlanSnapshot,
        current_period: BillingPeriod,
        cancellation_date: datetime,
        currency: str,
    ) -> RefundResult:
        currency = normalize_currency(currency)
        price = plan_catalog.resolve_price(plan, currency)
        # Cancelling before the paid period starts refunds all of it.
        cancellation_date = max(ensure_utc(cancellation_date), ensure_utc(current_period.start))
        remaining_days, total_days = _period_days(current_period, cancellation_date)
        if ensure_utc(cancellation_date) >= ensure_utc(current_period.end):
            remaining_days = 0
        amount = quantize_minor(price * Decimal(remaining_days) / Decimal(total_days), currency)
        return RefundResult(amount=amount, currency=currency, remaining_days=remaining_days, total_days=total_days)

    def compute_renewal_charge(self, plan: PlanSnapshot, currency: str) -> Decimal:
        currency = normalize_currency(currency)
        return quantize_minor(plan_catalog.resolve_price(plan, currency), currency)


proration_calculator = ProrationCalculator()

"""
Billing analytics.

Read-only aggregation over the append-only operation log. Active counts at an
instant are rebuilt by replaying operations in ``(effective_date, created_at)``
order and keeping, per organization, the resulting status of the highest
subscription version seen so far, so history is reconstructed without trusting
the mutable subscription rows. Every figure is computed per currency;
amounts in different currencies are never summed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from threading import Lock
from typing import Any

from cachetools import TTLCache
from sqlalchemy.orm import Session

from app.business.subscription.catalog import PlanCatalog, plan_catalog
from app.business.subscription.entitlements import (
    EntitlementEnforcer,
    UsageSnapshotProvider,
    entitlement_enforcer,
    get_usage_provider,
)
from app.business.subscription.errors import ValidationError
from app.business.subscription.models import (
    OperationType,
    RequestStatus,
    SubscriptionOperation,
    SubscriptionStatus,
    ensure_utc,
    utcnow,
)
from app.business.subscription.money import normalize_currency, quantize_minor
from app.business.subscription.periods import add_months
from app.business.subscription.repository import OperationRepository, RequestRepository, SubscriptionRepository
from app.business.subscription.schemas import (
    AnalyticsRead,
    CurrencyMetricsRead,
    OrganizationUsageRead,
    PlanBreakdownRead,
    RequestAnalyticsRead,
    TrendBucketRead,
    UsageAnalyticsRead,
)
from app.core.config import get_settings
from app.otel import get_tracer

logger = logging.getLogger("app.subscription.analytics")
tracer = get_tracer("app.subscription.analytics")

CHURN_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})
NEW_BUSINESS_OPERATIONS = frozenset({OperationType.ACTIVATION, OperationType.UPGRADE})
PLAN_CHANGE_OPERATIONS = frozenset({OperationType.UPGRADE, OperationType.DOWNGRADE})
MAX_TREND_BUCKETS = 400


def _new_cache() -> TTLCache:
    return TTLCache(maxsize=256, ttl=get_settings().analytics_cache_ttl_seconds)


def monthly_value(operation: SubscriptionOperation) -> Decimal:
    if operation.plan_price is None:
        return Decimal("0")
    months = operation.billing_frequency_months or 1
    return Decimal(operation.plan_price) / Decimal(months)


def _in_period(operation: SubscriptionOperation, start: datetime, end: datetime) -> bool:
    effective = ensure_utc(operation.effective_date)
    return start <= effective < end


def replay_active_counts(
    operations: Sequence[SubscriptionOperation], instants: Sequence[datetime]
) -> dict[datetime, dict[str, int]]:
    """Active subscriptions per currency just before each instant.

    ``operations`` must already be ordered by effective date then creation time.
    """
    latest: dict[str, tuple[int, str, str]] = {}
    counts: dict[datetime, dict[str, int]] = {}
    index = 0
    for instant in sorted(instants):
        while index < len(operations) and ensure_utc(operations[index].effective_date) < instant:
            operation = operations[index]
            index += 1
            version = operation.subscription_version or 0
            seen = latest.get(operation.organization_id)
            if seen is not None and seen[0] > version:
                continue
            latest[operation.organization_id] = (version, operation.resulting_status, operation.currency)
        per_currency: dict[str, int] = defaultdict(int)
        for _, status, currency in latest.values():
            if status == SubscriptionStatus.ACTIVE:
                per_currency[currency] += 1
        counts[instant] = dict(per_currency)
    return counts


def _next_boundary(value: datetime, granularity: str) -> datetime:
    if granularity == "day":
        return value + timedelta(days=1)
    if granularity == "week":
        return value + timedelta(days=7)
    return add_months(value, 1)


def bucket_boundaries(start: datetime, end: datetime, granularity: str) -> list[tuple[datetime, datetime]]:
    if granularity not in ("day", "week", "month"):
        raise ValidationError(f"unknown trend granularity {granularity}", context={"granularity": granularity})

    buckets: list[tuple[datetime, datetime]] = []
    cursor = start
    while cursor < end:
        next_cursor = min(_next_boundary(cursor, granularity), end)
        buckets.append((cursor, next_cursor))
        cursor = next_cursor
        if len(buckets) > MAX_TREND_BUCKETS:
            raise ValidationError(
                "analytics period has too many trend buckets; use a coarser granularity",
                context={"granularity": granularity, "max_buckets": MAX_TREND_BUCKETS},
            )
    return buckets


def _rate(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return round(numerator / denominator, 4)


@dataclass(slots=True)
class BillingAnalyticsAggregator:
    catalog: PlanCatalog = field(default_factory=lambda: plan_catalog)
    enforcer: EntitlementEnforcer = field(default_factory=lambda: entitlement_enforcer)
    operation_repository: OperationRepository = field(default_factory=OperationRepository)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)
    request_repository: RequestRepository = field(default_factory=RequestRepository)
    _cache: TTLCache = field(default_factory=_new_cache)
    _lock: Lock = field(default_factory=Lock)

    def get_analytics(
        self,
        session: Session,
        start: datetime,
        end: datetime,
        *,
        currency: str | None = None,
        granularity: str = "month",
    ) -> AnalyticsRead:
        start = ensure_utc(start)
        end = ensure_utc(end)
        if start >= end:
            raise ValidationError(
                "analytics period must end after it starts",
                context={"start": start.isoformat(), "end": end.isoformat()},
            )
        normalized = normalize_currency(currency) if currency else None
        key = ("analytics", start, end, normalized, granularity)
        cached = self._cached(key)
        if cached is not None:
            return cached

        with tracer.start_as_current_span("subscription.analytics") as span:
            span.set_attribute("granularity", granularity)
            buckets = bucket_boundaries(start, end, granularity)
            operations = list(self.operation_repository.list_until(session, end))
            active_rows = list(self.subscription_repository.list_by_status(session, SubscriptionStatus.ACTIVE))

            currencies = {operation.currency for operation in operations} | {row.currency for row in active_rows}
            if normalized is not None:
                currencies = {normalized}
                operations = [operation for operation in operations if operation.currency == normalized]
                active_rows = [row for row in active_rows if row.currency == normalized]

            instants = [start, end] + [bucket_end for _, bucket_end in buckets]
            active_counts = replay_active_counts(operations, instants)
            in_period = [operation for operation in operations if _in_period(operation, start, end)]
            breakdown = self._plan_breakdown(session, active_rows)

            metrics = [
                self._currency_metrics(code, in_period, active_counts, start, end, breakdown)
                for code in sorted(currencies)
            ]
            trend = [
                self._trend_bucket(code, operations, active_counts, bucket_start, bucket_end)
                for bucket_start, bucket_end in buckets
                for code in sorted(currencies)
            ]
            span.set_attribute("operation_count", len(operations))

        result = AnalyticsRead(start=start, end=end, metrics=metrics, plan_breakdown=breakdown, trend=trend)
        self._store(key, result)
        logger.info(
            "subscription.analytics_computed",
            extra={"currency": normalized, "operation_count": len(operations), "buckets": len(buckets)},
        )
        return result

    def request_analytics(self, session: Session, *, now: datetime | None = None) -> RequestAnalyticsRead:
        now = ensure_utc(now) or utcnow()
        key = ("requests",)
        cached = self._cached(key)
        if cached is not None:
            return cached

        requests = list(self.request_repository.list(session))
        by_status: dict[str, int] = defaultdict(int)
        by_operation_type: dict[str, int] = defaultdict(int)
        processing_hours: list[float] = []
        stale_cutoff = now - timedelta(hours=get_settings().stale_request_hours)
        stale_pending = 0
        for request in requests:
            by_status[request.status] += 1
            by_operation_type[request.operation_type] += 1
            if request.processed_at is not None and request.status in (RequestStatus.APPROVED, RequestStatus.REJECTED):
                elapsed = ensure_utc(request.processed_at) - ensure_utc(request.created_at)
                processing_hours.append(elapsed.total_seconds() / 3600)
            if request.status == RequestStatus.PENDING and ensure_utc(request.created_at) < stale_cutoff:
                stale_pending += 1

        approved = by_status.get(RequestStatus.APPROVED, 0)
        decided = approved + by_status.get(RequestStatus.REJECTED, 0)
        result = RequestAnalyticsRead(
            total=len(requests),
            by_status=dict(by_status),
            by_operation_type=dict(by_operation_type),
            approval_rate=_rate(approved, decided),
            average_processing_hours=round(sum(processing_hours) / len(processing_hours), 2)
            if processing_hours
            else None,
            stale_pending=stale_pending,
        )
        self._store(key, result)
        return result

    def usage_analytics(
        self, session: Session, *, usage_provider: UsageSnapshotProvider | None = None
    ) -> UsageAnalyticsRead:
        key = ("usage",)
        cached = self._cached(key)
        if cached is not None:
            return cached

        provider = usage_provider or get_usage_provider()
        organizations: list[OrganizationUsageRead] = []
        for row in self.subscription_repository.list_by_status(session, SubscriptionStatus.ACTIVE):
            plan = self.catalog.get_plan(session, row.subscription_plan_id)
            decision = self.enforcer.check_organization(provider, row.organization_id, plan)
            organizations.append(
                OrganizationUsageRead(
                    organization_id=row.organization_id,
                    plan_id=plan.id,
                    utilization_percentage=decision.utilization_percentage,
                    nearing_limits=decision.nearing_limits,
                    usage_available=decision.usage is not None,
                )
            )

        known = [item.utilization_percentage for item in organizations if item.utilization_percentage is not None]
        result = UsageAnalyticsRead(
            organizations=organizations,
            nearing_limits_count=sum(1 for item in organizations if item.nearing_limits),
            unavailable_count=sum(1 for item in organizations if not item.usage_available),
            average_utilization=round(sum(known) / len(known), 2) if known else None,
        )
        self._store(key, result)
        return result

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def _currency_metrics(
        self,
        currency: str,
        in_period: list[SubscriptionOperation],
        active_counts: dict[datetime, dict[str, int]],
        start: datetime,
        end: datetime,
        breakdown: list[PlanBreakdownRead],
    ) -> CurrencyMetricsRead:
        operations = [operation for operation in in_period if operation.currency == currency]
        new_mrr = sum(
            (monthly_value(operation) for operation in operations if operation.operation_type in NEW_BUSINESS_OPERATIONS),
            Decimal("0"),
        )
        churn_operations = [operation for operation in operations if operation.resulting_status in CHURN_STATUSES]
        churned_mrr = sum((monthly_value(operation) for operation in churn_operations), Decimal("0"))
        plan_changes = [
            Decimal(operation.proration_amount)
            for operation in operations
            if operation.operation_type in PLAN_CHANGE_OPERATIONS and operation.proration_amount is not None
        ]
        expansion = sum((amount for amount in plan_changes if amount > 0), Decimal("0"))
        contraction = abs(sum((amount for amount in plan_changes if amount < 0), Decimal("0")))

        rows = [item for item in breakdown if item.currency == currency]
        total_mrr = sum((item.mrr for item in rows), Decimal("0"))
        active_subscriptions = sum(item.active_count for item in rows)
        active_at_start = active_counts[start].get(currency, 0)
        active_at_end = active_counts[end].get(currency, 0)
        churned = len({operation.organization_id for operation in churn_operations})

        return CurrencyMetricsRead(
            currency=currency,
            total_mrr=quantize_minor(total_mrr, currency),
            total_arr=quantize_minor(total_mrr * 12, currency),
            new_mrr=quantize_minor(new_mrr, currency),
            churned_mrr=quantize_minor(churned_mrr, currency),
            expansion_mrr=quantize_minor(expansion, currency),
            contraction_mrr=quantize_minor(contraction, currency),
            net_mrr_change=quantize_minor(new_mrr + expansion - churned_mrr - contraction, currency),
            arpu=quantize_minor(total_mrr / active_subscriptions if active_subscriptions else Decimal("0"), currency),
            active_subscriptions=active_subscriptions,
            active_at_start=active_at_start,
            active_at_end=active_at_end,
            churned=churned,
            churn_rate=_rate(churned, active_at_start),
            growth_rate=_rate(active_at_end - active_at_start, active_at_start),
        )

    def _plan_breakdown(self, session: Session, active_rows: list[Any]) -> list[PlanBreakdownRead]:
        grouped: dict[tuple[Any, str], int] = defaultdict(int)
        for row in active_rows:
            grouped[(row.subscription_plan_id, row.currency)] += 1

        entries: list[tuple[Any, str, str, int, Decimal]] = []
        totals: dict[str, Decimal] = defaultdict(Decimal)
        for (plan_id, currency), count in grouped.items():
            plan = self.catalog.get_plan(session, plan_id)
            price = self.catalog.resolve_price(plan, currency)
            mrr = price * count / Decimal(plan.frequency_months)
            totals[currency] += mrr
            entries.append((plan_id, plan.name, currency, count, mrr))

        breakdown = [
            PlanBreakdownRead(
                plan_id=plan_id,
                plan_name=name,
                currency=currency,
                active_count=count,
                mrr=quantize_minor(mrr, currency),
                arr=quantize_minor(mrr * 12, currency),
                revenue_share=round(float(mrr / totals[currency]), 4) if totals[currency] else 0.0,
            )
            for plan_id, name, currency, count, mrr in entries
        ]
        breakdown.sort(key=lambda item: (item.currency, -item.mrr, item.plan_name))
        return breakdown

    def _trend_bucket(
        self,
        currency: str,
        operations: list[SubscriptionOperation],
        active_counts: dict[datetime, dict[str, int]],
        bucket_start: datetime,
        bucket_end: datetime,
    ) -> TrendBucketRead:
        in_bucket = [
            operation
            for operation in operations
            if operation.currency == currency and _in_period(operation, bucket_start, bucket_end)
        ]
        new_operations = [operation for operation in in_bucket if operation.operation_type == OperationType.ACTIVATION]
        churn_operations = [operation for operation in in_bucket if operation.resulting_status in CHURN_STATUSES]
        return TrendBucketRead(
            bucket_start=bucket_start,
            bucket_end=bucket_end,
            currency=currency,
            new_subscriptions=len(new_operations),
            churned_subscriptions=len(churn_operations),
            active_at_end=active_counts[bucket_end].get(currency, 0),
            new_mrr=quantize_minor(sum((monthly_value(op) for op in new_operations), Decimal("0")), currency),
            churned_mrr=quantize_minor(sum((monthly_value(op) for op in churn_operations), Decimal("0")), currency),
        )

    def _cached(self, key: tuple[Any, ...]) -> Any:
        with self._lock:
            return self._cache.get(key)

    def _store(self, key: tuple[Any, ...], value: Any) -> None:
        with self._lock:
            self._cache[key] = value


billing_analytics = BillingAnalyticsAggregator()

from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.audit import get_audit_sink
from app.business.subscription.analytics import billing_analytics, bucket_boundaries, replay_active_counts
from app.business.subscription.catalog import PlanSnapshot, plan_catalog
from app.business.subscription.entitlements import InMemoryUsageProvider, UsageSnapshot, set_usage_provider
from app.business.subscription.errors import UnsupportedCurrencyError, UsageTimeoutError, ValidationError
from app.business.subscription.models import OrganizationSubscription, SubscriptionOperation, ensure_utc
from app.business.subscription.schemas import AnalyticsRead, CurrencyMetricsRead, PlanCreate
from app.business.subscription.state_machine import subscription_state_machine
from app.business.subscription.workflow import request_workflow
from app.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    events.published_events.clear()
    get_audit_sink().clear()
    plan_catalog.invalidate()
    billing_analytics.invalidate()
    set_usage_provider(InMemoryUsageProvider())
    yield
    plan_catalog.invalidate()
    billing_analytics.invalidate()


class TimingOutProvider:
    def get_usage(self, organization_id: str, timeout: float) -> UsageSnapshot:
        raise UsageTimeoutError("usage lookup timed out")


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _plan(
    session: Session,
    name: str,
    prices: dict[str, str],
    *,
    billing_frequency: str = "monthly",
    duration: int = 30,
    max_gyms: int = 1,
) -> PlanSnapshot:
    return plan_catalog.create_plan(
        session,
        PlanCreate(
            name=name,
            prices={code: Decimal(amount) for code, amount in prices.items()},
            billing_frequency=billing_frequency,
            duration=duration,
            duration_unit="DAY",
            max_gyms=max_gyms,
            max_clients_per_gym=10,
            max_users_per_gym=2,
        ),
    )


def _onboard(
    session: Session, organization_id: str, plan: PlanSnapshot, start: datetime, currency: str = "USD"
) -> None:
    subscription_state_machine.onboard(
        session, organization_id, executed_by="admin-1", plan_id=plan.id, currency=currency, start=start
    )


def _metrics(report: AnalyticsRead, currency: str) -> CurrencyMetricsRead:
    return next(item for item in report.metrics if item.currency == currency)


def test_churn_rate_is_zero_without_subscriptions_at_period_start(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    _onboard(db_session, "org-a", basic, now - timedelta(days=5))

    report = billing_analytics.get_analytics(db_session, now - timedelta(days=10), now + timedelta(days=1))

    usd = _metrics(report, "USD")
    assert usd.active_at_start == 0
    assert usd.active_at_end == 1
    assert usd.churned == 0
    assert usd.churn_rate == 0.0
    assert usd.growth_rate == 0.0
    assert usd.new_mrr == Decimal("30.00")
    assert usd.total_mrr == Decimal("30.00")
    assert usd.total_arr == Decimal("360.00")
    assert usd.arpu == Decimal("30.00")


def test_figures_are_reported_per_currency(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00", "EUR": "25.00"})
    _onboard(db_session, "org-usd", basic, now - timedelta(days=3))
    _onboard(db_session, "org-eur", basic, now - timedelta(days=3), currency="EUR")

    report = billing_analytics.get_analytics(db_session, now - timedelta(days=10), now + timedelta(days=1))

    assert [item.currency for item in report.metrics] == ["EUR", "USD"]
    assert _metrics(report, "EUR").new_mrr == Decimal("25.00")
    assert _metrics(report, "USD").new_mrr == Decimal("30.00")
    assert {(row.currency, row.mrr) for row in report.plan_breakdown} == {
        ("EUR", Decimal("25.00")),
        ("USD", Decimal("30.00")),
    }
    assert all(row.revenue_share == 1.0 for row in report.plan_breakdown)

    euro_only = billing_analytics.get_analytics(
        db_session, now - timedelta(days=10), now + timedelta(days=1), currency="eur"
    )
    assert [item.currency for item in euro_only.metrics] == ["EUR"]
    assert all(row.currency == "EUR" for row in euro_only.plan_breakdown)


def test_longer_billing_frequencies_are_normalized_to_monthly(db_session: Session) -> None:
    now = _now()
    team = _plan(db_session, "Team", {"USD": "90.00"}, billing_frequency="quarterly", duration=90)
    _onboard(db_session, "org-a", team, now - timedelta(days=2))

    report = billing_analytics.get_analytics(db_session, now - timedelta(days=10), now + timedelta(days=1))

    assert _metrics(report, "USD").new_mrr == Decimal("30.00")
    assert report.plan_breakdown[0].mrr == Decimal("30.00")
    assert report.plan_breakdown[0].arr == Decimal("360.00")


def test_cancellation_counts_as_churn(db_session: Session) -> None:
    now = _now()
    annual = _plan(db_session, "Annual", {"USD": "30.00"}, duration=365)
    _onboard(db_session, "org-old", annual, now - timedelta(days=60))
    _onboard(db_session, "org-stay", annual, now - timedelta(days=60))
    subscription_state_machine.cancel(
        db_session,
        "org-old",
        executed_by="admin-1",
        reason="cost_too_high",
        immediate_termination=True,
        now=now - timedelta(days=5),
    )

    report = billing_analytics.get_analytics(db_session, now - timedelta(days=30), now + timedelta(days=1))

    usd = _metrics(report, "USD")
    assert usd.active_at_start == 2
    assert usd.active_at_end == 1
    assert usd.churned == 1
    assert usd.churn_rate == 0.5
    assert usd.growth_rate == -0.5
    assert usd.churned_mrr == Decimal("30.00")
    assert usd.active_subscriptions == 1


def test_plan_changes_report_expansion_and_contraction(db_session: Session) -> None:
    now = _now()
    usage = InMemoryUsageProvider()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    pro = _plan(db_session, "Pro", {"USD": "60.00"}, max_gyms=3)
    _onboard(db_session, "org-up", basic, now - timedelta(days=20))
    _onboard(db_session, "org-down", pro, now - timedelta(days=20))
    subscription_state_machine.upgrade(
        db_session, "org-up", pro.id, executed_by="admin-1", effective_date=now - timedelta(days=10), usage_provider=usage
    )
    subscription_state_machine.downgrade(
        db_session,
        "org-down",
        basic.id,
        executed_by="admin-1",
        effective_date=now - timedelta(days=10),
        usage_provider=usage,
    )

    report = billing_analytics.get_analytics(db_session, now - timedelta(days=30), now + timedelta(days=1))

    usd = _metrics(report, "USD")
    assert usd.expansion_mrr == Decimal("20.00")
    assert usd.contraction_mrr == Decimal("20.00")


def test_trend_buckets_follow_the_granularity(db_session: Session) -> None:
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    _onboard(db_session, "org-a", basic, datetime(2026, 1, 3, tzinfo=timezone.utc))

    report = billing_analytics.get_analytics(
        db_session,
        datetime(2026, 1, 1, tzinfo=timezone.utc),
        datetime(2026, 1, 15, tzinfo=timezone.utc),
        granularity="week",
    )

    assert len(report.trend) == 2
    first, second = report.trend
    assert first.bucket_end == datetime(2026, 1, 8, tzinfo=timezone.utc)
    assert first.new_subscriptions == 1
    assert first.new_mrr == Decimal("30.00")
    assert first.active_at_end == 1
    assert second.new_subscriptions == 0
    assert second.active_at_end == 1


def test_invalid_periods_are_rejected(db_session: Session) -> None:
    now = _now()

    with pytest.raises(ValidationError):
        billing_analytics.get_analytics(db_session, now, now)
    with pytest.raises(ValidationError):
        billing_analytics.get_analytics(db_session, now - timedelta(days=900), now, granularity="day")
    with pytest.raises(ValidationError):
        bucket_boundaries(now - timedelta(days=1), now, "hour")


def test_results_are_cached_until_invalidated(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    _onboard(db_session, "org-a", basic, now - timedelta(days=1))
    start, end = now - timedelta(days=10), now + timedelta(days=1)

    first = billing_analytics.get_analytics(db_session, start, end)
    _onboard(db_session, "org-b", basic, now - timedelta(days=1))

    assert billing_analytics.get_analytics(db_session, start, end) is first

    billing_analytics.invalidate()
    assert _metrics(billing_analytics.get_analytics(db_session, start, end), "USD").active_at_end == 2


def test_request_analytics_summarize_the_queue(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    pro = _plan(db_session, "Pro", {"USD": "60.00"}, max_gyms=3)
    _onboard(db_session, "org-1", basic, now - timedelta(days=10))

    approved = request_workflow.submit(
        db_session, organization_id="org-1", operation_type="upgrade", requested_by="owner-1", plan_id=pro.id
    )
    request_workflow.process(db_session, approved.id, decision="approved", processed_by="admin-1")
    rejected = request_workflow.submit(
        db_session, organization_id="org-1", operation_type="renewal", requested_by="owner-1"
    )
    request_workflow.process(db_session, rejected.id, decision="rejected", processed_by="admin-1")
    stale = request_workflow.submit(
        db_session, organization_id="org-1", operation_type="renewal", requested_by="owner-1"
    )
    stale.created_at = now - timedelta(hours=48)
    db_session.commit()

    stats = billing_analytics.request_analytics(db_session, now=now)

    assert stats.total == 3
    assert stats.by_status == {"approved": 1, "rejected": 1, "pending": 1}
    assert stats.by_operation_type == {"upgrade": 1, "renewal": 2}
    assert stats.approval_rate == 0.5
    assert stats.stale_pending == 1
    assert stats.average_processing_hours is not None


def test_usage_analytics_flag_organizations_near_their_limits(db_session: Session) -> None:
    now = _now()
    usage = InMemoryUsageProvider()
    plan = _plan(db_session, "Studio", {"USD": "50.00"}, max_gyms=2)
    _onboard(db_session, "org-a", plan, now - timedelta(days=1))
    _onboard(db_session, "org-b", plan, now - timedelta(days=1))
    usage.set_usage("org-a", gym_count=1, total_clients=18, total_users=1)
    usage.set_usage("org-b", gym_count=1, total_clients=2, total_users=1)

    report = billing_analytics.usage_analytics(db_session, usage_provider=usage)

    assert report.nearing_limits_count == 1
    assert report.unavailable_count == 0
    assert report.average_utilization == 70.0
    by_org = {item.organization_id: item for item in report.organizations}
    assert by_org["org-a"].nearing_limits is True
    assert by_org["org-b"].utilization_percentage == 50.0

    billing_analytics.invalidate()
    degraded = billing_analytics.usage_analytics(db_session, usage_provider=TimingOutProvider())
    assert degraded.unavailable_count == 2
    assert degraded.average_utilization is None


def test_cancellation_after_an_early_renewal_stays_churned(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    _onboard(db_session, "org-a", basic, now - timedelta(days=25))
    renewed = subscription_state_machine.renew(db_session, "org-a", executed_by="admin-1", now=now)
    subscription_state_machine.cancel(
        db_session,
        "org-a",
        executed_by="admin-1",
        reason="cost_too_high",
        immediate_termination=True,
        now=now + timedelta(days=1),
    )

    assert ensure_utc(renewed.operation.effective_date) == now

    report = billing_analytics.get_analytics(db_session, now + timedelta(days=10), now + timedelta(days=20))

    usd = _metrics(report, "USD")
    assert usd.active_at_start == 0
    assert usd.active_at_end == 0


def test_replay_keeps_the_latest_subscription_version() -> None:
    now = _now()
    operations = [
        SubscriptionOperation(
            organization_id="org-a",
            operation_type="activation",
            executed_by="admin-1",
            effective_date=now - timedelta(days=30),
            currency="USD",
            resulting_status="ACTIVE",
            subscription_version=1,
        ),
        SubscriptionOperation(
            organization_id="org-a",
            operation_type="cancellation",
            executed_by="admin-1",
            effective_date=now + timedelta(days=1),
            currency="USD",
            resulting_status="CANCELLED",
            subscription_version=3,
        ),
        SubscriptionOperation(
            organization_id="org-a",
            operation_type="renewal",
            executed_by="admin-1",
            effective_date=now + timedelta(days=5),
            currency="USD",
            resulting_status="ACTIVE",
            subscription_version=2,
        ),
    ]

    counts = replay_active_counts(operations, [now, now + timedelta(days=10)])

    assert counts[now] == {"USD": 1}
    assert counts[now + timedelta(days=10)] == {}


def test_plan_breakdown_never_prices_a_missing_currency_at_zero(db_session: Session) -> None:
    now = _now()
    basic = _plan(db_session, "Basic", {"USD": "30.00"})
    _onboard(db_session, "org-a", basic, now - timedelta(days=5))
    row = db_session.scalar(select(OrganizationSubscription).where(OrganizationSubscription.organization_id == "org-a"))
    row.currency = "EUR"
    db_session.commit()

    with pytest.raises(UnsupportedCurrencyError):
        billing_analytics.get_analytics(db_session, now - timedelta(days=10), now + timedelta(days=1))

from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.business.subscription.catalog import PlanCatalog, PlanSnapshot, plan_catalog
from app.business.subscription.errors import NotFoundError, UnsupportedCurrencyError, ValidationError
from app.business.subscription.models import SubscriptionPlan
from app.business.subscription.repository import PlanRepository
from app.business.subscription.schemas import PlanCreate, PlanUpdate
from app.business.subscription.seed import subscription_seed_helper
from app.business.subscription.state_machine import subscription_state_machine
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
def reset_catalog() -> Generator[None, None, None]:
    plan_catalog.invalidate()
    yield
    plan_catalog.invalidate()


class RetiringPlanRepository(PlanRepository):
    """Retires the plan right after reading it, like an admin acting in between."""

    def __init__(self) -> None:
        self.catalog: PlanCatalog | None = None
        self.armed = True

    def get(self, session: Session, plan_id: uuid.UUID) -> SubscriptionPlan | None:
        plan = super().get(session, plan_id)
        if self.armed and self.catalog is not None:
            self.armed = False
            session.execute(
                update(SubscriptionPlan)
                .where(SubscriptionPlan.id == plan_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            self.catalog.invalidate()
        return plan


def _payload(name: str, prices: dict[str, str] | None = None, **overrides: object) -> PlanCreate:
    data: dict[str, object] = {
        "name": name,
        "prices": {code: Decimal(amount) for code, amount in (prices if prices is not None else {"USD": "29.99"}).items()},
        "max_gyms": 1,
        "max_clients_per_gym": 10,
        "max_users_per_gym": 2,
    }
    data.update(overrides)
    return PlanCreate(**data)


def test_create_and_get_plan(db_session: Session) -> None:
    created = plan_catalog.create_plan(db_session, _payload("  Basic  ", {"usd": "29.99", "EUR": "27.50"}))

    assert created.name == "Basic"
    assert created.prices == {"USD": Decimal("29.99"), "EUR": Decimal("27.50")}
    assert plan_catalog.get_plan(db_session, created.id) == created
    assert created.frequency_months == 1
    assert created.is_free is False


def test_duplicate_names_are_rejected_case_insensitively(db_session: Session) -> None:
    plan_catalog.create_plan(db_session, _payload("Pro"))

    with pytest.raises(ValidationError):
        plan_catalog.create_plan(db_session, _payload("pro"))


@pytest.mark.parametrize(
    "prices",
    [{"USD": "-1.00"}, {"ZZZ": "10.00"}, {}],
)
def test_invalid_prices_are_rejected(db_session: Session, prices: dict[str, str]) -> None:
    with pytest.raises(ValidationError):
        plan_catalog.create_plan(db_session, _payload("Broken", prices))


def test_active_plans_can_be_filtered_by_currency(db_session: Session) -> None:
    plan_catalog.create_plan(db_session, _payload("Basic", {"USD": "10.00"}, sort_order=1))
    plan_catalog.create_plan(db_session, _payload("Euro", {"EUR": "9.00"}, sort_order=2))
    plan_catalog.create_plan(db_session, _payload("Hidden", {"USD": "5.00"}, is_public=False, sort_order=3))

    assert [plan.name for plan in plan_catalog.list_active_plans(db_session)] == ["Basic", "Euro", "Hidden"]
    assert [plan.name for plan in plan_catalog.list_active_plans(db_session, currency="usd")] == ["Basic", "Hidden"]
    assert [plan.name for plan in plan_catalog.list_active_plans(db_session, public_only=True)] == ["Basic", "Euro"]


def test_retired_plans_leave_listings_but_stay_readable(db_session: Session) -> None:
    plan = plan_catalog.create_plan(db_session, _payload("Legacy"))
    plan_catalog.list_active_plans(db_session)

    retired = plan_catalog.retire_plan(db_session, plan.id)

    assert retired.is_active is False
    assert plan_catalog.list_active_plans(db_session) == []
    assert plan_catalog.get_plan(db_session, plan.id).is_active is False
    with pytest.raises(ValidationError):
        plan_catalog.get_active_plan(db_session, plan.id)


def test_resolve_price_requires_an_offered_currency(db_session: Session) -> None:
    plan = plan_catalog.create_plan(db_session, _payload("Basic", {"USD": "29.99"}))

    assert plan_catalog.resolve_price(plan, "usd") == Decimal("29.99")
    with pytest.raises(UnsupportedCurrencyError):
        plan_catalog.resolve_price(plan, "JPY")


def test_financial_fields_are_frozen_once_a_plan_is_used(db_session: Session) -> None:
    plan = plan_catalog.create_plan(db_session, _payload("Basic"))
    subscription_state_machine.onboard(db_session, "org-1", executed_by="admin-1", plan_id=plan.id)

    with pytest.raises(ValidationError):
        plan_catalog.update_plan(db_session, plan.id, PlanUpdate(prices={"USD": Decimal("39.99")}))

    updated = plan_catalog.update_plan(db_session, plan.id, PlanUpdate(description="Now with reports"))
    assert updated.description == "Now with reports"
    assert updated.prices == {"USD": Decimal("29.99")}


def test_unused_plan_prices_can_change(db_session: Session) -> None:
    plan = plan_catalog.create_plan(db_session, _payload("Basic"))
    plan_catalog.get_plan(db_session, plan.id)

    plan_catalog.update_plan(db_session, plan.id, PlanUpdate(prices={"USD": Decimal("39.99")}))

    assert plan_catalog.get_plan(db_session, plan.id).prices == {"USD": Decimal("39.99")}


def test_only_unreferenced_plans_can_be_deleted(db_session: Session) -> None:
    used = plan_catalog.create_plan(db_session, _payload("Used"))
    unused = plan_catalog.create_plan(db_session, _payload("Unused"))
    subscription_state_machine.onboard(db_session, "org-1", executed_by="admin-1", plan_id=used.id)

    with pytest.raises(ValidationError):
        plan_catalog.delete_plan(db_session, used.id)

    plan_catalog.delete_plan(db_session, unused.id)
    with pytest.raises(NotFoundError):
        plan_catalog.get_plan(db_session, unused.id)


def test_default_plan_is_the_first_free_plan(db_session: Session) -> None:
    with pytest.raises(NotFoundError):
        plan_catalog.default_plan(db_session)

    plan_catalog.create_plan(db_session, _payload("Paid", {"USD": "10.00"}))
    free = subscription_seed_helper.ensure_free_plan(db_session)

    assert isinstance(free, PlanSnapshot)
    assert free.is_free is True
    assert plan_catalog.default_plan(db_session).id == free.id
    assert subscription_seed_helper.ensure_free_plan(db_session).id == free.id


def test_a_read_overlapping_a_retirement_is_not_cached(db_session: Session) -> None:
    repository = RetiringPlanRepository()
    catalog = PlanCatalog(plan_repository=repository)
    plan = catalog.create_plan(db_session, _payload("Basic"))
    repository.catalog = catalog

    catalog.get_plan(db_session, plan.id)
    db_session.commit()

    assert catalog.get_plan(db_session, plan.id).is_active is False
    with pytest.raises(ValidationError):
        catalog.get_active_plan(db_session, plan.id)

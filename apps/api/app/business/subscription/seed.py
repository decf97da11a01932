from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from app.business.subscription.catalog import PlanCatalog, PlanSnapshot, plan_catalog
from app.business.subscription.schemas import PlanCreate

FREE_PLAN_NAME = "Free"


class SubscriptionSeedHelper:
    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    def ensure_free_plan(self, session: Session, *, currencies: tuple[str, ...] = ("USD",)) -> PlanSnapshot:
        for plan in self._catalog.list_active_plans(session):
            if plan.is_free:
                return plan
        return self._catalog.create_plan(
            session,
            PlanCreate(
                name=FREE_PLAN_NAME,
                description="Single gym starter plan",
                prices={currency: Decimal("0") for currency in currencies},
                billing_frequency="monthly",
                duration=1,
                duration_unit="MONTH",
                max_gyms=1,
                max_clients_per_gym=10,
                max_users_per_gym=2,
                features={"reports": False, "api_access": False},
                sort_order=0,
            ),
        )


subscription_seed_helper = SubscriptionSeedHelper(plan_catalog)

"""
Plan catalog.

Plans are served as immutable ``PlanSnapshot`` values from a TTL cache so
request handlers never hold ORM instances bound to another session. Every
mutation clears the cache before returning, which keeps admin listings
read-after-write consistent.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from threading import Lock
from typing import Any

from cachetools import TTLCache
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import metrics
from app.business.subscription.errors import NotFoundError, UnsupportedCurrencyError, ValidationError
from app.business.subscription.models import FREQUENCY_MONTHS, SubscriptionPlan, ensure_utc
from app.business.subscription.money import is_supported_currency, normalize_currency
from app.business.subscription.repository import PlanRepository
from app.business.subscription.schemas import PlanCreate, PlanUpdate
from app.core.config import get_settings

logger = logging.getLogger("app.subscription.catalog")

FINANCIAL_FIELDS = frozenset(
    {
        "prices",
        "billing_frequency",
        "duration",
        "duration_unit",
        "max_gyms",
        "max_clients_per_gym",
        "max_users_per_gym",
    }
)


@dataclass(frozen=True, slots=True)
class PlanSnapshot:
    id: uuid.UUID
    name: str
    description: str | None
    prices: dict[str, Decimal]
    billing_frequency: str
    duration: int
    duration_unit: str
    max_gyms: int
    max_clients_per_gym: int
    max_users_per_gym: int
    features: dict[str, Any]
    is_active: bool
    is_public: bool
    sort_order: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, plan: SubscriptionPlan) -> PlanSnapshot:
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            prices=plan.price_map,
            billing_frequency=plan.billing_frequency,
            duration=plan.duration,
            duration_unit=plan.duration_unit,
            max_gyms=plan.max_gyms,
            max_clients_per_gym=plan.max_clients_per_gym,
            max_users_per_gym=plan.max_users_per_gym,
            features=dict(plan.features or {}),
            is_active=plan.is_active,
            is_public=plan.is_public,
            sort_order=plan.sort_order,
            created_at=ensure_utc(plan.created_at),
            updated_at=ensure_utc(plan.updated_at),
        )

    @property
    def frequency_months(self) -> int:
        return FREQUENCY_MONTHS.get(self.billing_frequency, 1)

    @property
    def is_free(self) -> bool:
        return bool(self.prices) and all(amount == 0 for amount in self.prices.values())

    def offers(self, currency: str) -> bool:
        return normalize_currency(currency) in self.prices


def _new_cache() -> TTLCache:
    settings = get_settings()
    return TTLCache(maxsize=settings.plan_cache_size, ttl=settings.plan_cache_ttl_seconds)


@dataclass(slots=True)
class PlanCatalog:
    plan_repository: PlanRepository = field(default_factory=PlanRepository)
    _cache: TTLCache = field(default_factory=_new_cache)
    _lock: Lock = field(default_factory=Lock)
    _generation: int = 0

    def get_plan(self, session: Session, plan_id: uuid.UUID) -> PlanSnapshot:
        key = ("plan", plan_id)
        with self._lock:
            cached = self._cache.get(key)
            generation = self._generation
        metrics.observe_plan_cache(cached is not None)
        if cached is not None:
            return cached

        plan = self.plan_repository.get(session, plan_id)
        if plan is None:
            raise NotFoundError("subscription plan not found", context={"plan_id": str(plan_id)})
        snapshot = PlanSnapshot.from_model(plan)
        self._store(key, snapshot, generation)
        return snapshot

    def get_active_plan(self, session: Session, plan_id: uuid.UUID) -> PlanSnapshot:
        plan = self.get_plan(session, plan_id)
        if not plan.is_active:
            raise ValidationError("subscription plan is retired", context={"plan_id": str(plan_id)})
        return plan

    def list_active_plans(
        self,
        session: Session,
        *,
        currency: str | None = None,
        public_only: bool = False,
    ) -> list[PlanSnapshot]:
        normalized = normalize_currency(currency) if currency else None
        key = ("active", normalized, public_only)
        with self._lock:
            cached = self._cache.get(key)
            generation = self._generation
        metrics.observe_plan_cache(cached is not None)
        if cached is not None:
            return list(cached)

        plans = [PlanSnapshot.from_model(plan) for plan in self.plan_repository.list_active(session)]
        if normalized is not None:
            plans = [plan for plan in plans if plan.offers(normalized)]
        if public_only:
            plans = [plan for plan in plans if plan.is_public]
        self._store(key, tuple(plans), generation)
        return plans

    def resolve_price(self, plan: PlanSnapshot, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        price = plan.prices.get(normalized)
        if price is None:
            raise UnsupportedCurrencyError(str(plan.id), normalized)
        return price

    def default_plan(self, session: Session) -> PlanSnapshot:
        settings = get_settings()
        if settings.default_plan_id:
            return self.get_active_plan(session, uuid.UUID(settings.default_plan_id))
        for plan in self.list_active_plans(session):
            if plan.is_free:
                return plan
        raise NotFoundError("no default subscription plan is configured")

    def create_plan(self, session: Session, payload: PlanCreate) -> PlanSnapshot:
        data = payload.model_dump(mode="python")
        data["name"] = data["name"].strip()
        data["prices"] = self._validate_prices(data["prices"])
        if self.plan_repository.get_by_name(session, data["name"]) is not None:
            raise ValidationError("plan name already exists", context={"name": data["name"]})

        plan = SubscriptionPlan(**data)
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError("plan name already exists", context={"name": data["name"]})
        session.refresh(plan)
        self.invalidate()
        logger.info("subscription.plan_created", extra={"plan_id": str(plan.id), "plan_name": plan.name})
        return PlanSnapshot.from_model(plan)

    def update_plan(self, session: Session, plan_id: uuid.UUID, payload: PlanUpdate) -> PlanSnapshot:
        plan = self.plan_repository.get(session, plan_id)
        if plan is None:
            raise NotFoundError("subscription plan not found", context={"plan_id": str(plan_id)})

        changes = payload.model_dump(mode="python", exclude_unset=True)
        changes = {key: value for key, value in changes.items() if value is not None or key == "description"}
        financial = sorted(key for key in changes if key in FINANCIAL_FIELDS)
        if financial and self.plan_repository.is_referenced(session, plan_id):
            raise ValidationError(
                "financial fields of a plan in use cannot change; create a new plan instead",
                context={"plan_id": str(plan_id), "fields": financial},
            )
        if "prices" in changes:
            changes["prices"] = self._validate_prices(changes["prices"])
        if "name" in changes:
            changes["name"] = changes["name"].strip()
            existing = self.plan_repository.get_by_name(session, changes["name"])
            if existing is not None and existing.id != plan.id:
                raise ValidationError("plan name already exists", context={"name": changes["name"]})

        for key, value in changes.items():
            setattr(plan, key, value)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError("plan name already exists", context={"name": changes.get("name")})
        session.refresh(plan)
        self.invalidate()
        logger.info("subscription.plan_updated", extra={"plan_id": str(plan.id), "fields": sorted(changes)})
        return PlanSnapshot.from_model(plan)

    def retire_plan(self, session: Session, plan_id: uuid.UUID) -> PlanSnapshot:
        plan = self.plan_repository.get(session, plan_id)
        if plan is None:
            raise NotFoundError("subscription plan not found", context={"plan_id": str(plan_id)})
        plan.is_active = False
        session.commit()
        session.refresh(plan)
        self.invalidate()
        logger.info("subscription.plan_retired", extra={"plan_id": str(plan.id)})
        return PlanSnapshot.from_model(plan)

    def delete_plan(self, session: Session, plan_id: uuid.UUID) -> None:
        plan = self.plan_repository.get(session, plan_id)
        if plan is None:
            raise NotFoundError("subscription plan not found", context={"plan_id": str(plan_id)})
        if self.plan_repository.is_referenced(session, plan_id):
            raise ValidationError(
                "plan is in use and can only be retired", context={"plan_id": str(plan_id)}
            )
        session.delete(plan)
        session.commit()
        self.invalidate()
        logger.info("subscription.plan_deleted", extra={"plan_id": str(plan_id)})

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._cache.clear()

    def _store(self, key: tuple[Any, ...], value: Any, generation: int) -> None:
        # A read that overlapped an invalidate() must not repopulate the cache.
        with self._lock:
            if generation == self._generation:
                self._cache[key] = value

    @staticmethod
    def _validate_prices(prices: dict[str, Decimal]) -> dict[str, str]:
        if not prices:
            raise ValidationError("a plan must be priced in at least one currency")
        normalized: dict[str, str] = {}
        for code, amount in prices.items():
            if not is_supported_currency(code):
                raise ValidationError(f"unknown currency code {code}", context={"currency": code})
            amount = Decimal(amount)
            if amount < 0:
                raise ValidationError(
                    "plan prices must be non-negative", context={"currency": code, "amount": str(amount)}
                )
            normalized[normalize_currency(code)] = str(amount)
        return normalized


plan_catalog = PlanCatalog()

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from app.business.subscription.models import (
    CancellationRecord,
    CancellationStatus,
    OrganizationSubscription,
    PaymentEvent,
    RequestStatus,
    ScheduledChangeStatus,
    ScheduledPlanChange,
    SubscriptionOperation,
    SubscriptionPlan,
    SubscriptionRequest,
    SubscriptionStatus,
)


class PlanRepository:
    model = SubscriptionPlan

    def get(self, session: Session, plan_id: uuid.UUID) -> SubscriptionPlan | None:
        return session.get(SubscriptionPlan, plan_id)

    def get_by_name(self, session: Session, name: str) -> SubscriptionPlan | None:
        return session.scalar(select(SubscriptionPlan).where(func.lower(SubscriptionPlan.name) == name.strip().lower()))

    def list_active(self, session: Session) -> Sequence[SubscriptionPlan]:
        stmt = (
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.name.asc())
        )
        return session.scalars(stmt).all()

    def is_referenced(self, session: Session, plan_id: uuid.UUID) -> bool:
        subscription_refs = session.scalar(
            select(func.count())
            .select_from(OrganizationSubscription)
            .where(OrganizationSubscription.subscription_plan_id == plan_id)
        )
        if subscription_refs:
            return True
        operation_refs = session.scalar(
            select(func.count())
            .select_from(SubscriptionOperation)
            .where(or_(SubscriptionOperation.from_plan_id == plan_id, SubscriptionOperation.to_plan_id == plan_id))
        )
        if operation_refs:
            return True
        scheduled_refs = session.scalar(
            select(func.count()).select_from(ScheduledPlanChange).where(ScheduledPlanChange.to_plan_id == plan_id)
        )
        return bool(scheduled_refs)


class SubscriptionRepository:
    model = OrganizationSubscription

    def get_by_organization(self, session: Session, organization_id: str) -> OrganizationSubscription | None:
        return session.scalar(
            select(OrganizationSubscription).where(OrganizationSubscription.organization_id == organization_id)
        )

    def list_by_status(self, session: Session, status: str) -> Sequence[OrganizationSubscription]:
        return session.scalars(
            select(OrganizationSubscription)
            .where(OrganizationSubscription.status == status)
            .order_by(OrganizationSubscription.organization_id.asc())
        ).all()

    def list_due(self, session: Session, now: datetime) -> Sequence[OrganizationSubscription]:
        stmt = (
            select(OrganizationSubscription)
            .where(
                and_(
                    OrganizationSubscription.status == SubscriptionStatus.ACTIVE,
                    OrganizationSubscription.subscription_end.is_not(None),
                    OrganizationSubscription.subscription_end < now,
                )
            )
            .order_by(OrganizationSubscription.subscription_end.asc())
        )
        return session.scalars(stmt).all()

    def conditional_update(
        self,
        session: Session,
        subscription_id: uuid.UUID,
        read_version: int,
        values: dict[str, Any],
    ) -> bool:
        """Write ``values`` only if the row still carries ``read_version``; bumps the version."""
        result = session.execute(
            update(OrganizationSubscription)
            .where(
                and_(
                    OrganizationSubscription.id == subscription_id,
                    OrganizationSubscription.version == read_version,
                )
            )
            .values(version=OrganizationSubscription.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OperationRepository:
    model = SubscriptionOperation

    def list_for_organization(
        self, session: Session, organization_id: str, *, limit: int = 50, offset: int = 0
    ) -> Sequence[SubscriptionOperation]:
        stmt = (
            select(SubscriptionOperation)
            .where(SubscriptionOperation.organization_id == organization_id)
            .order_by(SubscriptionOperation.created_at.desc(), SubscriptionOperation.subscription_version.desc())
            .limit(limit)
            .offset(offset)
        )
        return session.scalars(stmt).all()

    def list_until(self, session: Session, end: datetime) -> Sequence[SubscriptionOperation]:
        stmt = (
            select(SubscriptionOperation)
            .where(SubscriptionOperation.effective_date < end)
            .order_by(
                SubscriptionOperation.effective_date.asc(),
                SubscriptionOperation.created_at.asc(),
                SubscriptionOperation.subscription_version.asc(),
            )
        )
        return session.scalars(stmt).all()


class RequestRepository:
    model = SubscriptionRequest

    def get(self, session: Session, request_id: uuid.UUID) -> SubscriptionRequest | None:
        return session.get(SubscriptionRequest, request_id)

    def list(
        self,
        session: Session,
        *,
        status: str | None = None,
        organization_id: str | None = None,
    ) -> Sequence[SubscriptionRequest]:
        stmt = select(SubscriptionRequest)
        if status is not None:
            stmt = stmt.where(SubscriptionRequest.status == status)
        if organization_id is not None:
            stmt = stmt.where(SubscriptionRequest.organization_id == organization_id)
        return session.scalars(stmt.order_by(SubscriptionRequest.created_at.desc())).all()

    def has_pending_renewal(self, session: Session, organization_id: str) -> bool:
        count = session.scalar(
            select(func.count())
            .select_from(SubscriptionRequest)
            .where(
                and_(
                    SubscriptionRequest.organization_id == organization_id,
                    SubscriptionRequest.status == RequestStatus.PENDING,
                    SubscriptionRequest.operation_type == "renewal",
                )
            )
        )
        return bool(count)

    def conditional_finalize(self, session: Session, request_id: uuid.UUID, values: dict[str, Any]) -> bool:
        """Move a request out of ``pending``; fails if another writer already did."""
        result = session.execute(
            update(SubscriptionRequest)
            .where(and_(SubscriptionRequest.id == request_id, SubscriptionRequest.status == RequestStatus.PENDING))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CancellationRepository:
    model = CancellationRecord

    def pending_for_organization(self, session: Session, organization_id: str) -> CancellationRecord | None:
        return session.scalar(
            select(CancellationRecord)
            .where(
                and_(
                    CancellationRecord.organization_id == organization_id,
                    CancellationRecord.status == CancellationStatus.PENDING,
                )
            )
            .order_by(CancellationRecord.processed_at.desc())
        )

    def list(self, session: Session, organization_id: str | None = None) -> Sequence[CancellationRecord]:
        stmt = select(CancellationRecord)
        if organization_id is not None:
            stmt = stmt.where(CancellationRecord.organization_id == organization_id)
        return session.scalars(stmt.order_by(CancellationRecord.processed_at.desc())).all()


class ScheduledChangeRepository:
    model = ScheduledPlanChange

    def pending_for_organization(self, session: Session, organization_id: str) -> ScheduledPlanChange | None:
        return session.scalar(
            select(ScheduledPlanChange)
            .where(
                and_(
                    ScheduledPlanChange.organization_id == organization_id,
                    ScheduledPlanChange.status == ScheduledChangeStatus.PENDING,
                )
            )
            .order_by(ScheduledPlanChange.created_at.desc())
        )

    def supersede_pending(self, session: Session, organization_id: str) -> int:
        result = session.execute(
            update(ScheduledPlanChange)
            .where(
                and_(
                    ScheduledPlanChange.organization_id == organization_id,
                    ScheduledPlanChange.status == ScheduledChangeStatus.PENDING,
                )
            )
            .values(status=ScheduledChangeStatus.SUPERSEDED)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount


class PaymentEventRepository:
    model = PaymentEvent

    def get_by_external_id(self, session: Session, external_event_id: str) -> PaymentEvent | None:
        return session.scalar(select(PaymentEvent).where(PaymentEvent.external_event_id == external_event_id))

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events, metrics
from app.business.subscription.catalog import PlanCatalog, PlanSnapshot, plan_catalog
from app.business.subscription.entitlements import (
    EntitlementEnforcer,
    PlanLimits,
    UsageSnapshotProvider,
    entitlement_enforcer,
    get_usage_provider,
)
from app.business.subscription.errors import ConflictError, NotFoundError, SubscriptionError, ValidationError
from app.business.subscription.models import (
    TERMINAL_STATUSES,
    CancellationReason,
    CancellationRecord,
    CancellationStatus,
    OperationType,
    OrganizationSubscription,
    ScheduledChangeStatus,
    ScheduledPlanChange,
    SubscriptionOperation,
    SubscriptionStatus,
    ensure_utc,
    utcnow,
)
from app.business.subscription.money import normalize_currency
from app.business.subscription.periods import (
    add_duration,
    current_period,
    days_remaining,
    expiring_soon,
    in_renewal_window,
)
from app.business.subscription.proration import ProrationCalculator, proration_calculator
from app.business.subscription.repository import (
    CancellationRepository,
    OperationRepository,
    RequestRepository,
    ScheduledChangeRepository,
    SubscriptionRepository,
)
from app.business.subscription.schemas import (
    CancellationRead,
    LimitsRead,
    PlanRead,
    ScheduledChangeRead,
    SubscriptionStatusRead,
    UsageRead,
)
from app.core.config import get_settings
from app.otel import get_tracer

logger = logging.getLogger("app.subscription.state_machine")
tracer = get_tracer("app.subscription.state_machine")


VALID_SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    SubscriptionStatus.PENDING_ACTIVATION: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UPGRADING,
        SubscriptionStatus.DOWNGRADING,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
    },
    SubscriptionStatus.UPGRADING: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.DOWNGRADING: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.EXPIRED: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.ACTIVE},
}

OPERATION_SOURCE_STATES: dict[str, set[str]] = {
    OperationType.ACTIVATION: {
        SubscriptionStatus.PENDING_ACTIVATION,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
    },
    OperationType.UPGRADE: {SubscriptionStatus.ACTIVE},
    OperationType.DOWNGRADE: {SubscriptionStatus.ACTIVE},
    OperationType.RENEWAL: {SubscriptionStatus.ACTIVE},
    OperationType.CANCELLATION: {SubscriptionStatus.ACTIVE},
    OperationType.EXPIRATION: {SubscriptionStatus.ACTIVE},
}

EVENT_TYPES: dict[str, str] = {
    OperationType.ACTIVATION: "subscription.activated",
    OperationType.UPGRADE: "subscription.upgraded",
    OperationType.DOWNGRADE: "subscription.downgraded",
    OperationType.RENEWAL: "subscription.renewed",
    OperationType.CANCELLATION: "subscription.cancelled",
    OperationType.EXPIRATION: "subscription.expired",
}

_TRANSIENT_STATUS: dict[str, str] = {
    OperationType.UPGRADE: SubscriptionStatus.UPGRADING,
    OperationType.DOWNGRADE: SubscriptionStatus.DOWNGRADING,
}


@dataclass(slots=True)
class TransitionResult:
    subscription: OrganizationSubscription
    operation: SubscriptionOperation | None = None
    scheduled_change: ScheduledPlanChange | None = None
    cancellation: CancellationRecord | None = None
    event_type: str | None = None
    actor: str = "system"
    before: dict[str, Any] | None = None


@dataclass(slots=True)
class SweepResult:
    expired: int = 0
    cancelled: int = 0
    renewed: int = 0
    skipped: int = 0
    conflicts: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class SubscriptionStateMachine:
    catalog: PlanCatalog = field(default_factory=lambda: plan_catalog)
    enforcer: EntitlementEnforcer = field(default_factory=lambda: entitlement_enforcer)
    calculator: ProrationCalculator = field(default_factory=lambda: proration_calculator)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)
    operation_repository: OperationRepository = field(default_factory=OperationRepository)
    cancellation_repository: CancellationRepository = field(default_factory=CancellationRepository)
    scheduled_change_repository: ScheduledChangeRepository = field(default_factory=ScheduledChangeRepository)
    request_repository: RequestRepository = field(default_factory=RequestRepository)

    def onboard(
        self,
        session: Session,
        organization_id: str,
        *,
        executed_by: str,
        plan_id: uuid.UUID | None = None,
        currency: str | None = None,
        start: datetime | None = None,
        await_payment: bool = False,
    ) -> TransitionResult:
        with tracer.start_as_current_span("subscription.onboard") as span:
            span.set_attribute("organization_id", organization_id)
            existing = self.subscription_repository.get_by_organization(session, organization_id)
            if existing is not None and existing.status not in TERMINAL_STATUSES:
                raise ValidationError(
                    "organization already has a subscription",
                    context={"organization_id": organization_id, "status": existing.status},
                )

            plan = (
                self.catalog.get_active_plan(session, plan_id)
                if plan_id is not None
                else self.catalog.default_plan(session)
            )
            span.set_attribute("plan_id", str(plan.id))
            billing_currency = normalize_currency(
                currency or (existing.currency if existing else get_settings().default_currency)
            )
            self.catalog.resolve_price(plan, billing_currency)

            if existing is not None or plan.is_free or not await_payment:
                return self.activate(
                    session,
                    organization_id,
                    plan.id,
                    start_date=start,
                    currency=billing_currency,
                    executed_by=executed_by,
                    notes="onboarding",
                )

            subscription = OrganizationSubscription(
                organization_id=organization_id,
                subscription_plan_id=plan.id,
                status=SubscriptionStatus.PENDING_ACTIVATION,
                currency=billing_currency,
                subscription_start=None,
                subscription_end=None,
                version=1,
                subscription_metadata={"onboarded_by": executed_by},
            )
            session.add(subscription)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise ConflictError(
                    "organization already has a subscription", context={"organization_id": organization_id}
                )
            session.refresh(subscription)

        events.publish(
            {
                "event_type": "subscription.pending_activation",
                "organization_id": organization_id,
                "plan_id": str(plan.id),
                "currency": billing_currency,
            }
        )
        audit.record(
            executed_by,
            "subscription.organization_subscription",
            organization_id,
            "subscription.onboarded",
            None,
            self._snapshot(subscription),
        )
        logger.info(
            "subscription.pending_activation",
            extra={"organization_id": organization_id, "plan_id": str(plan.id), "currency": billing_currency},
        )
        return TransitionResult(subscription=subscription, actor=executed_by)

    def activate(
        self,
        session: Session,
        organization_id: str,
        plan_id: uuid.UUID,
        *,
        executed_by: str,
        start_date: datetime | None = None,
        currency: str | None = None,
        expected_version: int | None = None,
        request_id: uuid.UUID | None = None,
        notes: str | None = None,
        commit: bool = True,
    ) -> TransitionResult:
        with tracer.start_as_current_span("subscription.activate") as span, self._unit_of_work(session):
            span.set_attribute("organization_id", organization_id)
            plan = self.catalog.get_active_plan(session, plan_id)
            start = ensure_utc(start_date) or utcnow()
            end = add_duration(start, plan.duration, plan.duration_unit)
            subscription = self.subscription_repository.get_by_organization(session, organization_id)

            if subscription is None:
                billing_currency = normalize_currency(currency or get_settings().default_currency)
                price = self.catalog.resolve_price(plan, billing_currency)
                subscription = OrganizationSubscription(
                    organization_id=organization_id,
                    subscription_plan_id=plan.id,
                    status=SubscriptionStatus.ACTIVE,
                    currency=billing_currency,
                    subscription_start=start,
                    subscription_end=end,
                    version=1,
                    subscription_metadata={},
                )
                session.add(subscription)
                try:
                    session.flush()
                except IntegrityError:
                    session.rollback()
                    metrics.observe_conflict(OperationType.ACTIVATION)
                    raise ConflictError(
                        "organization already has a subscription", context={"organization_id": organization_id}
                    )
                operation = self._build_operation(
                    organization_id=organization_id,
                    operation_type=OperationType.ACTIVATION,
                    executed_by=executed_by,
                    effective_date=start,
                    from_plan_id=None,
                    to_plan_id=plan.id,
                    previous_end_date=None,
                    new_end_date=end,
                    proration_amount=price,
                    currency=billing_currency,
                    plan=plan,
                    plan_price=price,
                    resulting_status=SubscriptionStatus.ACTIVE,
                    request_id=request_id,
                    notes=notes,
                )
                operation.subscription_version = 1
                session.add(operation)
                session.flush()
                result = TransitionResult(
                    subscription=subscription,
                    operation=operation,
                    event_type=EVENT_TYPES[OperationType.ACTIVATION],
                    actor=executed_by,
                )
                return self._finish(session, result, commit=commit)

            self._check_version(subscription, expected_version, OperationType.ACTIVATION)
            self._assert_operation(subscription.status, OperationType.ACTIVATION)
            self._assert_transition(subscription.status, SubscriptionStatus.ACTIVE)
            billing_currency = normalize_currency(currency or subscription.currency)
            price = self.catalog.resolve_price(plan, billing_currency)
            before = self._snapshot(subscription)
            operation = self._build_operation(
                organization_id=organization_id,
                operation_type=OperationType.ACTIVATION,
                executed_by=executed_by,
                effective_date=start,
                from_plan_id=subscription.subscription_plan_id,
                to_plan_id=plan.id,
                previous_end_date=subscription.subscription_end,
                new_end_date=end,
                proration_amount=price,
                currency=billing_currency,
                plan=plan,
                plan_price=price,
                resulting_status=SubscriptionStatus.ACTIVE,
                request_id=request_id,
                notes=notes,
            )
            self._write(
                session,
                subscription,
                operation,
                {
                    "subscription_plan_id": plan.id,
                    "status": SubscriptionStatus.ACTIVE,
                    "currency": billing_currency,
                    "subscription_start": start,
                    "subscription_end": end,
                },
            )
            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                event_type=EVENT_TYPES[OperationType.ACTIVATION],
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=commit)

    def upgrade(
        self,
        session: Session,
        organization_id: str,
        new_plan_id: uuid.UUID,
        *,
        executed_by: str,
        effective_date: datetime | None = None,
        immediate: bool = True,
        expected_version: int | None = None,
        request_id: uuid.UUID | None = None,
        usage_provider: UsageSnapshotProvider | None = None,
        commit: bool = True,
    ) -> TransitionResult:
        return self._change_plan(
            session,
            organization_id,
            new_plan_id,
            OperationType.UPGRADE,
            executed_by=executed_by,
            effective_date=effective_date,
            immediate=immediate,
            expected_version=expected_version,
            request_id=request_id,
            usage_provider=usage_provider,
            commit=commit,
        )

    def downgrade(
        self,
        session: Session,
        organization_id: str,
        new_plan_id: uuid.UUID,
        *,
        executed_by: str,
        effective_date: datetime | None = None,
        immediate: bool = True,
        expected_version: int | None = None,
        request_id: uuid.UUID | None = None,
        usage_provider: UsageSnapshotProvider | None = None,
        commit: bool = True,
    ) -> TransitionResult:
        return self._change_plan(
            session,
            organization_id,
            new_plan_id,
            OperationType.DOWNGRADE,
            executed_by=executed_by,
            effective_date=effective_date,
            immediate=immediate,
            expected_version=expected_version,
            request_id=request_id,
            usage_provider=usage_provider,
            commit=commit,
        )

    def renew(
        self,
        session: Session,
        organization_id: str,
        *,
        executed_by: str,
        duration_override: tuple[int, str] | None = None,
        expected_version: int | None = None,
        request_id: uuid.UUID | None = None,
        usage_provider: UsageSnapshotProvider | None = None,
        now: datetime | None = None,
        commit: bool = True,
    ) -> TransitionResult:
        now = ensure_utc(now) or utcnow()
        with tracer.start_as_current_span("subscription.renew") as span, self._unit_of_work(session):
            span.set_attribute("organization_id", organization_id)
            subscription = self._require_subscription(session, organization_id)
            self._check_version(subscription, expected_version, OperationType.RENEWAL)
            self._assert_operation(subscription.status, OperationType.RENEWAL)
            self._assert_transition(subscription.status, SubscriptionStatus.ACTIVE)

            settings = get_settings()
            current_end = ensure_utc(subscription.subscription_end)
            if not in_renewal_window(current_end, now, settings.renewal_window_days):
                raise ValidationError(
                    "subscription is not within the renewal window",
                    context={
                        "organization_id": organization_id,
                        "subscription_end": current_end.isoformat() if current_end else None,
                        "renewal_window_days": settings.renewal_window_days,
                    },
                )

            operation_type = OperationType.RENEWAL
            plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
            scheduled = self.scheduled_change_repository.pending_for_organization(session, organization_id)
            if scheduled is not None and ensure_utc(scheduled.effective_date) <= current_end:
                plan = self.catalog.get_active_plan(session, scheduled.to_plan_id)
                operation_type = scheduled.operation_type
                if operation_type == OperationType.DOWNGRADE:
                    self.enforcer.enforce_for_organization(usage_provider or get_usage_provider(), organization_id, plan)
                span.set_attribute("scheduled_change_id", str(scheduled.id))

            amount, unit = duration_override or (plan.duration, plan.duration_unit)
            new_end = add_duration(current_end, amount, unit)
            new_start = current_end if current_end <= now else ensure_utc(subscription.subscription_start)
            price = self.calculator.compute_renewal_charge(plan, subscription.currency)
            before = self._snapshot(subscription)
            operation = self._build_operation(
                organization_id=organization_id,
                operation_type=operation_type,
                executed_by=executed_by,
                effective_date=min(now, current_end),
                from_plan_id=subscription.subscription_plan_id,
                to_plan_id=plan.id,
                previous_end_date=current_end,
                new_end_date=new_end,
                proration_amount=price,
                currency=subscription.currency,
                plan=plan,
                plan_price=price,
                resulting_status=SubscriptionStatus.ACTIVE,
                request_id=request_id or (scheduled.request_id if scheduled is not None else None),
                notes="scheduled plan change applied at renewal" if operation_type != OperationType.RENEWAL else None,
            )
            self._write(
                session,
                subscription,
                operation,
                {
                    "subscription_plan_id": plan.id,
                    "status": SubscriptionStatus.ACTIVE,
                    "subscription_start": new_start,
                    "subscription_end": new_end,
                },
            )
            if operation_type != OperationType.RENEWAL and scheduled is not None:
                scheduled.status = ScheduledChangeStatus.APPLIED
                scheduled.applied_at = now
                session.flush()

            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                scheduled_change=scheduled if operation_type != OperationType.RENEWAL else None,
                event_type=EVENT_TYPES[OperationType.RENEWAL],
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=commit)

    def cancel(
        self,
        session: Session,
        organization_id: str,
        *,
        executed_by: str,
        reason: str,
        immediate_termination: bool = False,
        reason_description: str | None = None,
        retention_offered: bool = False,
        retention_details: str | None = None,
        refund: bool = True,
        expected_version: int | None = None,
        request_id: uuid.UUID | None = None,
        now: datetime | None = None,
        commit: bool = True,
    ) -> TransitionResult:
        now = ensure_utc(now) or utcnow()
        with tracer.start_as_current_span("subscription.cancel") as span, self._unit_of_work(session):
            span.set_attribute("organization_id", organization_id)
            span.set_attribute("immediate", immediate_termination)
            if reason not in {item.value for item in CancellationReason}:
                raise ValidationError(f"unknown cancellation reason {reason}", context={"reason": reason})

            subscription = self._require_subscription(session, organization_id)
            self._check_version(subscription, expected_version, OperationType.CANCELLATION)
            self._assert_operation(subscription.status, OperationType.CANCELLATION)
            if self.cancellation_repository.pending_for_organization(session, organization_id) is not None:
                raise ValidationError(
                    "a cancellation is already scheduled for this subscription",
                    context={"organization_id": organization_id},
                )

            plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
            plan_price = plan.prices.get(subscription.currency)
            current_end = ensure_utc(subscription.subscription_end)
            before = self._snapshot(subscription)
            self.scheduled_change_repository.supersede_pending(session, organization_id)

            if immediate_termination:
                self._assert_transition(subscription.status, SubscriptionStatus.CANCELLED)
                refund_amount = Decimal("0")
                if refund:
                    period = current_period(
                        subscription.subscription_start, current_end, plan.duration, plan.duration_unit
                    )
                    refund_amount = self.calculator.compute_cancellation_refund(
                        plan, period, now, subscription.currency
                    ).amount
                operation = self._build_operation(
                    organization_id=organization_id,
                    operation_type=OperationType.CANCELLATION,
                    executed_by=executed_by,
                    effective_date=now,
                    from_plan_id=subscription.subscription_plan_id,
                    to_plan_id=None,
                    previous_end_date=current_end,
                    new_end_date=now,
                    proration_amount=-refund_amount,
                    currency=subscription.currency,
                    plan=plan,
                    plan_price=plan_price,
                    resulting_status=SubscriptionStatus.CANCELLED,
                    request_id=request_id,
                    notes=reason_description,
                )
                values: dict[str, Any] = {"status": SubscriptionStatus.CANCELLED, "subscription_end": now}
                record_status = CancellationStatus.COMPLETED
                effective = now
            else:
                refund_amount = Decimal("0")
                operation = self._build_operation(
                    organization_id=organization_id,
                    operation_type=OperationType.CANCELLATION,
                    executed_by=executed_by,
                    effective_date=now,
                    from_plan_id=subscription.subscription_plan_id,
                    to_plan_id=None,
                    previous_end_date=current_end,
                    new_end_date=current_end,
                    proration_amount=None,
                    currency=subscription.currency,
                    plan=plan,
                    plan_price=plan_price,
                    resulting_status=SubscriptionStatus.ACTIVE,
                    request_id=request_id,
                    notes=reason_description,
                )
                values = {}
                record_status = CancellationStatus.PENDING
                effective = current_end or now

            self._write(session, subscription, operation, values)
            record = CancellationRecord(
                organization_id=organization_id,
                reason=reason,
                reason_description=reason_description,
                effective_date=effective,
                refund_amount=refund_amount,
                currency=subscription.currency,
                retention_offered=retention_offered,
                retention_details=retention_details,
                immediate=immediate_termination,
                status=record_status,
                processed_by_user_id=executed_by,
                processed_at=now,
            )
            session.add(record)
            session.flush()

            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                cancellation=record,
                event_type=EVENT_TYPES[OperationType.CANCELLATION]
                if immediate_termination
                else "subscription.cancellation_scheduled",
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=commit)

    def expire_due(
        self,
        session: Session,
        *,
        now: datetime | None = None,
        executed_by: str = "system",
        usage_provider: UsageSnapshotProvider | None = None,
    ) -> SweepResult:
        now = ensure_utc(now) or utcnow()
        started = time.perf_counter()
        outcome = SweepResult()
        with tracer.start_as_current_span("subscription.expire_due") as span:
            due = [(row.organization_id, row.version) for row in self.subscription_repository.list_due(session, now)]
            span.set_attribute("due_count", len(due))
            for organization_id, read_version in due:
                try:
                    handled = self._expire_one(
                        session,
                        organization_id,
                        read_version,
                        now=now,
                        executed_by=executed_by,
                        usage_provider=usage_provider,
                    )
                except ConflictError as exc:
                    outcome.conflicts += 1
                    logger.warning(
                        "subscription.sweep_conflict",
                        extra={"organization_id": organization_id, "version": read_version, "error": exc.message},
                    )
                    continue
                except SubscriptionError as exc:
                    outcome.skipped += 1
                    logger.warning(
                        "subscription.sweep_row_failed",
                        extra={"organization_id": organization_id, "error": exc.message, "error_code": exc.error_code},
                    )
                    continue
                setattr(outcome, handled, getattr(outcome, handled) + 1)
            span.set_attribute("expired", outcome.expired)
            span.set_attribute("cancelled", outcome.cancelled)
            span.set_attribute("renewed", outcome.renewed)

        metrics.observe_sweep(outcome.to_dict(), time.perf_counter() - started)
        logger.info("subscription.sweep_completed", extra=outcome.to_dict())
        return outcome

    def get_subscription(self, session: Session, organization_id: str) -> OrganizationSubscription:
        return self._require_subscription(session, organization_id)

    def get_status(
        self,
        session: Session,
        organization_id: str,
        *,
        usage_provider: UsageSnapshotProvider | None = None,
        now: datetime | None = None,
    ) -> SubscriptionStatusRead:
        now = ensure_utc(now) or utcnow()
        settings = get_settings()
        subscription = self._require_subscription(session, organization_id)
        plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
        decision = self.enforcer.check_organization(
            usage_provider or get_usage_provider(), organization_id, plan
        )
        limits = PlanLimits.for_plan(plan)
        end = ensure_utc(subscription.subscription_end)
        active = subscription.status == SubscriptionStatus.ACTIVE
        pending_cancellation = self.cancellation_repository.pending_for_organization(session, organization_id)
        scheduled = self.scheduled_change_repository.pending_for_organization(session, organization_id)
        usage = decision.usage
        return SubscriptionStatusRead(
            organization_id=organization_id,
            plan=PlanRead.model_validate(plan),
            status=subscription.status,
            currency=subscription.currency,
            start=ensure_utc(subscription.subscription_start),
            end=end,
            days_remaining=days_remaining(end, now) if active else 0,
            usage=UsageRead(
                gym_count=usage.gym_count,
                total_clients=usage.total_clients,
                total_users=usage.total_users,
                captured_at=usage.captured_at,
            )
            if usage is not None
            else None,
            limits=LimitsRead(max_gyms=limits.max_gyms, max_clients=limits.max_clients, max_users=limits.max_users),
            utilization_percentage=decision.utilization_percentage,
            nearing_limits=decision.nearing_limits,
            usage_available=usage is not None,
            in_renewal_window=active and in_renewal_window(end, now, settings.renewal_window_days),
            expiring_soon=active and expiring_soon(end, now, settings.expiring_soon_days),
            pending_cancellation=CancellationRead.model_validate(pending_cancellation)
            if pending_cancellation is not None
            else None,
            scheduled_change=ScheduledChangeRead.model_validate(scheduled) if scheduled is not None else None,
            version=subscription.version,
        )

    def list_operations(
        self, session: Session, organization_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[SubscriptionOperation]:
        self._require_subscription(session, organization_id)
        return list(self.operation_repository.list_for_organization(session, organization_id, limit=limit, offset=offset))

    def list_cancellations(self, session: Session, organization_id: str | None = None) -> list[CancellationRecord]:
        return list(self.cancellation_repository.list(session, organization_id))

    def emit(self, result: TransitionResult) -> None:
        """Publish the domain event, audit record, log line and metrics for a committed transition."""
        subscription = result.subscription
        operation = result.operation
        after = self._snapshot(subscription)
        payload: dict[str, Any] = {
            "event_type": result.event_type,
            "organization_id": subscription.organization_id,
            "plan_id": str(subscription.subscription_plan_id),
            "status": subscription.status,
            "currency": subscription.currency,
            "version": subscription.version,
            "period_start": after["subscription_start"],
            "period_end": after["subscription_end"],
        }
        if operation is not None:
            payload["operation_id"] = str(operation.id)
            payload["operation_type"] = operation.operation_type
            payload["proration_amount"] = (
                str(operation.proration_amount) if operation.proration_amount is not None else None
            )
        if result.scheduled_change is not None:
            payload["scheduled_change_id"] = str(result.scheduled_change.id)
        events.publish(payload)
        audit.record(
            result.actor,
            "subscription.organization_subscription",
            subscription.organization_id,
            result.event_type or "subscription.changed",
            result.before,
            after,
        )
        if operation is not None:
            metrics.observe_transition(operation.operation_type)
        logger.info(
            "subscription.transition_committed",
            extra={
                "organization_id": subscription.organization_id,
                "plan_id": str(subscription.subscription_plan_id),
                "operation_type": operation.operation_type if operation is not None else result.event_type,
                "status": subscription.status,
                "version": subscription.version,
            },
        )

    def _change_plan(
        self,
        session: Session,
        organization_id: str,
        new_plan_id: uuid.UUID,
        operation_type: str,
        *,
        executed_by: str,
        effective_date: datetime | None,
        immediate: bool,
        expected_version: int | None,
        request_id: uuid.UUID | None,
        usage_provider: UsageSnapshotProvider | None,
        commit: bool,
    ) -> TransitionResult:
        with tracer.start_as_current_span(f"subscription.{operation_type}") as span, self._unit_of_work(session):
            span.set_attribute("organization_id", organization_id)
            span.set_attribute("plan_id", str(new_plan_id))
            subscription = self._require_subscription(session, organization_id)
            effective = ensure_utc(effective_date)
            if effective is None:
                # A subscription that has not started yet changes at its start.
                start = ensure_utc(subscription.subscription_start)
                effective = max(utcnow(), start) if start is not None else utcnow()
            self._check_version(subscription, expected_version, operation_type)
            self._assert_operation(subscription.status, operation_type)
            transient = _TRANSIENT_STATUS[operation_type]
            self._assert_transition(subscription.status, transient)
            self._assert_transition(transient, SubscriptionStatus.ACTIVE)

            if subscription.subscription_plan_id == new_plan_id:
                raise ValidationError(
                    "organization is already on this plan",
                    context={"organization_id": organization_id, "plan_id": str(new_plan_id)},
                )
            current_plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
            new_plan = self.catalog.get_active_plan(session, new_plan_id)
            self.catalog.resolve_price(new_plan, subscription.currency)
            self.enforcer.enforce_for_organization(usage_provider or get_usage_provider(), organization_id, new_plan)

            current_end = ensure_utc(subscription.subscription_end)
            if not immediate:
                return self._schedule_change(
                    session,
                    subscription,
                    new_plan,
                    operation_type,
                    effective_date=current_end or effective,
                    executed_by=executed_by,
                    request_id=request_id,
                    commit=commit,
                )

            period = current_period(
                subscription.subscription_start, current_end, current_plan.duration, current_plan.duration_unit
            )
            proration = self.calculator.compute_proration(
                current_plan, period, new_plan, effective, subscription.currency
            )
            span.set_attribute("is_renewal", proration.is_renewal)
            recorded_type = OperationType.RENEWAL if proration.is_renewal else operation_type
            new_price = self.catalog.resolve_price(new_plan, subscription.currency)
            new_end = add_duration(effective, new_plan.duration, new_plan.duration_unit)
            before = self._snapshot(subscription)
            self.scheduled_change_repository.supersede_pending(session, organization_id)
            operation = self._build_operation(
                organization_id=organization_id,
                operation_type=recorded_type,
                executed_by=executed_by,
                effective_date=effective,
                from_plan_id=current_plan.id,
                to_plan_id=new_plan.id,
                previous_end_date=current_end,
                new_end_date=new_end,
                proration_amount=new_price if proration.is_renewal else proration.amount,
                currency=subscription.currency,
                plan=new_plan,
                plan_price=new_price,
                resulting_status=SubscriptionStatus.ACTIVE,
                request_id=request_id,
                notes=proration.description,
            )
            self._write(
                session,
                subscription,
                operation,
                {
                    "subscription_plan_id": new_plan.id,
                    "status": SubscriptionStatus.ACTIVE,
                    "subscription_start": effective,
                    "subscription_end": new_end,
                },
            )
            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                event_type=EVENT_TYPES[recorded_type],
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=commit)

    def _schedule_change(
        self,
        session: Session,
        subscription: OrganizationSubscription,
        new_plan: PlanSnapshot,
        operation_type: str,
        *,
        effective_date: datetime,
        executed_by: str,
        request_id: uuid.UUID | None,
        commit: bool,
    ) -> TransitionResult:
        superseded = self.scheduled_change_repository.supersede_pending(session, subscription.organization_id)
        scheduled = ScheduledPlanChange(
            organization_id=subscription.organization_id,
            to_plan_id=new_plan.id,
            operation_type=operation_type,
            effective_date=effective_date,
            request_id=request_id,
            created_by=executed_by,
            status=ScheduledChangeStatus.PENDING,
        )
        session.add(scheduled)
        session.flush()
        logger.info(
            "subscription.change_scheduled",
            extra={
                "organization_id": subscription.organization_id,
                "plan_id": str(new_plan.id),
                "operation_type": operation_type,
                "superseded": superseded,
            },
        )
        result = TransitionResult(
            subscription=subscription,
            scheduled_change=scheduled,
            event_type="subscription.change_scheduled",
            actor=executed_by,
            before=self._snapshot(subscription),
        )
        return self._finish(session, result, commit=commit)

    def _expire_one(
        self,
        session: Session,
        organization_id: str,
        read_version: int,
        *,
        now: datetime,
        executed_by: str,
        usage_provider: UsageSnapshotProvider | None,
    ) -> str:
        subscription = self._require_subscription(session, organization_id)
        if subscription.version != read_version or subscription.status != SubscriptionStatus.ACTIVE:
            raise ConflictError(
                "subscription changed during the sweep",
                context={"organization_id": organization_id, "version": subscription.version},
            )

        pending_cancellation = self.cancellation_repository.pending_for_organization(session, organization_id)
        if pending_cancellation is not None:
            self._finalize_cancellation(session, subscription, pending_cancellation, now=now, executed_by=executed_by)
            return "cancelled"

        scheduled = self.scheduled_change_repository.pending_for_organization(session, organization_id)
        if scheduled is not None:
            try:
                self.renew(
                    session,
                    organization_id,
                    executed_by=executed_by,
                    expected_version=read_version,
                    usage_provider=usage_provider,
                    now=now,
                )
                return "renewed"
            except ConflictError:
                raise
            except SubscriptionError as exc:
                self._fail_scheduled_change(session, organization_id, scheduled.id, exc)
                subscription = self._require_subscription(session, organization_id)

        if self.request_repository.has_pending_renewal(session, organization_id):
            logger.info("subscription.sweep_skipped", extra={"organization_id": organization_id})
            return "skipped"

        self._expire(session, subscription, now=now, executed_by=executed_by)
        return "expired"

    def _finalize_cancellation(
        self,
        session: Session,
        subscription: OrganizationSubscription,
        record: CancellationRecord,
        *,
        now: datetime,
        executed_by: str,
    ) -> TransitionResult:
        with self._unit_of_work(session):
            self._assert_transition(subscription.status, SubscriptionStatus.CANCELLED)
            plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
            current_end = ensure_utc(subscription.subscription_end)
            before = self._snapshot(subscription)
            operation = self._build_operation(
                organization_id=subscription.organization_id,
                operation_type=OperationType.CANCELLATION,
                executed_by=executed_by,
                effective_date=current_end or now,
                from_plan_id=subscription.subscription_plan_id,
                to_plan_id=None,
                previous_end_date=current_end,
                new_end_date=current_end,
                proration_amount=None,
                currency=subscription.currency,
                plan=plan,
                plan_price=plan.prices.get(subscription.currency),
                resulting_status=SubscriptionStatus.CANCELLED,
                request_id=None,
                notes="scheduled cancellation reached period end",
            )
            self._write(session, subscription, operation, {"status": SubscriptionStatus.CANCELLED})
            record.status = CancellationStatus.COMPLETED
            session.flush()
            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                cancellation=record,
                event_type=EVENT_TYPES[OperationType.CANCELLATION],
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=True)

    def _expire(
        self,
        session: Session,
        subscription: OrganizationSubscription,
        *,
        now: datetime,
        executed_by: str,
    ) -> TransitionResult:
        with self._unit_of_work(session):
            self._assert_operation(subscription.status, OperationType.EXPIRATION)
            self._assert_transition(subscription.status, SubscriptionStatus.EXPIRED)
            plan = self.catalog.get_plan(session, subscription.subscription_plan_id)
            current_end = ensure_utc(subscription.subscription_end)
            before = self._snapshot(subscription)
            operation = self._build_operation(
                organization_id=subscription.organization_id,
                operation_type=OperationType.EXPIRATION,
                executed_by=executed_by,
                effective_date=current_end or now,
                from_plan_id=subscription.subscription_plan_id,
                to_plan_id=None,
                previous_end_date=current_end,
                new_end_date=current_end,
                proration_amount=None,
                currency=subscription.currency,
                plan=plan,
                plan_price=plan.prices.get(subscription.currency),
                resulting_status=SubscriptionStatus.EXPIRED,
                request_id=None,
                notes=None,
            )
            self._write(session, subscription, operation, {"status": SubscriptionStatus.EXPIRED})
            result = TransitionResult(
                subscription=subscription,
                operation=operation,
                event_type=EVENT_TYPES[OperationType.EXPIRATION],
                actor=executed_by,
                before=before,
            )
            return self._finish(session, result, commit=True)

    def _fail_scheduled_change(
        self, session: Session, organization_id: str, scheduled_id: uuid.UUID, exc: SubscriptionError
    ) -> None:
        scheduled = session.get(ScheduledPlanChange, scheduled_id)
        if scheduled is not None and scheduled.status == ScheduledChangeStatus.PENDING:
            scheduled.status = ScheduledChangeStatus.FAILED
            session.commit()
        logger.warning(
            "subscription.scheduled_change_failed",
            extra={"organization_id": organization_id, "error": exc.message, "error_code": exc.error_code},
        )

    def _write(
        self,
        session: Session,
        subscription: OrganizationSubscription,
        operation: SubscriptionOperation,
        values: dict[str, Any],
    ) -> None:
        read_version = subscription.version
        if not self.subscription_repository.conditional_update(session, subscription.id, read_version, values):
            session.rollback()
            metrics.observe_conflict(operation.operation_type)
            logger.warning(
                "subscription.version_conflict",
                extra={
                    "organization_id": subscription.organization_id,
                    "operation_type": operation.operation_type,
                    "version": read_version,
                },
            )
            raise ConflictError(
                "subscription was modified concurrently; re-read and retry",
                context={"organization_id": subscription.organization_id, "expected_version": read_version},
            )
        operation.subscription_version = read_version + 1
        session.add(operation)
        session.flush()
        session.expire(subscription)

    def _finish(self, session: Session, result: TransitionResult, *, commit: bool) -> TransitionResult:
        if not commit:
            session.flush()
            return result
        session.commit()
        session.refresh(result.subscription)
        self.emit(result)
        return result

    @contextmanager
    def _unit_of_work(self, session: Session) -> Iterator[None]:
        try:
            yield
        except Exception:
            session.rollback()
            raise

    def _require_subscription(self, session: Session, organization_id: str) -> OrganizationSubscription:
        subscription = self.subscription_repository.get_by_organization(session, organization_id)
        if subscription is None:
            raise NotFoundError("subscription not found", context={"organization_id": organization_id})
        return subscription

    @staticmethod
    def _check_version(subscription: OrganizationSubscription, expected_version: int | None, operation_type: str) -> None:
        if expected_version is not None and expected_version != subscription.version:
            metrics.observe_conflict(operation_type)
            raise ConflictError(
                "subscription version mismatch; re-read and retry",
                context={
                    "organization_id": subscription.organization_id,
                    "expected_version": expected_version,
                    "current_version": subscription.version,
                },
            )

    @staticmethod
    def _assert_operation(current: str, operation_type: str) -> None:
        if current not in OPERATION_SOURCE_STATES.get(operation_type, set()):
            raise ValidationError(
                f"cannot apply {operation_type} to a subscription in status {current}",
                context={"status": current, "operation_type": operation_type},
            )

    @staticmethod
    def _assert_transition(current: str, target: str) -> None:
        allowed = VALID_SUBSCRIPTION_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise ValidationError(
                f"invalid subscription transition {current} -> {target}",
                context={"from_status": current, "to_status": target},
            )

    @staticmethod
    def _build_operation(
        *,
        organization_id: str,
        operation_type: str,
        executed_by: str,
        effective_date: datetime,
        from_plan_id: uuid.UUID | None,
        to_plan_id: uuid.UUID | None,
        previous_end_date: datetime | None,
        new_end_date: datetime | None,
        proration_amount: Decimal | None,
        currency: str,
        plan: PlanSnapshot,
        plan_price: Decimal | None,
        resulting_status: str,
        request_id: uuid.UUID | None,
        notes: str | None,
    ) -> SubscriptionOperation:
        return SubscriptionOperation(
            id=uuid.uuid4(),
            organization_id=organization_id,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            operation_type=operation_type,
            executed_by=executed_by,
            effective_date=effective_date,
            previous_end_date=previous_end_date,
            new_end_date=new_end_date,
            proration_amount=proration_amount,
            currency=currency,
            plan_price=plan_price,
            billing_frequency_months=plan.frequency_months,
            resulting_status=resulting_status,
            request_id=request_id,
            notes=notes,
            created_at=utcnow(),
        )

    @staticmethod
    def _snapshot(subscription: OrganizationSubscription) -> dict[str, Any]:
        start = ensure_utc(subscription.subscription_start)
        end = ensure_utc(subscription.subscription_end)
        return {
            "organization_id": subscription.organization_id,
            "plan_id": str(subscription.subscription_plan_id),
            "status": subscription.status,
            "currency": subscription.currency,
            "subscription_start": start.isoformat() if start else None,
            "subscription_end": end.isoformat() if end else None,
            "version": subscription.version,
        }


subscription_state_machine = SubscriptionStateMachine()

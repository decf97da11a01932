from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app import audit, events, metrics
from app.business.subscription.catalog import PlanCatalog, plan_catalog
from app.business.subscription.entitlements import (
    EntitlementEnforcer,
    UsageSnapshotProvider,
    entitlement_enforcer,
    get_usage_provider,
)
from app.business.subscription.errors import ConflictError, NotFoundError, ValidationError
from app.business.subscription.models import (
    CancellationReason,
    OperationType,
    PaymentStatus,
    RequestStatus,
    SubscriptionOperation,
    SubscriptionRequest,
    ensure_utc,
    utcnow,
)
from app.business.subscription.repository import RequestRepository, SubscriptionRepository
from app.business.subscription.state_machine import (
    SubscriptionStateMachine,
    TransitionResult,
    subscription_state_machine,
)
from app.otel import get_tracer

logger = logging.getLogger("app.subscription.workflow")
tracer = get_tracer("app.subscription.workflow")

REQUESTABLE_OPERATIONS = frozenset(
    {
        OperationType.ACTIVATION,
        OperationType.UPGRADE,
        OperationType.DOWNGRADE,
        OperationType.RENEWAL,
        OperationType.CANCELLATION,
    }
)
PLAN_REQUIRED_OPERATIONS = frozenset({OperationType.ACTIVATION, OperationType.UPGRADE, OperationType.DOWNGRADE})
ADMIN_DECISIONS = frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED})


@dataclass(slots=True)
class ProcessResult:
    request: SubscriptionRequest
    operation: SubscriptionOperation | None = None


@dataclass(slots=True)
class RequestWorkflow:
    catalog: PlanCatalog = field(default_factory=lambda: plan_catalog)
    enforcer: EntitlementEnforcer = field(default_factory=lambda: entitlement_enforcer)
    state_machine: SubscriptionStateMachine = field(default_factory=lambda: subscription_state_machine)
    request_repository: RequestRepository = field(default_factory=RequestRepository)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)

    def submit(
        self,
        session: Session,
        *,
        organization_id: str,
        operation_type: str,
        requested_by: str,
        plan_id: uuid.UUID | None = None,
        notes: str | None = None,
        requested_start_date: datetime | None = None,
        cancellation_reason: str | None = None,
        immediate: bool = True,
        usage_provider: UsageSnapshotProvider | None = None,
    ) -> SubscriptionRequest:
        if operation_type not in REQUESTABLE_OPERATIONS:
            raise ValidationError(
                f"unsupported request operation {operation_type}", context={"operation_type": operation_type}
            )
        if operation_type in PLAN_REQUIRED_OPERATIONS and plan_id is None:
            raise ValidationError(f"{operation_type} requests require a plan", context={"operation_type": operation_type})

        subscription = self.subscription_repository.get_by_organization(session, organization_id)
        if operation_type != OperationType.ACTIVATION and subscription is None:
            raise NotFoundError("subscription not found", context={"organization_id": organization_id})

        if operation_type == OperationType.CANCELLATION:
            if cancellation_reason is None:
                raise ValidationError("cancellation requests require a reason")
            if cancellation_reason not in {item.value for item in CancellationReason}:
                raise ValidationError(
                    f"unknown cancellation reason {cancellation_reason}", context={"reason": cancellation_reason}
                )
            plan_id = plan_id or subscription.subscription_plan_id
        elif operation_type == OperationType.RENEWAL and plan_id is None:
            plan_id = subscription.subscription_plan_id

        if operation_type != OperationType.CANCELLATION and plan_id is not None:
            plan = self.catalog.get_active_plan(session, plan_id)
            if subscription is not None:
                self.catalog.resolve_price(plan, subscription.currency)
            if operation_type == OperationType.DOWNGRADE:
                self.enforcer.enforce_for_organization(usage_provider or get_usage_provider(), organization_id, plan)

        request = SubscriptionRequest(
            organization_id=organization_id,
            subscription_plan_id=plan_id,
            requested_by_user_id=requested_by,
            status=RequestStatus.PENDING,
            operation_type=operation_type,
            requested_start_date=ensure_utc(requested_start_date),
            immediate=immediate,
            cancellation_reason=cancellation_reason,
            notes=notes,
            payment_status=PaymentStatus.NONE,
        )
        session.add(request)
        session.commit()
        session.refresh(request)
        self._emit_status(request, requested_by, before=None)
        return request

    def process(
        self,
        session: Session,
        request_id: uuid.UUID,
        *,
        decision: str,
        processed_by: str,
        admin_notes: str | None = None,
        effective_date: datetime | None = None,
        usage_provider: UsageSnapshotProvider | None = None,
    ) -> ProcessResult:
        if decision not in ADMIN_DECISIONS:
            raise ValidationError(
                f"unsupported decision {decision}; requests are withdrawn by their requester",
                context={"decision": decision},
            )

        request = self._require_request(session, request_id)
        if request.status != RequestStatus.PENDING:
            logger.info(
                "subscription.request_already_processed",
                extra={"request_id": str(request.id), "status": request.status, "decision": decision},
            )
            operation = session.get(SubscriptionOperation, request.operation_id) if request.operation_id else None
            return ProcessResult(request=request, operation=operation)

        before = self._request_snapshot(request)
        with tracer.start_as_current_span("subscription.process_request") as span:
            span.set_attribute("request_id", str(request.id))
            span.set_attribute("decision", decision)
            transition: TransitionResult | None = None
            try:
                values: dict[str, Any] = {
                    "status": decision,
                    "admin_notes": admin_notes,
                    "processed_by_user_id": processed_by,
                    "processed_at": utcnow(),
                }
                if decision == RequestStatus.APPROVED:
                    if request.payment_status == PaymentStatus.FAILED:
                        raise ValidationError(
                            "payment for this request failed; it cannot be approved",
                            context={"request_id": str(request.id)},
                        )
                    transition = self._apply(session, request, processed_by, effective_date, usage_provider)
                    values["operation_id"] = transition.operation.id if transition.operation is not None else None
                    values["scheduled"] = transition.operation is None

                if not self.request_repository.conditional_finalize(session, request.id, values):
                    raise ConflictError(
                        "request was processed concurrently", context={"request_id": str(request.id)}
                    )
                session.commit()
            except Exception:
                session.rollback()
                raise

        session.refresh(request)
        if transition is not None:
            self.state_machine.emit(transition)
        self._emit_status(request, processed_by, before=before)
        return ProcessResult(request=request, operation=transition.operation if transition is not None else None)

    def cancel_request(self, session: Session, request_id: uuid.UUID, user_id: str) -> SubscriptionRequest:
        request = self._require_request(session, request_id)
        if request.status != RequestStatus.PENDING:
            return request
        if request.requested_by_user_id != user_id:
            raise ValidationError(
                "only the requester can cancel a request", context={"request_id": str(request.id)}
            )
        before = self._request_snapshot(request)
        if not self.request_repository.conditional_finalize(
            session,
            request.id,
            {"status": RequestStatus.CANCELLED, "processed_by_user_id": user_id, "processed_at": utcnow()},
        ):
            session.rollback()
            session.refresh(request)
            return request
        session.commit()
        session.refresh(request)
        self._emit_status(request, user_id, before=before)
        return request

    def list_requests(
        self,
        session: Session,
        *,
        status: str | None = None,
        organization_id: str | None = None,
    ) -> list[SubscriptionRequest]:
        return list(self.request_repository.list(session, status=status, organization_id=organization_id))

    def get_request(self, session: Session, request_id: uuid.UUID) -> SubscriptionRequest:
        return self._require_request(session, request_id)

    def _apply(
        self,
        session: Session,
        request: SubscriptionRequest,
        processed_by: str,
        effective_date: datetime | None,
        usage_provider: UsageSnapshotProvider | None,
    ) -> TransitionResult:
        effective = ensure_utc(effective_date) or ensure_utc(request.requested_start_date)
        organization_id = request.organization_id
        if request.operation_type == OperationType.ACTIVATION:
            return self.state_machine.activate(
                session,
                organization_id,
                request.subscription_plan_id,
                executed_by=processed_by,
                start_date=effective,
                request_id=request.id,
                notes=request.notes,
                commit=False,
            )
        if request.operation_type in (OperationType.UPGRADE, OperationType.DOWNGRADE):
            change = (
                self.state_machine.upgrade
                if request.operation_type == OperationType.UPGRADE
                else self.state_machine.downgrade
            )
            return change(
                session,
                organization_id,
                request.subscription_plan_id,
                executed_by=processed_by,
                effective_date=effective,
                immediate=request.immediate,
                request_id=request.id,
                usage_provider=usage_provider,
                commit=False,
            )
        if request.operation_type == OperationType.RENEWAL:
            return self.state_machine.renew(
                session,
                organization_id,
                executed_by=processed_by,
                request_id=request.id,
                usage_provider=usage_provider,
                commit=False,
            )
        return self.state_machine.cancel(
            session,
            organization_id,
            executed_by=processed_by,
            reason=request.cancellation_reason or CancellationReason.OTHER,
            immediate_termination=request.immediate,
            reason_description=request.notes,
            request_id=request.id,
            commit=False,
        )

    def _require_request(self, session: Session, request_id: uuid.UUID) -> SubscriptionRequest:
        request = self.request_repository.get(session, request_id)
        if request is None:
            raise NotFoundError("subscription request not found", context={"request_id": str(request_id)})
        return request

    def _emit_status(self, request: SubscriptionRequest, actor: str, *, before: dict[str, Any] | None) -> None:
        after = self._request_snapshot(request)
        events.publish(
            {
                "event_type": f"subscription.request_{request.status}",
                "organization_id": request.organization_id,
                "request_id": str(request.id),
                "operation_type": request.operation_type,
                "status": request.status,
            }
        )
        audit.record(
            actor,
            "subscription.request",
            str(request.id),
            f"subscription.request_{request.status}",
            before,
            after,
        )
        metrics.observe_request_status(request.status)
        logger.info(
            "subscription.request_status_changed",
            extra={
                "organization_id": request.organization_id,
                "request_id": str(request.id),
                "operation_type": request.operation_type,
                "status": request.status,
            },
        )

    @staticmethod
    def _request_snapshot(request: SubscriptionRequest) -> dict[str, Any]:
        return {
            "status": request.status,
            "operation_type": request.operation_type,
            "plan_id": str(request.subscription_plan_id) if request.subscription_plan_id else None,
            "payment_status": request.payment_status,
            "operation_id": str(request.operation_id) if request.operation_id else None,
        }


request_workflow = RequestWorkflow()

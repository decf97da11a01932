from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.business.subscription.analytics import billing_analytics
from app.business.subscription.catalog import plan_catalog
from app.business.subscription.entitlements import UsageSnapshotProvider, entitlement_enforcer, get_usage_provider
from app.business.subscription.payments import payment_outcome_handler
from app.business.subscription.schemas import (
    AnalyticsRead,
    CancellationRead,
    CancelRequest,
    ChangeRequestCreate,
    ChangeRequestProcess,
    ChangeRequestRead,
    EntitlementCheckRead,
    OnboardRequest,
    OperationRead,
    PaymentEventCreate,
    PaymentEventRead,
    PlanChangeRequest,
    PlanCreate,
    PlanRead,
    PlanUpdate,
    ProcessResultRead,
    RenewRequest,
    RequestAnalyticsRead,
    RequestStatus,
    ScheduledChangeRead,
    SubscriptionRead,
    SubscriptionStatusRead,
    SweepResultRead,
    TransitionResultRead,
    TrendGranularity,
    UsageAnalyticsRead,
    UsageResource,
)
from app.business.subscription.state_machine import TransitionResult, subscription_state_machine
from app.business.subscription.workflow import request_workflow
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.rbac import require_permissions


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

MANAGE_PLANS = "subscriptions.plans.manage"
MANAGE_SUBSCRIPTIONS = "subscriptions.manage"
SUBMIT_REQUESTS = "subscriptions.requests.submit"
PROCESS_REQUESTS = "subscriptions.requests.process"
READ_ANALYTICS = "subscriptions.analytics.read"
INGEST_PAYMENTS = "subscriptions.payments.ingest"


def _transition_read(result: TransitionResult) -> TransitionResultRead:
    return TransitionResultRead(
        subscription=SubscriptionRead.model_validate(result.subscription),
        operation=OperationRead.model_validate(result.operation) if result.operation is not None else None,
        scheduled_change=ScheduledChangeRead.model_validate(result.scheduled_change)
        if result.scheduled_change is not None
        else None,
        cancellation=CancellationRead.model_validate(result.cancellation) if result.cancellation is not None else None,
    )


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(MANAGE_PLANS)),
) -> PlanRead:
    return PlanRead.model_validate(plan_catalog.create_plan(db, payload))


@router.get("/plans", response_model=list[PlanRead])
def list_plans(
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    public_only: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[PlanRead]:
    plans = plan_catalog.list_active_plans(db, currency=currency, public_only=public_only)
    return [PlanRead.model_validate(plan) for plan in plans]


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(plan_id: uuid.UUID, db: Session = Depends(get_db)) -> PlanRead:
    return PlanRead.model_validate(plan_catalog.get_plan(db, plan_id))


@router.patch("/plans/{plan_id}", response_model=PlanRead)
def update_plan(
    plan_id: uuid.UUID,
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(MANAGE_PLANS)),
) -> PlanRead:
    return PlanRead.model_validate(plan_catalog.update_plan(db, plan_id, payload))


@router.post("/plans/{plan_id}/retire", response_model=PlanRead)
def retire_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(MANAGE_PLANS)),
) -> PlanRead:
    return PlanRead.model_validate(plan_catalog.retire_plan(db, plan_id))


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(MANAGE_PLANS)),
) -> Response:
    plan_catalog.delete_plan(db, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/organizations/{organization_id}/onboard",
    response_model=TransitionResultRead,
    status_code=status.HTTP_201_CREATED,
)
def onboard_organization(
    organization_id: str,
    payload: OnboardRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> TransitionResultRead:
    result = subscription_state_machine.onboard(
        db,
        organization_id,
        executed_by=user.sub,
        plan_id=payload.plan_id,
        currency=payload.currency,
        start=payload.start_date,
        await_payment=payload.await_payment,
    )
    return _transition_read(result)


@router.get("/organizations/{organization_id}", response_model=SubscriptionStatusRead)
def get_subscription_status(
    organization_id: str,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    _: AuthUser = Depends(get_current_user),
) -> SubscriptionStatusRead:
    return subscription_state_machine.get_status(db, organization_id, usage_provider=usage_provider)


@router.get("/organizations/{organization_id}/entitlements", response_model=EntitlementCheckRead)
def check_entitlement(
    organization_id: str,
    resource: UsageResource | None = Query(default=None),
    increment: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    _: AuthUser = Depends(get_current_user),
) -> EntitlementCheckRead:
    subscription = subscription_state_machine.get_subscription(db, organization_id)
    plan = plan_catalog.get_plan(db, subscription.subscription_plan_id)
    decision = entitlement_enforcer.check_organization(
        usage_provider, organization_id, plan, resource=resource, increment=increment
    )
    return EntitlementCheckRead(
        organization_id=organization_id,
        plan_id=plan.id,
        resource=resource,
        increment=increment,
        allowed=decision.allowed,
        violations=decision.violations,
        utilization_percentage=decision.utilization_percentage,
        nearing_limits=decision.nearing_limits,
    )


@router.post("/organizations/{organization_id}/upgrade", response_model=TransitionResultRead)
def upgrade_subscription(
    organization_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> TransitionResultRead:
    result = subscription_state_machine.upgrade(
        db,
        organization_id,
        payload.plan_id,
        executed_by=user.sub,
        effective_date=payload.effective_date,
        immediate=payload.immediate,
        expected_version=payload.expected_version,
        usage_provider=usage_provider,
    )
    return _transition_read(result)


@router.post("/organizations/{organization_id}/downgrade", response_model=TransitionResultRead)
def downgrade_subscription(
    organization_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> TransitionResultRead:
    result = subscription_state_machine.downgrade(
        db,
        organization_id,
        payload.plan_id,
        executed_by=user.sub,
        effective_date=payload.effective_date,
        immediate=payload.immediate,
        expected_version=payload.expected_version,
        usage_provider=usage_provider,
    )
    return _transition_read(result)


@router.post("/organizations/{organization_id}/renew", response_model=TransitionResultRead)
def renew_subscription(
    organization_id: str,
    payload: RenewRequest,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> TransitionResultRead:
    override = None
    if payload.duration_amount is not None:
        override = (payload.duration_amount, payload.duration_unit or "MONTH")
    result = subscription_state_machine.renew(
        db,
        organization_id,
        executed_by=user.sub,
        duration_override=override,
        expected_version=payload.expected_version,
        usage_provider=usage_provider,
    )
    return _transition_read(result)


@router.post("/organizations/{organization_id}/cancel", response_model=TransitionResultRead)
def cancel_subscription(
    organization_id: str,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> TransitionResultRead:
    result = subscription_state_machine.cancel(
        db,
        organization_id,
        executed_by=user.sub,
        reason=payload.reason,
        immediate_termination=payload.immediate,
        reason_description=payload.reason_description,
        retention_offered=payload.retention_offered,
        retention_details=payload.retention_details,
        refund=payload.refund,
        expected_version=payload.expected_version,
    )
    return _transition_read(result)


@router.get("/organizations/{organization_id}/operations", response_model=list[OperationRead])
def list_operations(
    organization_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> list[OperationRead]:
    operations = subscription_state_machine.list_operations(db, organization_id, limit=limit, offset=offset)
    return [OperationRead.model_validate(operation) for operation in operations]


@router.get("/cancellations", response_model=list[CancellationRead])
def list_cancellations(
    organization_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> list[CancellationRead]:
    records = subscription_state_machine.list_cancellations(db, organization_id)
    return [CancellationRead.model_validate(record) for record in records]


@router.post("/requests", response_model=ChangeRequestRead, status_code=status.HTTP_201_CREATED)
def submit_request(
    payload: ChangeRequestCreate,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    user: AuthUser = Depends(require_permissions(SUBMIT_REQUESTS)),
) -> ChangeRequestRead:
    request = request_workflow.submit(
        db,
        organization_id=payload.organization_id,
        operation_type=payload.operation_type,
        requested_by=user.sub,
        plan_id=payload.plan_id,
        notes=payload.notes,
        requested_start_date=payload.requested_start_date,
        cancellation_reason=payload.cancellation_reason,
        immediate=payload.immediate,
        usage_provider=usage_provider,
    )
    return ChangeRequestRead.model_validate(request)


@router.get("/requests", response_model=list[ChangeRequestRead])
def list_requests(
    request_status: RequestStatus | None = Query(default=None, alias="status"),
    organization_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(PROCESS_REQUESTS)),
) -> list[ChangeRequestRead]:
    requests = request_workflow.list_requests(db, status=request_status, organization_id=organization_id)
    return [ChangeRequestRead.model_validate(request) for request in requests]


@router.get("/requests/{request_id}", response_model=ChangeRequestRead)
def get_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> ChangeRequestRead:
    return ChangeRequestRead.model_validate(request_workflow.get_request(db, request_id))


@router.post("/requests/{request_id}/process", response_model=ProcessResultRead)
def process_request(
    request_id: uuid.UUID,
    payload: ChangeRequestProcess,
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    user: AuthUser = Depends(require_permissions(PROCESS_REQUESTS)),
) -> ProcessResultRead:
    result = request_workflow.process(
        db,
        request_id,
        decision=payload.decision,
        processed_by=user.sub,
        admin_notes=payload.admin_notes,
        effective_date=payload.effective_date,
        usage_provider=usage_provider,
    )
    return ProcessResultRead(
        request=ChangeRequestRead.model_validate(result.request),
        operation=OperationRead.model_validate(result.operation) if result.operation is not None else None,
    )


@router.post("/requests/{request_id}/cancel", response_model=ChangeRequestRead)
def cancel_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions(SUBMIT_REQUESTS)),
) -> ChangeRequestRead:
    return ChangeRequestRead.model_validate(request_workflow.cancel_request(db, request_id, user.sub))


@router.get("/analytics", response_model=AnalyticsRead)
def get_analytics(
    start: datetime,
    end: datetime,
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    granularity: TrendGranularity = Query(default="month"),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(READ_ANALYTICS)),
) -> AnalyticsRead:
    return billing_analytics.get_analytics(db, start, end, currency=currency, granularity=granularity)


@router.get("/analytics/requests", response_model=RequestAnalyticsRead)
def get_request_analytics(
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(READ_ANALYTICS)),
) -> RequestAnalyticsRead:
    return billing_analytics.request_analytics(db)


@router.get("/analytics/usage", response_model=UsageAnalyticsRead)
def get_usage_analytics(
    db: Session = Depends(get_db),
    usage_provider: UsageSnapshotProvider = Depends(get_usage_provider),
    _: AuthUser = Depends(require_permissions(READ_ANALYTICS)),
) -> UsageAnalyticsRead:
    return billing_analytics.usage_analytics(db, usage_provider=usage_provider)


@router.post("/payments/events", response_model=PaymentEventRead)
def record_payment_event(
    payload: PaymentEventCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_permissions(INGEST_PAYMENTS)),
) -> PaymentEventRead:
    event = payment_outcome_handler.record_payment_outcome(
        db,
        external_event_id=payload.external_event_id,
        external_reference=payload.external_reference,
        outcome=payload.outcome,
    )
    return PaymentEventRead.model_validate(event)


@router.post("/sweep", response_model=SweepResultRead)
def run_sweep(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_permissions(MANAGE_SUBSCRIPTIONS)),
) -> SweepResultRead:
    result = subscription_state_machine.expire_due(db, executed_by=user.sub)
    return SweepResultRead(**result.to_dict())

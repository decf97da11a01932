from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


BillingFrequency = Literal["monthly", "quarterly", "semiannual", "annual"]
DurationUnit = Literal["DAY", "MONTH"]
SubscriptionStatus = Literal["PENDING_ACTIVATION", "ACTIVE", "UPGRADING", "DOWNGRADING", "EXPIRED", "CANCELLED"]
OperationType = Literal["activation", "upgrade", "downgrade", "renewal", "cancellation", "expiration"]
RequestOperationType = Literal["activation", "upgrade", "downgrade", "renewal", "cancellation"]
RequestStatus = Literal["pending", "approved", "rejected", "cancelled"]
RequestDecision = Literal["approved", "rejected"]
CancellationReason = Literal[
    "cost_too_high",
    "feature_limitations",
    "switching_providers",
    "business_closure",
    "technical_issues",
    "poor_support",
    "other",
]
PaymentOutcome = Literal["authorized", "succeeded", "failed"]
UsageResource = Literal["gyms", "clients", "users"]
TrendGranularity = Literal["day", "week", "month"]


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    prices: dict[str, Decimal]
    billing_frequency: BillingFrequency = "monthly"
    duration: int = Field(default=1, gt=0)
    duration_unit: DurationUnit = "MONTH"
    max_gyms: int = Field(ge=0)
    max_clients_per_gym: int = Field(ge=0)
    max_users_per_gym: int = Field(ge=0)
    features: dict[str, bool | int | float] = Field(default_factory=dict)
    is_active: bool = True
    is_public: bool = True
    sort_order: int = 0


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    prices: dict[str, Decimal] | None = None
    billing_frequency: BillingFrequency | None = None
    duration: int | None = Field(default=None, gt=0)
    duration_unit: DurationUnit | None = None
    max_gyms: int | None = Field(default=None, ge=0)
    max_clients_per_gym: int | None = Field(default=None, ge=0)
    max_users_per_gym: int | None = Field(default=None, ge=0)
    features: dict[str, bool | int | float] | None = None
    is_public: bool | None = None
    sort_order: int | None = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    prices: dict[str, Decimal]
    billing_frequency: BillingFrequency | str
    duration: int
    duration_unit: DurationUnit | str
    max_gyms: int
    max_clients_per_gym: int
    max_users_per_gym: int
    features: dict[str, Any]
    is_active: bool
    is_public: bool
    sort_order: int
    created_at: datetime
    updated_at: datetime


class OnboardRequest(BaseModel):
    plan_id: UUID | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    start_date: datetime | None = None
    await_payment: bool = False


class PlanChangeRequest(BaseModel):
    plan_id: UUID
    effective_date: datetime | None = None
    immediate: bool = True
    expected_version: int | None = Field(default=None, ge=1)


class RenewRequest(BaseModel):
    duration_amount: int | None = Field(default=None, gt=0)
    duration_unit: DurationUnit | None = None
    expected_version: int | None = Field(default=None, ge=1)


class CancelRequest(BaseModel):
    reason: CancellationReason
    reason_description: str | None = None
    immediate: bool = False
    retention_offered: bool = False
    retention_details: str | None = None
    refund: bool = True
    expected_version: int | None = Field(default=None, ge=1)


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    subscription_plan_id: UUID
    status: SubscriptionStatus | str
    currency: str
    subscription_start: datetime | None
    subscription_end: datetime | None
    version: int
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("subscription_metadata", "metadata")
    )
    created_at: datetime
    updated_at: datetime


class OperationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    from_plan_id: UUID | None
    to_plan_id: UUID | None
    operation_type: OperationType | str
    executed_by: str
    effective_date: datetime
    previous_end_date: datetime | None
    new_end_date: datetime | None
    proration_amount: Decimal | None
    currency: str
    plan_price: Decimal | None
    resulting_status: SubscriptionStatus | str
    subscription_version: int
    request_id: UUID | None
    notes: str | None
    created_at: datetime


class CancellationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    reason: CancellationReason | str
    reason_description: str | None
    effective_date: datetime
    refund_amount: Decimal
    currency: str
    retention_offered: bool
    retention_details: str | None
    immediate: bool
    status: str
    processed_by_user_id: str
    processed_at: datetime


class ScheduledChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    to_plan_id: UUID
    operation_type: OperationType | str
    effective_date: datetime
    request_id: UUID | None
    status: str
    created_by: str
    created_at: datetime


class TransitionResultRead(BaseModel):
    subscription: SubscriptionRead
    operation: OperationRead | None = None
    scheduled_change: ScheduledChangeRead | None = None
    cancellation: CancellationRead | None = None


class UsageRead(BaseModel):
    gym_count: int
    total_clients: int
    total_users: int
    captured_at: datetime


class LimitsRead(BaseModel):
    max_gyms: int
    max_clients: int
    max_users: int


class SubscriptionStatusRead(BaseModel):
    organization_id: str
    plan: PlanRead
    status: SubscriptionStatus | str
    currency: str
    start: datetime | None
    end: datetime | None
    days_remaining: int
    usage: UsageRead | None
    limits: LimitsRead
    utilization_percentage: float | None
    nearing_limits: bool
    usage_available: bool
    in_renewal_window: bool
    expiring_soon: bool
    pending_cancellation: CancellationRead | None
    scheduled_change: ScheduledChangeRead | None
    version: int


class EntitlementCheckRead(BaseModel):
    organization_id: str
    plan_id: UUID
    resource: UsageResource | None
    increment: int
    allowed: bool
    violations: list[dict[str, Any]]
    utilization_percentage: float | None
    nearing_limits: bool


class ChangeRequestCreate(BaseModel):
    organization_id: str = Field(min_length=1, max_length=128)
    operation_type: RequestOperationType
    plan_id: UUID | None = None
    notes: str | None = None
    requested_start_date: datetime | None = None
    cancellation_reason: CancellationReason | None = None
    immediate: bool = True


class ChangeRequestProcess(BaseModel):
    decision: RequestDecision
    admin_notes: str | None = None
    effective_date: datetime | None = None


class ChangeRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    subscription_plan_id: UUID | None
    requested_by_user_id: str
    status: RequestStatus | str
    operation_type: RequestOperationType | str
    requested_start_date: datetime | None
    immediate: bool
    cancellation_reason: str | None
    notes: str | None
    admin_notes: str | None
    processed_by_user_id: str | None
    processed_at: datetime | None
    payment_status: str
    operation_id: UUID | None
    scheduled: bool
    created_at: datetime


class ProcessResultRead(BaseModel):
    request: ChangeRequestRead
    operation: OperationRead | None = None


class PaymentEventCreate(BaseModel):
    external_event_id: str = Field(min_length=1, max_length=255)
    external_reference: str = Field(min_length=1, max_length=128)
    outcome: PaymentOutcome


class PaymentEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_event_id: str
    external_reference: str
    outcome: PaymentOutcome | str
    applied_action: str
    received_at: datetime


class SweepResultRead(BaseModel):
    expired: int
    cancelled: int
    renewed: int
    skipped: int
    conflicts: int


class CurrencyMetricsRead(BaseModel):
    currency: str
    total_mrr: Decimal
    total_arr: Decimal
    new_mrr: Decimal
    churned_mrr: Decimal
    expansion_mrr: Decimal
    contraction_mrr: Decimal
    net_mrr_change: Decimal
    arpu: Decimal
    active_subscriptions: int
    active_at_start: int
    active_at_end: int
    churned: int
    churn_rate: float
    growth_rate: float


class PlanBreakdownRead(BaseModel):
    plan_id: UUID
    plan_name: str
    currency: str
    active_count: int
    mrr: Decimal
    arr: Decimal
    revenue_share: float


class TrendBucketRead(BaseModel):
    bucket_start: datetime
    bucket_end: datetime
    currency: str
    new_subscriptions: int
    churned_subscriptions: int
    active_at_end: int
    new_mrr: Decimal
    churned_mrr: Decimal


class AnalyticsRead(BaseModel):
    start: datetime
    end: datetime
    metrics: list[CurrencyMetricsRead]
    plan_breakdown: list[PlanBreakdownRead]
    trend: list[TrendBucketRead]


class RequestAnalyticsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    by_operation_type: dict[str, int]
    approval_rate: float
    average_processing_hours: float | None
    stale_pending: int


class OrganizationUsageRead(BaseModel):
    organization_id: str
    plan_id: UUID
    utilization_percentage: float | None
    nearing_limits: bool
    usage_available: bool


class UsageAnalyticsRead(BaseModel):
    organizations: list[OrganizationUsageRead]
    nearing_limits_count: int
    unavailable_count: int
    average_utilization: float | None

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BillingFrequency(StrEnum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"


FREQUENCY_MONTHS: dict[str, int] = {
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.QUARTERLY: 3,
    BillingFrequency.SEMIANNUAL: 6,
    BillingFrequency.ANNUAL: 12,
}


class DurationUnit(StrEnum):
    DAY = "DAY"
    MONTH = "MONTH"


class SubscriptionStatus(StrEnum):
    PENDING_ACTIVATION = "PENDING_ACTIVATION"
    ACTIVE = "ACTIVE"
    UPGRADING = "UPGRADING"
    DOWNGRADING = "DOWNGRADING"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED})


class OperationType(StrEnum):
    ACTIVATION = "activation"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    EXPIRATION = "expiration"


class RequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class CancellationReason(StrEnum):
    COST_TOO_HIGH = "cost_too_high"
    FEATURE_LIMITATIONS = "feature_limitations"
    SWITCHING_PROVIDERS = "switching_providers"
    BUSINESS_CLOSURE = "business_closure"
    TECHNICAL_ISSUES = "technical_issues"
    POOR_SUPPORT = "poor_support"
    OTHER = "other"


class CancellationStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"


class ScheduledChangeStatus(StrEnum):
    PENDING = "pending"
    APPLIED = "applied"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class PaymentOutcome(StrEnum):
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentStatus(StrEnum):
    NONE = "none"
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plan"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    prices: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    billing_frequency: Mapped[str] = mapped_column(String(32), nullable=False, default=BillingFrequency.MONTHLY)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    duration_unit: Mapped[str] = mapped_column(String(16), nullable=False, default=DurationUnit.MONTH)
    max_gyms: Mapped[int] = mapped_column(Integer, nullable=False)
    max_clients_per_gym: Mapped[int] = mapped_column(Integer, nullable=False)
    max_users_per_gym: Mapped[int] = mapped_column(Integer, nullable=False)
    features: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_subscription_plan_name"),
        CheckConstraint("duration > 0", name="ck_subscription_plan_duration_positive"),
        CheckConstraint("max_gyms >= 0", name="ck_subscription_plan_max_gyms_nonnegative"),
        Index("ix_subscription_plan_listing", "is_active", "sort_order", "name"),
    )

    @property
    def price_map(self) -> dict[str, Decimal]:
        return {code: Decimal(str(amount)) for code, amount in (self.prices or {}).items()}

    @property
    def frequency_months(self) -> int:
        return FREQUENCY_MONTHS.get(self.billing_frequency, 1)


class OrganizationSubscription(Base):
    __tablename__ = "organization_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscription_plan.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SubscriptionStatus.PENDING_ACTIVATION)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subscription_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    subscription_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    subscription_metadata: Mapped[dict[str, object]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    plan: Mapped[SubscriptionPlan] = relationship("app.business.subscription.models.SubscriptionPlan")

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_organization_subscription_org"),
        Index("ix_organization_subscription_status_end", "status", "subscription_end"),
    )


class SubscriptionOperation(Base):
    __tablename__ = "subscription_operation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    from_plan_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    to_plan_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    executed_by: Mapped[str] = mapped_column(String(128), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    previous_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    new_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    proration_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    plan_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    billing_frequency_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    resulting_status: Mapped[str] = mapped_column(String(32), nullable=False)
    subscription_version: Mapped[int] = mapped_column(Integer, nullable=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_subscription_operation_org_created", "organization_id", "created_at"),
        Index("ix_subscription_operation_type_effective", "operation_type", "effective_date"),
    )


class SubscriptionRequest(Base):
    __tablename__ = "subscription_request"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_plan_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    requested_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=RequestStatus.PENDING)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    requested_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    immediate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    cancellation_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default=PaymentStatus.NONE)
    operation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    scheduled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_subscription_request_status_created", "status", "created_at"),
        Index("ix_subscription_request_org", "organization_id"),
    )


class CancellationRecord(Base):
    __tablename__ = "subscription_cancellation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    reason_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    retention_offered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    retention_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    immediate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=CancellationStatus.PENDING)
    processed_by_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_subscription_cancellation_org_status", "organization_id", "status"),
    )


class ScheduledPlanChange(Base):
    __tablename__ = "subscription_scheduled_change"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    to_plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription_plan.id"), nullable=False)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    request_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ScheduledChangeStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_subscription_scheduled_change_org_status", "organization_id", "status"),
    )


class PaymentEvent(Base):
    __tablename__ = "subscription_payment_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    applied_action: Mapped[str] = mapped_column(String(64), nullable=False, default="recorded")
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_subscription_payment_event_external_id"),
    )

from app.business.subscription.analytics import BillingAnalyticsAggregator, billing_analytics
from app.business.subscription.api import router
from app.business.subscription.catalog import PlanCatalog, PlanSnapshot, plan_catalog
from app.business.subscription.entitlements import (
    EntitlementDecision,
    EntitlementEnforcer,
    InMemoryUsageProvider,
    UsageSnapshot,
    UsageSnapshotProvider,
    entitlement_enforcer,
    get_usage_provider,
    set_usage_provider,
)
from app.business.subscription.models import (
    CancellationRecord,
    OrganizationSubscription,
    PaymentEvent,
    ScheduledPlanChange,
    SubscriptionOperation,
    SubscriptionPlan,
    SubscriptionRequest,
)
from app.business.subscription.payments import PaymentOutcomeHandler, payment_outcome_handler
from app.business.subscription.proration import ProrationCalculator, ProrationResult, proration_calculator
from app.business.subscription.state_machine import (
    SubscriptionStateMachine,
    SweepResult,
    TransitionResult,
    subscription_state_machine,
)
from app.business.subscription.workflow import ProcessResult, RequestWorkflow, request_workflow

__all__ = [
    "router",
    "SubscriptionPlan",
    "OrganizationSubscription",
    "SubscriptionOperation",
    "SubscriptionRequest",
    "CancellationRecord",
    "ScheduledPlanChange",
    "PaymentEvent",
    "PlanCatalog",
    "PlanSnapshot",
    "plan_catalog",
    "UsageSnapshot",
    "UsageSnapshotProvider",
    "InMemoryUsageProvider",
    "EntitlementDecision",
    "EntitlementEnforcer",
    "entitlement_enforcer",
    "get_usage_provider",
    "set_usage_provider",
    "ProrationCalculator",
    "ProrationResult",
    "proration_calculator",
    "SubscriptionStateMachine",
    "TransitionResult",
    "SweepResult",
    "subscription_state_machine",
    "RequestWorkflow",
    "ProcessResult",
    "request_workflow",
    "BillingAnalyticsAggregator",
    "billing_analytics",
    "PaymentOutcomeHandler",
    "payment_outcome_handler",
]

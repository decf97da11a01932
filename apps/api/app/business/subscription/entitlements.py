from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Protocol

from app import metrics
from app.business.subscription.catalog import PlanSnapshot
from app.business.subscription.errors import (
    LimitExceededError,
    UsageProviderError,
    UsageTimeoutError,
    UsageUnavailableError,
    ValidationError,
)
from app.business.subscription.models import utcnow
from app.core.config import get_settings

logger = logging.getLogger("app.subscription.entitlements")

RESOURCE_RULES: dict[str, str] = {
    "gyms": "max_gyms",
    "clients": "max_clients",
    "users": "max_users",
}
USAGE_UNAVAILABLE = "usage_unavailable"


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    gym_count: int
    total_clients: int
    total_users: int
    captured_at: datetime = field(default_factory=utcnow)

    def value_for(self, resource: str) -> int:
        if resource == "gyms":
            return self.gym_count
        if resource == "clients":
            return self.total_clients
        return self.total_users


class UsageSnapshotProvider(Protocol):
    def get_usage(self, organization_id: str, timeout: float) -> UsageSnapshot:
        ...


class InMemoryUsageProvider:
    """Usage counts held in process; the gym product pushes counts in via ``set_usage``."""

    def __init__(self) -> None:
        self._usage: dict[str, UsageSnapshot] = {}
        self._lock = Lock()

    def set_usage(self, organization_id: str, gym_count: int, total_clients: int, total_users: int) -> UsageSnapshot:
        snapshot = UsageSnapshot(gym_count=gym_count, total_clients=total_clients, total_users=total_users)
        with self._lock:
            self._usage[organization_id] = snapshot
        return snapshot

    def get_usage(self, organization_id: str, timeout: float) -> UsageSnapshot:
        with self._lock:
            snapshot = self._usage.get(organization_id)
        if snapshot is None:
            return UsageSnapshot(gym_count=0, total_clients=0, total_users=0)
        return snapshot

    def clear(self) -> None:
        with self._lock:
            self._usage.clear()


_PROVIDER: UsageSnapshotProvider = InMemoryUsageProvider()


def get_usage_provider() -> UsageSnapshotProvider:
    return _PROVIDER


def set_usage_provider(provider: UsageSnapshotProvider) -> None:
    global _PROVIDER
    _PROVIDER = provider


@dataclass(frozen=True, slots=True)
class PlanLimits:
    max_gyms: int
    max_clients: int
    max_users: int

    @classmethod
    def for_plan(cls, plan: PlanSnapshot) -> PlanLimits:
        return cls(
            max_gyms=plan.max_gyms,
            max_clients=plan.max_gyms * plan.max_clients_per_gym,
            max_users=plan.max_gyms * plan.max_users_per_gym,
        )

    def limit_for(self, resource: str) -> int:
        return getattr(self, RESOURCE_RULES[resource])


@dataclass(frozen=True, slots=True)
class EntitlementDecision:
    allowed: bool
    violations: list[dict[str, Any]]
    utilization_percentage: float | None
    nearing_limits: bool
    usage: UsageSnapshot | None = None

    @property
    def reason(self) -> str | None:
        if not self.violations:
            return None
        return self.violations[0]["rule"]


def _ratio(used: int, limit: int) -> float:
    if limit == 0:
        return 0.0 if used == 0 else float("inf")
    return used / limit


@dataclass(slots=True)
class EntitlementEnforcer:
    def check_limit(
        self,
        plan: PlanSnapshot,
        usage: UsageSnapshot,
        resource: str | None = None,
    ) -> EntitlementDecision:
        if resource is not None and resource not in RESOURCE_RULES:
            raise ValidationError(f"unknown resource {resource}", context={"resource": resource})

        limits = PlanLimits.for_plan(plan)
        resources = [resource] if resource is not None else list(RESOURCE_RULES)
        violations: list[dict[str, Any]] = []
        for item in resources:
            used = usage.value_for(item)
            limit = limits.limit_for(item)
            if used > limit:
                violations.append(
                    {
                        "rule": RESOURCE_RULES[item],
                        "resource": item,
                        "used": used,
                        "limit": limit,
                        "message": f"{item} usage {used} exceeds plan limit {limit}",
                    }
                )

        utilization = self.utilization_percentage(plan, usage)
        threshold = get_settings().nearing_limits_threshold
        for violation in violations:
            metrics.observe_entitlement_denial(violation["rule"])
        return EntitlementDecision(
            allowed=not violations,
            violations=violations,
            utilization_percentage=utilization,
            # None means usage against a zero limit: over the limit, so nearing as well
            nearing_limits=utilization is None or utilization >= threshold,
            usage=usage,
        )

    def check_action(
        self,
        plan: PlanSnapshot,
        usage: UsageSnapshot,
        resource: str,
        increment: int = 1,
    ) -> EntitlementDecision:
        """Would adding ``increment`` units of ``resource`` stay within the plan?"""
        if increment < 0:
            raise ValidationError("increment must be non-negative", context={"increment": increment})
        projected = UsageSnapshot(
            gym_count=usage.gym_count + (increment if resource == "gyms" else 0),
            total_clients=usage.total_clients + (increment if resource == "clients" else 0),
            total_users=usage.total_users + (increment if resource == "users" else 0),
            captured_at=usage.captured_at,
        )
        return self.check_limit(plan, projected, resource)

    @staticmethod
    def utilization_percentage(plan: PlanSnapshot, usage: UsageSnapshot) -> float | None:
        limits = PlanLimits.for_plan(plan)
        ratio = max(
            _ratio(usage.gym_count, limits.max_gyms),
            _ratio(usage.total_clients, limits.max_clients),
            _ratio(usage.total_users, limits.max_users),
        )
        if ratio == float("inf"):
            return None
        return round(ratio * 100, 2)

    def fetch_usage(
        self,
        provider: UsageSnapshotProvider,
        organization_id: str,
        timeout: float | None = None,
    ) -> UsageSnapshot | None:
        """Return the current usage, or None when the provider timed out or is unavailable."""
        effective_timeout = timeout if timeout is not None else get_settings().usage_timeout_seconds
        try:
            return provider.get_usage(organization_id, effective_timeout)
        except (UsageTimeoutError, UsageUnavailableError, UsageProviderError) as exc:
            logger.warning(
                "subscription.usage_unavailable",
                extra={"organization_id": organization_id, "error": str(exc) or type(exc).__name__},
            )
            return None

    def check_organization(
        self,
        provider: UsageSnapshotProvider,
        organization_id: str,
        plan: PlanSnapshot,
        resource: str | None = None,
        timeout: float | None = None,
        increment: int = 0,
    ) -> EntitlementDecision:
        usage = self.fetch_usage(provider, organization_id, timeout)
        if usage is None:
            metrics.observe_entitlement_denial(USAGE_UNAVAILABLE)
            return EntitlementDecision(
                allowed=False,
                violations=[
                    {
                        "rule": USAGE_UNAVAILABLE,
                        "resource": resource,
                        "message": "current usage could not be determined",
                    }
                ],
                utilization_percentage=None,
                nearing_limits=False,
            )
        if resource is not None and increment:
            return self.check_action(plan, usage, resource, increment)
        return self.check_limit(plan, usage, resource)

    def enforce(self, plan: PlanSnapshot, usage: UsageSnapshot, resource: str | None = None) -> EntitlementDecision:
        decision = self.check_limit(plan, usage, resource)
        if not decision.allowed:
            raise LimitExceededError(decision.violations)
        return decision

    def enforce_for_organization(
        self,
        provider: UsageSnapshotProvider,
        organization_id: str,
        plan: PlanSnapshot,
        timeout: float | None = None,
    ) -> EntitlementDecision:
        decision = self.check_organization(provider, organization_id, plan, timeout=timeout)
        if not decision.allowed:
            logger.info(
                "subscription.entitlement_denied",
                extra={
                    "organization_id": organization_id,
                    "plan_id": str(plan.id),
                    "violations": [item["rule"] for item in decision.violations],
                },
            )
            raise LimitExceededError(decision.violations)
        return decision


entitlement_enforcer = EntitlementEnforcer()

"""
Subscription engine exceptions.

Every domain failure carries a machine-readable ``error_code`` and a
``context`` dict so the API layer can render actionable detail. Anything that
is not a ``SubscriptionError`` (database outages, driver errors) is left to
propagate unmodified.
"""

from __future__ import annotations

from typing import Any


class SubscriptionError(Exception):
    """Base class for subscription engine errors."""

    error_code = "SUBSCRIPTION_ERROR"
    status_code = 400

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ValidationError(SubscriptionError):
    """Caller-correctable input problem (unknown plan, malformed dates, invalid transition)."""

    error_code = "VALIDATION_ERROR"
    status_code = 422


class UnsupportedCurrencyError(ValidationError):
    error_code = "UNSUPPORTED_CURRENCY"

    def __init__(self, plan_id: str, currency: str) -> None:
        super().__init__(
            f"plan {plan_id} is not offered in {currency}",
            context={"plan_id": plan_id, "currency": currency},
        )
        self.plan_id = plan_id
        self.currency = currency


class LimitExceededError(SubscriptionError):
    """Usage exceeds the limits of the target plan."""

    error_code = "LIMIT_EXCEEDED"
    status_code = 422

    def __init__(self, violations: list[dict[str, Any]], message: str | None = None) -> None:
        self.violations = violations
        summary = ", ".join(str(item.get("message", item.get("rule"))) for item in violations)
        super().__init__(message or f"usage exceeds plan limits: {summary}", context={"violations": violations})


class ConflictError(SubscriptionError):
    """Optimistic-concurrency version mismatch; the caller should re-read and retry."""

    error_code = "VERSION_CONFLICT"
    status_code = 409


class NotFoundError(SubscriptionError):
    error_code = "NOT_FOUND"
    status_code = 404


class ProrationError(SubscriptionError):
    """Effective date outside the current billing period or a zero-length period."""

    error_code = "PRORATION_ERROR"
    status_code = 422


class UsageProviderError(Exception):
    """Raised by usage snapshot providers; never surfaced to API callers directly."""


class UsageTimeoutError(UsageProviderError):
    pass


class UsageUnavailableError(UsageProviderError):
    pass

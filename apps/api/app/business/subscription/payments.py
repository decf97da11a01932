from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, metrics
from app.business.subscription.errors import NotFoundError, SubscriptionError, ValidationError
from app.business.subscription.models import (
    PaymentEvent,
    PaymentOutcome,
    RequestStatus,
    SubscriptionStatus,
    ensure_utc,
    utcnow,
)
from app.business.subscription.periods import in_renewal_window
from app.business.subscription.repository import (
    PaymentEventRepository,
    RequestRepository,
    SubscriptionRepository,
)
from app.business.subscription.state_machine import (
    SubscriptionStateMachine,
    TransitionResult,
    subscription_state_machine,
)
from app.core.config import get_settings
from app.core.events import InternalEvent

logger = logging.getLogger("app.subscription.payments")

PAYMENT_ACTOR = "payment-gateway"


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


@dataclass(slots=True)
class PaymentOutcomeHandler:
    state_machine: SubscriptionStateMachine = field(default_factory=lambda: subscription_state_machine)
    payment_event_repository: PaymentEventRepository = field(default_factory=PaymentEventRepository)
    request_repository: RequestRepository = field(default_factory=RequestRepository)
    subscription_repository: SubscriptionRepository = field(default_factory=SubscriptionRepository)

    def record_payment_outcome(
        self,
        session: Session,
        *,
        external_event_id: str,
        external_reference: str,
        outcome: str,
        now: datetime | None = None,
    ) -> PaymentEvent:
        if outcome not in {item.value for item in PaymentOutcome}:
            raise ValidationError(f"unknown payment outcome {outcome}", context={"outcome": outcome})

        existing = self.payment_event_repository.get_by_external_id(session, external_event_id)
        if existing is not None:
            logger.info(
                "subscription.payment_event_replayed",
                extra={"external_event_id": external_event_id, "applied_action": existing.applied_action},
            )
            return existing

        now = ensure_utc(now) or utcnow()
        transition: TransitionResult | None = None
        try:
            applied_action, transition = self._apply(session, external_reference, outcome, now)
            event = PaymentEvent(
                external_event_id=external_event_id,
                external_reference=external_reference,
                outcome=outcome,
                applied_action=applied_action,
                received_at=now,
            )
            session.add(event)
            session.commit()
        except IntegrityError:
            session.rollback()
            replay = self.payment_event_repository.get_by_external_id(session, external_event_id)
            if replay is None:
                raise
            return replay
        except Exception:
            session.rollback()
            raise

        session.refresh(event)
        if transition is not None:
            self.state_machine.emit(transition)
        metrics.observe_payment_event(outcome)
        audit.record(
            PAYMENT_ACTOR,
            "subscription.payment_event",
            external_event_id,
            f"subscription.payment_{outcome}",
            None,
            {"external_reference": external_reference, "applied_action": applied_action},
        )
        logger.info(
            "subscription.payment_event_recorded",
            extra={
                "external_event_id": external_event_id,
                "external_reference": external_reference,
                "outcome": outcome,
                "applied_action": applied_action,
            },
        )
        return event

    def _apply(
        self, session: Session, reference: str, outcome: str, now: datetime
    ) -> tuple[str, TransitionResult | None]:
        request_id = _parse_uuid(reference)
        if request_id is not None:
            request = self.request_repository.get(session, request_id)
            if request is not None:
                if request.status != RequestStatus.PENDING:
                    return "request_not_pending", None
                request.payment_status = outcome
                session.flush()
                return f"request_payment_{outcome}", None

        subscription = self.subscription_repository.get_by_organization(session, reference)
        if subscription is None:
            raise NotFoundError("payment reference not found", context={"external_reference": reference})
        if outcome != PaymentOutcome.SUCCEEDED:
            return "recorded", None

        if subscription.status == SubscriptionStatus.PENDING_ACTIVATION:
            transition = self.state_machine.activate(
                session,
                subscription.organization_id,
                subscription.subscription_plan_id,
                executed_by=PAYMENT_ACTOR,
                start_date=now,
                notes="activated on payment",
                commit=False,
            )
            return "activated", transition

        window = get_settings().renewal_window_days
        if subscription.status == SubscriptionStatus.ACTIVE and in_renewal_window(
            ensure_utc(subscription.subscription_end), now, window
        ):
            transition = self.state_machine.renew(
                session,
                subscription.organization_id,
                executed_by=PAYMENT_ACTOR,
                now=now,
                commit=False,
            )
            return "renewed", transition
        return "recorded", None


payment_outcome_handler = PaymentOutcomeHandler()


def make_payment_event_handler(
    session_scope: Callable[[], AbstractContextManager[Session]],
    handler: PaymentOutcomeHandler | None = None,
) -> Callable[[InternalEvent], None]:
    """Build an event-bus subscriber for ``payment.outcome`` envelopes."""
    outcome_handler = handler or payment_outcome_handler

    def on_payment_outcome(event: InternalEvent) -> None:
        payload = event.payload if isinstance(event.payload, dict) else {}
        external_event_id = payload.get("external_event_id")
        external_reference = payload.get("external_reference")
        outcome = payload.get("outcome")
        if not all(isinstance(value, str) and value for value in (external_event_id, external_reference, outcome)):
            logger.warning("subscription.payment_event_malformed", extra={"event_name": event.name})
            return
        try:
            with session_scope() as session:
                outcome_handler.record_payment_outcome(
                    session,
                    external_event_id=external_event_id,
                    external_reference=external_reference,
                    outcome=outcome,
                )
        except SubscriptionError as exc:
            logger.warning(
                "subscription.payment_event_rejected",
                extra={"external_event_id": external_event_id, "error": exc.message, "error_code": exc.error_code},
            )

    return on_payment_outcome

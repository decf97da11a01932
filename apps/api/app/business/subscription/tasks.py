from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from app.business.subscription.state_machine import subscription_state_machine
from app.context import reset_correlation_id, set_correlation_id
from app.core.database import SessionLocal

logger = logging.getLogger("app.subscription.tasks")


def run_expiry_sweep(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Run one expiry sweep in a fresh session under its own correlation id."""
    token = set_correlation_id(f"sweep-{uuid.uuid4()}")
    session = session_factory()
    try:
        logger.info("subscription.sweep_task_started")
        result = subscription_state_machine.expire_due(session, now=now)
    finally:
        session.close()
        reset_correlation_id(token)
    return result.to_dict()

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from app.context import get_correlation_id

logger = logging.getLogger("app.audit")


class AuditLogSink(Protocol):
    """Fire-and-forget destination for subscription operations and request status changes."""

    def record(self, event: dict[str, Any]) -> None:
        ...


class InMemoryAuditLogSink:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self._lock = Lock()

    def record(self, event: dict[str, Any]) -> None:
        with self._lock:
            self.entries.append(event)

    def clear(self) -> None:
        with self._lock:
            self.entries.clear()


_SINK: AuditLogSink = InMemoryAuditLogSink()


def get_audit_sink() -> AuditLogSink:
    return _SINK


def set_audit_sink(sink: AuditLogSink) -> None:
    global _SINK
    _SINK = sink


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    event = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        _SINK.record(event)
    except Exception as exc:
        logger.warning("audit_sink_failed", extra={"event_name": action, "error": str(exc)})

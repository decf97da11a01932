from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_correlation_id, reset_organization_id, set_correlation_id, set_organization_id

_ORGANIZATION_PATH_RE = re.compile(r"^/subscriptions/organizations/(?P<organization_id>[^/]+)")


def organization_from_path(path: str) -> str | None:
    match = _ORGANIZATION_PATH_RE.match(path)
    return match.group("organization_id") if match else None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        organization_id = organization_from_path(request.url.path)
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        organization_token = set_organization_id(organization_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if organization_id is not None:
                span.set_attribute("organization_id", organization_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(organization_token)
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response

from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Committed subscription transitions by operation type",
    ["operation_type"],
)

subscription_conflicts_total = Counter(
    "subscription_conflicts_total",
    "Optimistic-concurrency conflicts by operation type",
    ["operation_type"],
)

entitlement_denials_total = Counter(
    "entitlement_denials_total",
    "Entitlement checks denied by rule",
    ["rule"],
)

subscription_sweep_rows_total = Counter(
    "subscription_sweep_rows_total",
    "Rows handled by the expiry sweep by outcome",
    ["outcome"],
)

subscription_sweep_duration_seconds = Histogram(
    "subscription_sweep_duration_seconds",
    "Expiry sweep duration in seconds",
)

subscription_requests_total = Counter(
    "subscription_requests_total",
    "Subscription request status changes",
    ["status"],
)

plan_cache_lookups_total = Counter(
    "plan_cache_lookups_total",
    "Plan catalog cache lookups by result",
    ["result"],
)

payment_events_total = Counter(
    "payment_events_total",
    "Payment outcome events received",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(operation_type: str) -> None:
    subscription_transitions_total.labels(operation_type=operation_type).inc()


def observe_conflict(operation_type: str) -> None:
    subscription_conflicts_total.labels(operation_type=operation_type).inc()


def observe_entitlement_denial(rule: str) -> None:
    entitlement_denials_total.labels(rule=rule).inc()


def observe_sweep(outcome_counts: dict[str, int], duration: float) -> None:
    for outcome, count in outcome_counts.items():
        if count > 0:
            subscription_sweep_rows_total.labels(outcome=outcome).inc(count)
    subscription_sweep_duration_seconds.observe(duration)


def observe_request_status(status: str) -> None:
    subscription_requests_total.labels(status=status).inc()


def observe_plan_cache(hit: bool) -> None:
    plan_cache_lookups_total.labels(result="hit" if hit else "miss").inc()


def observe_payment_event(outcome: str) -> None:
    payment_events_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

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

auth_resolved_total = Counter(
    "auth_resolved_total",
    "Resolved request credentials by auth scheme",
    ["scheme"],
)

auth_failures_total = Counter(
    "auth_failures_total",
    "Rejected request credentials by error kind",
    ["kind"],
)

policy_denials_total = Counter(
    "policy_denials_total",
    "Access policy denials by table and action",
    ["table", "action"],
)

query_cache_hit_total = Counter(
    "query_cache_hit_total",
    "Custom query cache hits",
)

query_cache_miss_total = Counter(
    "query_cache_miss_total",
    "Custom query cache misses",
)

query_execution_duration_seconds = Histogram(
    "query_execution_duration_seconds",
    "Custom query execution duration in seconds",
    ["slug", "status"],
)

hook_events_queued_total = Counter(
    "hook_events_queued_total",
    "Events appended to the hook queue",
    ["table", "event_type"],
)

hook_events_dispatched_total = Counter(
    "hook_events_dispatched_total",
    "Queue events by dispatch outcome",
    ["status"],
)

push_deliveries_total = Counter(
    "push_deliveries_total",
    "Push delivery attempts by outcome",
    ["status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_auth_resolved(scheme: str) -> None:
    auth_resolved_total.labels(scheme=scheme).inc()


def observe_auth_failure(kind: str) -> None:
    auth_failures_total.labels(kind=kind).inc()


def observe_policy_denial(table: str, action: str) -> None:
    policy_denials_total.labels(table=table, action=action).inc()


def observe_query_cache_hit() -> None:
    query_cache_hit_total.inc()


def observe_query_cache_miss() -> None:
    query_cache_miss_total.inc()


def observe_query_execution(slug: str, status: str, duration: float) -> None:
    query_execution_duration_seconds.labels(slug=slug, status=status).observe(duration)


def observe_event_queued(table: str, event_type: str) -> None:
    hook_events_queued_total.labels(table=table, event_type=event_type).inc()


def observe_event_dispatched(status: str, count: int = 1) -> None:
    if count > 0:
        hook_events_dispatched_total.labels(status=status).inc(count)


def observe_push_delivery(status: str) -> None:
    push_deliveries_total.labels(status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

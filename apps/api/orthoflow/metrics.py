from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request

http_requests_total = Counter("http_requests_total", "Total HTTP requests", ["method", "path", "status"])
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

# outcome is committed, replayed, conflict, or the lower-cased rejection code.
workflow_transitions_total = Counter(
    "workflow_transitions_total",
    "Transition requests by outcome",
    ["entity_type", "action", "outcome"],
)
workflow_commit_retries_total = Counter(
    "workflow_commit_retries_total",
    "Transition commits retried after a concurrent modification",
    ["entity_type"],
)
workflow_notification_failures_total = Counter(
    "workflow_notification_failures_total",
    "Post-commit notifications that could not be handed off",
    ["backend"],
)

_ID_SEGMENT = re.compile(r"/(?:[0-9a-fA-F]{8}-(?:[0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}|\d+)(?=/|$)")


def resolve_http_path_label(request: Request) -> str:
    """Route template for matched requests; raw path with ids collapsed otherwise."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return template
    return _ID_SEGMENT.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(entity_type: str, action: str, outcome: str) -> None:
    workflow_transitions_total.labels(entity_type=entity_type, action=action, outcome=outcome).inc()


def observe_commit_retry(entity_type: str) -> None:
    workflow_commit_retries_total.labels(entity_type=entity_type).inc()


def observe_notification_failure(backend: str) -> None:
    workflow_notification_failures_total.labels(backend=backend).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

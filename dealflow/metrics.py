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

dealflow_mutations_total = Counter(
    "dealflow_mutations_total",
    "Total optimistic mutations by outcome",
    ["entity", "operation", "outcome"],
)

dealflow_mutation_duration_seconds = Histogram(
    "dealflow_mutation_duration_seconds",
    "Remote dispatch duration of optimistic mutations in seconds",
    ["operation"],
)

dealflow_push_notifications_total = Counter(
    "dealflow_push_notifications_total",
    "Total push notifications applied to a read-model cache",
    ["dataset", "operation", "outcome"],
)

dealflow_side_effect_failures_total = Counter(
    "dealflow_side_effect_failures_total",
    "Total failed stage-transition side effects",
    ["effect"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _UUID_RE.sub("{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_mutation(entity: str, operation: str, outcome: str, duration: float) -> None:
    dealflow_mutations_total.labels(entity=entity, operation=operation, outcome=outcome).inc()
    dealflow_mutation_duration_seconds.labels(operation=operation).observe(duration)


def observe_push_notification(dataset: str, operation: str, outcome: str) -> None:
    dealflow_push_notifications_total.labels(dataset=dataset, operation=operation, outcome=outcome).inc()


def observe_side_effect_failure(effect: str) -> None:
    dealflow_side_effect_failures_total.labels(effect=effect).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

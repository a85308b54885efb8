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

crm_automation_actions_total = Counter(
    "crm_automation_actions_total",
    "Total automation actions by type and outcome",
    ["action_type", "outcome"],
)

crm_automation_dispatch_total = Counter(
    "crm_automation_dispatch_total",
    "Total automation dispatches by trigger and status",
    ["trigger", "status"],
)

crm_automation_decode_errors_total = Counter(
    "crm_automation_decode_errors_total",
    "Total automation action decode errors by reason",
    ["reason"],
)

crm_automation_sweep_duration_seconds = Histogram(
    "crm_automation_sweep_duration_seconds",
    "Duration automation sweep run time in seconds",
)

crm_automation_sweep_locked_total = Counter(
    "crm_automation_sweep_locked_total",
    "Organizations skipped because another sweep held the lock",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_automation_action(action_type: str, outcome: str) -> None:
    crm_automation_actions_total.labels(action_type=action_type, outcome=outcome).inc()


def observe_automation_dispatch(trigger: str, status: str) -> None:
    crm_automation_dispatch_total.labels(trigger=trigger, status=status).inc()


def observe_automation_decode_error(reason: str) -> None:
    crm_automation_decode_errors_total.labels(reason=reason).inc()


def observe_automation_sweep(duration: float) -> None:
    crm_automation_sweep_duration_seconds.observe(duration)


def observe_automation_sweep_locked() -> None:
    crm_automation_sweep_locked_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

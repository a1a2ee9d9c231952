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

crm_contact_reconciliations_total = Counter(
    "crm_contact_reconciliations_total",
    "Contact get-or-create outcomes",
    ["action"],
)

crm_deal_closures_total = Counter(
    "crm_deal_closures_total",
    "Deal closures by outcome",
    ["outcome"],
)

crm_deal_capture_total = Counter(
    "crm_deal_capture_total",
    "Lead captures that produced a deal, by contact action",
    ["contact_action"],
)

crm_kanban_rebalances_total = Counter(
    "crm_kanban_rebalances_total",
    "Kanban lane rebalances by status",
    ["status"],
)

crm_unique_conflicts_total = Counter(
    "crm_unique_conflicts_total",
    "Unique constraint violations hit at the persistence boundary",
    ["resource", "resolution"],
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


def observe_contact_reconciliation(action: str) -> None:
    crm_contact_reconciliations_total.labels(action=action).inc()


def observe_deal_closure(outcome: str) -> None:
    crm_deal_closures_total.labels(outcome=outcome).inc()


def observe_capture(contact_action: str) -> None:
    crm_deal_capture_total.labels(contact_action=contact_action).inc()


def observe_kanban_rebalance(status: str) -> None:
    crm_kanban_rebalances_total.labels(status=status).inc()


def observe_unique_conflict(resource: str, resolution: str) -> None:
    crm_unique_conflicts_total.labels(resource=resource, resolution=resolution).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

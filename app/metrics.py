from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

from app.core.settings import S

METRICS_ENABLED = S.metrics_enabled

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests resulting in server errors",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "In-progress HTTP requests",
    ["method", "path"],
)
UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)
APP_INFO = Info(
    "app",
    "Application metadata",
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Billing provider webhook deliveries by outcome",
    ["event_type", "outcome"],
)
WEBHOOK_FAILURES = Counter(
    "billing_webhook_failures_total",
    "Webhook deliveries acknowledged but not applied to the local record",
    ["event_type"],
)
PROVIDER_REQUESTS = Counter(
    "billing_provider_requests_total",
    "Calls made to the billing provider",
    ["operation", "outcome"],
)
PROVIDER_LATENCY = Histogram(
    "billing_provider_request_duration_seconds",
    "Billing provider call latency in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20),
)
RECORD_UPDATE_CONFLICTS = Counter(
    "billing_record_update_conflicts_total",
    "Compare-and-set conflicts on subscription records",
)
SUBSCRIPTION_OPERATIONS = Counter(
    "billing_subscription_operations_total",
    "User-initiated subscription operations by outcome",
    ["operation", "outcome"],
)

_START_TIME = time.monotonic()


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and getattr(route, "path", None):
        return route.path
    return request.url.path


def record_webhook_event(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(event_type=event_type or "unknown", outcome=outcome).inc()


def record_webhook_failure(event_type: str) -> None:
    WEBHOOK_FAILURES.labels(event_type=event_type or "unknown").inc()


def record_provider_call(operation: str, outcome: str, elapsed: Optional[float] = None) -> None:
    PROVIDER_REQUESTS.labels(operation=operation, outcome=outcome).inc()
    if elapsed is not None:
        PROVIDER_LATENCY.labels(operation=operation).observe(elapsed)


def record_update_conflict() -> None:
    RECORD_UPDATE_CONFLICTS.inc()


def record_operation(operation: str, outcome: str) -> None:
    SUBSCRIPTION_OPERATIONS.labels(operation=operation, outcome=outcome).inc()


async def metrics_middleware(request: Request, call_next: Callable[[Request], Response]) -> Response:
    path = _route_path(request)
    method = request.method
    start = time.perf_counter()
    IN_PROGRESS.labels(method=method, path=path).inc()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        IN_PROGRESS.labels(method=method, path=path).dec()
        REQUEST_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=method, path=path, status=str(status_code)).inc()
        if status_code >= 500:
            REQUEST_ERRORS.labels(method=method, path=path, status=str(status_code)).inc()


def set_app_info(name: str, version: str) -> None:
    APP_INFO.info({"name": name, "version": version})


def metrics_endpoint() -> Response:
    UPTIME_SECONDS.set(time.monotonic() - _START_TIME)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

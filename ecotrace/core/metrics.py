"""
Prometheus Metrics Configuration
HTTP request metrics plus validation engine business metrics
"""

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
)

# Business metrics
VALIDATION_RUNS = Counter(
    "ecotrace_validation_runs_total",
    "Total number of validation runs",
    ["kind", "outcome"],
)

VALIDATION_DURATION = Histogram(
    "ecotrace_validation_duration_seconds",
    "Validation run duration in seconds",
    ["kind"],
)

VALIDATION_CONFIDENCE = Histogram(
    "ecotrace_validation_confidence",
    "Confidence score of completed validation runs",
    ["kind"],
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

SOURCE_CALLS = Counter(
    "ecotrace_estimate_source_calls_total",
    "Total number of external estimate source calls",
    ["source", "status"],
)

CONFLICTS_DETECTED = Counter(
    "ecotrace_conflicts_detected_total",
    "Total number of cross-source conflicts detected",
    ["method"],
)

CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_breaker_state",
    "Current state of circuit breakers (0=closed, 1=open, 2=half_open)",
    ["name"],
)

GEO_MAPPINGS = Gauge(
    "ecotrace_geographic_mappings",
    "Number of postal mappings in the active geographic index",
)

ACTIVE_CONNECTIONS = Gauge("active_connections", "Number of active connections")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP metrics"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        ACTIVE_CONNECTIONS.inc()

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
            ).inc()

            REQUEST_DURATION.labels(
                method=request.method, endpoint=request.url.path
            ).observe(duration)

            return response

        finally:
            ACTIVE_CONNECTIONS.dec()


def get_metrics() -> bytes:
    """Get current metrics in Prometheus format"""
    return generate_latest()


def record_validation_run(kind: str, is_valid: bool, duration: float, confidence: float):
    """Record a completed validation run"""
    VALIDATION_RUNS.labels(kind=kind, outcome="valid" if is_valid else "invalid").inc()
    VALIDATION_DURATION.labels(kind=kind).observe(duration)
    VALIDATION_CONFIDENCE.labels(kind=kind).observe(confidence)


def record_source_call(source: str, status: str):
    """Record an external estimate source call"""
    SOURCE_CALLS.labels(source=source, status=status).inc()


def record_conflict(method: str):
    CONFLICTS_DETECTED.labels(method=method).inc()


def update_circuit_breaker_state(name: str, state: str):
    """Update circuit breaker state metric"""
    state_value = {"closed": 0, "open": 1, "half_open": 2}.get(state, 0)
    CIRCUIT_BREAKER_STATE.labels(name=name).set(state_value)


def update_geo_mappings(count: int):
    GEO_MAPPINGS.set(count)

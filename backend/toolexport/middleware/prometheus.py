"""
Prometheus Metrics Middleware
Collects metrics on HTTP requests and export lifecycle events
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

# Create a global registry for metrics
metrics_registry = CollectorRegistry()

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status'],
    registry=metrics_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
    registry=metrics_registry
)

# Error Metrics
errors_total = Counter(
    'errors_total',
    'Total errors by type',
    ['error_type', 'endpoint'],
    registry=metrics_registry
)

# API Rate Limiting Metrics
rate_limit_exceeded_total = Counter(
    'rate_limit_exceeded_total',
    'Total rate limit exceeded responses',
    ['endpoint'],
    registry=metrics_registry
)

# Export Metrics
export_jobs_total = Counter(
    'export_jobs_total',
    'Export jobs reaching a lifecycle status',
    ['status'],
    registry=metrics_registry
)

export_jobs_running = Gauge(
    'export_jobs_running',
    'Export jobs currently executing in this process',
    registry=metrics_registry
)

export_package_downloads_total = Counter(
    'export_package_downloads_total',
    'Completed package downloads',
    ['kind'],
    registry=metrics_registry
)

export_integrity_failures_total = Counter(
    'export_integrity_failures_total',
    'Package checksum mismatches detected before download',
    registry=metrics_registry
)

export_cleanup_runs_total = Counter(
    'export_cleanup_runs_total',
    'Cleanup passes by outcome',
    ['outcome'],
    registry=metrics_registry
)

export_cleanup_freed_bytes_total = Counter(
    'export_cleanup_freed_bytes_total',
    'Bytes released by package cleanup',
    registry=metrics_registry
)


def _route_label(request: Request) -> str:
    # Route templates keep job IDs out of label values.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect Prometheus metrics for HTTP requests
    """

    # Endpoints to skip (health checks, metrics endpoint, etc)
    SKIP_ENDPOINTS = ['/health', '/metrics', '/docs', '/openapi.json', '/redoc']

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if any(request.url.path.startswith(skip) for skip in self.SKIP_ENDPOINTS):
            return await call_next(request)

        start_time = time.perf_counter()
        method = request.method

        try:
            response = await call_next(request)
        except Exception as exc:
            endpoint = _route_label(request)
            errors_total.labels(error_type=type(exc).__name__, endpoint=endpoint).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            raise

        duration = time.perf_counter() - start_time
        endpoint = _route_label(request)
        http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

        response.headers["X-Response-Time"] = f"{duration:.6f}"
        return response


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for structured JSON request logging keyed by request ID
    """

    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = getattr(request.state, "request_id", None)
        start_time = time.perf_counter()

        self.logger.info(json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "event": "http_request_start",
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params) if request.query_params else {},
            "client_ip": request.client.host if request.client else None,
        }))

        try:
            response = await call_next(request)
        except Exception as exc:
            self.logger.error(json.dumps({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": request_id,
                "event": "http_request_error",
                "method": request.method,
                "path": request.url.path,
                "error_type": type(exc).__name__,
            }))
            raise

        self.logger.info(json.dumps({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "event": "http_request_complete",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_seconds": round(time.perf_counter() - start_time, 6),
        }))
        return response


# Metric update functions for application events

def record_export_job(status: str) -> None:
    """Record an export job reaching a status"""
    export_jobs_total.labels(status=status).inc()


def record_download(kind: str) -> None:
    """Record a fully streamed download ("full" or "partial")"""
    export_package_downloads_total.labels(kind=kind).inc()


def record_integrity_failure() -> None:
    export_integrity_failures_total.inc()


def record_cleanup(outcome: str, freed_bytes: int = 0) -> None:
    """Record a cleanup pass"""
    export_cleanup_runs_total.labels(outcome=outcome).inc()
    if freed_bytes > 0:
        export_cleanup_freed_bytes_total.inc(freed_bytes)


def record_rate_limit_exceeded(endpoint: str) -> None:
    """Record a rate limit exceeded event"""
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()

"""Middleware module initialization."""

from toolexport.middleware.prometheus import PrometheusMiddleware, StructuredLoggingMiddleware
from toolexport.middleware.request_id import RequestIdMiddleware

__all__ = [
    "PrometheusMiddleware",
    "RequestIdMiddleware",
    "StructuredLoggingMiddleware",
]

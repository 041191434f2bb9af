"""
Metrics collection middleware for Prometheus.
"""
import time
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.metrics import (
    http_requests_total,
    http_request_duration_seconds,
    http_requests_in_progress
)


def normalize_path(path: str) -> str:
    """
    Replace numeric ids in a path with a placeholder to bound label cardinality.

    /api/v1/ab-test/42/results -> /api/v1/ab-test/{id}/results
    """
    return '/'.join('{id}' if part.isdigit() else part for part in path.split('/'))


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        endpoint = normalize_path(request.url.path)

        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.time() - start_time
            http_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code
            ).inc()
            http_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(duration)
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()

"""
Request/response logging middleware.

A/B test routes are tagged with the test id so engine logs and request
logs can be joined on it.
"""
import re
import time
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.core.logging import get_logger

logger = get_logger(__name__)

AB_TEST_PATH = re.compile(r"/ab-test/(\d+)(?:/|$)")

# Polled by health checks and scrapers
QUIET_PATHS = ("/health", "/metrics")


def ab_test_id_from_path(path: str) -> Optional[int]:
    match = AB_TEST_PATH.search(path)
    return int(match.group(1)) if match else None


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request and its response status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        quiet = path.startswith(QUIET_PATHS)

        # Query strings carry visitor ids and are left out
        extra = {
            "request": {
                "method": request.method,
                "path": path,
                "client_host": request.client.host if request.client else None,
                "user_agent": request.headers.get("user-agent"),
            }
        }
        test_id = ab_test_id_from_path(path)
        if test_id is not None:
            extra["test_id"] = test_id

        if not quiet:
            logger.info(f"Request: {request.method} {path}", extra=extra)

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        extra["response"] = {"status_code": response.status_code, "duration_ms": duration_ms}

        if response.status_code >= 500:
            log = logger.error
        elif response.status_code >= 400:
            log = logger.warning
        elif quiet:
            log = logger.debug
        else:
            log = logger.info
        log(f"Response: {request.method} {path} - {response.status_code} ({duration_ms:.2f}ms)", extra=extra)

        return response

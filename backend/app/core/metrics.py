"""
Prometheus metrics collection and custom business metrics.
"""
from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_client import CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST

from app.core.config import settings

registry = CollectorRegistry()

# Application info
app_info = Info('app', 'Application information', registry=registry)
app_info.info({
    'name': settings.APP_NAME,
    'version': settings.APP_VERSION
})

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=registry
)

http_requests_in_progress = Gauge(
    'http_requests_in_progress',
    'Number of HTTP requests in progress',
    ['method', 'endpoint'],
    registry=registry
)

# A/B testing metrics
ab_test_events_total = Counter(
    'ab_test_events_total',
    'Impression and conversion events received by the A/B testing engine',
    ['event_type', 'outcome'],  # outcome: recorded, ignored
    registry=registry
)

ab_test_assignments_total = Counter(
    'ab_test_assignments_total',
    'Visitor variant assignments',
    ['strategy'],  # user_id, session_id, random
    registry=registry
)

ab_tests_concluded_total = Counter(
    'ab_tests_concluded_total',
    'A/B tests moved to COMPLETED',
    ['reason'],  # manual, significance, duration
    registry=registry
)

ab_auto_conclusion_errors_total = Counter(
    'ab_auto_conclusion_errors_total',
    'Auto-conclusion checks that raised and were skipped',
    registry=registry
)


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST

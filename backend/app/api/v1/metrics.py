"""
Prometheus scrape endpoint.
"""
from fastapi import APIRouter, Response
from app.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def prometheus_metrics():
    """HTTP and A/B testing engine metrics in the Prometheus text format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

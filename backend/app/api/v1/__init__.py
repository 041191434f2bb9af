# API v1 package
from app.api.v1.ab_test import router as ab_test_router
from app.api.v1.metrics import router as metrics_router

__all__ = [
    "ab_test_router",
    "metrics_router",
]

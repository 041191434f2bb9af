# Schemas package
from app.models.schemas.ab_test import (
    ABTestArmCreate,
    ABTestCreate,
    ABTestVariantResponse,
    ABTestResponse,
    ABTestListResponse,
    ABTestStopRequest,
    ABTestEventRequest,
    ABTestConversionRequest,
    ABTestEventResponse,
    ABTestAssignmentResponse,
    VariantStatsResponse,
    ABTestResultsResponse,
    ABTestPerformanceResponse,
    ABTestSweepResponse,
)

__all__ = [
    "ABTestArmCreate",
    "ABTestCreate",
    "ABTestVariantResponse",
    "ABTestResponse",
    "ABTestListResponse",
    "ABTestStopRequest",
    "ABTestEventRequest",
    "ABTestConversionRequest",
    "ABTestEventResponse",
    "ABTestAssignmentResponse",
    "VariantStatsResponse",
    "ABTestResultsResponse",
    "ABTestPerformanceResponse",
    "ABTestSweepResponse",
]

# Database models package
from app.models.database.ab_tests import (
    ABTest,
    ABTestVariant,
    ABTestEvent,
    ABTestStatus,
    ABTestType,
    ABTestGoal,
    ConclusionReason,
)

__all__ = [
    "ABTest",
    "ABTestVariant",
    "ABTestEvent",
    "ABTestStatus",
    "ABTestType",
    "ABTestGoal",
    "ConclusionReason",
]

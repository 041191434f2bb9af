"""
Traffic routing for A/B testing.
"""
from typing import Dict, Mapping, Optional, Sequence, Union
import hashlib
import random

from app.core.exceptions import InvalidConfiguration
from app.core.logging import get_logger
from app.core.metrics import ab_test_assignments_total

logger = get_logger(__name__)

TestId = Union[int, str]


class TrafficRouter:
    """Route visitors between the arms of a test."""

    @staticmethod
    def bucket(test_id: TestId, visitor_id: str) -> int:
        """
        Stable percentile bucket in [0, 100) for a visitor within a test.

        Args:
            test_id: A/B test ID
            visitor_id: Stable visitor identifier (cookie or fingerprint)

        Returns:
            Bucket number
        """
        hash_input = f"{visitor_id}:{test_id}"
        hash_value = int(hashlib.md5(hash_input.encode()).hexdigest(), 16)
        return hash_value % 100

    @staticmethod
    def assign(
        test_id: TestId,
        visitor_id: str,
        traffic_split: Mapping[str, float]
    ) -> str:
        """
        Deterministically assign a visitor to an arm.

        The same (test_id, visitor_id) pair always lands in the same arm.
        The split is walked in its own order, accumulating weights until the
        cumulative weight exceeds the visitor's bucket.

        Args:
            test_id: A/B test ID
            visitor_id: Stable visitor identifier
            traffic_split: Arm id to traffic percentage, summing to 100

        Returns:
            Arm id
        """
        if not traffic_split:
            raise InvalidConfiguration(f"A/B test {test_id} has an empty traffic split")

        bucket = TrafficRouter.bucket(test_id, visitor_id)

        cumulative = 0.0
        for arm_id, weight in traffic_split.items():
            cumulative += weight
            if cumulative > bucket:
                return arm_id

        # Rounding left the top bucket uncovered
        return next(iter(traffic_split))

    @staticmethod
    def route(
        test_id: TestId,
        traffic_split: Mapping[str, float],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> str:
        """
        Route a request to an arm.

        Sticky by user ID, then by session ID. Anonymous requests with
        neither get a weighted random arm that is not remembered.

        Args:
            test_id: A/B test ID
            traffic_split: Arm id to traffic percentage
            user_id: User/visitor ID for consistent routing
            session_id: Session ID for consistent routing

        Returns:
            Arm id
        """
        if user_id:
            ab_test_assignments_total.labels(strategy="user_id").inc()
            return TrafficRouter.assign(test_id, user_id, traffic_split)

        if session_id:
            ab_test_assignments_total.labels(strategy="session_id").inc()
            return TrafficRouter.assign(test_id, session_id, traffic_split)

        if not traffic_split:
            raise InvalidConfiguration(f"A/B test {test_id} has an empty traffic split")

        logger.debug(f"No visitor identifier for A/B test {test_id}, using random routing")
        ab_test_assignments_total.labels(strategy="random").inc()
        arms = list(traffic_split.keys())
        weights = list(traffic_split.values())
        if sum(weights) <= 0:
            return arms[0]
        return random.choices(arms, weights=weights, k=1)[0]

    @staticmethod
    def equal_split(arm_ids: Sequence[str]) -> Dict[str, float]:
        """Split traffic evenly across arms, in the given order."""
        if not arm_ids:
            raise InvalidConfiguration("Cannot split traffic across zero arms")
        share = 100.0 / len(arm_ids)
        return {arm_id: share for arm_id in arm_ids}

"""
Impression and conversion recording for A/B tests.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import Float, cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.metrics import ab_test_events_total, ab_auto_conclusion_errors_total
from app.core.sentry import capture_exception
from app.models.database.ab_tests import ABTest, ABTestEvent, ABTestStatus, ABTestVariant

logger = get_logger(__name__)

IMPRESSION = "impression"
CONVERSION = "conversion"

ConversionHook = Callable[[AsyncSession, int], Awaitable[Any]]


class EventRecorder:
    """Accumulate impression and conversion counts per arm."""

    @staticmethod
    async def record_impression(
        db: AsyncSession,
        test_id: int,
        arm_id: str,
        visitor_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Count one exposure of a visitor to an arm.

        Args:
            db: Database session
            test_id: Test ID
            arm_id: Arm the visitor saw
            visitor_id: Visitor ID
            session_id: Session ID
            metadata: Extra event data

        Returns:
            True if the counters changed, False if the event was ignored
        """
        # Test must be RUNNING and own the arm
        variant = await EventRecorder._accepting_variant(db, test_id, arm_id, IMPRESSION)
        if variant is None:
            return False

        # Atomic increment, guarded on the test still RUNNING
        stmt = (
            update(ABTestVariant)
            .where(
                ABTestVariant.id == variant.id,
                ABTestVariant.test_id.in_(EventRecorder._running_test_ids(test_id)),
            )
            .values(
                impressions=ABTestVariant.impressions + 1,
                conversion_rate=cast(ABTestVariant.conversions, Float) / (ABTestVariant.impressions + 1),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            # Test left RUNNING between the lookup and the update
            EventRecorder._ignored(test_id, arm_id, IMPRESSION, "test is no longer running")
            return False

        # Keep the raw event for later analysis
        db.add(ABTestEvent(
            test_id=test_id,
            arm_id=arm_id,
            event_type=IMPRESSION,
            visitor_id=visitor_id,
            session_id=session_id,
            meta_data=metadata,
        ))
        await db.commit()

        ab_test_events_total.labels(event_type=IMPRESSION, outcome="recorded").inc()
        return True

    @staticmethod
    async def record_conversion(
        db: AsyncSession,
        test_id: int,
        arm_id: str,
        value: Optional[float] = None,
        visitor_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        on_conversion: Optional[ConversionHook] = None
    ) -> bool:
        """
        Count one conversion for an arm.

        A conversion is only counted while the arm has fewer conversions than
        impressions, so the counters never invert. After a counted conversion,
        `on_conversion(db, test_id)` runs best-effort: its failures are logged
        and do not affect the return value.

        Args:
            db: Database session
            test_id: Test ID
            arm_id: Arm credited with the conversion
            value: Conversion value
            visitor_id: Visitor ID
            session_id: Session ID
            metadata: Extra event data
            on_conversion: Hook run after a counted conversion

        Returns:
            True if the counters changed, False if the event was ignored
        """
        variant = await EventRecorder._accepting_variant(db, test_id, arm_id, CONVERSION)
        if variant is None:
            return False

        # Counted only while conversions trail impressions
        stmt = (
            update(ABTestVariant)
            .where(
                ABTestVariant.id == variant.id,
                ABTestVariant.test_id.in_(EventRecorder._running_test_ids(test_id)),
                ABTestVariant.conversions < ABTestVariant.impressions,
            )
            .values(
                conversions=ABTestVariant.conversions + 1,
                conversion_rate=cast(ABTestVariant.conversions + 1, Float) / ABTestVariant.impressions,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            EventRecorder._ignored(
                test_id, arm_id, CONVERSION,
                "conversions would exceed impressions or test is no longer running"
            )
            return False

        db.add(ABTestEvent(
            test_id=test_id,
            arm_id=arm_id,
            event_type=CONVERSION,
            visitor_id=visitor_id,
            session_id=session_id,
            value=value,
            meta_data=metadata,
        ))
        await db.commit()

        ab_test_events_total.labels(event_type=CONVERSION, outcome="recorded").inc()
        logger.info(
            f"Conversion recorded for A/B test {test_id} arm {arm_id}",
            extra={"test_id": test_id, "arm_id": arm_id, "event_type": CONVERSION},
        )

        # Auto-conclusion check; never fails the recording
        if on_conversion is not None:
            try:
                await on_conversion(db, test_id)
            except Exception as e:
                await db.rollback()
                ab_auto_conclusion_errors_total.inc()
                capture_exception(e, {"ab_test": {"test_id": test_id, "arm_id": arm_id}})
                logger.warning(
                    f"Auto-conclusion check failed for A/B test {test_id}: {e}",
                    exc_info=True,
                    extra={"test_id": test_id},
                )

        return True

    @staticmethod
    def _running_test_ids(test_id: int):
        return select(ABTest.id).where(
            ABTest.id == test_id,
            ABTest.status == ABTestStatus.RUNNING,
        )

    @staticmethod
    async def _accepting_variant(
        db: AsyncSession,
        test_id: int,
        arm_id: str,
        event_type: str
    ) -> Optional[ABTestVariant]:
        """Arm row if the test is RUNNING and owns the arm, else None."""
        result = await db.execute(
            select(ABTest)
            .where(ABTest.id == test_id)
            .execution_options(populate_existing=True)
        )
        test = result.scalar_one_or_none()

        if test is None:
            EventRecorder._ignored(test_id, arm_id, event_type, "unknown test")
            return None

        if test.status != ABTestStatus.RUNNING:
            EventRecorder._ignored(test_id, arm_id, event_type, f"test is {test.status.value}")
            return None

        variant = test.get_variant(arm_id)
        if variant is None:
            EventRecorder._ignored(test_id, arm_id, event_type, "unknown arm")
            return None

        return variant

    @staticmethod
    def _ignored(test_id: int, arm_id: str, event_type: str, reason: str) -> None:
        ab_test_events_total.labels(event_type=event_type, outcome="ignored").inc()
        logger.warning(
            f"Ignoring {event_type} for A/B test {test_id} arm {arm_id}: {reason}",
            extra={"test_id": test_id, "arm_id": arm_id, "event_type": event_type},
        )

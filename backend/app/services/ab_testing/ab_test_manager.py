"""
A/B test management service.
"""
import math
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ABTestNotFound, InvalidConfiguration, InvalidStateTransition
from app.core.logging import get_logger
from app.core.metrics import ab_tests_concluded_total, ab_auto_conclusion_errors_total
from app.models.database.ab_tests import (
    ABTest, ABTestVariant, ABTestStatus, ABTestType, ABTestGoal, ConclusionReason
)
from app.models.schemas.ab_test import ABTestArmCreate
from app.services.ab_testing.event_recorder import EventRecorder
from app.services.ab_testing.statistics import ABTestStatistics, AnalysisResult, ArmCounts
from app.services.ab_testing.traffic_router import TrafficRouter

logger = get_logger(__name__)

ArmSpec = Union[ABTestArmCreate, Mapping[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ABTestManager:
    """Manage the lifecycle of A/B tests: DRAFT -> RUNNING <-> PAUSED -> COMPLETED."""

    @staticmethod
    def validate_configuration(
        arm_ids: Sequence[str],
        control_arm: str,
        traffic_split: Mapping[str, float],
        confidence_level: float,
        min_sample_size: int,
        tolerance: Optional[float] = None
    ) -> Dict[str, float]:
        """
        Validate a test definition.

        Args:
            arm_ids: Arm ids in walk order
            control_arm: Control arm id
            traffic_split: Arm id to traffic percentage
            confidence_level: Target confidence as a fraction
            min_sample_size: Minimum total impressions before auto-conclusion
            tolerance: Allowed deviation of the split total from 100

        Returns:
            Traffic split re-ordered to follow the arm order
        """
        if tolerance is None:
            tolerance = settings.AB_SPLIT_TOLERANCE

        if len(arm_ids) < 2:
            raise InvalidConfiguration("A/B test must have at least 2 arms")

        if len(set(arm_ids)) != len(arm_ids):
            raise InvalidConfiguration("Arm ids must be unique")

        if control_arm not in arm_ids:
            raise InvalidConfiguration(f"Control arm {control_arm!r} is not one of the test's arms")

        if set(traffic_split) != set(arm_ids):
            raise InvalidConfiguration(
                f"Traffic split arms {sorted(traffic_split)} do not match test arms {sorted(arm_ids)}"
            )

        # NaN compares false against everything, so check finiteness first
        if not all(math.isfinite(weight) for weight in traffic_split.values()):
            raise InvalidConfiguration("Traffic percentages must be finite numbers")

        if any(weight < 0 for weight in traffic_split.values()):
            raise InvalidConfiguration("Traffic percentages must not be negative")

        total = sum(traffic_split.values())
        if not abs(total - 100.0) <= tolerance:
            raise InvalidConfiguration(f"Traffic percentages must sum to 100, got {total}")

        if not 0 < confidence_level < 1:
            raise InvalidConfiguration("Confidence level must be between 0 and 1")

        if min_sample_size < 1:
            raise InvalidConfiguration("Minimum sample size must be at least 1")

        return {arm_id: float(traffic_split[arm_id]) for arm_id in arm_ids}

    @staticmethod
    async def create_test(
        db: AsyncSession,
        name: str,
        arms: Sequence[ArmSpec],
        control_arm: Optional[str] = None,
        traffic_split: Optional[Mapping[str, float]] = None,
        confidence_level: Optional[float] = None,
        min_sample_size: Optional[int] = None,
        max_duration_days: Optional[float] = None,
        description: Optional[str] = None,
        hypothesis: Optional[str] = None,
        test_type: ABTestType = ABTestType.LANDING_PAGE,
        primary_goal: ABTestGoal = ABTestGoal.CONVERSION,
        conversion_goal: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None
    ) -> ABTest:
        """
        Create A/B test in DRAFT status.

        Args:
            db: Database session
            name: Test name
            arms: Arm definitions (arm_id, name, description, content)
            control_arm: Control arm id, defaults to the first arm
            traffic_split: Arm id to percentage, defaults to an equal split
            confidence_level: Target confidence as a fraction
            min_sample_size: Minimum total impressions before auto-conclusion
            max_duration_days: Time box after which the test concludes
            description: Description
            hypothesis: What the test is expected to show
            test_type: Kind of page element under test
            primary_goal: Conversion goal category
            conversion_goal: Free-form goal, e.g. "test-drive booking"
            entity_type: Kind of entity under test, e.g. "landing_page" or "vehicle"
            entity_id: ID of the page, vehicle or campaign under test

        Returns:
            Created A/B test
        """
        arm_specs = [ABTestArmCreate.model_validate(arm) for arm in arms]
        arm_ids = [arm.arm_id for arm in arm_specs]

        if not arm_ids:
            raise InvalidConfiguration("A/B test must have at least 2 arms")

        # Fill defaults from settings
        control_arm = control_arm or arm_ids[0]
        if confidence_level is None:
            confidence_level = settings.AB_DEFAULT_CONFIDENCE_LEVEL
        if min_sample_size is None:
            min_sample_size = settings.AB_DEFAULT_MIN_SAMPLE_SIZE
        if max_duration_days is not None and not (
            math.isfinite(max_duration_days) and max_duration_days > 0
        ):
            raise InvalidConfiguration("Maximum duration must be a positive number of days")

        # An entity link names both the kind of entity and which one
        if (entity_type is None) != (entity_id is None):
            raise InvalidConfiguration("entity_type and entity_id must be given together")

        split = ABTestManager.validate_configuration(
            arm_ids=arm_ids,
            control_arm=control_arm,
            traffic_split=traffic_split if traffic_split is not None else TrafficRouter.equal_split(arm_ids),
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
        )

        test = ABTest(
            name=name,
            description=description,
            hypothesis=hypothesis,
            test_type=test_type,
            primary_goal=primary_goal,
            conversion_goal=conversion_goal,
            entity_type=entity_type,
            entity_id=entity_id,
            status=ABTestStatus.DRAFT,
            control_arm=control_arm,
            traffic_split=split,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
            max_duration_days=max_duration_days,
            variants=[
                ABTestVariant(
                    arm_id=arm.arm_id,
                    name=arm.name,
                    description=arm.description,
                    content=arm.content,
                    position=position,
                )
                for position, arm in enumerate(arm_specs)
            ],
        )

        db.add(test)
        await db.commit()

        logger.info(f"Created A/B test: {name} (ID: {test.id})", extra={"test_id": test.id})
        return await ABTestManager.get_test(db, test.id)

    @staticmethod
    async def get_test(db: AsyncSession, test_id: int) -> ABTest:
        """
        Load a test with its arms, bypassing stale identity-map state.

        Raises:
            ABTestNotFound: No test with this id
        """
        result = await db.execute(
            select(ABTest)
            .where(ABTest.id == test_id)
            .execution_options(populate_existing=True)
        )
        test = result.scalar_one_or_none()
        if test is None:
            raise ABTestNotFound(test_id)
        return test

    @staticmethod
    async def list_tests(
        db: AsyncSession,
        status: Optional[ABTestStatus] = None,
        test_type: Optional[ABTestType] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[List[ABTest], int]:
        """List tests, newest first, with the total count for the filters."""
        conditions = []
        if status is not None:
            conditions.append(ABTest.status == status)
        if test_type is not None:
            conditions.append(ABTest.test_type == test_type)
        if entity_type is not None:
            conditions.append(ABTest.entity_type == entity_type)
        if entity_id is not None:
            conditions.append(ABTest.entity_id == entity_id)

        count_result = await db.execute(
            select(func.count(ABTest.id)).where(*conditions)
        )
        total = count_result.scalar() or 0

        result = await db.execute(
            select(ABTest)
            .where(*conditions)
            .order_by(ABTest.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def get_active_tests(db: AsyncSession) -> List[ABTest]:
        tests, _ = await ABTestManager.list_tests(db, status=ABTestStatus.RUNNING, limit=1000)
        return tests

    @staticmethod
    async def get_test_history(
        db: AsyncSession,
        entity_type: str,
        entity_id: str
    ) -> List[ABTest]:
        """Every test ever run on one page, vehicle or campaign, newest first."""
        tests, _ = await ABTestManager.list_tests(
            db, entity_type=entity_type, entity_id=entity_id, limit=1000
        )
        return tests

    @staticmethod
    async def start_test(db: AsyncSession, test_id: int, now: Optional[datetime] = None) -> ABTest:
        """Start a DRAFT test."""
        test = await ABTestManager._transition(
            db, test_id, "start", [ABTestStatus.DRAFT],
            status=ABTestStatus.RUNNING,
            start_date=now or _utcnow(),
        )
        logger.info(f"Started A/B test: {test_id}", extra={"test_id": test_id})
        return test

    @staticmethod
    async def pause_test(db: AsyncSession, test_id: int) -> ABTest:
        """Pause a RUNNING test; events are ignored while paused."""
        test = await ABTestManager._transition(
            db, test_id, "pause", [ABTestStatus.RUNNING],
            status=ABTestStatus.PAUSED,
        )
        logger.info(f"Paused A/B test: {test_id}", extra={"test_id": test_id})
        return test

    @staticmethod
    async def resume_test(db: AsyncSession, test_id: int) -> ABTest:
        """Resume a PAUSED test."""
        test = await ABTestManager._transition(
            db, test_id, "resume", [ABTestStatus.PAUSED],
            status=ABTestStatus.RUNNING,
        )
        logger.info(f"Resumed A/B test: {test_id}", extra={"test_id": test_id})
        return test

    @staticmethod
    async def stop_test(
        db: AsyncSession,
        test_id: int,
        reason: ConclusionReason = ConclusionReason.MANUAL,
        note: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ABTest:
        """
        Conclude a test and persist its result.

        Stopping an already COMPLETED test is a no-op that returns it unchanged.

        Args:
            db: Database session
            test_id: Test ID
            reason: Why the test is concluding
            note: Operator note appended to the conclusion notes
            now: Conclusion timestamp

        Returns:
            Completed test
        """
        test = await ABTestManager.get_test(db, test_id)
        if test.status == ABTestStatus.COMPLETED:
            logger.info(f"A/B test {test_id} already completed, ignoring stop", extra={"test_id": test_id})
            return test

        # Analyze the final counters
        result = ABTestManager.analyze_test(test)
        winner = result.winner_arm

        # Only the first conclusion wins; the status guard keeps it
        stmt = (
            update(ABTest)
            .where(ABTest.id == test_id, ABTest.status != ABTestStatus.COMPLETED)
            .values(
                status=ABTestStatus.COMPLETED,
                end_date=now or _utcnow(),
                winner=winner,
                winner_confidence=(1 - result.p_value) if winner else None,
                p_value=result.p_value,
                improvement_pct=result.improvement_pct,
                is_significant=result.is_significant,
                conclusion_reason=reason,
                conclusion_notes=ABTestManager._conclusion_notes(test, result, reason, note),
            )
            .execution_options(synchronize_session=False)
        )
        update_result = await db.execute(stmt)
        if update_result.rowcount == 0:
            # Concluded concurrently; keep the first conclusion
            await db.rollback()
            logger.info(f"A/B test {test_id} was concluded concurrently", extra={"test_id": test_id})
            return await ABTestManager.get_test(db, test_id)

        await db.commit()
        # Update metrics
        ab_tests_concluded_total.labels(reason=reason.value).inc()

        logger.info(
            f"Stopped A/B test: {test_id} (reason: {reason.value}, winner: {winner or 'none'})",
            extra={"test_id": test_id},
        )
        return await ABTestManager.get_test(db, test_id)

    @staticmethod
    async def check_auto_conclusion(
        db: AsyncSession,
        test_id: int,
        now: Optional[datetime] = None
    ) -> Optional[ConclusionReason]:
        """
        Conclude a RUNNING test whose stopping rule is met.

        The duration rule is checked first: a time-boxed test concludes when
        its maximum duration has elapsed, significant or not. Otherwise the
        test concludes once total impressions reach the minimum sample size
        and the analysis is significant.

        Returns:
            Reason the test was concluded, or None if it keeps running
        """
        test = await ABTestManager.get_test(db, test_id)
        if test.status != ABTestStatus.RUNNING:
            return None

        now = now or _utcnow()

        # Time box first, significant or not
        if test.max_duration_days and test.start_date:
            elapsed = now - _as_utc(test.start_date)
            if elapsed >= timedelta(days=test.max_duration_days):
                await ABTestManager.stop_test(db, test_id, reason=ConclusionReason.DURATION, now=now)
                return ConclusionReason.DURATION

        # Then enough traffic and a significant difference
        if test.total_impressions >= test.min_sample_size:
            result = ABTestManager.analyze_test(test)
            if result.is_significant:
                await ABTestManager.stop_test(db, test_id, reason=ConclusionReason.SIGNIFICANCE, now=now)
                return ConclusionReason.SIGNIFICANCE

        return None

    @staticmethod
    async def sweep_running_tests(
        db: AsyncSession,
        now: Optional[datetime] = None
    ) -> Tuple[int, Dict[int, ConclusionReason]]:
        """
        Run the auto-conclusion check over every RUNNING test.

        A failing test is logged and skipped.

        Returns:
            Tuple of (tests checked, concluded test id to reason)
        """
        result = await db.execute(
            select(ABTest.id).where(ABTest.status == ABTestStatus.RUNNING)
        )
        test_ids = list(result.scalars().all())

        concluded: Dict[int, ConclusionReason] = {}
        for test_id in test_ids:
            try:
                reason = await ABTestManager.check_auto_conclusion(db, test_id, now=now)
            except Exception as e:
                await db.rollback()
                ab_auto_conclusion_errors_total.inc()
                logger.error(f"Auto-conclusion sweep failed for A/B test {test_id}: {e}", exc_info=True)
                continue
            if reason is not None:
                concluded[test_id] = reason

        if concluded:
            logger.info(f"Auto-conclusion sweep concluded {len(concluded)} of {len(test_ids)} A/B test(s)")
        return len(test_ids), concluded

    @staticmethod
    async def get_variant_for_visitor(
        db: AsyncSession,
        test_id: int,
        visitor_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Assign a visitor to an arm, count the impression and return its content.

        Returns:
            Dictionary with arm info, or None if the test is not running
        """
        result = await db.execute(
            select(ABTest)
            .where(ABTest.id == test_id)
            .execution_options(populate_existing=True)
        )
        test = result.scalar_one_or_none()
        if test is None or test.status != ABTestStatus.RUNNING:
            return None

        arm_id = TrafficRouter.route(
            test_id=test.id,
            traffic_split=ABTestManager.ordered_split(test),
            user_id=visitor_id,
            session_id=session_id,
        )
        content = test.get_variant(arm_id).content

        await EventRecorder.record_impression(
            db, test_id, arm_id,
            visitor_id=visitor_id,
            session_id=session_id,
            metadata=metadata,
        )

        return {
            "test_id": test_id,
            "arm_id": arm_id,
            "content": content,
        }

    @staticmethod
    async def record_impression(
        db: AsyncSession,
        test_id: int,
        arm_id: str,
        visitor_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        return await EventRecorder.record_impression(
            db, test_id, arm_id,
            visitor_id=visitor_id,
            session_id=session_id,
            metadata=metadata,
        )

    @staticmethod
    async def record_conversion(
        db: AsyncSession,
        test_id: int,
        arm_id: str,
        value: Optional[float] = None,
        visitor_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Record a conversion, then check whether the test can conclude."""
        return await EventRecorder.record_conversion(
            db, test_id, arm_id,
            value=value,
            visitor_id=visitor_id,
            session_id=session_id,
            metadata=metadata,
            on_conversion=ABTestManager.check_auto_conclusion,
        )

    @staticmethod
    def ordered_split(test: ABTest) -> Dict[str, float]:
        """Traffic split walked in arm position order."""
        return {
            variant.arm_id: float(test.traffic_split.get(variant.arm_id, 0.0))
            for variant in test.variants
        }

    @staticmethod
    def analyze_test(test: ABTest) -> AnalysisResult:
        return ABTestStatistics.analyze(
            [ArmCounts(v.arm_id, v.impressions, v.conversions) for v in test.variants],
            control_arm=test.control_arm,
            confidence_level=test.confidence_level,
        )

    @staticmethod
    async def get_results(db: AsyncSession, test_id: int) -> Dict[str, Any]:
        """
        Get A/B test results.

        Args:
            db: Database session
            test_id: Test ID

        Returns:
            Test results
        """
        test = await ABTestManager.get_test(db, test_id)
        result = ABTestManager.analyze_test(test)
        total_impressions = test.total_impressions

        return {
            "test_id": test.id,
            "test_name": test.name,
            "status": test.status,
            "control_arm": result.control_arm,
            "challenger_arm": result.challenger_arm,
            "per_arm": [asdict(s) for s in result.per_arm],
            "is_significant": result.is_significant,
            "p_value": result.p_value,
            "z_score": result.z_score,
            "improvement_pct": result.improvement_pct,
            "confidence_level": result.confidence_level,
            "winner_arm": result.winner_arm,
            "recommended_action": ABTestStatistics.recommend_action(
                result, total_impressions, test.min_sample_size
            ),
            "total_impressions": total_impressions,
            "min_sample_size": test.min_sample_size,
        }

    @staticmethod
    async def get_performance(
        db: AsyncSession,
        test_id: int,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Running summary: runtime, totals, power and expected end date.

        Args:
            db: Database session
            test_id: Test ID
            now: Reference time for runtime

        Returns:
            Performance summary
        """
        test = await ABTestManager.get_test(db, test_id)
        result = ABTestManager.analyze_test(test)
        now = now or _utcnow()

        # Runtime counts whole days, up to the end date once concluded
        runtime_days = 0
        expected_end_date = None
        if test.start_date:
            start = _as_utc(test.start_date)
            until = _as_utc(test.end_date) if test.end_date else now
            runtime_days = max(0, math.floor((until - start) / timedelta(days=1)))

            if test.max_duration_days and test.status != ABTestStatus.COMPLETED:
                expected_end_date = start + timedelta(days=test.max_duration_days)

        # Aggregate counters across arms
        total_impressions = test.total_impressions
        total_conversions = test.total_conversions

        # Power of the control vs challenger comparison
        power = 0.0
        if result.challenger_arm is not None:
            power = ABTestStatistics.statistical_power(
                result.stats_for(result.control_arm),
                result.stats_for(result.challenger_arm),
                confidence_level=test.confidence_level,
            )

        return {
            "test_id": test.id,
            "status": test.status,
            "runtime_days": runtime_days,
            "total_impressions": total_impressions,
            "total_conversions": total_conversions,
            "overall_conversion_rate": total_conversions / total_impressions if total_impressions else 0.0,
            "statistical_power": power,
            "expected_end_date": expected_end_date,
            "per_arm": [asdict(s) for s in result.per_arm],
        }

    @staticmethod
    async def _transition(
        db: AsyncSession,
        test_id: int,
        operation: str,
        allowed_from: List[ABTestStatus],
        **values: Any
    ) -> ABTest:
        """Apply a guarded status change; the UPDATE only matches allowed states."""
        test = await ABTestManager.get_test(db, test_id)
        if test.status not in allowed_from:
            raise InvalidStateTransition(test_id, test.status, operation)

        result = await db.execute(
            update(ABTest)
            .where(ABTest.id == test_id, ABTest.status.in_(allowed_from))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            test = await ABTestManager.get_test(db, test_id)
            raise InvalidStateTransition(test_id, test.status, operation)

        await db.commit()
        return await ABTestManager.get_test(db, test_id)

    @staticmethod
    def _conclusion_notes(
        test: ABTest,
        result: AnalysisResult,
        reason: ConclusionReason,
        note: Optional[str]
    ) -> str:
        if reason == ConclusionReason.DURATION:
            header = f"Concluded after maximum duration of {test.max_duration_days:g} day(s)"
        elif reason == ConclusionReason.SIGNIFICANCE:
            header = "Concluded automatically on statistical significance"
        else:
            header = "Stopped manually"

        if result.winner_arm is not None:
            body = (
                f"Winner {result.winner_arm} determined with "
                f"{(1 - result.p_value) * 100:.2f}% confidence "
                f"({result.improvement_pct:+.2f}% vs control {result.control_arm})"
            )
        else:
            body = f"No statistically significant winner (p={result.p_value:.4f})"

        notes = f"{header}. {body}."
        if note:
            notes = f"{notes} {note}"
        return notes

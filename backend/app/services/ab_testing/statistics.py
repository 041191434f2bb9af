"""
Statistical testing for A/B tests.

All significance figures in the service come from `analyze`, which runs a
pooled two-proportion z-test and converts the z-score to a two-sided
p-value with the Abramowitz & Stegun 7.1.26 error-function approximation
(absolute error below 1.5e-7).
"""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import math

from scipy import stats

from app.core.exceptions import InvalidConfiguration
from app.core.logging import get_logger

logger = get_logger(__name__)

Z_95 = 1.96

# Abramowitz & Stegun 7.1.26
_ERF_P = 0.3275911
_ERF_A1 = 0.254829592
_ERF_A2 = -0.284496736
_ERF_A3 = 1.421413741
_ERF_A4 = -1.453152027
_ERF_A5 = 1.061405429


@dataclass(frozen=True)
class ArmCounts:
    """Aggregated counters for one arm."""
    arm_id: str
    impressions: int
    conversions: int


@dataclass(frozen=True)
class VariantStats:
    """Per-arm conversion statistics."""
    arm_id: str
    impressions: int
    conversions: int
    conversion_rate: float
    standard_error: float
    confidence_interval: Tuple[float, float]


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of comparing the control arm with the best challenger."""
    control_arm: str
    challenger_arm: Optional[str]
    is_significant: bool
    p_value: float
    z_score: float
    improvement_pct: float
    confidence_level: float
    winner_arm: Optional[str] = None
    per_arm: List[VariantStats] = field(default_factory=list)

    def stats_for(self, arm_id: str) -> Optional[VariantStats]:
        for arm_stats in self.per_arm:
            if arm_stats.arm_id == arm_id:
                return arm_stats
        return None


def erf(x: float) -> float:
    """Error function, Abramowitz & Stegun 7.1.26."""
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _ERF_P * x)
    poly = ((((_ERF_A5 * t + _ERF_A4) * t + _ERF_A3) * t + _ERF_A2) * t + _ERF_A1) * t
    return sign * (1.0 - poly * math.exp(-x * x))


def normal_cdf(x: float) -> float:
    """Standard normal CDF."""
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def two_sided_p_value(z_score: float) -> float:
    return 2.0 * (1.0 - normal_cdf(abs(z_score)))


class ABTestStatistics:
    """Statistical analysis for A/B tests."""

    @staticmethod
    def variant_stats(counts: ArmCounts) -> VariantStats:
        """
        Conversion rate, standard error and 95% interval for one arm.

        Args:
            counts: Arm counters

        Returns:
            Variant statistics; all zeros for an arm without impressions
        """
        n = counts.impressions
        rate = counts.conversions / n if n > 0 else 0.0
        standard_error = math.sqrt(rate * (1 - rate) / n) if n > 0 else 0.0
        margin = Z_95 * standard_error

        return VariantStats(
            arm_id=counts.arm_id,
            impressions=counts.impressions,
            conversions=counts.conversions,
            conversion_rate=rate,
            standard_error=standard_error,
            confidence_interval=(max(0.0, rate - margin), min(1.0, rate + margin)),
        )

    @staticmethod
    def two_proportion_z_test(
        control: VariantStats,
        other: VariantStats
    ) -> Tuple[float, float, float]:
        """
        Pooled two-proportion z-test.

        Args:
            control: Control arm statistics
            other: Challenger arm statistics

        Returns:
            Tuple of (z-score, two-sided p-value, improvement percent).
            Missing data yields (0.0, 1.0, 0.0).
        """
        n1 = control.impressions
        n2 = other.impressions
        if n1 == 0 or n2 == 0:
            return 0.0, 1.0, 0.0

        pooled = (control.conversions + other.conversions) / (n1 + n2)
        standard_error = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        if standard_error == 0:
            return 0.0, 1.0, 0.0

        p1 = control.conversion_rate
        p2 = other.conversion_rate
        z_score = abs(p2 - p1) / standard_error
        p_value = two_sided_p_value(z_score)
        improvement = (p2 - p1) / p1 * 100 if p1 > 0 else 0.0

        return z_score, p_value, improvement

    @staticmethod
    def analyze(
        arms: Sequence[ArmCounts],
        control_arm: str,
        confidence_level: float = 0.95
    ) -> AnalysisResult:
        """
        Compare the control arm with the best-performing other arm.

        Pure function of the counters; never raises for lack of data.

        Args:
            arms: Counters for every arm, in arm order
            control_arm: Control arm id
            confidence_level: Target confidence as a fraction

        Returns:
            Analysis result
        """
        per_arm = [ABTestStatistics.variant_stats(a) for a in arms]
        control = next((s for s in per_arm if s.arm_id == control_arm), None)
        if control is None:
            raise InvalidConfiguration(f"Control arm {control_arm!r} is not one of the test's arms")

        challenger = None
        for arm_stats in per_arm:
            if arm_stats.arm_id == control_arm:
                continue
            if challenger is None or arm_stats.conversion_rate > challenger.conversion_rate:
                challenger = arm_stats

        if challenger is None:
            return AnalysisResult(
                control_arm=control_arm,
                challenger_arm=None,
                is_significant=False,
                p_value=1.0,
                z_score=0.0,
                improvement_pct=0.0,
                confidence_level=confidence_level,
                per_arm=per_arm,
            )

        z_score, p_value, improvement = ABTestStatistics.two_proportion_z_test(control, challenger)
        is_significant = p_value < (1 - confidence_level)

        winner = None
        if is_significant:
            winner = (
                challenger.arm_id
                if challenger.conversion_rate > control.conversion_rate
                else control.arm_id
            )

        return AnalysisResult(
            control_arm=control_arm,
            challenger_arm=challenger.arm_id,
            is_significant=is_significant,
            p_value=p_value,
            z_score=z_score,
            improvement_pct=improvement,
            confidence_level=confidence_level,
            winner_arm=winner,
            per_arm=per_arm,
        )

    @staticmethod
    def statistical_power(
        control: VariantStats,
        other: VariantStats,
        confidence_level: float = 0.95
    ) -> float:
        """
        Power of the two-sided test to detect the currently observed difference.

        Normal approximation with unpooled variance; 0.0 without data or
        without an observed difference.
        """
        n1 = control.impressions
        n2 = other.impressions
        if n1 == 0 or n2 == 0:
            return 0.0

        p1 = control.conversion_rate
        p2 = other.conversion_rate
        delta = abs(p2 - p1)
        standard_error = math.sqrt(p1 * (1 - p1) / n1 + p2 * (1 - p2) / n2)
        if delta == 0 or standard_error == 0:
            return 0.0

        z_critical = stats.norm.ppf(1 - (1 - confidence_level) / 2)
        power = stats.norm.cdf(delta / standard_error - z_critical)
        return float(power)

    @staticmethod
    def recommend_action(
        result: AnalysisResult,
        total_impressions: int,
        min_sample_size: int
    ) -> str:
        """Human-readable next step for the marketing team."""
        if result.is_significant and result.winner_arm is not None:
            return (
                f"Implement variant {result.winner_arm} - statistically significant "
                f"difference of {result.improvement_pct:.2f}% (p={result.p_value:.4f})"
            )
        if total_impressions >= min_sample_size:
            return "No significant difference detected - consider extending the test or keeping the control"
        return "Continue test - insufficient data"

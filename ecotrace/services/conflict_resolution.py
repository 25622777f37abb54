"""
Conflict Detection and Resolution Service
Finds disagreement between independent estimates of the same emission value
and folds them into one adjusted value plus a confidence penalty.

Outliers are scored by z-score against the threshold in ValidationConfig.
The population z-score of any point in a sample of n values is bounded by
(n - 1) / sqrt(n), so with three to five sources it can never pass 2.0. A
median-based modified z-score is evaluated alongside it so that a single wild
value among a handful of sources is still caught. The modified score is
unbounded for near-identical samples, so a value is only flagged when it also
sits further from the median than max_variance_percent allows.
"""

import logging
import statistics
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ecotrace.core.metrics import record_conflict
from ecotrace.schemas.validation import (
    ConflictResolution,
    CrossReference,
    ResolutionMethod,
    Severity,
    SourceComparison,
    ValidationConfig,
    ValidationErrorItem,
    ValidationWarningItem,
    WarningImpact,
)

logger = logging.getLogger(__name__)

MIN_SOURCES = 2
MIN_CROSS_REFERENCES_FOR_OUTLIER_CHECK = 3
INSUFFICIENT_SOURCES_REDUCTION = 0.1
BASE_CONFLICT_REDUCTION = 0.1
PER_OUTLIER_REDUCTION = 0.05
MANUAL_OVERRIDE_REDUCTION = 0.3

# Scales MAD and mean absolute deviation to the standard deviation of a normal
MAD_SCALE = 0.6745
MEAN_AD_SCALE = 1.253314


@dataclass(frozen=True)
class ConflictDetection:
    has_conflicts: bool
    spread: float
    outliers: List[str] = field(default_factory=list)
    conflicting_sources: List[str] = field(default_factory=list)


def spread_ratio(values: Sequence[float]) -> float:
    """max / min - 1 over the values; infinite when min is not positive"""
    high, low = max(values), min(values)
    if high == low:
        return 0.0
    if low <= 0:
        return float("inf")
    return high / low - 1


def modified_z_scores(values: Sequence[float]) -> List[float]:
    median = statistics.median(values)
    deviations = [abs(v - median) for v in values]
    mad = statistics.median(deviations)
    if mad > 0:
        return [MAD_SCALE * d / mad for d in deviations]

    mean_ad = statistics.fmean(deviations)
    if mean_ad > 0:
        return [d / (MEAN_AD_SCALE * mean_ad) for d in deviations]
    return [0.0 for _ in values]


def relative_deviations(values: Sequence[float]) -> List[float]:
    """|v - median| / |median|; infinite for any other value when the median is 0"""
    median = statistics.median(values)
    if median == 0:
        return [0.0 if v == 0 else float("inf") for v in values]
    return [abs(v - median) / abs(median) for v in values]


def score_outliers(
    values: Sequence[float], threshold: float, max_variance_percent: float
) -> List[Tuple[float, bool]]:
    """(score, is_outlier) per value

    The score is the larger of the population and modified z-scores. A value
    is an outlier when that score passes the threshold and its distance from
    the median exceeds max_variance_percent of the median.
    """
    mean = statistics.fmean(values)
    std_dev = statistics.pstdev(values)
    robust = modified_z_scores(values)
    relative = relative_deviations(values)
    max_deviation = max_variance_percent / 100

    scored = []
    for value, modified_z, deviation in zip(values, robust, relative):
        z_score = abs(value - mean) / std_dev if std_dev > 0 else 0.0
        score = max(z_score, modified_z)
        scored.append((score, score > threshold and deviation > max_deviation))
    return scored


class ConflictDetector:
    """Marks outliers in place and decides whether the sources disagree"""

    def __init__(self, config: ValidationConfig = None):
        self.config = config or ValidationConfig()

    def detect(self, comparisons: Sequence[SourceComparison]) -> ConflictDetection:
        if not comparisons:
            return ConflictDetection(has_conflicts=False, spread=0.0)

        values = [c.value for c in comparisons]
        scored = score_outliers(
            values,
            self.config.outlier_detection_threshold,
            self.config.max_variance_percent,
        )

        outliers = []
        for comparison, (score, is_outlier) in zip(comparisons, scored):
            comparison.z_score = round(score, 4)
            comparison.is_outlier = is_outlier
            if is_outlier:
                outliers.append(comparison.source)

        spread = spread_ratio(values)
        spread_exceeded = spread > self.config.max_variance_percent / 100

        if spread_exceeded:
            conflicting = [c.source for c in comparisons]
        else:
            conflicting = list(outliers)

        return ConflictDetection(
            has_conflicts=spread_exceeded or bool(outliers),
            spread=spread,
            outliers=outliers,
            conflicting_sources=conflicting,
        )


class ConflictResolver:
    """Turns a set of disagreeing comparisons into one value and a penalty"""

    def __init__(self, config: ValidationConfig = None, detector: ConflictDetector = None):
        self.config = config or ValidationConfig()
        self.detector = detector or ConflictDetector(self.config)

    def reconcile(
        self, comparisons: Sequence[SourceComparison], original_value: float
    ) -> ConflictResolution:
        """Full detection and resolution pass over the comparison set"""
        if not self.config.enable_conflict_resolution:
            return ConflictResolution(
                has_conflicts=False,
                resolved_value=original_value,
                resolution_method=ResolutionMethod.DISABLED,
            )

        if len(comparisons) < MIN_SOURCES:
            logger.debug(
                f"Only {len(comparisons)} comparable source(s), skipping conflict resolution"
            )
            return ConflictResolution(
                has_conflicts=False,
                resolved_value=original_value,
                resolution_method=ResolutionMethod.INSUFFICIENT_SOURCES,
                confidence_reduction=INSUFFICIENT_SOURCES_REDUCTION,
            )

        detection = self.detector.detect(comparisons)
        if not detection.has_conflicts:
            return ConflictResolution(
                has_conflicts=False,
                resolved_value=original_value,
                resolution_method=ResolutionMethod.CONSENSUS,
            )

        resolution = self.resolve(comparisons, detection, original_value)
        record_conflict(resolution.resolution_method.value)
        logger.info(
            f"Source conflict resolved by {resolution.resolution_method.value}: "
            f"{original_value} -> {resolution.resolved_value} "
            f"(spread {detection.spread:.2%}, outliers {detection.outliers})"
        )
        return resolution

    def resolve(
        self,
        comparisons: Sequence[SourceComparison],
        detection: ConflictDetection,
        original_value: float,
    ) -> ConflictResolution:
        strategy = self.config.conflict_resolution_strategy
        kept = [c for c in comparisons if not c.is_outlier]
        discarded = [c.source for c in comparisons if c.is_outlier]

        if strategy == ResolutionMethod.MANUAL_OVERRIDE:
            return ConflictResolution(
                has_conflicts=True,
                conflicting_sources=detection.conflicting_sources,
                discarded_sources=discarded,
                resolved_value=original_value,
                resolution_method=strategy,
                confidence_reduction=MANUAL_OVERRIDE_REDUCTION,
                requires_manual_review=True,
            )

        if not kept:
            resolved = original_value
        elif strategy == ResolutionMethod.HIGHEST_CONFIDENCE:
            resolved = max(kept, key=lambda c: c.confidence).value
        elif strategy == ResolutionMethod.NEWEST_DATA:
            resolved = max(kept, key=lambda c: c.last_updated).value
        else:
            resolved = self._weighted_average(kept)

        return ConflictResolution(
            has_conflicts=True,
            conflicting_sources=detection.conflicting_sources,
            discarded_sources=discarded,
            resolved_value=resolved,
            resolution_method=strategy,
            confidence_reduction=round(
                BASE_CONFLICT_REDUCTION + PER_OUTLIER_REDUCTION * len(discarded), 4
            ),
        )

    @staticmethod
    def _weighted_average(comparisons: Sequence[SourceComparison]) -> float:
        total_weight = sum(c.weight for c in comparisons)
        if total_weight <= 0:
            return statistics.fmean(c.value for c in comparisons)
        return sum(c.value * c.weight for c in comparisons) / total_weight


def conflict_warnings(resolution: ConflictResolution) -> List[ValidationWarningItem]:
    warnings = []
    if resolution.has_conflicts:
        warnings.append(
            ValidationWarningItem(
                field="data_sources",
                code="SOURCE_CONFLICTS_DETECTED",
                message=(
                    "Conflicts detected between sources: "
                    f"{', '.join(resolution.conflicting_sources)}"
                ),
                impact=WarningImpact.ACCURACY,
            )
        )
    if resolution.requires_manual_review:
        warnings.append(
            ValidationWarningItem(
                field="conflict_resolution",
                code="MANUAL_REVIEW_REQUIRED",
                message="Significant data conflicts require manual review",
                impact=WarningImpact.DATA_QUALITY,
            )
        )
    return warnings


def detect_result_outlier(
    value: float,
    cross_references: Sequence[CrossReference],
    threshold: float,
    max_variance_percent: float,
) -> Optional[ValidationErrorItem]:
    """Score the primary value against the independent estimates"""
    estimates = [ref.expected_value for ref in cross_references if ref.expected_value is not None]
    if len(estimates) < MIN_CROSS_REFERENCES_FOR_OUTLIER_CHECK:
        return None

    z_score, is_outlier = score_outliers([value] + estimates, threshold, max_variance_percent)[0]
    if not is_outlier:
        return None

    return ValidationErrorItem(
        field="carbonKg",
        code="OUTLIER_DETECTED",
        message=f"Value is a statistical outlier (z-score: {z_score:.2f})",
        severity=Severity.MEDIUM,
    )

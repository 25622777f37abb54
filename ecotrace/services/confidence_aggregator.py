"""
Confidence Aggregator
Folds validation findings, cross-reference agreement and the conflict
resolution penalty into a single confidence score in [0, 1].
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from ecotrace.schemas.activity import Location
from ecotrace.schemas.validation import (
    ConflictResolution,
    CrossReference,
    CrossReferenceStatus,
    Severity,
    ValidationErrorItem,
    ValidationWarningItem,
    WarningImpact,
)

CROSS_REFERENCE_BONUS = 0.1
POSTAL_CODE_BONUS = 0.1
COORDINATES_BONUS = 0.05

WARNING_PENALTIES = {
    WarningImpact.ACCURACY: 0.1,
    WarningImpact.COMPLETENESS: 0.05,
    WarningImpact.DATA_QUALITY: 0.03,
}


@dataclass(frozen=True)
class ConfidenceProfile:
    base: float
    critical_penalty: float
    high_penalty: float = 0.2
    medium_penalty: float = 0.1
    low_penalty: float = 0.05
    completeness_bonus: bool = False

    def penalty_for(self, severity: Severity) -> float:
        return {
            Severity.CRITICAL: self.critical_penalty,
            Severity.HIGH: self.high_penalty,
            Severity.MEDIUM: self.medium_penalty,
            Severity.LOW: self.low_penalty,
        }[severity]


INPUT_PROFILE = ConfidenceProfile(base=1.0, critical_penalty=0.5, completeness_bonus=True)
RESULT_PROFILE = ConfidenceProfile(base=0.8, critical_penalty=0.4)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def aggregate(
    profile: ConfidenceProfile,
    errors: Sequence[ValidationErrorItem],
    warnings: Sequence[ValidationWarningItem],
    cross_references: Sequence[CrossReference] = (),
    conflict_resolution: Optional[ConflictResolution] = None,
    location: Optional[Location] = None,
) -> float:
    """
    Confidence score for one validation run

    Penalties per error severity and warning impact are subtracted from the
    profile base; the input profile rewards a postal code and coordinates;
    agreeing cross-references add up to CROSS_REFERENCE_BONUS. The result is
    clamped, reduced by the conflict resolution penalty, and clamped again.
    """
    confidence = profile.base

    for error in errors:
        confidence -= profile.penalty_for(error.severity)

    for warning in warnings:
        confidence -= WARNING_PENALTIES[warning.impact]

    if profile.completeness_bonus and location is not None:
        if location.postal_code:
            confidence += POSTAL_CODE_BONUS
        if location.coordinates is not None:
            confidence += COORDINATES_BONUS

    if cross_references:
        agreeing = sum(
            1
            for ref in cross_references
            if ref.status in (CrossReferenceStatus.MATCH, CrossReferenceStatus.CLOSE)
        )
        confidence += CROSS_REFERENCE_BONUS * agreeing / len(cross_references)

    confidence = _clamp(confidence)

    if conflict_resolution is not None and conflict_resolution.confidence_reduction > 0:
        confidence = _clamp(confidence - conflict_resolution.confidence_reduction)

    return round(confidence, 4)


def is_valid(
    errors: Sequence[ValidationErrorItem], confidence: float, min_confidence: float
) -> bool:
    return not errors and confidence >= min_confidence

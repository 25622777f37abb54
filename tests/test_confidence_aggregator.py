"""
Test confidence scoring of validation runs
"""

import pytest

from ecotrace.schemas.activity import Location
from ecotrace.schemas.geography import Coordinates
from ecotrace.schemas.validation import (
    ConflictResolution,
    CrossReference,
    CrossReferenceStatus,
    ResolutionMethod,
    Severity,
    ValidationErrorItem,
    ValidationWarningItem,
    WarningImpact,
)
from ecotrace.services.confidence_aggregator import (
    INPUT_PROFILE,
    RESULT_PROFILE,
    aggregate,
    is_valid,
)


def error(severity):
    return ValidationErrorItem(field="f", code="C", message="m", severity=severity)


def warning(impact):
    return ValidationWarningItem(field="f", code="W", message="m", impact=impact)


def reference(status):
    return CrossReference(
        source="s", expected_value=1.0, actual_value=1.0, variance=0.0, status=status
    )


def resolution(reduction):
    return ConflictResolution(
        has_conflicts=True,
        resolved_value=1.0,
        resolution_method=ResolutionMethod.WEIGHTED_AVERAGE,
        confidence_reduction=reduction,
    )


class TestAggregate:
    def test_clean_input_with_postal_code(self):
        location = Location(country="US", postal_code="94107")
        assert aggregate(INPUT_PROFILE, [], [], location=location) == 1.0

    def test_error_penalties_per_profile(self):
        assert aggregate(INPUT_PROFILE, [error(Severity.CRITICAL)], []) == pytest.approx(0.5)
        assert aggregate(RESULT_PROFILE, [error(Severity.CRITICAL)], []) == pytest.approx(0.4)
        assert aggregate(RESULT_PROFILE, [error(Severity.LOW)], []) == pytest.approx(0.75)

    def test_warning_penalties(self):
        warnings = [
            warning(WarningImpact.ACCURACY),
            warning(WarningImpact.COMPLETENESS),
            warning(WarningImpact.DATA_QUALITY),
        ]
        assert aggregate(INPUT_PROFILE, [], warnings) == pytest.approx(0.82)

    def test_result_profile_ignores_location_bonus(self):
        location = Location(
            postal_code="94107", coordinates=Coordinates(latitude=37.7, longitude=-122.4)
        )
        confidence = aggregate(
            RESULT_PROFILE, [error(Severity.HIGH)], [], location=location
        )
        assert confidence == pytest.approx(0.6)

    def test_completeness_bonus(self):
        location = Location(
            postal_code="94107", coordinates=Coordinates(latitude=37.7, longitude=-122.4)
        )
        confidence = aggregate(
            INPUT_PROFILE, [error(Severity.HIGH)], [], location=location
        )
        assert confidence == pytest.approx(0.95)

    def test_cross_reference_agreement_bonus(self):
        refs = [
            reference(CrossReferenceStatus.MATCH),
            reference(CrossReferenceStatus.DIVERGENT),
        ]
        assert aggregate(RESULT_PROFILE, [], [], cross_references=refs) == pytest.approx(0.85)

    def test_clamped_before_conflict_reduction(self):
        location = Location(
            postal_code="94107", coordinates=Coordinates(latitude=37.7, longitude=-122.4)
        )
        confidence = aggregate(
            INPUT_PROFILE, [], [], conflict_resolution=resolution(0.3), location=location
        )
        assert confidence == pytest.approx(0.7)

    def test_never_below_zero(self):
        errors = [error(Severity.CRITICAL)] * 4
        assert aggregate(RESULT_PROFILE, errors, [], conflict_resolution=resolution(0.3)) == 0.0

    def test_each_critical_error_lowers_confidence(self):
        scores = [
            aggregate(RESULT_PROFILE, [error(Severity.CRITICAL)] * count, [])
            for count in range(4)
        ]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] > scores[1] > scores[2]


class TestIsValid:
    def test_requires_no_errors(self):
        assert not is_valid([error(Severity.LOW)], 0.99, 0.6)

    def test_requires_threshold(self):
        assert is_valid([], 0.6, 0.6)
        assert not is_valid([], 0.59, 0.6)

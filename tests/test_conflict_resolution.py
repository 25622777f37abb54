"""
Test outlier detection and conflict resolution between estimate sources
"""

from datetime import timedelta

import pytest

from ecotrace.schemas.validation import (
    CrossReference,
    CrossReferenceStatus,
    ResolutionMethod,
    Severity,
    SourceComparison,
    ValidationConfig,
)
from ecotrace.services.conflict_resolution import (
    ConflictDetection,
    ConflictDetector,
    ConflictResolver,
    conflict_warnings,
    detect_result_outlier,
    modified_z_scores,
    spread_ratio,
)

from conftest import FIXED_NOW


def comparison(source, value, weight=0.5, confidence=0.8, age_hours=0):
    return SourceComparison(
        source=source,
        value=value,
        weight=weight,
        confidence=confidence,
        last_updated=FIXED_NOW - timedelta(hours=age_hours),
    )


def resolver_for(strategy=ResolutionMethod.WEIGHTED_AVERAGE, **overrides):
    return ConflictResolver(
        ValidationConfig(conflict_resolution_strategy=strategy, **overrides)
    )


def cross_reference(value, status=CrossReferenceStatus.MATCH):
    return CrossReference(
        source="estimate",
        expected_value=value,
        actual_value=value,
        variance=0.0,
        status=status,
    )


class TestStatistics:
    def test_spread_ratio(self):
        assert spread_ratio([10.0, 20.0]) == pytest.approx(1.0)
        assert spread_ratio([5.0, 5.0, 5.0]) == 0.0
        assert spread_ratio([0.0, 1.0]) == float("inf")

    def test_modified_z_scores_all_equal(self):
        assert modified_z_scores([3.0, 3.0, 3.0]) == [0.0, 0.0, 0.0]

    def test_modified_z_scores_zero_mad_uses_mean_deviation(self):
        scores = modified_z_scores([1.0, 1.0, 1.0, 5.0])
        assert scores[:3] == [0.0, 0.0, 0.0]
        assert scores[3] == pytest.approx(3.1915, abs=1e-4)


class TestConflictDetector:
    def test_single_wild_value_is_flagged(self):
        comparisons = [comparison("a", 0.90), comparison("b", 0.92), comparison("c", 1.50)]
        detection = ConflictDetector().detect(comparisons)

        assert detection.has_conflicts
        assert detection.outliers == ["c"]
        assert comparisons[2].is_outlier
        assert comparisons[2].z_score == pytest.approx(19.5605, abs=1e-3)
        assert not comparisons[0].is_outlier
        assert detection.conflicting_sources == ["a", "b", "c"]

    def test_agreeing_values(self):
        comparisons = [comparison("a", 0.90), comparison("b", 0.92), comparison("c", 0.95)]
        detection = ConflictDetector().detect(comparisons)

        assert not detection.has_conflicts
        assert detection.outliers == []
        assert detection.spread == pytest.approx(0.0556, abs=1e-4)

    def test_identical_values_have_no_outliers(self):
        comparisons = [comparison(name, 4.2) for name in "abcd"]
        detection = ConflictDetector().detect(comparisons)

        assert not detection.has_conflicts
        assert all(c.z_score == 0.0 for c in comparisons)

    def test_high_score_within_tolerance_is_not_an_outlier(self):
        config = ValidationConfig(max_variance_percent=500)
        comparisons = [
            comparison("a", 1.0),
            comparison("b", 1.0),
            comparison("c", 1.0),
            comparison("d", 5.0),
        ]
        detection = ConflictDetector(config).detect(comparisons)

        assert not detection.has_conflicts
        assert detection.outliers == []
        assert comparisons[3].z_score == pytest.approx(3.1915, abs=1e-4)
        assert not comparisons[3].is_outlier

    def test_near_identical_values_agree(self):
        comparisons = [comparison("a", 1.0), comparison("b", 1.0), comparison("c", 1.0001)]
        detection = ConflictDetector().detect(comparisons)

        assert not detection.has_conflicts
        assert detection.outliers == []
        assert comparisons[2].z_score > 2.0

    def test_small_drift_within_tolerance_agrees(self):
        comparisons = [
            comparison("a", 1.00),
            comparison("b", 1.01),
            comparison("c", 1.02),
            comparison("d", 1.10),
        ]
        detection = ConflictDetector().detect(comparisons)

        assert not detection.has_conflicts
        assert detection.outliers == []
        assert detection.spread == pytest.approx(0.10)

    def test_empty_input(self):
        detection = ConflictDetector().detect([])
        assert detection == ConflictDetection(has_conflicts=False, spread=0.0)


class TestConflictResolver:
    def test_weighted_average_of_two_sources(self):
        comparisons = [comparison("a", 10.0, weight=0.7), comparison("b", 20.0, weight=0.3)]
        resolution = resolver_for().reconcile(comparisons, original_value=12.0)

        assert resolution.has_conflicts
        assert resolution.resolved_value == pytest.approx(13.0)
        assert resolution.resolution_method == ResolutionMethod.WEIGHTED_AVERAGE
        assert resolution.conflicting_sources == ("a", "b")
        assert resolution.discarded_sources == ()
        assert resolution.confidence_reduction == pytest.approx(0.1)

    def test_outlier_is_discarded_before_averaging(self):
        comparisons = [comparison("a", 0.90), comparison("b", 0.92), comparison("c", 1.50)]
        resolution = resolver_for().reconcile(comparisons, original_value=0.9)

        assert resolution.discarded_sources == ("c",)
        assert resolution.resolved_value == pytest.approx(0.91)
        assert resolution.confidence_reduction == pytest.approx(0.15)

    def test_highest_confidence(self):
        comparisons = [
            comparison("a", 10.0, confidence=0.6),
            comparison("b", 20.0, confidence=0.95),
        ]
        resolution = resolver_for(ResolutionMethod.HIGHEST_CONFIDENCE).reconcile(
            comparisons, original_value=10.0
        )
        assert resolution.resolved_value == 20.0

    def test_newest_data(self):
        comparisons = [
            comparison("a", 10.0, age_hours=1),
            comparison("b", 20.0, age_hours=48),
        ]
        resolution = resolver_for(ResolutionMethod.NEWEST_DATA).reconcile(
            comparisons, original_value=20.0
        )
        assert resolution.resolved_value == 10.0

    def test_manual_override_keeps_value_and_flags_review(self):
        comparisons = [comparison("a", 10.0), comparison("b", 20.0)]
        resolution = resolver_for(ResolutionMethod.MANUAL_OVERRIDE).reconcile(
            comparisons, original_value=12.0
        )

        assert resolution.resolved_value == 12.0
        assert resolution.requires_manual_review
        assert resolution.confidence_reduction == pytest.approx(0.3)

    def test_consensus(self):
        comparisons = [comparison("a", 0.90), comparison("b", 0.92), comparison("c", 0.95)]
        resolution = resolver_for().reconcile(comparisons, original_value=0.9)

        assert not resolution.has_conflicts
        assert resolution.resolution_method == ResolutionMethod.CONSENSUS
        assert resolution.resolved_value == 0.9
        assert resolution.confidence_reduction == 0.0

    def test_near_identical_values_reach_consensus(self):
        comparisons = [comparison("a", 1.0), comparison("b", 1.0), comparison("c", 1.0001)]
        resolution = resolver_for().reconcile(comparisons, original_value=1.0)

        assert not resolution.has_conflicts
        assert resolution.resolution_method == ResolutionMethod.CONSENSUS
        assert resolution.confidence_reduction == 0.0

    def test_insufficient_sources(self):
        resolution = resolver_for().reconcile([comparison("a", 1.0)], original_value=1.0)

        assert not resolution.has_conflicts
        assert resolution.resolution_method == ResolutionMethod.INSUFFICIENT_SOURCES
        assert resolution.confidence_reduction == pytest.approx(0.1)

    def test_disabled(self):
        resolver = resolver_for(enable_conflict_resolution=False)
        comparisons = [comparison("a", 1.0), comparison("b", 50.0)]
        resolution = resolver.reconcile(comparisons, original_value=1.0)

        assert resolution.resolution_method == ResolutionMethod.DISABLED
        assert resolution.confidence_reduction == 0.0
        assert not comparisons[1].is_outlier

    def test_every_source_discarded_keeps_original(self):
        comparisons = [comparison("a", 1.0), comparison("b", 2.0)]
        for c in comparisons:
            c.is_outlier = True
        detection = ConflictDetection(
            has_conflicts=True, spread=1.0, outliers=["a", "b"], conflicting_sources=["a", "b"]
        )
        resolution = resolver_for().resolve(comparisons, detection, original_value=7.5)

        assert resolution.resolved_value == 7.5
        assert resolution.confidence_reduction == pytest.approx(0.2)

    def test_zero_weights_fall_back_to_plain_mean(self):
        comparisons = [comparison("a", 10.0, weight=0.0), comparison("b", 20.0, weight=0.0)]
        resolution = resolver_for().reconcile(comparisons, original_value=10.0)
        assert resolution.resolved_value == pytest.approx(15.0)


class TestWarningsAndOutliers:
    def test_conflict_warnings(self):
        comparisons = [comparison("a", 10.0), comparison("b", 20.0)]
        resolution = resolver_for(ResolutionMethod.MANUAL_OVERRIDE).reconcile(
            comparisons, original_value=10.0
        )
        warnings = conflict_warnings(resolution)

        assert [w.code for w in warnings] == [
            "SOURCE_CONFLICTS_DETECTED",
            "MANUAL_REVIEW_REQUIRED",
        ]
        assert warnings[0].message == "Conflicts detected between sources: a, b"

    def test_no_warnings_without_conflict(self):
        resolution = resolver_for().reconcile([comparison("a", 1.0)], original_value=1.0)
        assert conflict_warnings(resolution) == []

    def test_result_outlier(self):
        refs = [cross_reference(10.0) for _ in range(5)]
        error = detect_result_outlier(100.0, refs, threshold=2.0, max_variance_percent=25.0)

        assert error.code == "OUTLIER_DETECTED"
        assert error.severity == Severity.MEDIUM
        assert error.message == "Value is a statistical outlier (z-score: 4.79)"

    def test_result_outlier_needs_three_estimates(self):
        refs = [cross_reference(10.0), cross_reference(10.0)]
        assert detect_result_outlier(100.0, refs, threshold=2.0, max_variance_percent=25.0) is None

    def test_failed_references_are_ignored(self):
        failed = CrossReference(
            source="broken", actual_value=100.0, status=CrossReferenceStatus.FAILED
        )
        refs = [cross_reference(10.0), cross_reference(10.0), failed]
        assert detect_result_outlier(100.0, refs, threshold=2.0, max_variance_percent=25.0) is None

    def test_identical_values_are_not_outliers(self):
        refs = [cross_reference(10.0) for _ in range(3)]
        assert detect_result_outlier(10.0, refs, threshold=2.0, max_variance_percent=25.0) is None

    def test_result_outlier_with_four_estimates(self):
        refs = [cross_reference(10.0) for _ in range(4)]
        error = detect_result_outlier(1000.0, refs, threshold=2.0, max_variance_percent=25.0)

        assert error.code == "OUTLIER_DETECTED"
        assert error.message == "Value is a statistical outlier (z-score: 3.99)"

    def test_result_outlier_with_three_estimates(self):
        refs = [cross_reference(10.0) for _ in range(3)]
        error = detect_result_outlier(50.0, refs, threshold=2.0, max_variance_percent=25.0)

        assert error.message == "Value is a statistical outlier (z-score: 3.19)"

    def test_result_close_to_estimates_is_not_an_outlier(self):
        refs = [cross_reference(10.0) for _ in range(3)]
        assert detect_result_outlier(10.5, refs, threshold=2.0, max_variance_percent=25.0) is None

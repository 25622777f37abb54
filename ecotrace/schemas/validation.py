"""
Validation schemas for activity and calculation result validation
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ecotrace.schemas.activity import ActivityRecord
from ecotrace.schemas.calculation import CalculationResult
from ecotrace.schemas.geography import PostalMapping


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class WarningImpact(str, Enum):
    ACCURACY = "accuracy"
    COMPLETENESS = "completeness"
    DATA_QUALITY = "data_quality"


class CrossReferenceStatus(str, Enum):
    MATCH = "match"
    CLOSE = "close"
    DIVERGENT = "divergent"
    FAILED = "failed"


class ResolutionMethod(str, Enum):
    WEIGHTED_AVERAGE = "weighted_average"
    HIGHEST_CONFIDENCE = "highest_confidence"
    NEWEST_DATA = "newest_data"
    MANUAL_OVERRIDE = "manual_override"
    CONSENSUS = "consensus"
    INSUFFICIENT_SOURCES = "insufficient_sources"
    DISABLED = "disabled"


class ValidationKind(str, Enum):
    ACTIVITY = "activity"
    RESULT = "result"


class ValidationErrorItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Field or stage the error refers to")
    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    severity: Severity


class ValidationWarningItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    code: str
    message: str
    impact: WarningImpact


class CrossReference(BaseModel):
    """Comparison of the primary value with one independent estimate"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str
    expected_value: Optional[float] = Field(
        None, alias="expectedValue", description="Independent estimate, absent when the source failed"
    )
    actual_value: float = Field(..., alias="actualValue")
    variance: Optional[float] = Field(None, description="Absolute difference in percent")
    status: CrossReferenceStatus


@dataclass
class SourceComparison:
    """One value in the comparison set; is_outlier and z_score are set by detection"""

    source: str
    value: float
    weight: float
    confidence: float
    last_updated: datetime
    is_outlier: bool = False
    z_score: float = 0.0


class ConflictResolution(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    has_conflicts: bool = Field(..., alias="hasConflicts")
    conflicting_sources: Tuple[str, ...] = Field((), alias="conflictingSources")
    discarded_sources: Tuple[str, ...] = Field((), alias="discardedSources")
    resolved_value: float = Field(..., alias="resolvedValue")
    resolution_method: ResolutionMethod = Field(..., alias="resolutionMethod")
    confidence_reduction: float = Field(0.0, alias="confidenceReduction")
    requires_manual_review: bool = Field(False, alias="requiresManualReview")


class ValidationReport(BaseModel):
    """Immutable outcome of one validation run"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    validation_id: str = Field(..., alias="validationId")
    kind: ValidationKind
    is_valid: bool = Field(..., alias="isValid")
    errors: Tuple[ValidationErrorItem, ...] = ()
    warnings: Tuple[ValidationWarningItem, ...] = ()
    confidence: float = Field(..., ge=0.0, le=1.0)
    cross_references: Tuple[CrossReference, ...] = Field((), alias="crossReferences")
    conflict_resolution: Optional[ConflictResolution] = Field(
        None, alias="conflictResolution"
    )
    grid_mapping: Optional[PostalMapping] = Field(None, alias="gridMapping")
    validated_at: datetime = Field(..., alias="validatedAt")
    duration_ms: float = Field(..., alias="durationMs")


class ValidationConfig(BaseModel):
    """Tunable thresholds and feature switches of the validation engine"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_variance_percent: float = Field(25.0, alias="maxVariancePercent", gt=0)
    min_confidence_threshold: float = Field(
        0.6, alias="minConfidenceThreshold", ge=0.0, le=1.0
    )
    conflict_resolution_strategy: ResolutionMethod = Field(
        ResolutionMethod.WEIGHTED_AVERAGE, alias="conflictResolutionStrategy"
    )
    outlier_detection_threshold: float = Field(
        2.0, alias="outlierDetectionThreshold", gt=0
    )
    enable_cross_referencing: bool = Field(True, alias="enableCrossReferencing")
    enable_range_checking: bool = Field(True, alias="enableRangeChecking")
    enable_conflict_resolution: bool = Field(True, alias="enableConflictResolution")
    enable_freshness_checking: bool = Field(True, alias="enableFreshnessChecking")

    @field_validator("conflict_resolution_strategy")
    @classmethod
    def strategy_must_be_selectable(cls, v: ResolutionMethod) -> ResolutionMethod:
        if v not in (
            ResolutionMethod.WEIGHTED_AVERAGE,
            ResolutionMethod.HIGHEST_CONFIDENCE,
            ResolutionMethod.NEWEST_DATA,
            ResolutionMethod.MANUAL_OVERRIDE,
        ):
            raise ValueError(f"{v.value} is not a selectable resolution strategy")
        return v

    @classmethod
    def from_settings(cls, settings) -> "ValidationConfig":
        return cls(
            max_variance_percent=settings.MAX_VARIANCE_PERCENT,
            min_confidence_threshold=settings.MIN_CONFIDENCE_THRESHOLD,
            conflict_resolution_strategy=settings.CONFLICT_RESOLUTION_STRATEGY,
            outlier_detection_threshold=settings.OUTLIER_DETECTION_THRESHOLD,
            enable_cross_referencing=settings.ENABLE_CROSS_REFERENCING,
            enable_range_checking=settings.ENABLE_RANGE_CHECKING,
            enable_conflict_resolution=settings.ENABLE_CONFLICT_RESOLUTION,
            enable_freshness_checking=settings.ENABLE_FRESHNESS_CHECKING,
        )


class ResultValidationRequest(BaseModel):
    activity: ActivityRecord
    result: CalculationResult

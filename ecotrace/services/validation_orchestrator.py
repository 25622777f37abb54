"""
Validation Orchestrator
Runs one validation of an activity record or a calculation result through a
fixed sequence of stages and assembles the report.

RECEIVED -> STRUCTURAL_CHECK -> RANGE_CHECK -> CROSS_REFERENCE
         -> CONFLICT_RESOLUTION -> AGGREGATE -> REPORT

CONFLICT_RESOLUTION runs after CROSS_REFERENCE because it reconciles the
comparisons that cross-referencing gathers. The concurrency sits inside
CROSS_REFERENCE, where EstimateGatherer queries every estimate source at once.

Each stage is guarded: an unexpected exception inside a stage is logged,
recorded as one critical error naming the stage, and the run carries on with
whatever that stage had produced so far. Callers always receive a report.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from ecotrace.core.clock import utcnow
from ecotrace.core.config import settings
from ecotrace.core.metrics import record_validation_run
from ecotrace.schemas.activity import ActivityRecord
from ecotrace.schemas.calculation import CalculationResult
from ecotrace.schemas.geography import PostalMapping
from ecotrace.schemas.validation import (
    ConflictResolution,
    CrossReference,
    Severity,
    SourceComparison,
    ValidationConfig,
    ValidationErrorItem,
    ValidationKind,
    ValidationReport,
    ValidationWarningItem,
)
from ecotrace.services import confidence_aggregator
from ecotrace.services.conflict_resolution import (
    ConflictResolver,
    conflict_warnings,
    detect_result_outlier,
)
from ecotrace.services.estimate_gatherer import (
    EstimateGatherer,
    build_comparisons,
    build_cross_references,
    primary_comparison,
)
from ecotrace.services.geographic_mapping_service import GeographicMappingService
from ecotrace.services.structural_validator import StructuralValidator

logger = logging.getLogger(__name__)


class CalculationEngine(Protocol):
    async def calculate(self, activity: ActivityRecord) -> CalculationResult:
        ...


class ValidationStage(str, Enum):
    RECEIVED = "received"
    STRUCTURAL_CHECK = "structural_check"
    RANGE_CHECK = "range_check"
    CROSS_REFERENCE = "cross_reference"
    CONFLICT_RESOLUTION = "conflict_resolution"
    AGGREGATE = "aggregate"
    REPORT = "report"


@dataclass
class _ValidationRun:
    """Mutable working state of a single run"""

    kind: ValidationKind
    config: ValidationConfig
    fault_code: str
    stage: ValidationStage = ValidationStage.RECEIVED
    errors: List[ValidationErrorItem] = field(default_factory=list)
    warnings: List[ValidationWarningItem] = field(default_factory=list)
    cross_references: List[CrossReference] = field(default_factory=list)
    comparisons: List[SourceComparison] = field(default_factory=list)
    conflict_resolution: Optional[ConflictResolution] = None
    grid_mapping: Optional[PostalMapping] = None
    confidence: float = 0.0
    started: float = field(default_factory=time.monotonic)

    @property
    def has_critical_errors(self) -> bool:
        return any(e.severity == Severity.CRITICAL for e in self.errors)


class ValidationOrchestrator:
    """Entry point for activity and calculation result validation"""

    def __init__(
        self,
        geo_service: GeographicMappingService,
        gatherer: EstimateGatherer,
        calculation_engine: Optional[CalculationEngine] = None,
        config: Optional[ValidationConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.geo_service = geo_service
        self.gatherer = gatherer
        self.calculation_engine = calculation_engine
        self._config = config or ValidationConfig.from_settings(settings)
        self._clock = clock

    # Configuration

    def get_config(self) -> ValidationConfig:
        return self._config

    def update_config(self, **changes: Any) -> ValidationConfig:
        """
        Replace the active configuration with a validated copy

        Keys may use either the snake_case field names or their camelCase
        aliases. Runs already in flight keep the configuration they started
        with.
        """
        fields = ValidationConfig.model_fields
        by_alias = {info.alias: name for name, info in fields.items() if info.alias}

        normalized = {}
        for key, value in changes.items():
            name = by_alias.get(key, key)
            if name not in fields:
                raise ValueError(f"Unknown validation config option: {key}")
            normalized[name] = value

        self._config = ValidationConfig.model_validate(
            {**self._config.model_dump(), **normalized}
        )
        logger.info(f"Validation config updated: {sorted(normalized)}")
        return self._config

    # Validation entry points

    async def validate_activity(self, record: ActivityRecord) -> ValidationReport:
        run = _ValidationRun(
            kind=ValidationKind.ACTIVITY,
            config=self._config,
            fault_code="VALIDATION_SYSTEM_ERROR",
        )
        validator = StructuralValidator(run.config, self._clock)

        with self._stage(run, ValidationStage.STRUCTURAL_CHECK):
            run.errors.extend(validator.check_structure(record))
            run.warnings.extend(validator.check_logical_consistency(record))

        with self._stage(run, ValidationStage.RANGE_CHECK):
            if run.config.enable_range_checking:
                run.errors.extend(validator.check_ranges(record))

        primary: Optional[CalculationResult] = None
        with self._stage(run, ValidationStage.CROSS_REFERENCE):
            run.grid_mapping = await self._resolve_grid(record)
            if (
                self.calculation_engine is not None
                and run.config.enable_cross_referencing
                and not run.has_critical_errors
            ):
                primary = await self.calculation_engine.calculate(record)
                await self._cross_reference(run, record, primary)

        with self._stage(run, ValidationStage.CONFLICT_RESOLUTION):
            if primary is not None and primary.carbon_kg is not None:
                self._resolve_conflicts(run, primary)

        with self._stage(run, ValidationStage.AGGREGATE):
            run.confidence = confidence_aggregator.aggregate(
                confidence_aggregator.INPUT_PROFILE,
                run.errors,
                run.warnings,
                run.cross_references,
                run.conflict_resolution,
                location=record.location,
            )

        return self._report(run)

    async def validate_result(
        self, record: ActivityRecord, result: CalculationResult
    ) -> ValidationReport:
        run = _ValidationRun(
            kind=ValidationKind.RESULT,
            config=self._config,
            fault_code="RESULT_VALIDATION_ERROR",
        )
        validator = StructuralValidator(run.config, self._clock)

        with self._stage(run, ValidationStage.STRUCTURAL_CHECK):
            run.errors.extend(validator.check_result_structure(result))
            run.warnings.extend(validator.check_methodology(result))

        with self._stage(run, ValidationStage.RANGE_CHECK):
            if run.config.enable_range_checking:
                run.errors.extend(validator.check_result_ranges(result, record))
            if run.config.enable_freshness_checking:
                run.warnings.extend(validator.check_freshness(result))

        with self._stage(run, ValidationStage.CROSS_REFERENCE):
            run.grid_mapping = await self._resolve_grid(record)
            if run.config.enable_cross_referencing and result.carbon_kg is not None:
                await self._cross_reference(run, record, result)
                outlier = detect_result_outlier(
                    result.carbon_kg,
                    run.cross_references,
                    run.config.outlier_detection_threshold,
                    run.config.max_variance_percent,
                )
                if outlier is not None:
                    run.errors.append(outlier)

        with self._stage(run, ValidationStage.CONFLICT_RESOLUTION):
            if run.config.enable_cross_referencing and result.carbon_kg is not None:
                self._resolve_conflicts(run, result)

        with self._stage(run, ValidationStage.AGGREGATE):
            run.confidence = confidence_aggregator.aggregate(
                confidence_aggregator.RESULT_PROFILE,
                run.errors,
                run.warnings,
                run.cross_references,
                run.conflict_resolution,
            )

        return self._report(run)

    # Private helper methods

    @contextmanager
    def _stage(self, run: _ValidationRun, stage: ValidationStage):
        run.stage = stage
        try:
            yield
        except Exception as e:
            logger.error(
                f"Validation stage {stage.value} failed during {run.kind.value} validation: {str(e)}",
                exc_info=True,
            )
            prefix = "Validation system error" if run.kind == ValidationKind.ACTIVITY else "Result validation error"
            run.errors.append(
                ValidationErrorItem(
                    field=stage.value,
                    code=run.fault_code,
                    message=f"{prefix}: {str(e)}",
                    severity=Severity.CRITICAL,
                )
            )

    async def _resolve_grid(self, record: ActivityRecord) -> Optional[PostalMapping]:
        location = record.location
        if location is None or not location.postal_code:
            return None

        await self.geo_service.ensure_fresh()
        mapping = self.geo_service.resolve(location.postal_code, location.country)
        if mapping is None:
            logger.debug(
                f"No grid mapping for postal code {location.postal_code} ({location.country})"
            )
        return mapping

    async def _cross_reference(
        self, run: _ValidationRun, record: ActivityRecord, primary: CalculationResult
    ):
        outcomes = await self.gatherer.gather(record)
        if primary.carbon_kg is not None:
            run.cross_references = build_cross_references(outcomes, primary.carbon_kg)
        run.comparisons = build_comparisons(outcomes)

    def _resolve_conflicts(self, run: _ValidationRun, primary: CalculationResult):
        comparisons = run.comparisons + [primary_comparison(primary, self._clock)]
        resolver = ConflictResolver(run.config)
        run.conflict_resolution = resolver.reconcile(comparisons, primary.carbon_kg)
        run.warnings.extend(conflict_warnings(run.conflict_resolution))

    def _report(self, run: _ValidationRun) -> ValidationReport:
        run.stage = ValidationStage.REPORT
        duration = time.monotonic() - run.started
        valid = confidence_aggregator.is_valid(
            run.errors, run.confidence, run.config.min_confidence_threshold
        )

        report = ValidationReport(
            validation_id=str(uuid.uuid4()),
            kind=run.kind,
            is_valid=valid,
            errors=run.errors,
            warnings=run.warnings,
            confidence=run.confidence,
            cross_references=run.cross_references,
            conflict_resolution=run.conflict_resolution,
            grid_mapping=run.grid_mapping,
            validated_at=self._clock(),
            duration_ms=round(duration * 1000, 3),
        )

        record_validation_run(run.kind.value, valid, duration, run.confidence)
        logger.info(
            f"{run.kind.value.capitalize()} validation {report.validation_id} completed: "
            f"valid={valid}, confidence={run.confidence:.2f}, "
            f"errors={len(run.errors)}, warnings={len(run.warnings)}"
        )
        return report

"""
Structural and Range Validation Service
Checks activity records and calculation results for missing fields, values
outside plausible bounds, logical inconsistencies and stale provenance.

Every check returns findings instead of raising: errors and warnings are
accumulated and later weighed by the confidence aggregator.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from ecotrace.core.clock import utcnow
from ecotrace.schemas.activity import (
    ActivityRecord,
    ActivityType,
    ComputeMetadata,
    ElectricityMetadata,
    StorageMetadata,
    TransferMetadata,
)
from ecotrace.schemas.calculation import FRESHNESS_MAX_AGE_HOURS, CalculationResult
from ecotrace.schemas.validation import (
    Severity,
    ValidationConfig,
    ValidationErrorItem,
    ValidationWarningItem,
    WarningImpact,
)

logger = logging.getLogger(__name__)

Findings = Tuple[List[ValidationErrorItem], List[ValidationWarningItem]]

MAX_ACTIVITY_AGE = timedelta(days=30)

# Upper bound in kg CO2 for a single activity of each type
MAX_REASONABLE_EMISSION_KG = {
    ActivityType.CLOUD_COMPUTE: 10.0,
    ActivityType.DATA_TRANSFER: 1.0,
    ActivityType.STORAGE: 0.1,
    ActivityType.ELECTRICITY: 100.0,
    ActivityType.TRANSPORT: 50.0,
    ActivityType.COMMIT: 0.001,
    ActivityType.DEPLOYMENT: 0.1,
}
DEFAULT_MAX_EMISSION_KG = 1.0

# (metadata type, attribute, wire name, min, max, severity, message)
METADATA_RANGES = [
    (ComputeMetadata, "duration", "metadata.duration", 0, 86400, Severity.HIGH,
     "Duration must be between 0 and 86400 seconds (24 hours)"),
    (ComputeMetadata, "vcpu_count", "metadata.vcpuCount", 0, 1000, Severity.MEDIUM,
     "vCPU count must be between 0 and 1000"),
    (TransferMetadata, "bytes_transferred", "metadata.bytesTransferred", 0, 2**40, Severity.HIGH,
     "Bytes transferred must be between 0 and 1TB"),
    (StorageMetadata, "size_gb", "metadata.sizeGB", 0, 1_000_000, Severity.HIGH,
     "Storage size must be between 0 and 1,000,000 GB"),
    (StorageMetadata, "duration", "metadata.duration", 0, 31_536_000, Severity.HIGH,
     "Duration must be between 0 and 1 year in seconds"),
    (ElectricityMetadata, "kwh_consumed", "metadata.kWhConsumed", 0, 1_000_000, Severity.HIGH,
     "kWh consumed must be between 0 and 1,000,000"),
]


def max_reasonable_emission(activity_type: Optional[ActivityType]) -> float:
    return MAX_REASONABLE_EMISSION_KG.get(activity_type, DEFAULT_MAX_EMISSION_KG)


def _error(field: str, code: str, message: str, severity: Severity) -> ValidationErrorItem:
    return ValidationErrorItem(field=field, code=code, message=message, severity=severity)


def _warning(field: str, code: str, message: str, impact: WarningImpact) -> ValidationWarningItem:
    return ValidationWarningItem(field=field, code=code, message=message, impact=impact)


class StructuralValidator:
    """Field presence, range and freshness checks for activities and results"""

    def __init__(
        self,
        config: ValidationConfig = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or ValidationConfig()
        self._clock = clock

    def validate_activity(self, record: ActivityRecord) -> Findings:
        errors = self.check_structure(record)
        if self.config.enable_range_checking:
            errors.extend(self.check_ranges(record))
        warnings = self.check_logical_consistency(record)
        return errors, warnings

    def validate_result(
        self, result: CalculationResult, activity: ActivityRecord
    ) -> Findings:
        errors = self.check_result_structure(result)
        warnings = self.check_methodology(result)
        if self.config.enable_range_checking:
            errors.extend(self.check_result_ranges(result, activity))
        if self.config.enable_freshness_checking:
            warnings.extend(self.check_freshness(result))
        return errors, warnings

    # Activity checks

    def check_structure(self, record: ActivityRecord) -> List[ValidationErrorItem]:
        errors = []

        if record.activity_type is None:
            errors.append(
                _error("activityType", "MISSING_REQUIRED_FIELD",
                       "Activity type is required", Severity.CRITICAL)
            )

        if not record.timestamp:
            errors.append(
                _error("timestamp", "MISSING_REQUIRED_FIELD",
                       "Timestamp is required", Severity.CRITICAL)
            )
        elif record.parsed_timestamp is None:
            errors.append(
                _error("timestamp", "INVALID_TIMESTAMP_FORMAT",
                       "Timestamp must be valid ISO 8601 format", Severity.HIGH)
            )

        if record.metadata is None or record.metadata.is_empty():
            errors.append(
                _error("metadata", "MISSING_METADATA",
                       "Activity metadata is required", Severity.HIGH)
            )

        return errors

    def check_ranges(self, record: ActivityRecord) -> List[ValidationErrorItem]:
        errors = []
        for metadata_type, attribute, field, low, high, severity, message in METADATA_RANGES:
            if not isinstance(record.metadata, metadata_type):
                continue
            value = getattr(record.metadata, attribute)
            if value is not None and not low <= value <= high:
                errors.append(_error(field, "INVALID_RANGE", message, severity))
        return errors

    def check_logical_consistency(
        self, record: ActivityRecord
    ) -> List[ValidationWarningItem]:
        warnings = []

        timestamp = record.parsed_timestamp
        if timestamp is not None and self._clock() - timestamp > MAX_ACTIVITY_AGE:
            warnings.append(
                _warning("timestamp", "OLD_ACTIVITY_DATA",
                         "Activity data is older than 30 days", WarningImpact.ACCURACY)
            )

        if record.location is None:
            warnings.append(
                _warning("location", "MISSING_LOCATION",
                         "Location data missing, using default emission factors",
                         WarningImpact.ACCURACY)
            )

        return warnings

    # Result checks

    def check_result_structure(self, result: CalculationResult) -> List[ValidationErrorItem]:
        errors = []

        if result.carbon_kg is None:
            errors.append(
                _error("carbonKg", "MISSING_CARBON_VALUE",
                       "Carbon emission value is missing", Severity.CRITICAL)
            )
        elif result.carbon_kg < 0:
            errors.append(
                _error("carbonKg", "NEGATIVE_CARBON_VALUE",
                       "Carbon emission cannot be negative", Severity.CRITICAL)
            )

        if result.confidence is None:
            errors.append(
                _error("confidence", "MISSING_CONFIDENCE",
                       "Confidence level is missing", Severity.HIGH)
            )

        if result.methodology is None:
            errors.append(
                _error("methodology", "MISSING_METHODOLOGY",
                       "Calculation methodology is missing", Severity.HIGH)
            )

        return errors

    def check_methodology(self, result: CalculationResult) -> List[ValidationWarningItem]:
        methodology = result.methodology
        if methodology is None:
            return []

        warnings = []
        if not methodology.standards:
            warnings.append(
                _warning("methodology.standards", "NO_STANDARDS_SPECIFIED",
                         "No recognized standards specified in methodology",
                         WarningImpact.DATA_QUALITY)
            )
        if not methodology.emission_factors:
            warnings.append(
                _warning("methodology.emissionFactors", "NO_EMISSION_FACTORS",
                         "No emission factors specified in methodology",
                         WarningImpact.COMPLETENESS)
            )
        return warnings

    def check_result_ranges(
        self, result: CalculationResult, activity: ActivityRecord
    ) -> List[ValidationErrorItem]:
        value = result.carbon_kg
        if value is None:
            return []

        ceiling = max_reasonable_emission(activity.activity_type)
        checks = [("carbonKg", value, 0.0, ceiling)]
        if result.uncertainty_range is not None:
            checks.append(("uncertaintyRange.lower", result.uncertainty_range.lower, 0.0, value))
            checks.append(("uncertaintyRange.upper", result.uncertainty_range.upper, value, ceiling))

        return [
            _error(
                field,
                "RANGE_VALIDATION_FAILED",
                f"{field} value {checked} is outside valid range [{low}, {high}]",
                Severity.HIGH,
            )
            for field, checked, low, high in checks
            if not low <= checked <= high
        ]

    def check_freshness(self, result: CalculationResult) -> List[ValidationWarningItem]:
        now = self._clock()
        warnings = []
        for source in result.sources:
            last_updated = source.last_updated
            if last_updated.tzinfo is None:
                last_updated = last_updated.replace(tzinfo=now.tzinfo)

            age_hours = (now - last_updated).total_seconds() / 3600
            if age_hours > FRESHNESS_MAX_AGE_HOURS[source.freshness]:
                warnings.append(
                    _warning(
                        "sources",
                        "STALE_DATA_SOURCE",
                        f"Data source '{source.name}' is stale ({round(age_hours)} hours old)",
                        WarningImpact.ACCURACY,
                    )
                )
        return warnings

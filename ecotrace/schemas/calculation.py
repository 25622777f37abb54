"""
Calculation result schemas produced by the emission calculation engine
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConfidenceLevel(str, Enum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Numeric weight of each confidence label when the primary result is compared
# against independent estimates
CONFIDENCE_SCORES = {
    ConfidenceLevel.VERY_HIGH: 0.95,
    ConfidenceLevel.HIGH: 0.85,
    ConfidenceLevel.MEDIUM: 0.7,
    ConfidenceLevel.LOW: 0.5,
}


class Freshness(str, Enum):
    REAL_TIME = "real_time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    STATIC = "static"


# Maximum tolerated age in hours per freshness class
FRESHNESS_MAX_AGE_HOURS = {
    Freshness.REAL_TIME: 1,
    Freshness.HOURLY: 6,
    Freshness.DAILY: 48,
    Freshness.WEEKLY: 168,
    Freshness.MONTHLY: 720,
    Freshness.QUARTERLY: 2160,
    Freshness.STATIC: 8760,
}


class DataSource(BaseModel):
    """Provenance entry for one input of a calculation"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Source name, e.g. EPA_eGRID")
    freshness: Freshness = Field(Freshness.STATIC, description="Update cadence")
    last_updated: datetime = Field(..., alias="lastUpdated")


class CalculationMethodology(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    version: str = "1.0"
    emission_factors: List[Dict[str, Any]] = Field(
        default_factory=list, alias="emissionFactors"
    )
    conversion_factors: List[Dict[str, Any]] = Field(
        default_factory=list, alias="conversionFactors"
    )
    assumptions: List[str] = Field(default_factory=list)
    standards: List[str] = Field(default_factory=list)


class UncertaintyRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    lower: float
    upper: float


class CalculationResult(BaseModel):
    """
    Output of the base emission calculation

    carbon_kg and confidence are optional so that incomplete results can be
    reported by the validator instead of failing to parse.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    carbon_kg: Optional[float] = Field(None, alias="carbonKg")
    confidence: Optional[ConfidenceLevel] = None
    methodology: Optional[CalculationMethodology] = None
    uncertainty_range: Optional[UncertaintyRange] = Field(
        None, alias="uncertaintyRange"
    )
    sources: List[DataSource] = Field(default_factory=list)
    calculated_at: Optional[datetime] = Field(None, alias="calculatedAt")
    valid_until: Optional[datetime] = Field(None, alias="validUntil")

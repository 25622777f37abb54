"""
Geographic schemas for postal code to grid region mapping
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")


class BoundaryType(str, Enum):
    COUNTRY = "country"
    STATE = "state"
    PROVINCE = "province"
    REGION = "region"
    SUBREGION = "subregion"


class Bounds(BaseModel):
    model_config = ConfigDict(frozen=True)

    north: float
    south: float
    east: float
    west: float


class GeographicBoundary(BaseModel):
    """Named area that carries its own emission zone"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., description="Boundary identifier, e.g. CAMX or US-CA")
    name: str = Field(..., description="Human readable name")
    type: BoundaryType = Field(..., description="Kind of boundary")
    coordinates: Coordinates = Field(..., description="Approximate centre")
    bounds: Optional[Bounds] = Field(None, description="Bounding box")
    emission_zone: str = Field(
        ..., alias="emissionZone", description="Emission zone used for factor lookup"
    )


class PostalMapping(BaseModel):
    """Resolved grid context for one postal code"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    postal_code: str = Field(..., alias="postalCode")
    normalized_code: str = Field(..., alias="normalizedCode")
    country: str = Field(..., description="ISO 3166-1 alpha-2 country code")
    region: Optional[str] = None
    state: Optional[str] = None
    province: Optional[str] = None
    egrid_subregion: Optional[str] = Field(
        None, alias="egridSubregion", description="US EPA eGRID subregion"
    )
    electricity_zone: Optional[str] = Field(
        None, alias="electricityZone", description="Electricity Maps zone"
    )
    coordinates: Optional[Coordinates] = None
    timezone: Optional[str] = None
    last_updated: datetime = Field(..., alias="lastUpdated")

    @property
    def completeness(self) -> int:
        """Number of descriptive attributes present: coordinates, timezone, region"""
        return sum(
            [self.coordinates is not None, bool(self.timezone), bool(self.region)]
        )


class DataQuality(BaseModel):
    complete: int = 0
    partial: int = 0
    missing: int = 0


class MappingStatistics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_mappings: int = Field(0, alias="totalMappings")
    countries_supported: int = Field(0, alias="countriesSupported")
    last_update: Optional[datetime] = Field(None, alias="lastUpdate")
    coverage_percentage: float = Field(0.0, alias="coveragePercentage")
    data_quality: DataQuality = Field(default_factory=DataQuality, alias="dataQuality")


class CountryStatistics(BaseModel):
    country: str
    mapping_count: int = Field(0, alias="mappingCount")
    regions: List[str] = Field(default_factory=list)
    zones: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class BoundaryCheck(BaseModel):
    """Outcome of the geographic data self-check"""

    is_valid: bool = Field(..., alias="isValid")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    statistics: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

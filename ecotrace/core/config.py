"""
Application Configuration Settings
Handles environment variables and validation engine defaults
"""

import os
from typing import List, Optional

from pydantic import validator
from pydantic_settings import BaseSettings

CONFLICT_RESOLUTION_STRATEGIES = [
    "weighted_average",
    "highest_confidence",
    "newest_data",
    "manual_override",
]


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "EcoTrace Validation API"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Redis Cache
    REDIS_ENABLED: bool = True
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_EXPIRE_SECONDS: int = 3600

    # Validation engine defaults
    MAX_VARIANCE_PERCENT: float = 25.0
    MIN_CONFIDENCE_THRESHOLD: float = 0.6
    CONFLICT_RESOLUTION_STRATEGY: str = "weighted_average"
    OUTLIER_DETECTION_THRESHOLD: float = 2.0
    ENABLE_CROSS_REFERENCING: bool = True
    ENABLE_RANGE_CHECKING: bool = True
    ENABLE_CONFLICT_RESOLUTION: bool = True
    ENABLE_FRESHNESS_CHECKING: bool = True

    # External estimate gathering
    SOURCE_TIMEOUT_SECONDS: float = 5.0
    GATHER_TIMEOUT_SECONDS: float = 10.0

    # EPA eGRID
    EPA_API_BASE_URL: str = "https://api.epa.gov"
    EPA_API_KEY: Optional[str] = None
    EPA_REQUEST_TIMEOUT: int = 30
    EPA_POSTAL_CSV_URL: str = (
        "https://www.epa.gov/sites/default/files/2023-01/"
        "power-profiler-zipcode-tool-2022.csv"
    )

    # Electricity Maps
    ELECTRICITY_MAPS_BASE_URL: str = "https://api.electricitymap.org/v3"
    ELECTRICITY_MAPS_API_KEY: Optional[str] = None

    # Third-party calculators
    CLIMATIQ_API_URL: str = "https://api.climatiq.io/data/v1/estimate"
    CLIMATIQ_API_KEY: Optional[str] = None
    CLOUD_CARBON_FOOTPRINT_URL: Optional[str] = None

    # Geographic mapping
    GEO_CACHE_VALIDITY_DAYS: int = 7
    GEO_REFRESH_SCHEDULER_ENABLED: bool = True

    # Monitoring
    PROMETHEUS_METRICS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"

    @validator("ENVIRONMENT")
    def validate_environment(cls, v):
        if v not in ["development", "staging", "production", "testing"]:
            raise ValueError(
                "ENVIRONMENT must be development, staging, production, or testing"
            )
        return v

    @validator("CONFLICT_RESOLUTION_STRATEGY")
    def validate_strategy(cls, v):
        if v not in CONFLICT_RESOLUTION_STRATEGIES:
            raise ValueError(
                f"CONFLICT_RESOLUTION_STRATEGY must be one of {CONFLICT_RESOLUTION_STRATEGIES}"
            )
        return v

    @validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        return v.upper()

    @validator("CORS_ORIGINS", pre=True)
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["*"]
            return [origin.strip() for origin in v.split(",")]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if os.getenv("TESTING") == "true":
            self.ENVIRONMENT = "testing"
            self.REDIS_ENABLED = False
            self.GEO_REFRESH_SCHEDULER_ENABLED = False


# Global settings instance
settings = Settings()

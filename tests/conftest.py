"""
Pytest configuration and fixtures for EcoTrace validation tests
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient

# Set test environment variable before any imports
os.environ["TESTING"] = "true"

from ecotrace.api.deps import get_geo_service, get_orchestrator
from ecotrace.core.exceptions import GeographicDataError
from ecotrace.main import app
from ecotrace.schemas.activity import ActivityRecord
from ecotrace.schemas.calculation import CalculationResult
from ecotrace.services.estimate_gatherer import EstimateGatherer
from ecotrace.services.estimate_sources import EstimateSource, SourceEstimate
from ecotrace.services.geographic_mapping_service import GeographicMappingService
from ecotrace.services.validation_orchestrator import ValidationOrchestrator

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class StaticSource(EstimateSource):
    """Deterministic estimate source for tests"""

    def __init__(
        self,
        name: str,
        value: Optional[float],
        weight: float = 0.3,
        confidence: float = 0.8,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        timeout: float = 1.0,
        last_updated: datetime = FIXED_NOW,
    ):
        self.name = name
        self.value = value
        self.weight = weight
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.timeout = timeout
        self.last_updated = last_updated
        self.calls = 0

    async def estimate(self, activity):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.value is None:
            return None
        return SourceEstimate(
            value=self.value, confidence=self.confidence, last_updated=self.last_updated
        )


class StaticCalculationEngine:
    def __init__(self, result: CalculationResult):
        self.result = result

    async def calculate(self, activity):
        return self.result


async def offline_us_loader(loaded_at):
    raise GeographicDataError("EPA download disabled in tests")


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_source():
    return StaticSource


@pytest.fixture
def make_engine():
    return StaticCalculationEngine


@pytest.fixture
def geo_service(fixed_clock):
    """Geographic service loaded from the built-in fallback and generated ranges"""
    service = GeographicMappingService(us_loader=offline_us_loader, clock=fixed_clock)
    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(service.refresh())
    finally:
        loop.close()
    return service


@pytest.fixture
def electricity_activity():
    return ActivityRecord.model_validate(
        {
            "activityType": "electricity",
            "timestamp": (FIXED_NOW - timedelta(days=1)).isoformat(),
            "location": {"country": "US", "postalCode": "94107"},
            "metadata": {"kWhConsumed": 50},
        }
    )


@pytest.fixture
def calculation_result():
    return CalculationResult.model_validate(
        {
            "carbonKg": 12.0,
            "confidence": "high",
            "methodology": {
                "name": "grid_average",
                "version": "1.0",
                "emissionFactors": [{"region": "CAMX", "value": 0.24}],
                "standards": ["GHG Protocol"],
            },
            "uncertaintyRange": {"lower": 10.0, "upper": 14.0},
            "sources": [
                {
                    "name": "EPA_eGRID",
                    "freshness": "quarterly",
                    "lastUpdated": (FIXED_NOW - timedelta(days=10)).isoformat(),
                }
            ],
            "calculatedAt": FIXED_NOW.isoformat(),
        }
    )


@pytest.fixture
def orchestrator(geo_service, fixed_clock):
    return ValidationOrchestrator(
        geo_service, EstimateGatherer([], gather_timeout=1.0), clock=fixed_clock
    )


@pytest.fixture
def client(geo_service, orchestrator):
    """Test client with the service graph replaced by offline instances"""
    app.dependency_overrides[get_geo_service] = lambda: geo_service
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()

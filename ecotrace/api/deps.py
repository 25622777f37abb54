"""
API dependencies
Builds the service graph once per process and hands it to endpoints.
"""

from typing import Tuple

import httpx
from fastapi import Request

from ecotrace.core.config import settings
from ecotrace.services.cache_service import RedisCacheService
from ecotrace.services.estimate_gatherer import EstimateGatherer
from ecotrace.services.estimate_sources import build_default_sources
from ecotrace.services.geographic_mapping_service import GeographicMappingService
from ecotrace.services.validation_orchestrator import ValidationOrchestrator


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.EPA_REQUEST_TIMEOUT,
        headers={"User-Agent": "EcoTrace-Validation-API/1.0"},
    )


def build_services(
    client: httpx.AsyncClient,
) -> Tuple[GeographicMappingService, ValidationOrchestrator]:
    cache = RedisCacheService() if settings.REDIS_ENABLED else None
    geo_service = GeographicMappingService(cache=cache)
    gatherer = EstimateGatherer(build_default_sources(geo_service, client))
    orchestrator = ValidationOrchestrator(geo_service, gatherer)
    return geo_service, orchestrator


def get_geo_service(request: Request) -> GeographicMappingService:
    return request.app.state.geo_service


def get_orchestrator(request: Request) -> ValidationOrchestrator:
    return request.app.state.orchestrator

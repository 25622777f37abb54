"""
Geography API Endpoints
Postal code to grid region lookups and geographic data management
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ecotrace.api.deps import get_geo_service
from ecotrace.schemas.geography import (
    BoundaryCheck,
    CountryStatistics,
    MappingStatistics,
    PostalMapping,
)
from ecotrace.services.geographic_mapping_service import GeographicMappingService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/postal-codes/{postal_code}", response_model=PostalMapping)
async def resolve_postal_code(
    postal_code: str,
    country: Optional[str] = Query(None, description="ISO country code of the postal code"),
    geo_service: GeographicMappingService = Depends(get_geo_service),
):
    """
    Resolve a postal code to its grid context

    Without a country only exact matches are returned; with a country the
    nearest known postal code within the same country is used as a fallback.
    """
    await geo_service.ensure_fresh()
    mapping = geo_service.resolve(postal_code, country)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No grid mapping found for postal code {postal_code}",
        )
    return mapping


@router.get("/statistics", response_model=MappingStatistics)
async def get_statistics(geo_service: GeographicMappingService = Depends(get_geo_service)):
    return geo_service.get_statistics()


@router.get("/countries", response_model=List[str])
async def get_supported_countries(
    geo_service: GeographicMappingService = Depends(get_geo_service),
):
    return geo_service.get_supported_countries()


@router.get("/countries/{country_code}", response_model=CountryStatistics)
async def get_country_statistics(
    country_code: str,
    geo_service: GeographicMappingService = Depends(get_geo_service),
):
    stats = geo_service.get_country_statistics(country_code)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Country {country_code.upper()} is not supported",
        )
    return stats


@router.get("/health", response_model=BoundaryCheck)
async def check_geographic_data(
    geo_service: GeographicMappingService = Depends(get_geo_service),
):
    """Self-check of the loaded postal mappings and boundaries"""
    return geo_service.validate_geographic_boundaries()


@router.post("/refresh", response_model=MappingStatistics)
async def refresh_geographic_data(
    geo_service: GeographicMappingService = Depends(get_geo_service),
):
    """Rebuild the geographic index from its bulk sources"""
    logger.info("Manual geographic data refresh requested")
    return await geo_service.refresh()

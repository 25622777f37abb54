"""
API v1 Router Configuration
Aggregates all API endpoints for version 1
"""

from fastapi import APIRouter

from ecotrace.api.v1.endpoints import geography, validation

api_router = APIRouter()

api_router.include_router(validation.router, prefix="/validation", tags=["Validation"])
api_router.include_router(geography.router, prefix="/geography", tags=["Geography"])

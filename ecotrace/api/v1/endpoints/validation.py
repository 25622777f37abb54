"""
Validation API Endpoints
Activity and calculation result validation with cross-source reconciliation
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ecotrace.api.deps import get_orchestrator
from ecotrace.schemas.activity import ActivityRecord
from ecotrace.schemas.validation import (
    ResultValidationRequest,
    ValidationConfig,
    ValidationReport,
)
from ecotrace.services.validation_orchestrator import ValidationOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/activity", response_model=ValidationReport)
async def validate_activity(
    record: ActivityRecord,
    orchestrator: ValidationOrchestrator = Depends(get_orchestrator),
):
    """
    Validate an activity record

    Checks required fields, metadata ranges and logical consistency, resolves
    the grid region of the activity's postal code and, when a calculation
    engine is configured, cross-references the calculated emission against
    independent sources.
    """
    return await orchestrator.validate_activity(record)


@router.post("/result", response_model=ValidationReport)
async def validate_result(
    request: ResultValidationRequest,
    orchestrator: ValidationOrchestrator = Depends(get_orchestrator),
):
    """
    Validate a calculation result against its activity

    - **activity**: the activity record the result was calculated for
    - **result**: the calculation result to check
    """
    return await orchestrator.validate_result(request.activity, request.result)


@router.get("/config", response_model=ValidationConfig)
async def get_validation_config(
    orchestrator: ValidationOrchestrator = Depends(get_orchestrator),
):
    """Current validation thresholds and feature switches"""
    return orchestrator.get_config()


@router.patch("/config", response_model=ValidationConfig)
async def update_validation_config(
    changes: Dict[str, Any] = Body(..., description="Config options to change"),
    orchestrator: ValidationOrchestrator = Depends(get_orchestrator),
):
    """Change validation options; accepts snake_case or camelCase keys"""
    try:
        return orchestrator.update_config(**changes)
    except ValueError as e:
        logger.warning(f"Rejected validation config update: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )

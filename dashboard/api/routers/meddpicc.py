"""
PEAK CRM — MEDDPICC Router
============================
The organization's MEDDPICC framework and ad-hoc scoring.

Endpoints:
  GET  /api/meddpicc/config            - Active framework (org override or default)
  PUT  /api/meddpicc/config            - Replace the org framework (admin)
  POST /api/meddpicc/config/validate   - Validate a framework without saving
  POST /api/meddpicc/score             - Score a set of responses
  GET  /api/meddpicc/level             - Qualification level for a score
  GET  /api/meddpicc/stages            - PEAK stages and their gates
"""
from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, require_role
from models.meddpicc_models import ScoreRequest
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger
from scripts.sales.meddpicc import (
    calculate_meddpicc_score,
    find_stage_gate,
    gate_key,
    get_meddpicc_level,
    validate_configuration,
)
from scripts.sales.meddpicc_service import get_active_config, save_configuration
from scripts.sales.peak import STAGES, get_stage_info

logger = setup_logger("meddpicc_router")

router = APIRouter(prefix="/api/meddpicc", tags=["meddpicc"])


@router.get("/config")
async def get_config(user: dict = Depends(current_user)):
    try:
        config = get_active_config(user["organization_id"])
        return config.model_dump(by_alias=True)
    except ConfigError as e:
        logger.error("Default MEDDPICC config unavailable: %s", e)
        raise HTTPException(status_code=503, detail=e.to_dict())
    except Exception as e:
        logger.error("Get MEDDPICC config failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch MEDDPICC configuration")


@router.put("/config")
async def put_config(
    data: dict = Body(..., description="Full MEDDPICC framework"),
    user: dict = Depends(require_role("admin")),
):
    """Validate and store the organization's framework (422 when invalid)."""
    try:
        return save_configuration(user["organization_id"], data, user["id"])
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except Exception as e:
        logger.error("Save MEDDPICC config failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save MEDDPICC configuration")


@router.post("/config/validate")
async def validate_config(
    data: dict = Body(..., description="MEDDPICC framework to check"),
    user: dict = Depends(current_user),
):
    return validate_configuration(data).model_dump()


@router.post("/score")
async def score(req: ScoreRequest, user: dict = Depends(current_user)):
    """Score responses against the organization's framework without saving."""
    try:
        config = get_active_config(user["organization_id"])
    except ConfigError:
        config = None
    assessment = calculate_meddpicc_score(req.responses, config)
    thresholds = config.scoring.thresholds if config else None
    return {
        **assessment.model_dump(),
        "level": get_meddpicc_level(assessment.overall_score, thresholds),
    }


@router.get("/level")
async def level(
    score: float = Query(..., ge=0, le=100, description="Overall MEDDPICC score"),
    user: dict = Depends(current_user),
):
    try:
        thresholds = get_active_config(user["organization_id"]).scoring.thresholds
    except ConfigError:
        thresholds = None
    return {"score": score, **get_meddpicc_level(score, thresholds)}


@router.get("/stages")
async def stages(user: dict = Depends(current_user)):
    """PEAK stages in order, each with the gate guarding the move out of it."""
    try:
        config = get_active_config(user["organization_id"])
    except ConfigError:
        config = None

    results = []
    for stage in STAGES:
        info = get_stage_info(stage)
        gate = None
        if config and info["next_stage"]:
            found = find_stage_gate(config, info["name"], get_stage_info(info["next_stage"])["name"])
            if found:
                gate = {"key": gate_key(found), "criteria": found.criteria}
        results.append({**info, "exit_gate": gate})
    return {"stages": results}

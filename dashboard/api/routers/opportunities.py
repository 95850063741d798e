"""
PEAK CRM — Opportunities Router
=================================
Opportunities moving through the PEAK pipeline, with MEDDPICC scoring.

Endpoints:
  GET    /api/opportunities                    - List with filters
  GET    /api/opportunities/pipeline/summary   - Totals per PEAK stage
  GET    /api/opportunities/{id}               - Detail with contact, company, MEDDPICC
  POST   /api/opportunities                    - Create
  PUT    /api/opportunities/{id}               - Update (not the stage)
  DELETE /api/opportunities/{id}               - Delete (manager/admin)
  PUT    /api/opportunities/{id}/stage         - Move to an adjacent PEAK stage
  GET    /api/opportunities/{id}/meddpicc      - MEDDPICC assessment
  GET    /api/opportunities/{id}/meddpicc/score - Cached score summary
  PUT    /api/opportunities/{id}/meddpicc      - Save MEDDPICC answers and rescore
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, ensure_access, require_role, scope_query
from dashboard.api.websocket import ws_manager
from integrations.connections import notify_deal_closed, notify_stage_change
from models.crm_models import OpportunityCreate, OpportunityUpdate, StageChangeRequest
from models.meddpicc_models import OpportunityMEDDPICCUpdate
from scripts.lib.errors import InvalidStageError, NotFoundError, StageGateError, StageTransitionError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now
from scripts.sales.meddpicc import get_meddpicc_level
from scripts.sales.meddpicc_service import get_active_config, scoring_service
from scripts.sales.peak import (
    allowed_transitions,
    check_stage_gate,
    get_stage_info,
    is_forward,
    summarize_pipeline,
    validate_transition,
)

logger = setup_logger("opportunities_router")

router = APIRouter(prefix="/api/opportunities", tags=["opportunities"])

LIST_COLUMNS = (
    "id, name, peak_stage, status, deal_value, probability, close_date, "
    "meddpicc_score, company_id, contact_id, assigned_to, created_by, "
    "created_at, updated_at"
)
SORT_FIELDS = {"created_at", "updated_at", "name", "deal_value", "close_date", "meddpicc_score", "probability"}


@router.get("")
async def list_opportunities(
    peak_stage: Optional[str] = Query(None, description="Filter by PEAK stage"),
    status: Optional[str] = Query(None, description="open, won or lost"),
    assigned_to: Optional[str] = Query(None, description="Filter by owner user ID"),
    search: Optional[str] = Query(None, description="Search by name"),
    min_value: Optional[float] = Query(None, description="Minimum deal value"),
    max_value: Optional[float] = Query(None, description="Maximum deal value"),
    sort: str = Query("created_at", description="Sort field"),
    order: str = Query("desc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: dict = Depends(current_user),
):
    """List opportunities in the caller's organization (reps: their own)."""
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=422, detail=f"Cannot sort by '{sort}'")
    try:
        query = (
            get_client().table("opportunities")
            .select(LIST_COLUMNS, count="exact")
            .eq("organization_id", user["organization_id"])
        )
        query = scope_query(query, user)

        if peak_stage:
            query = query.eq("peak_stage", peak_stage)
        if status:
            query = query.eq("status", status)
        if assigned_to:
            query = query.eq("assigned_to", assigned_to)
        if search:
            query = query.ilike("name", f"%{search}%")
        if min_value is not None:
            query = query.gte("deal_value", min_value)
        if max_value is not None:
            query = query.lte("deal_value", max_value)

        result = (
            query.order(sort, desc=order.lower() == "desc")
            .range(offset, offset + limit - 1)
            .execute()
        )
        rows = result.data or []
        for row in rows:
            row["stage_info"] = get_stage_info(row.get("peak_stage"))

        return {
            "results": rows,
            "count": len(rows),
            "total": result.count if result.count is not None else len(rows),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List opportunities failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch opportunities")


@router.get("/pipeline/summary")
async def pipeline_summary(user: dict = Depends(current_user)):
    """Open pipeline value, weighted value and per-stage counts."""
    try:
        query = (
            get_client().table("opportunities")
            .select("id, peak_stage, deal_value, probability, assigned_to, created_by")
            .eq("organization_id", user["organization_id"])
            .eq("status", "open")
        )
        result = scope_query(query, user).execute()
        return summarize_pipeline(result.data or [])
    except Exception as e:
        logger.error("Pipeline summary failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch pipeline summary")


def _load(opportunity_id: str, user: dict) -> dict:
    row = fetch_row("opportunities", opportunity_id, organization_id=user["organization_id"])
    return ensure_access(user, row, "Opportunity")


@router.get("/{opportunity_id}")
async def get_opportunity(opportunity_id: str, user: dict = Depends(current_user)):
    """Opportunity with its contact, company, stage info and MEDDPICC assessment."""
    try:
        opportunity = _load(opportunity_id, user)
        org_id = user["organization_id"]

        contact = None
        if opportunity.get("contact_id"):
            contact = fetch_row(
                "contacts", opportunity["contact_id"], organization_id=org_id,
                select="id, first_name, last_name, email, phone, title",
            )
        company = None
        if opportunity.get("company_id"):
            company = fetch_row(
                "companies", opportunity["company_id"], organization_id=org_id,
                select="id, name, domain, industry, size",
            )

        stage = get_stage_info(opportunity.get("peak_stage"))
        assessment = scoring_service.assess(opportunity, get_active_config(org_id))
        return {
            **opportunity,
            "contact": contact,
            "company": company,
            "stage_info": stage,
            "allowed_transitions": allowed_transitions(stage["id"]),
            "meddpicc": assessment.model_dump(exclude={"responses"}),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get opportunity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch opportunity")


@router.post("", status_code=201)
async def create_opportunity(req: OpportunityCreate, user: dict = Depends(current_user)):
    """Create an opportunity; reps always own what they create."""
    try:
        row = req.model_dump(mode="json", exclude_none=True)
        if user["role"] == "rep" or not row.get("assigned_to"):
            row["assigned_to"] = user["id"]
        row.update({
            "organization_id": user["organization_id"],
            "created_by": user["id"],
            "status": "open",
        })
        opportunity = insert_row("opportunities", row)
        logger.info("Created opportunity %s (%s)", opportunity["id"], opportunity.get("name"))
        return opportunity
    except Exception as e:
        logger.error("Create opportunity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create opportunity")


@router.put("/{opportunity_id}")
async def update_opportunity(
    opportunity_id: str, req: OpportunityUpdate, user: dict = Depends(current_user),
):
    """Update fields; moving status to won/lost stamps closed_at."""
    try:
        existing = _load(opportunity_id, user)
        updates = req.model_dump(mode="json", exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")
        if user["role"] == "rep":
            updates.pop("assigned_to", None)

        new_status = updates.get("status")
        closing = new_status in ("won", "lost") and existing.get("status") != new_status
        if closing:
            updates["closed_at"] = utc_now()
        elif new_status == "open":
            updates["closed_at"] = None

        updates["updated_at"] = utc_now()
        opportunity = update_row(
            "opportunities", opportunity_id, updates, organization_id=user["organization_id"],
        )
        if not opportunity:
            raise HTTPException(status_code=404, detail="Opportunity not found")

        if closing:
            await ws_manager.broadcast({
                "event": "opportunity_closed",
                "data": {"opportunity_id": opportunity_id, "status": new_status},
            }, user["organization_id"])
            await notify_deal_closed(user["organization_id"], opportunity)
        return opportunity
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Update opportunity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to update opportunity")


@router.delete("/{opportunity_id}")
async def delete_opportunity(
    opportunity_id: str, user: dict = Depends(require_role("manager", "admin")),
):
    try:
        if not delete_row("opportunities", opportunity_id, organization_id=user["organization_id"]):
            raise HTTPException(status_code=404, detail="Opportunity not found")
        scoring_service.invalidate_score(opportunity_id)
        logger.info("Deleted opportunity %s", opportunity_id)
        return {"deleted": True, "id": opportunity_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete opportunity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to delete opportunity")


@router.put("/{opportunity_id}/stage")
async def change_stage(
    opportunity_id: str,
    req: StageChangeRequest,
    enforce_gates: bool = Query(False, description="Hold forward moves to the MEDDPICC stage gate"),
    user: dict = Depends(current_user),
):
    """
    Move an opportunity one PEAK stage forward or back.

    409 when the move skips a stage or (with enforce_gates) the gate is unmet.
    """
    try:
        opportunity = _load(opportunity_id, user)
        current = opportunity.get("peak_stage") or "prospecting"
        target = req.peak_stage

        try:
            changed = validate_transition(current, target)
            if changed and enforce_gates and is_forward(current, target):
                config = get_active_config(user["organization_id"])
                assessment = scoring_service.assess(opportunity, config)
                check_stage_gate(current, target, assessment.pillar_scores, config)
        except InvalidStageError as e:
            raise HTTPException(status_code=422, detail=e.to_dict())
        except (StageTransitionError, StageGateError) as e:
            raise HTTPException(status_code=409, detail=e.to_dict())

        if not changed:
            return {"opportunity": opportunity, "from_stage": current, "to_stage": target, "changed": False}

        updated = update_row(
            "opportunities", opportunity_id,
            {"peak_stage": target, "updated_at": utc_now()},
            organization_id=user["organization_id"],
        )
        logger.info("Opportunity %s moved %s -> %s", opportunity_id, current, target)

        await ws_manager.broadcast({
            "event": "opportunity_stage_changed",
            "data": {
                "opportunity_id": opportunity_id,
                "from_stage": current,
                "to_stage": target,
                "changed_by": user["id"],
            },
        }, user["organization_id"])
        await notify_stage_change(user["organization_id"], updated or opportunity, current, target)

        return {
            "opportunity": updated or {**opportunity, "peak_stage": target},
            "from_stage": current,
            "to_stage": target,
            "changed": True,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Stage change failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to change stage")


@router.get("/{opportunity_id}/meddpicc")
async def get_opportunity_meddpicc(opportunity_id: str, user: dict = Depends(current_user)):
    """Full MEDDPICC assessment plus the level description."""
    try:
        opportunity = _load(opportunity_id, user)
        config = get_active_config(user["organization_id"])
        assessment = scoring_service.assess(opportunity, config)
        return {
            "opportunity_id": opportunity_id,
            **assessment.model_dump(),
            "level": get_meddpicc_level(assessment.overall_score, config.scoring.thresholds),
            "stored_score": opportunity.get("meddpicc_score"),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get MEDDPICC failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch MEDDPICC assessment")


@router.get("/{opportunity_id}/meddpicc/score")
async def get_opportunity_meddpicc_score(opportunity_id: str, user: dict = Depends(current_user)):
    """Score summary, served from the five-minute score cache."""
    try:
        _load(opportunity_id, user)
        return scoring_service.get_opportunity_score(opportunity_id, user["organization_id"])
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get MEDDPICC score failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch MEDDPICC score")


@router.put("/{opportunity_id}/meddpicc")
async def save_opportunity_meddpicc(
    opportunity_id: str, req: OpportunityMEDDPICCUpdate, user: dict = Depends(current_user),
):
    """Save answers, rescore and persist meddpicc_score."""
    try:
        _load(opportunity_id, user)
        assessment = await scoring_service.save_responses(
            opportunity_id, user["organization_id"], req,
        )
        return {"opportunity_id": opportunity_id, **assessment.model_dump()}
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Save MEDDPICC failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save MEDDPICC answers")

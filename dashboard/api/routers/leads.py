"""
PEAK CRM — Leads Router
=========================
Leads with rule-based scoring and conversion into opportunities.

Endpoints:
  GET    /api/leads                 - List with filters and score breakdown
  GET    /api/leads/stats           - Counts by status and score category
  GET    /api/leads/scoring-rules   - Active scoring rules
  POST   /api/leads/convert         - Convert qualified leads (idempotent)
  POST   /api/leads/rescore         - Rescore all open leads (manager/admin)
  GET    /api/leads/{id}            - Single lead with score breakdown
  POST   /api/leads/{id}/rescore    - Rescore one lead
  POST   /api/leads                 - Create (scored on the way in)
  PUT    /api/leads/{id}            - Update (rescored)
  DELETE /api/leads/{id}            - Delete (manager/admin)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, ensure_access, require_role, scope_query
from dashboard.api.websocket import ws_manager
from models.crm_models import LeadConvertRequest, LeadCreate, LeadUpdate
from scripts.lib.errors import ConversionError, NotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now
from scripts.sales.lead_conversion import convert_leads
from scripts.sales.lead_scorer import (
    DEFAULT_RULES,
    batch_recalculate,
    categorize,
    recalculate_lead,
    score_lead,
)

logger = setup_logger("leads_router")

router = APIRouter(prefix="/api/leads", tags=["leads"])

SORT_FIELDS = {"created_at", "updated_at", "score", "last_name", "company_name"}
LEAD_STATUSES = ("new", "contacted", "qualified", "unqualified", "converted")


def _with_score(lead: dict) -> dict:
    return {**lead, "scoring": score_lead(lead)}


@router.get("")
async def list_leads(
    status: Optional[str] = Query(None, description="Filter by lead status"),
    source: Optional[str] = Query(None, description="Filter by source"),
    assigned_to: Optional[str] = Query(None, description="Filter by owner user ID"),
    category: Optional[str] = Query(None, pattern=r"^(hot|warm|cold)$", description="Score category"),
    min_score: Optional[int] = Query(None, ge=0, le=100, description="Minimum score"),
    search: Optional[str] = Query(None, description="Search name, email or company"),
    sort: str = Query("created_at", description="Sort field"),
    order: str = Query("desc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: dict = Depends(current_user),
):
    """List leads in the caller's organization (reps: their own)."""
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=422, detail=f"Cannot sort by '{sort}'")
    try:
        query = (
            get_client().table("leads")
            .select("*", count="exact")
            .eq("organization_id", user["organization_id"])
        )
        query = scope_query(query, user)

        if status:
            query = query.eq("status", status)
        if source:
            query = query.eq("source", source)
        if assigned_to:
            query = query.eq("assigned_to", assigned_to)
        if min_score is not None:
            query = query.gte("score", min_score)
        if search:
            query = query.or_(
                f"first_name.ilike.%{search}%,last_name.ilike.%{search}%,"
                f"email.ilike.%{search}%,company_name.ilike.%{search}%"
            )

        result = (
            query.order(sort, desc=order.lower() == "desc")
            .range(offset, offset + limit - 1)
            .execute()
        )
        leads = [_with_score(lead) for lead in result.data or []]
        if category:
            leads = [lead for lead in leads if lead["scoring"]["category"] == category]

        return {
            "results": leads,
            "count": len(leads),
            "total": result.count if result.count is not None else len(leads),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List leads failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch leads")


@router.get("/stats")
async def lead_stats(user: dict = Depends(current_user)):
    """Lead counts by status and by score category, plus conversion rate."""
    try:
        query = (
            get_client().table("leads")
            .select("id, status, score, assigned_to, created_by")
            .eq("organization_id", user["organization_id"])
        )
        leads = scope_query(query, user).execute().data or []

        by_status = {status: 0 for status in LEAD_STATUSES}
        by_category = {"hot": 0, "warm": 0, "cold": 0}
        for lead in leads:
            status = lead.get("status") or "new"
            by_status[status] = by_status.get(status, 0) + 1
            by_category[categorize(lead.get("score") or 0)] += 1

        total = len(leads)
        scores = [lead.get("score") or 0 for lead in leads]
        return {
            "total": total,
            "by_status": by_status,
            "by_category": by_category,
            "average_score": round(sum(scores) / total, 1) if total else 0,
            "conversion_rate": round(by_status["converted"] / total * 100, 1) if total else 0,
        }
    except Exception as e:
        logger.error("Lead stats failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch lead stats")


@router.get("/scoring-rules")
async def scoring_rules(user: dict = Depends(current_user)):
    rules = [rule.model_dump() for rule in DEFAULT_RULES]
    return {"rules": rules, "count": len(rules), "max_score": sum(r["weight"] for r in rules)}


def _ensure_visible(lead_ids: list[str], user: dict):
    """Raise NotFoundError for any requested lead outside the caller's scope."""
    query = (
        get_client().table("leads")
        .select("id, assigned_to, created_by")
        .in_("id", list(lead_ids))
        .eq("organization_id", user["organization_id"])
    )
    visible = {row["id"] for row in scope_query(query, user).execute().data or []}
    hidden = [lid for lid in dict.fromkeys(lead_ids) if lid not in visible]
    if hidden:
        raise NotFoundError("Lead", hidden)


@router.post("/convert")
async def convert(req: LeadConvertRequest, user: dict = Depends(current_user)):
    """
    Convert qualified leads into prospecting opportunities.

    Replaying the same idempotency_key returns ALREADY_CONVERTED entries.
    Reps can only convert leads they own (404 otherwise).
    """
    try:
        _ensure_visible(req.lead_ids, user)
        result = convert_leads(req, user["organization_id"], user["id"])
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.to_dict())
    except ConversionError as e:
        raise HTTPException(status_code=500, detail=e.to_dict())
    except Exception as e:
        logger.error("Lead conversion failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to convert leads")

    for conversion in result["conversions"]:
        if conversion["status"] == "CONVERTED":
            await ws_manager.broadcast({
                "event": "lead_converted",
                "data": {
                    "lead_id": conversion["lead_id"],
                    "opportunity_id": conversion["opportunity_id"],
                },
            }, user["organization_id"])
    return result


@router.post("/rescore")
async def rescore_leads(user: dict = Depends(require_role("manager", "admin"))):
    try:
        return batch_recalculate(user["organization_id"])
    except Exception as e:
        logger.error("Lead rescoring failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to rescore leads")


def _load(lead_id: str, user: dict) -> dict:
    row = fetch_row("leads", lead_id, organization_id=user["organization_id"])
    return ensure_access(user, row, "Lead")


@router.get("/{lead_id}")
async def get_lead(lead_id: str, user: dict = Depends(current_user)):
    try:
        return _with_score(_load(lead_id, user))
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get lead failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch lead")


@router.post("/{lead_id}/rescore")
async def rescore_lead(lead_id: str, user: dict = Depends(current_user)):
    """Rescore one lead and store the new percentage."""
    try:
        _load(lead_id, user)
        return recalculate_lead(lead_id, user["organization_id"])
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Lead not found")
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Rescore lead failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to rescore lead")


@router.post("", status_code=201)
async def create_lead(req: LeadCreate, user: dict = Depends(current_user)):
    try:
        row = req.model_dump(mode="json", exclude_none=True)
        if user["role"] == "rep" or not row.get("assigned_to"):
            row["assigned_to"] = user["id"]
        scoring = score_lead(row)
        row.update({
            "score": scoring["percentage"],
            "organization_id": user["organization_id"],
            "created_by": user["id"],
        })
        lead = insert_row("leads", row)
        logger.info("Created lead %s (%s)", lead["id"], scoring["category"])
        return {**lead, "scoring": scoring}
    except Exception as e:
        logger.error("Create lead failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create lead")


@router.put("/{lead_id}")
async def update_lead(lead_id: str, req: LeadUpdate, user: dict = Depends(current_user)):
    try:
        existing = _load(lead_id, user)
        updates = req.model_dump(mode="json", exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")
        if user["role"] == "rep":
            updates.pop("assigned_to", None)

        scoring = score_lead({**existing, **updates})
        updates["score"] = scoring["percentage"]
        updates["updated_at"] = utc_now()

        lead = update_row("leads", lead_id, updates, organization_id=user["organization_id"])
        if not lead:
            raise HTTPException(status_code=404, detail="Lead not found")
        return {**lead, "scoring": scoring}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Update lead failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to update lead")


@router.delete("/{lead_id}")
async def delete_lead(lead_id: str, user: dict = Depends(require_role("manager", "admin"))):
    try:
        if not delete_row("leads", lead_id, organization_id=user["organization_id"]):
            raise HTTPException(status_code=404, detail="Lead not found")
        logger.info("Deleted lead %s", lead_id)
        return {"deleted": True, "id": lead_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete lead failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to delete lead")

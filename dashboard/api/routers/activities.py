"""
PEAK CRM — Activities Router
==============================
Calls, emails, meetings, tasks and notes logged against CRM records.

Endpoints:
  GET    /api/activities                - List with filters
  GET    /api/activities/daily          - Daily activity trend
  POST   /api/activities                - Create
  PUT    /api/activities/{id}           - Update
  POST   /api/activities/{id}/complete  - Mark completed
  DELETE /api/activities/{id}           - Delete (manager/admin)
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, ensure_access, require_role, scope_query
from models.crm_models import ActivityCreate, ActivityUpdate
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now

logger = setup_logger("activities_router")

router = APIRouter(prefix="/api/activities", tags=["activities"])

SORT_FIELDS = {"created_at", "due_date", "completed_at", "priority"}
TREND_COLUMNS = {"call": "calls", "email": "emails", "meeting": "meetings", "task": "tasks", "note": "notes"}


@router.get("")
async def list_activities(
    type: Optional[str] = Query(None, description="Filter by type: call, email, meeting, task, note"),
    status: Optional[str] = Query(None, description="pending, completed or cancelled"),
    related_type: Optional[str] = Query(None, description="lead, opportunity, contact or company"),
    related_id: Optional[str] = Query(None, description="ID of the related record"),
    assigned_to: Optional[str] = Query(None, description="Filter by owner user ID"),
    overdue: bool = Query(False, description="Only pending activities past their due date"),
    sort: str = Query("created_at", description="Sort field"),
    order: str = Query("desc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: dict = Depends(current_user),
):
    """List activities with filtering, sorting, and pagination."""
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=422, detail=f"Cannot sort by '{sort}'")
    try:
        query = (
            get_client().table("activities")
            .select("*", count="exact")
            .eq("organization_id", user["organization_id"])
        )
        query = scope_query(query, user)

        if type:
            query = query.eq("type", type)
        if status:
            query = query.eq("status", status)
        if related_type:
            query = query.eq("related_type", related_type)
        if related_id:
            query = query.eq("related_id", related_id)
        if assigned_to:
            query = query.eq("assigned_to", assigned_to)
        if overdue:
            query = query.eq("status", "pending").lt("due_date", utc_now())

        result = (
            query.order(sort, desc=order.lower() == "desc")
            .range(offset, offset + limit - 1)
            .execute()
        )
        activities = result.data or []
        return {
            "results": activities,
            "count": len(activities),
            "total": result.count if result.count is not None else len(activities),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List activities failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch activities")


@router.get("/daily")
async def daily_trend(
    type: Optional[str] = Query(None, description="Filter by activity type"),
    days: int = Query(30, ge=1, le=365, description="Number of days to look back"),
    user: dict = Depends(current_user),
):
    """Daily activity counts for charting."""
    try:
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        query = (
            get_client().table("activities")
            .select("created_at, type, assigned_to, created_by")
            .eq("organization_id", user["organization_id"])
            .gte("created_at", since)
            .order("created_at")
        )
        query = scope_query(query, user)
        if type:
            query = query.eq("type", type)

        daily: dict = defaultdict(lambda: {"total": 0, **{c: 0 for c in TREND_COLUMNS.values()}})
        for a in query.execute().data or []:
            date = (a.get("created_at") or "")[:10]
            if not date:
                continue
            daily[date]["total"] += 1
            column = TREND_COLUMNS.get(a.get("type"))
            if column:
                daily[date][column] += 1

        trend = [{"date": date, **counts} for date, counts in sorted(daily.items())]
        return {"trend": trend, "days": days}
    except Exception as e:
        logger.error("Daily trend query failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch daily trend")


def _load(activity_id: str, user: dict) -> dict:
    row = fetch_row("activities", activity_id, organization_id=user["organization_id"])
    return ensure_access(user, row, "Activity")


@router.post("", status_code=201)
async def create_activity(req: ActivityCreate, user: dict = Depends(current_user)):
    if (req.related_type is None) != (req.related_id is None):
        raise HTTPException(status_code=422, detail="related_type and related_id go together")
    try:
        row = req.model_dump(mode="json", exclude_none=True)
        if user["role"] == "rep" or not row.get("assigned_to"):
            row["assigned_to"] = user["id"]
        row.update({"organization_id": user["organization_id"], "created_by": user["id"]})
        if row.get("status") == "completed":
            row["completed_at"] = utc_now()
        activity = insert_row("activities", row)
        logger.info("Logged %s activity %s", activity.get("type"), activity["id"])
        return activity
    except Exception as e:
        logger.error("Create activity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create activity")


@router.put("/{activity_id}")
async def update_activity(activity_id: str, req: ActivityUpdate, user: dict = Depends(current_user)):
    try:
        existing = _load(activity_id, user)
        updates = req.model_dump(mode="json", exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")
        if user["role"] == "rep":
            updates.pop("assigned_to", None)
        if updates.get("status") == "completed" and existing.get("status") != "completed":
            updates["completed_at"] = utc_now()
        updates["updated_at"] = utc_now()
        return update_row("activities", activity_id, updates, organization_id=user["organization_id"])
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Update activity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to update activity")


@router.post("/{activity_id}/complete")
async def complete_activity(activity_id: str, user: dict = Depends(current_user)):
    try:
        existing = _load(activity_id, user)
        if existing.get("status") == "completed":
            return existing
        now = utc_now()
        return update_row(
            "activities", activity_id,
            {"status": "completed", "completed_at": now, "updated_at": now},
            organization_id=user["organization_id"],
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Complete activity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to complete activity")


@router.delete("/{activity_id}")
async def delete_activity(activity_id: str, user: dict = Depends(require_role("manager", "admin"))):
    try:
        if not delete_row("activities", activity_id, organization_id=user["organization_id"]):
            raise HTTPException(status_code=404, detail="Activity not found")
        return {"deleted": True, "id": activity_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete activity failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to delete activity")

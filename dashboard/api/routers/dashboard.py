"""
PEAK CRM — Dashboard Router
=============================
Endpoints:
  GET /api/dashboard           - Widgets for the signed-in user's role
  GET /api/dashboard/widgets   - Widget ids available to the role
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from dashboard.api.middleware import current_user
from scripts.lib.logger import setup_logger
from scripts.sales.dashboards import load_dashboard, sees_org

logger = setup_logger("dashboard_router")

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

BASE_WIDGETS = ["kpi_cards", "pipeline_overview", "recent_activity", "meddpicc_distribution", "lead_scoring"]


@router.get("")
async def get_dashboard(user: dict = Depends(current_user)):
    """Reps get widgets over their own rows, managers and admins over the org."""
    try:
        return load_dashboard(user)
    except Exception as e:
        logger.error("Dashboard load failed for %s: %s", user.get("id"), e)
        raise HTTPException(status_code=500, detail="Failed to load dashboard")


@router.get("/widgets")
async def available_widgets(user: dict = Depends(current_user)):
    widgets = list(BASE_WIDGETS)
    if sees_org(user):
        widgets.append("team_performance")
    return {"role": user.get("role"), "widgets": widgets}

"""
PEAK CRM — Analytics Router
=============================
Endpoints:
  GET /api/analytics/kpis       - Revenue, deals, win rate and activity KPIs
  GET /api/analytics/forecast   - Linear-regression forecast of won revenue / deals

Reps always see their own numbers; managers and admins see the org, or
one rep with `user_id`.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user
from scripts.lib.logger import setup_logger
from scripts.sales.analytics import fetch_forecast, fetch_kpis
from scripts.sales.dashboards import sees_org

logger = setup_logger("analytics_router")

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _subject(user: dict, user_id: Optional[str]) -> Optional[str]:
    if not sees_org(user):
        return user["id"]
    return user_id


@router.get("/kpis")
async def kpis(
    user_id: Optional[str] = Query(None, description="Limit to one rep (managers/admins)"),
    user: dict = Depends(current_user),
):
    try:
        results = fetch_kpis(user["organization_id"], _subject(user, user_id))
        return {"results": results, "count": len(results)}
    except Exception as e:
        logger.error("KPI calculation failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to calculate KPIs")


@router.get("/forecast")
async def forecast(
    forecast_type: str = Query("revenue", pattern=r"^(revenue|deals)$", description="revenue or deals"),
    period: str = Query("monthly", pattern=r"^(monthly|weekly)$", description="monthly or weekly"),
    horizon: int = Query(3, ge=1, le=12, description="Periods to project"),
    user_id: Optional[str] = Query(None, description="Limit to one rep (managers/admins)"),
    user: dict = Depends(current_user),
):
    try:
        return fetch_forecast(
            user["organization_id"], forecast_type, period, horizon, _subject(user, user_id),
        )
    except Exception as e:
        logger.error("Forecast failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to generate forecast")

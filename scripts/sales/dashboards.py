"""
PEAK CRM — Role-Based Dashboards
==================================

Builds the dashboard widget payload for the signed-in user.

  rep      widgets over rows assigned to them
  manager  widgets over the whole organization + team performance
  admin    same as manager

Widgets:
  kpi_cards, pipeline_overview, recent_activity,
  meddpicc_distribution, lead_scoring, team_performance
"""
from __future__ import annotations

from typing import Iterable, Optional

from models.meddpicc_models import Thresholds
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client
from scripts.sales.lead_scorer import categorize
from scripts.sales.meddpicc import qualification_band
from scripts.sales.meddpicc_service import get_active_config
from scripts.sales.peak import summarize_pipeline

logger = setup_logger("dashboards")

ORG_WIDE_ROLES = ("manager", "admin")
RECENT_ACTIVITY_LIMIT = 10


def sees_org(user: dict) -> bool:
    return user.get("role") in ORG_WIDE_ROLES


def _value(row: dict) -> float:
    return float(row.get("deal_value") or 0)


def kpi_cards(leads: list, opportunities: list) -> dict:
    open_opps = [o for o in opportunities if o.get("status", "open") == "open"]
    won = [o for o in opportunities if o.get("status") == "won"]
    converted = sum(1 for lead in leads if lead.get("status") == "converted")
    return {
        "total_leads": len(leads),
        "open_opportunities": len(open_opps),
        "pipeline_value": round(sum(_value(o) for o in open_opps), 2),
        "won_revenue": round(sum(_value(o) for o in won), 2),
        "conversion_rate": round(converted / len(leads) * 100, 1) if leads else 0.0,
    }


def meddpicc_distribution(opportunities: Iterable[dict], thresholds: Optional[Thresholds] = None) -> dict:
    dist = {"excellent": 0, "good": 0, "fair": 0, "poor": 0, "unscored": 0}
    for opp in opportunities:
        score = opp.get("meddpicc_score")
        if score is None:
            dist["unscored"] += 1
        else:
            dist[qualification_band(score, thresholds)] += 1
    return dist


def lead_scoring_mix(leads: Iterable[dict]) -> dict:
    mix = {"hot": 0, "warm": 0, "cold": 0}
    for lead in leads:
        mix[categorize(lead.get("score") or 0)] += 1
    return mix


def team_performance(users: list, opportunities: list, activities: list) -> list[dict]:
    rows = {}
    for user in users:
        rows[user["id"]] = {
            "user_id": user["id"],
            "name": user.get("full_name") or user.get("email"),
            "role": user.get("role"),
            "open_opportunities": 0,
            "pipeline_value": 0.0,
            "won_deals": 0,
            "won_revenue": 0.0,
            "activities": 0,
        }
    for opp in opportunities:
        row = rows.get(opp.get("assigned_to"))
        if row is None:
            continue
        if opp.get("status") == "won":
            row["won_deals"] += 1
            row["won_revenue"] += _value(opp)
        elif opp.get("status", "open") == "open":
            row["open_opportunities"] += 1
            row["pipeline_value"] += _value(opp)
    for activity in activities:
        row = rows.get(activity.get("assigned_to"))
        if row is not None:
            row["activities"] += 1
    return sorted(rows.values(), key=lambda r: r["won_revenue"], reverse=True)


def build_widgets(
    user: dict,
    leads: list,
    opportunities: list,
    activities: list,
    team: Optional[list] = None,
    thresholds: Optional[Thresholds] = None,
) -> dict:
    """Assemble widgets from already-scoped rows; thresholds band the MEDDPICC widget."""
    open_opps = [o for o in opportunities if o.get("status", "open") == "open"]
    recent = sorted(activities, key=lambda a: a.get("created_at") or "", reverse=True)

    widgets = {
        "kpi_cards": kpi_cards(leads, opportunities),
        "pipeline_overview": summarize_pipeline(open_opps),
        "recent_activity": recent[:RECENT_ACTIVITY_LIMIT],
        "meddpicc_distribution": meddpicc_distribution(open_opps, thresholds),
        "lead_scoring": lead_scoring_mix(leads),
    }
    if sees_org(user):
        widgets["team_performance"] = team_performance(team or [], opportunities, activities)
    return widgets


def load_dashboard(user: dict) -> dict:
    """Fetch rows visible to the user and build their dashboard."""
    client = get_client()
    org_id = user["organization_id"]
    org_wide = sees_org(user)

    def scoped(table: str, columns: str):
        query = client.table(table).select(columns).eq("organization_id", org_id)
        if not org_wide:
            query = query.eq("assigned_to", user["id"])
        return query

    leads = scoped("leads", "id, status, score, assigned_to").execute().data or []
    opportunities = scoped(
        "opportunities",
        "id, name, peak_stage, deal_value, probability, status, meddpicc_score, assigned_to",
    ).execute().data or []
    activities = (
        scoped("activities", "id, type, subject, status, due_date, assigned_to, created_at")
        .order("created_at", desc=True)
        .limit(200)
        .execute().data or []
    )

    team = None
    if org_wide:
        team = (
            client.table("users")
            .select("id, full_name, email, role")
            .eq("organization_id", org_id)
            .execute().data or []
        )

    logger.debug(
        "Dashboard for %s (%s): %d leads, %d opportunities",
        user.get("id"), user.get("role"), len(leads), len(opportunities),
    )
    return {
        "role": user.get("role"),
        "scope": "organization" if org_wide else "personal",
        "widgets": build_widgets(
            user, leads, opportunities, activities, team,
            thresholds=get_active_config(org_id).scoring.thresholds,
        ),
    }

"""
PEAK CRM — Sales Analytics
============================

KPI cards with period-over-period trend, and a least-squares linear
forecast of won revenue (or won deal count).

KPIs (current vs previous window):
  revenue     sum of won deal value, this month vs last month
  deals       count of won deals, this month vs last month
  conversion  won / created opportunities (%), this month vs last month
  activity    activities logged, last 7 days vs the 7 days before

Functions:
  compute_kpis()        - KPI list from opportunity + activity rows
  bucket_series()       - Won revenue / deals per week or month
  linear_regression()   - Slope and intercept for y over x = 0..n-1
  forecast_series()     - Predictions, confidence and accuracy
  fetch_kpis()          - KPIs for an organization (or one rep)
  fetch_forecast()      - Forecast for an organization (or one rep)
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client
from scripts.lib.utils import parse_datetime

logger = setup_logger("analytics")

FORECAST_PERIODS = {"weekly": 12, "monthly": 12}
FORECAST_TYPES = ("revenue", "deals")
BASE_CONFIDENCE = 0.8


def _month_start(moment: datetime, months_back: int = 0) -> datetime:
    year, month = moment.year, moment.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _in_window(value, start: datetime, end: Optional[datetime] = None) -> bool:
    moment = parse_datetime(value)
    if moment is None or moment < start:
        return False
    return end is None or moment < end


def _trend(current: float, previous: float) -> str:
    if current > previous:
        return "up"
    if current < previous:
        return "down"
    return "stable"


def _kpi(kpi_id: str, name: str, metric_type: str, current: float, previous: float,
         unit: str, fmt: str) -> dict:
    change = None
    if previous:
        change = round((current - previous) / previous * 100, 1)
    return {
        "id": kpi_id,
        "name": name,
        "metric_type": metric_type,
        "current_value": round(current, 2),
        "previous_value": round(previous, 2),
        "change_pct": change,
        "trend": _trend(current, previous),
        "unit": unit,
        "format": fmt,
    }


def is_won(opportunity: dict) -> bool:
    return opportunity.get("status") == "won"


def compute_kpis(
    opportunities: Iterable[dict],
    activities: Iterable[dict],
    now: Optional[datetime] = None,
) -> list[dict]:
    """KPI cards from raw rows; `now` is injectable for tests."""
    now = now or datetime.now(timezone.utc)
    this_month = _month_start(now)
    last_month = _month_start(now, 1)
    week_ago = now - timedelta(days=7)
    two_weeks_ago = now - timedelta(days=14)

    opportunities = list(opportunities)
    activities = list(activities)
    won = [o for o in opportunities if is_won(o)]

    won_now = [o for o in won if _in_window(o.get("closed_at"), this_month)]
    won_prev = [o for o in won if _in_window(o.get("closed_at"), last_month, this_month)]

    revenue_now = sum(float(o.get("deal_value") or 0) for o in won_now)
    revenue_prev = sum(float(o.get("deal_value") or 0) for o in won_prev)

    created_now = [o for o in opportunities if _in_window(o.get("created_at"), this_month)]
    created_prev = [o for o in opportunities if _in_window(o.get("created_at"), last_month, this_month)]
    conversion_now = len(won_now) / len(created_now) * 100 if created_now else 0.0
    conversion_prev = len(won_prev) / len(created_prev) * 100 if created_prev else 0.0

    activity_now = sum(1 for a in activities if _in_window(a.get("created_at"), week_ago))
    activity_prev = sum(1 for a in activities if _in_window(a.get("created_at"), two_weeks_ago, week_ago))

    return [
        _kpi("revenue", "Won Revenue", "revenue", revenue_now, revenue_prev, "$", "currency"),
        _kpi("deals", "Deals Won", "deals", len(won_now), len(won_prev), "deals", "number"),
        _kpi("conversion", "Win Rate", "conversion", conversion_now, conversion_prev, "%", "percentage"),
        _kpi("activity", "Activities (7d)", "activity", activity_now, activity_prev, "activities", "number"),
    ]


def bucket_series(
    opportunities: Iterable[dict],
    forecast_type: str = "revenue",
    period: str = "monthly",
    now: Optional[datetime] = None,
) -> list[dict]:
    """
    Won value (or won count) per period, oldest first, covering the
    trailing window for `period` including empty buckets.
    """
    now = now or datetime.now(timezone.utc)
    count = FORECAST_PERIODS[period]

    if period == "monthly":
        starts = [_month_start(now, back) for back in range(count - 1, -1, -1)]
        labels = [s.strftime("%Y-%m") for s in starts]
    else:
        this_week = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) - timedelta(days=now.weekday())
        starts = [this_week - timedelta(weeks=back) for back in range(count - 1, -1, -1)]
        labels = [s.strftime("%Y-%m-%d") for s in starts]

    buckets = [{"period": label, "value": 0.0} for label in labels]
    for opp in opportunities:
        if not is_won(opp):
            continue
        closed = parse_datetime(opp.get("closed_at"))
        if closed is None or closed < starts[0]:
            continue
        index = max(i for i, start in enumerate(starts) if closed >= start)
        if forecast_type == "revenue":
            buckets[index]["value"] += float(opp.get("deal_value") or 0)
        else:
            buckets[index]["value"] += 1
    return buckets


def linear_regression(values: list[float]) -> tuple[float, float]:
    """Least-squares fit of values against x = 0..n-1 (needs n >= 2)."""
    n = len(values)
    xs = range(n)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def forecast_accuracy(actual: list[float], predicted: list[float]) -> float:
    """1 - mean relative error, floored at 0."""
    pairs = list(zip(actual, predicted))
    if not pairs:
        return 0.0
    error = sum(abs(a - p) / max(a, 1) for a, p in pairs)
    return max(0.0, 1 - error / len(pairs))


def forecast_series(values: list[float], horizon: int = 3) -> dict:
    """
    Project `horizon` future periods from a history.

    Fewer than two history points gives an empty forecast.
    """
    if len(values) < 2:
        return {"predictions": [], "confidence": 0, "accuracy": 0}

    slope, intercept = linear_regression(values)
    n = len(values)
    predictions = []
    for i in range(horizon):
        predictions.append({
            "period": i + 1,
            "value": round(max(0.0, slope * (n + i) + intercept), 2),
            "confidence": round(max(0.5, 1 - i * 0.1), 2),
        })

    recent = values[-min(5, n):]
    accuracy = forecast_accuracy(recent, [p["value"] for p in predictions[:5]])
    return {
        "predictions": predictions,
        "confidence": BASE_CONFIDENCE,
        "accuracy": round(accuracy, 3),
        "slope": round(slope, 4),
        "intercept": round(intercept, 2),
    }


# ─── Store-bound ────────────────────────────────────────────

def _opportunity_rows(organization_id: str, user_id: Optional[str]) -> list[dict]:
    query = (
        get_client().table("opportunities")
        .select("id, deal_value, status, closed_at, created_at, assigned_to")
        .eq("organization_id", organization_id)
    )
    if user_id:
        query = query.eq("assigned_to", user_id)
    return query.execute().data or []


def fetch_kpis(organization_id: str, user_id: Optional[str] = None) -> list[dict]:
    """KPIs over the organization, or only rows assigned to `user_id`."""
    client = get_client()
    two_weeks_ago = (datetime.now(timezone.utc) - timedelta(days=14)).isoformat()
    activity_query = (
        client.table("activities")
        .select("id, created_at, assigned_to")
        .eq("organization_id", organization_id)
        .gte("created_at", two_weeks_ago)
    )
    if user_id:
        activity_query = activity_query.eq("assigned_to", user_id)

    return compute_kpis(
        _opportunity_rows(organization_id, user_id),
        activity_query.execute().data or [],
    )


def fetch_forecast(
    organization_id: str,
    forecast_type: str = "revenue",
    period: str = "monthly",
    horizon: int = 3,
    user_id: Optional[str] = None,
) -> dict:
    history = bucket_series(
        _opportunity_rows(organization_id, user_id), forecast_type, period,
    )
    result = forecast_series([b["value"] for b in history], horizon)
    logger.info(
        "Forecast %s/%s for org %s: %d predictions",
        forecast_type, period, organization_id, len(result["predictions"]),
    )
    return {
        "forecast_type": forecast_type,
        "period": period,
        "horizon": horizon,
        "historical_data": history,
        **result,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }

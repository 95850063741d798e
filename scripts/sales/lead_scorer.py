"""
PEAK CRM — Lead Scorer
========================

Rule-based lead scoring. Each rule tests one lead field and adds its
weight when it matches; the percentage of the maximum decides the
category:

  hot   >= 65%
  warm  >= 35%
  cold  otherwise

Functions:
  LeadScoringEngine.calculate_score() - Score + breakdown for one lead
  score_lead()                         - Score a lead row with the default rules
  recalculate_lead()                   - Rescore one stored lead and save it
  batch_recalculate()                  - Rescore every lead in an organization
"""
from __future__ import annotations

from typing import Iterable, Optional

from models.crm_models import LeadScoringRule
from scripts.lib.errors import NotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_row, get_client, utc_now

logger = setup_logger("lead_scorer")

HOT_THRESHOLD = 65
WARM_THRESHOLD = 35

DEFAULT_RULES = [
    LeadScoringRule(id="email_present", name="Email Present", field="email",
                    condition="is_not_empty", weight=20,
                    description="Lead has an email address"),
    LeadScoringRule(id="cold_call_penalty", name="Cold Call Penalty", field="source",
                    condition="equals", value="cold_call", weight=5,
                    description="Cold-call sourced leads get minimal points"),
    LeadScoringRule(id="phone_present", name="Phone Present", field="phone",
                    condition="is_not_empty", weight=15,
                    description="Lead has a phone number"),
    LeadScoringRule(id="company_present", name="Company Present", field="company",
                    condition="is_not_empty", weight=35,
                    description="Lead has a company name"),
    LeadScoringRule(id="website_referral", name="Website Referral", field="source",
                    condition="equals", value="website", weight=15,
                    description="Lead came from website"),
    LeadScoringRule(id="social_media", name="Social Media", field="source",
                    condition="equals", value="social", weight=15,
                    description="Lead came from social media"),
    LeadScoringRule(id="referral", name="Referral", field="source",
                    condition="equals", value="referral", weight=40,
                    description="Lead came from referral"),
    LeadScoringRule(id="trade_show", name="Trade Show", field="source",
                    condition="equals", value="trade_show", weight=20,
                    description="Lead came from trade show"),
    LeadScoringRule(id="cold_outreach", name="Cold Outreach", field="source",
                    condition="equals", value="cold_outreach", weight=5,
                    description="Lead from cold outreach"),
    LeadScoringRule(id="enterprise_company", name="Enterprise Company", field="company",
                    condition="contains", value="company", weight=15,
                    description="Company name suggests an established business"),
    LeadScoringRule(id="tech_company", name="Technology Company", field="company",
                    condition="contains", value="tech", weight=8,
                    description="Company appears to be in technology sector"),
]


def categorize(percentage: float) -> str:
    if percentage >= HOT_THRESHOLD:
        return "hot"
    if percentage >= WARM_THRESHOLD:
        return "warm"
    return "cold"


def lead_fields(lead: dict) -> dict:
    """Lead row with `company` aliased from company_name for rule matching."""
    fields = dict(lead)
    if "company" not in fields:
        fields["company"] = lead.get("company_name")
    return fields


class LeadScoringEngine:
    """Evaluates a list of scoring rules against lead data."""

    def __init__(self, rules: Optional[Iterable[LeadScoringRule]] = None):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    @staticmethod
    def evaluate_rule(rule: LeadScoringRule, data: dict) -> bool:
        value = data.get(rule.field)
        expected = (rule.value or "").lower()

        if rule.condition == "equals":
            return value == rule.value
        if rule.condition == "is_empty":
            return value is None or value == ""
        if rule.condition == "is_not_empty":
            return value is not None and value != ""

        if not value or not isinstance(value, str):
            return False
        text = value.lower()
        if rule.condition == "contains":
            return expected in text
        if rule.condition == "starts_with":
            return text.startswith(expected)
        if rule.condition == "ends_with":
            return text.endswith(expected)
        return False

    def calculate_score(self, data: dict) -> dict:
        """
        Score one lead.

        Returns:
            Dict with total_score, max_score, percentage, category and a
            per-rule breakdown.
        """
        breakdown = []
        total = 0.0
        for rule in self.rules:
            matched = self.evaluate_rule(rule, data)
            points = rule.weight if matched else 0
            total += points
            breakdown.append({
                "rule_id": rule.id,
                "name": rule.name,
                "matched": matched,
                "score": points,
            })

        max_score = sum(rule.weight for rule in self.rules)
        # Half-up rounding, so 64.5% lands in "hot"
        percentage = int(total / max_score * 100 + 0.5) if max_score > 0 else 0

        return {
            "total_score": total,
            "max_score": max_score,
            "percentage": percentage,
            "category": categorize(percentage),
            "breakdown": breakdown,
        }


def score_lead(lead: dict, engine: Optional[LeadScoringEngine] = None) -> dict:
    engine = engine or LeadScoringEngine()
    return engine.calculate_score(lead_fields(lead))


def recalculate_lead(lead_id: str, organization_id: str) -> dict:
    """
    Rescore a stored lead and write the percentage to leads.score.

    Raises:
        NotFoundError: Lead is not in the organization.
    """
    lead = fetch_row("leads", lead_id, organization_id=organization_id)
    if not lead:
        raise NotFoundError("Lead", lead_id)

    result = score_lead(lead)
    get_client().table("leads").update({
        "score": result["percentage"],
        "updated_at": utc_now(),
    }).eq("id", lead_id).execute()

    logger.info(
        "Lead %s scored %d%% (%s)", lead_id, result["percentage"], result["category"],
    )
    return {"lead_id": lead_id, **result}


def batch_recalculate(organization_id: Optional[str] = None, limit: int = 1000) -> dict:
    """
    Rescore every lead (optionally one organization).

    Returns:
        Dict with processed/updated/errors counts and the category mix.
    """
    client = get_client()
    query = client.table("leads").select("*").neq("status", "converted")
    if organization_id:
        query = query.eq("organization_id", organization_id)
    leads = query.limit(limit).execute().data or []

    engine = LeadScoringEngine()
    stats = {"processed": 0, "updated": 0, "errors": 0,
             "categories": {"hot": 0, "warm": 0, "cold": 0}}

    for lead in leads:
        stats["processed"] += 1
        try:
            result = score_lead(lead, engine)
            stats["categories"][result["category"]] += 1
            if result["percentage"] != lead.get("score"):
                client.table("leads").update({
                    "score": result["percentage"],
                    "updated_at": utc_now(),
                }).eq("id", lead["id"]).execute()
                stats["updated"] += 1
        except Exception as e:
            logger.error("Failed to rescore lead %s: %s", lead.get("id"), e)
            stats["errors"] += 1

    logger.info(
        "Lead rescoring complete: %d processed, %d updated, %d errors",
        stats["processed"], stats["updated"], stats["errors"],
    )
    return stats

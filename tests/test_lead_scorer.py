"""Tests for rule-based lead scoring."""

import pytest

from models.crm_models import LeadScoringRule
from scripts.lib.errors import NotFoundError
from scripts.sales.lead_scorer import (
    DEFAULT_RULES,
    LeadScoringEngine,
    batch_recalculate,
    categorize,
    recalculate_lead,
    score_lead,
)


class TestCategories:
    def test_thresholds(self):
        assert categorize(65) == "hot"
        assert categorize(64.9) == "warm"
        assert categorize(35) == "warm"
        assert categorize(34) == "cold"


class TestEngine:
    def test_max_score_is_sum_of_weights(self):
        result = LeadScoringEngine().calculate_score({})
        assert result["max_score"] == sum(r.weight for r in DEFAULT_RULES)
        assert result["total_score"] == 0
        assert result["category"] == "cold"
        assert len(result["breakdown"]) == len(DEFAULT_RULES)

    def test_hot_lead(self):
        result = score_lead({
            "email": "cto@acme.test",
            "phone": "+44 20 7946 0000",
            "company_name": "Acme Tech Company",
            "source": "referral",
        })
        # 20 + 15 + 35 + 40 + 15 + 8 of 193
        assert result["total_score"] == 133
        assert result["percentage"] == 69
        assert result["category"] == "hot"

    def test_warm_lead(self):
        result = score_lead({"email": "a@b.test", "company_name": "Foo", "source": "website"})
        assert result["percentage"] == 36
        assert result["category"] == "warm"

    def test_equals_is_exact(self):
        result = score_lead({"source": "Referral"})
        matched = {b["rule_id"] for b in result["breakdown"] if b["matched"]}
        assert "referral" not in matched

    def test_contains_is_case_insensitive(self):
        rule = LeadScoringRule(id="r", name="R", field="company", condition="contains",
                               value="TECH", weight=1)
        assert LeadScoringEngine.evaluate_rule(rule, {"company": "BigTech Ltd"})

    @pytest.mark.parametrize("condition,value,data,expected", [
        ("starts_with", "acme", {"company": "Acme Ltd"}, True),
        ("ends_with", "ltd", {"company": "Acme Ltd"}, True),
        ("ends_with", "inc", {"company": "Acme Ltd"}, False),
        ("is_empty", None, {"company": ""}, True),
        ("is_empty", None, {}, True),
        ("is_not_empty", None, {"company": ""}, False),
        ("contains", "x", {"company": 42}, False),
    ])
    def test_conditions(self, condition, value, data, expected):
        rule = LeadScoringRule(id="r", name="R", field="company", condition=condition,
                               value=value, weight=1)
        assert LeadScoringEngine.evaluate_rule(rule, data) is expected

    def test_no_rules(self):
        result = LeadScoringEngine([]).calculate_score({"email": "x"})
        assert result["percentage"] == 0
        assert result["max_score"] == 0


class TestStoredLeads:
    def test_recalculate_lead(self, fake_db, seed_lead):
        lead = seed_lead()
        result = recalculate_lead(lead["id"], "org-1")
        # email 20 + company 35 + referral 40 of 193
        assert result["percentage"] == 49
        assert fake_db.rows("leads")[0]["score"] == 49

    def test_recalculate_other_org(self, fake_db, seed_lead):
        lead = seed_lead()
        with pytest.raises(NotFoundError):
            recalculate_lead(lead["id"], "org-2")

    def test_batch_skips_converted_and_unchanged(self, fake_db, seed_lead):
        seed_lead()
        seed_lead(email=None, company_name=None, source=None, score=0)
        seed_lead(status="converted")
        stats = batch_recalculate("org-1")
        assert stats["processed"] == 2
        assert stats["updated"] == 1
        assert stats["errors"] == 0
        assert stats["categories"] == {"hot": 0, "warm": 1, "cold": 1}

"""Tests for MEDDPICC scoring and framework validation."""

import copy
import time
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from models.meddpicc_models import MEDDPICCResponse, Thresholds
from scripts.lib.errors import ConfigError, NotFoundError
from scripts.lib.utils import load_yaml
from scripts.sales.meddpicc import (
    CONFIG_UNAVAILABLE_ACTION,
    DEFAULT_CONFIG_PATH,
    calculate_legacy_score,
    calculate_meddpicc_score,
    get_meddpicc_level,
    load_default_config,
    opportunity_to_responses,
    parse_configuration,
    qualification_band,
    score_text_answer,
    validate_configuration,
)
from scripts.sales.meddpicc_service import MEDDPICCScoringService, scoring_service

ORG = "org-1"
LONG_ANSWER = "x" * 60


@pytest.fixture
def config():
    return load_default_config()


def _full_pillar(config, pillar_id):
    """Top-marks responses for every question of one pillar."""
    responses = []
    for question in config.pillar(pillar_id).questions:
        if question.type == "text":
            responses.append({"pillar_id": pillar_id, "question_id": question.id, "answer": LONG_ANSWER})
        else:
            responses.append({"pillar_id": pillar_id, "question_id": question.id,
                              "answer": question.answers[0].text, "points": 10})
    return responses


class TestTextAnswers:
    def test_empty_answer_scores_nothing(self):
        assert score_text_answer("") == 0
        assert score_text_answer("   ") == 0

    def test_length_bands_accumulate(self):
        assert score_text_answer("ab") == 3
        assert score_text_answer("abc") == 5
        assert score_text_answer("x" * 10) == 7
        assert score_text_answer("x" * 25) == 9
        assert score_text_answer("x" * 50) == 10

    def test_keyword_bonus(self):
        assert score_text_answer("roi") == 6
        assert score_text_answer("cost roi") == 7

    def test_capped_at_ten(self):
        assert score_text_answer("measurable ROI and cost savings with revenue impact " * 3) == 10


class TestScoring:
    def test_no_responses(self, config):
        assessment = calculate_meddpicc_score([], config)
        assert assessment.overall_score == 0
        assert assessment.qualification_level == "Poor"
        assert set(assessment.pillar_scores) == {p.id for p in config.pillars}
        assert len(assessment.next_actions) == len(config.pillars)
        assert assessment.stage_gate_readiness["Prospecting_to_Engaging"] is False

    def test_missing_config_returns_empty_assessment(self):
        assessment = calculate_meddpicc_score([], None)
        assert assessment.overall_score == 0
        assert assessment.qualification_level == "poor"
        assert assessment.next_actions == [CONFIG_UNAVAILABLE_ACTION]

    def test_choice_points_and_half_up_rounding(self, config):
        responses = [{"pillar_id": "metrics", "question_id": "urgency_level",
                      "answer": "High (Solve within 3 months)", "points": 8}]
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.pillar_scores["metrics"] == 20
        # 20% x 15 / 120 = 2.5%
        assert assessment.overall_score == 3

    def test_weighted_overall(self, config):
        responses = (
            _full_pillar(config, "identifyPain")
            + _full_pillar(config, "champion")
            + _full_pillar(config, "economicBuyer")
        )
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.pillar_scores["identifyPain"] == 100
        assert assessment.pillar_scores["champion"] == 100
        assert assessment.pillar_scores["economicBuyer"] == 100
        assert assessment.overall_score == 42
        assert assessment.qualification_level == "Fair"
        assert assessment.stage_gate_readiness["Prospecting_to_Engaging"] is True

    def test_every_pillar_full(self, config):
        responses = []
        for pillar in config.pillars:
            responses.extend(_full_pillar(config, pillar.id))
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.overall_score == 100
        assert assessment.qualification_level == "Excellent"
        assert assessment.next_actions == []

    def test_litmus_score(self, config):
        responses = [
            {"pillar_id": "litmus", "question_id": "budget_confirmed", "points": 10},
            {"pillar_id": "litmus", "question_id": "decision_timeline", "points": 7},
        ]
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.litmus_test_score == 57

    def test_accepts_model_responses(self, config):
        responses = [MEDDPICCResponse(pillar_id="champion", question_id="champion_influence",
                                      answer="Very High (C-Level)", points=10)]
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.pillar_scores["champion"] == 33

    def test_multiple_choice_scored_from_points(self):
        data = copy.deepcopy(load_yaml(DEFAULT_CONFIG_PATH))
        data["pillars"][0]["questions"][3]["type"] = "multiple_choice"
        custom = parse_configuration(data)
        responses = [{"pillar_id": "metrics", "question_id": "urgency_level",
                      "answer": "Medium (Solve within 6 months)", "points": 6}]
        assert calculate_meddpicc_score(responses, custom).pillar_scores["metrics"] == 15

    def test_stored_points_clamped(self, config):
        responses = [{"pillar_id": "metrics", "question_id": "urgency_level",
                      "answer": "Critical (Must solve immediately)", "points": 1000},
                     {"pillar_id": "litmus", "question_id": "budget_confirmed", "points": "lots"}]
        assessment = calculate_meddpicc_score(responses, config)
        assert assessment.pillar_scores["metrics"] == 25
        assert assessment.litmus_test_score == 0
        assert assessment.overall_score <= 100

    def test_gate_without_pillar_rules_is_ready(self, config):
        readiness = calculate_meddpicc_score([], config).stage_gate_readiness
        assert readiness["Engaging_to_Advancing"] is True
        assert readiness["Prospecting_to_Engaging"] is False

    def test_next_action_wording(self, config):
        assessment = calculate_meddpicc_score([], config)
        assert "Complete Metrics assessment - currently 0% complete" in assessment.next_actions


class TestLevels:
    def test_levels(self):
        thresholds = Thresholds()
        assert get_meddpicc_level(85, thresholds)["level"] == "Excellent"
        assert get_meddpicc_level(80, thresholds)["level"] == "Excellent"
        assert get_meddpicc_level(65, thresholds)["level"] == "Good"
        assert get_meddpicc_level(40, thresholds)["level"] == "Fair"
        assert get_meddpicc_level(39, thresholds)["level"] == "Poor"

    def test_level_without_thresholds(self):
        level = get_meddpicc_level(90, None)
        assert level["level"] == "poor"
        assert level["color"] == "text-red-600"

    def test_qualification_band(self):
        assert qualification_band(None) == "poor"
        assert qualification_band(79) == "good"
        assert qualification_band(80) == "excellent"
        assert qualification_band(45) == "fair"


class TestConfiguration:
    def test_default_config_is_valid(self):
        result = validate_configuration(load_yaml(DEFAULT_CONFIG_PATH))
        assert result.is_valid
        assert result.total_weight == 120
        assert any("expected 100" in w for w in result.warnings)

    def test_missing_fields_and_pillars(self):
        result = validate_configuration({"project_name": "x"})
        assert not result.is_valid
        assert "Missing required field: version" in result.errors
        assert "At least one pillar is required" in result.errors

    def test_duplicate_pillar_and_bad_weight(self):
        data = copy.deepcopy(load_yaml(DEFAULT_CONFIG_PATH))
        data["pillars"][1]["id"] = "metrics"
        data["pillars"][2]["weight"] = 150
        result = validate_configuration(data)
        assert "Duplicate pillar id: metrics" in result.errors
        assert any("between 0 and 100" in e for e in result.errors)

    def test_choice_question_without_answers(self):
        data = copy.deepcopy(load_yaml(DEFAULT_CONFIG_PATH))
        data["pillars"][0]["questions"][3]["answers"] = []
        result = validate_configuration(data)
        assert any("needs answer options" in e for e in result.errors)

    def test_duplicate_question_id(self):
        data = copy.deepcopy(load_yaml(DEFAULT_CONFIG_PATH))
        data["pillars"][0]["questions"][1]["id"] = "current_cost"
        result = validate_configuration(data)
        assert not result.is_valid
        assert any("duplicate question id: current_cost" in e for e in result.errors)

    def test_answer_points_out_of_range(self):
        data = copy.deepcopy(load_yaml(DEFAULT_CONFIG_PATH))
        data["pillars"][0]["questions"][3]["answers"][0]["points"] = 11
        result = validate_configuration(data)
        assert any("urgency_level has answer points outside 0-10" in e for e in result.errors)

    def test_parse_invalid_raises(self):
        with pytest.raises(ConfigError) as exc:
            parse_configuration({"pillars": []})
        assert exc.value.code == "CONFIG_ERROR"
        assert exc.value.details["errors"]

    def test_non_dict_config(self):
        assert not validate_configuration(["nope"]).is_valid


class TestOpportunityResponses:
    def test_free_text_fills_first_question(self, config):
        responses = opportunity_to_responses({"champion": "Jane Doe, VP Ops"}, config)
        assert len(responses) == 1
        assert responses[0].pillar_id == "champion"
        assert responses[0].question_id == "champion_identity"

    def test_structured_answer_wins(self, config):
        opportunity = {
            "identify_pain": "free text",
            "meddpicc_responses": [
                {"pillar_id": "identifyPain", "question_id": "biggest_challenge", "answer": "structured"},
            ],
        }
        responses = opportunity_to_responses(opportunity, config)
        assert [r.answer for r in responses] == ["structured"]

    def test_stored_points_clamped(self, config):
        opportunity = {"meddpicc_responses": [
            {"pillar_id": "metrics", "question_id": "urgency_level", "answer": "Critical", "points": 1000},
        ]}
        responses = opportunity_to_responses(opportunity, config)
        assert responses[0].points == 10
        assert calculate_meddpicc_score(responses, config).pillar_scores["metrics"] == 25

    def test_no_config(self):
        assert opportunity_to_responses({"champion": "x"}, None) == []


class TestLegacyScore:
    def test_all_tens(self):
        fields = {f: 10 for f in ("metrics", "economic_buyer", "decision_criteria",
                                  "decision_process", "paper_process", "identify_pain",
                                  "champion", "competition")}
        assert calculate_legacy_score(fields) == 100

    def test_partial(self):
        assert calculate_legacy_score({}) == 0
        assert calculate_legacy_score({"economic_buyer": 5}) == 10


class TestResponseModel:
    @pytest.mark.parametrize("points", [-1, 10.5, 1000])
    def test_points_bounded(self, points):
        with pytest.raises(ValidationError):
            MEDDPICCResponse(pillar_id="metrics", question_id="urgency_level", points=points)


class TestScoreCache:
    @staticmethod
    def _reads(fake_db):
        return fake_db.calls.count(("opportunities", "select"))

    def test_cache_hit_skips_read(self, fake_db, seed_opportunity):
        opp = seed_opportunity(champion="Dana, VP Finance, sponsoring the business case")
        first = scoring_service.get_opportunity_score(opp["id"], ORG)
        reads = self._reads(fake_db)

        second = scoring_service.get_opportunity_score(opp["id"], ORG)
        assert self._reads(fake_db) == reads
        assert second == first
        assert first["source"] == "calculated"
        assert first["pillar_scores"]["champion"] > 0

    def test_expired_entry_recalculated(self, fake_db, seed_opportunity):
        opp = seed_opportunity()
        service = MEDDPICCScoringService(cache_ttl=300)
        service.get_opportunity_score(opp["id"], ORG)
        reads = self._reads(fake_db)

        later = time.time() + 301
        with patch("scripts.sales.meddpicc_service.time.time", return_value=later):
            service.get_opportunity_score(opp["id"], ORG)
        assert self._reads(fake_db) == reads + 1

    def test_cache_is_per_organization(self, fake_db, seed_opportunity):
        opp = seed_opportunity()
        scoring_service.get_opportunity_score(opp["id"], ORG)
        with pytest.raises(NotFoundError):
            scoring_service.get_opportunity_score(opp["id"], "org-2")

    def test_invalidate(self, fake_db, seed_opportunity):
        opp = seed_opportunity()
        scoring_service.get_opportunity_score(opp["id"], ORG)
        reads = self._reads(fake_db)
        scoring_service.invalidate_score(opp["id"])
        scoring_service.get_opportunity_score(opp["id"], ORG)
        assert self._reads(fake_db) == reads + 1

"""
PEAK CRM — MEDDPICC Scorer
============================

Weighted deal-qualification scoring over a configurable framework of
pillars and questions (configs/meddpicc.yaml by default).

Scoring:
  text questions        up to 10 pts (length bands + quality keyword bonus)
  scale / yes_no / mc   the points of the chosen answer
  pillar %              score / (10 x questions) x 100
  overall %             sum(pillar% x weight) / sum(weight)
  litmus %              litmus points / (10 x litmus questions) x 100

Functions:
  load_default_config()        - Framework from YAML (cached)
  parse_configuration()        - Validate a dict and build MEDDPICCConfig
  validate_configuration()     - Errors / warnings / total weight for a dict
  score_text_answer()          - Points for a free-text answer
  calculate_meddpicc_score()   - Full assessment for a list of responses
  get_meddpicc_level()         - Level, colour and description for a score
  qualification_band()         - Lowercase band used for stored scores
  check_stage_gate_readiness() - Gate key -> ready flag
  unmet_gate_criteria()        - Criteria blocking one gate
  opportunity_to_responses()   - Free-text opportunity columns -> responses
  calculate_legacy_score()     - Flat 0-10 per field weighted score
"""
from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import ValidationError

from models.meddpicc_models import (
    ConfigValidationResult,
    MEDDPICCAssessment,
    MEDDPICCConfig,
    MEDDPICCResponse,
    StageGate,
    Thresholds,
)
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import load_yaml

logger = setup_logger("meddpicc")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "configs" / "meddpicc.yaml"

LITMUS_PILLAR_ID = "litmus"
MAX_QUESTION_POINTS = 10
NEXT_ACTION_THRESHOLD = 50
GATE_THRESHOLD = 50
MAX_KEYWORD_BONUS = 2

QUALITY_KEYWORDS = [
    "specific", "measurable", "quantified", "roi", "impact",
    "cost", "savings", "efficiency", "revenue", "profit",
    "test", "quality", "improvement", "lives", "saved",
]

# Text length -> points, checked cumulatively
TEXT_LENGTH_POINTS = [(1, 3), (3, 2), (10, 2), (25, 2), (50, 1)]

# Only these gate criteria have a measurable rule; the rest never block
CRITERION_PILLARS = {
    "Pain identified": "identifyPain",
    "Champion identified": "champion",
    "Budget confirmed": "economicBuyer",
}

# Opportunity text column -> pillar id
OPPORTUNITY_FIELD_PILLARS = {
    "metrics": "metrics",
    "economic_buyer": "economicBuyer",
    "decision_criteria": "decisionCriteria",
    "decision_process": "decisionProcess",
    "paper_process": "paperProcess",
    "identify_pain": "identifyPain",
    "implicate_pain": "implicatePain",
    "champion": "champion",
    "competition": "competition",
}

LEGACY_FIELD_WEIGHTS = {
    "metrics": 15,
    "economic_buyer": 20,
    "decision_criteria": 10,
    "decision_process": 15,
    "paper_process": 5,
    "identify_pain": 20,
    "champion": 10,
    "competition": 5,
}

CONFIG_UNAVAILABLE_ACTION = "Configuration not available - please refresh the page"

ResponseLike = Union[MEDDPICCResponse, dict]

_default_config: Optional[MEDDPICCConfig] = None


def _round(value: float) -> int:
    """Round half up, so 62.5 -> 63 rather than banker's rounding."""
    return int(math.floor(value + 0.5))


# ─── Configuration ──────────────────────────────────────────

def validate_configuration(data: dict) -> ConfigValidationResult:
    """
    Check a raw framework dict before it is stored or used.

    Errors make the config unusable; warnings are advisory (for example,
    weights that don't add up to 100).
    """
    errors: list[str] = []
    warnings: list[str] = []
    total_weight = 0.0

    if not isinstance(data, dict):
        return ConfigValidationResult(is_valid=False, errors=["Configuration must be an object"])

    for field in ("project_name", "version", "framework"):
        if not str(data.get(field) or "").strip():
            errors.append(f"Missing required field: {field}")

    pillars = data.get("pillars") or []
    if not isinstance(pillars, list) or not pillars:
        errors.append("At least one pillar is required")
        pillars = []

    seen_pillars = set()
    for index, pillar in enumerate(pillars):
        if not isinstance(pillar, dict):
            errors.append(f"Pillar {index + 1} must be an object")
            continue
        pillar_id = str(pillar.get("id") or "").strip()
        label = pillar_id or f"#{index + 1}"
        if not pillar_id:
            errors.append(f"Pillar {label} is missing an id")
        elif pillar_id in seen_pillars:
            errors.append(f"Duplicate pillar id: {pillar_id}")
        seen_pillars.add(pillar_id)

        if not str(pillar.get("display_name") or "").strip():
            errors.append(f"Pillar {label} is missing a display name")

        try:
            weight = float(pillar.get("weight", 0))
        except (TypeError, ValueError):
            errors.append(f"Pillar {label} has a non-numeric weight")
            weight = 0.0
        if weight < 0 or weight > 100:
            errors.append(f"Pillar {label} weight must be between 0 and 100")
        total_weight += weight

        questions = pillar.get("questions") or []
        if not questions:
            errors.append(f"Pillar {label} must have at least one question")
        errors.extend(_validate_questions(questions, f"Pillar {label}"))

    litmus = data.get("litmus_test") or {}
    errors.extend(_validate_questions(litmus.get("questions") or [], "Litmus test"))

    if pillars and total_weight != 100:
        warnings.append(f"Pillar weights sum to {total_weight:g}, expected 100")

    thresholds = (data.get("scoring") or {}).get("thresholds") or {}
    if thresholds:
        ordered = [thresholds.get(k, 0) for k in ("excellent", "good", "fair", "poor")]
        if ordered != sorted(ordered, reverse=True):
            warnings.append("Thresholds should descend: excellent > good > fair > poor")

    return ConfigValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        total_weight=total_weight,
    )


def _validate_questions(questions: list, owner: str) -> list[str]:
    errors = []
    seen = set()
    for question in questions:
        if not isinstance(question, dict):
            errors.append(f"{owner} has a malformed question")
            continue
        qid = str(question.get("id") or "").strip()
        if not qid:
            errors.append(f"{owner} has a question without an id")
            continue
        if qid in seen:
            errors.append(f"{owner} has duplicate question id: {qid}")
        seen.add(qid)

        qtype = question.get("type", "text")
        if qtype not in ("text", "scale", "multiple_choice", "yes_no"):
            errors.append(f"{owner} question {qid} has unknown type '{qtype}'")
        if qtype in ("scale", "yes_no", "multiple_choice"):
            answers = question.get("answers") or []
            if not answers:
                errors.append(f"{owner} question {qid} needs answer options")
            for answer in answers:
                points = answer.get("points") if isinstance(answer, dict) else None
                if not isinstance(points, (int, float)) or not 0 <= points <= MAX_QUESTION_POINTS:
                    errors.append(
                        f"{owner} question {qid} has answer points outside 0-{MAX_QUESTION_POINTS}"
                    )
                    break
    return errors


def parse_configuration(data: dict, source: str = None) -> MEDDPICCConfig:
    """
    Validate a raw framework dict and build the typed config.

    Raises:
        ConfigError: With the validation errors attached.
    """
    result = validate_configuration(data)
    if not result.is_valid:
        raise ConfigError(
            f"Invalid MEDDPICC configuration: {'; '.join(result.errors)}",
            config_path=source, errors=result.errors,
        )
    try:
        return MEDDPICCConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid MEDDPICC configuration: {e}", config_path=source,
        )


def load_default_config(path: str | Path = None, refresh: bool = False) -> MEDDPICCConfig:
    """Load the YAML framework (MEDDPICC_CONFIG_PATH overrides the path)."""
    global _default_config
    if _default_config is not None and path is None and not refresh:
        return _default_config

    config_path = Path(path or os.getenv("MEDDPICC_CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    config = parse_configuration(load_yaml(config_path), source=str(config_path))
    logger.info(
        "Loaded MEDDPICC framework '%s' v%s (%d pillars) from %s",
        config.framework, config.version, len(config.pillars), config_path.name,
    )
    if path is None:
        _default_config = config
    return config


# ─── Scoring ────────────────────────────────────────────────

def score_text_answer(text: str) -> int:
    """Points (0-10) for a free-text answer: length bands plus keyword bonus."""
    text = (text or "").strip()
    points = 0
    for min_length, band_points in TEXT_LENGTH_POINTS:
        if len(text) >= min_length:
            points += band_points

    lowered = text.lower()
    keyword_hits = sum(1 for keyword in QUALITY_KEYWORDS if keyword in lowered)
    points += min(keyword_hits, MAX_KEYWORD_BONUS)

    return min(points, MAX_QUESTION_POINTS)


def _capped_points(value) -> Optional[float]:
    """Clamp stored answer points into 0-10; unreadable values count as unanswered."""
    if value is None:
        return None
    try:
        return max(0.0, min(float(value), MAX_QUESTION_POINTS))
    except (TypeError, ValueError):
        return None


def _normalize(responses: Iterable[ResponseLike]) -> list[MEDDPICCResponse]:
    normalized = []
    for r in responses or []:
        if not isinstance(r, MEDDPICCResponse):
            # rows saved before points were bounded may hold anything
            r = MEDDPICCResponse.model_validate({**r, "points": _capped_points(r.get("points"))})
        normalized.append(r)
    return normalized


def _points(response: MEDDPICCResponse) -> float:
    return _capped_points(response.points) or 0


def _find(responses: list[MEDDPICCResponse], pillar_id: str, question_id: str):
    for response in responses:
        if response.pillar_id == pillar_id and response.question_id == question_id:
            return response
    return None


def _answer_text(response: Optional[MEDDPICCResponse]) -> str:
    if response is None or response.answer is None:
        return ""
    return str(response.answer).strip()


def calculate_meddpicc_score(
    responses: Iterable[ResponseLike],
    config: Optional[MEDDPICCConfig],
) -> MEDDPICCAssessment:
    """
    Score a set of responses against a framework.

    A missing config (or one without pillars) yields an empty assessment
    instead of an error so the UI can still render.
    """
    responses = _normalize(responses)

    if config is None or not config.pillars:
        logger.warning("MEDDPICC configuration unavailable, returning empty assessment")
        return MEDDPICCAssessment(
            responses=responses,
            qualification_level="poor",
            next_actions=[CONFIG_UNAVAILABLE_ACTION],
        )

    pillar_scores: dict[str, int] = {}
    for pillar in config.pillars:
        if not pillar.questions:
            pillar_scores[pillar.id] = 0
            continue

        score = 0.0
        max_score = 0
        for question in pillar.questions:
            max_score += MAX_QUESTION_POINTS
            response = _find(responses, pillar.id, question.id)
            answer = _answer_text(response)
            if not answer:
                continue
            if question.type == "text":
                score += score_text_answer(answer)
            else:
                score += _points(response)

        pillar_scores[pillar.id] = _round(score / max_score * 100)

    litmus_points = 0.0
    litmus_max = 0
    for question in config.litmus_test.questions:
        litmus_max += MAX_QUESTION_POINTS
        response = _find(responses, LITMUS_PILLAR_ID, question.id)
        if response is not None:
            litmus_points += _points(response)
    litmus_score = _round(litmus_points / litmus_max * 100) if litmus_max else 0

    weighted = 0.0
    total_weight = 0.0
    for pillar in config.pillars:
        weighted += pillar_scores.get(pillar.id, 0) / 100 * pillar.weight
        total_weight += pillar.weight
    overall = _round(weighted / total_weight * 100) if total_weight > 0 else 0

    return MEDDPICCAssessment(
        responses=responses,
        pillar_scores=pillar_scores,
        overall_score=overall,
        qualification_level=get_meddpicc_level(overall, config.scoring.thresholds)["level"],
        litmus_test_score=litmus_score,
        next_actions=generate_next_actions(pillar_scores, config),
        stage_gate_readiness=check_stage_gate_readiness(pillar_scores, config),
    )


def get_meddpicc_level(score: float, thresholds: Optional[Thresholds] = None) -> dict:
    """Qualification level, display colour and description for an overall score."""
    if thresholds is None:
        return {
            "level": "poor",
            "color": "text-red-600",
            "description": "Unable to determine qualification level",
        }

    if score >= thresholds.excellent:
        return {
            "level": "Excellent",
            "color": "bg-green-500",
            "description": "High probability of closing - all key areas covered",
        }
    if score >= thresholds.good:
        return {
            "level": "Good",
            "color": "bg-blue-500",
            "description": "Good qualification - some areas need attention",
        }
    if score >= thresholds.fair:
        return {
            "level": "Fair",
            "color": "bg-yellow-500",
            "description": "Moderate qualification - several areas need work",
        }
    return {
        "level": "Poor",
        "color": "bg-red-500",
        "description": "Low qualification - significant gaps to address",
    }


def qualification_band(score: Optional[float], thresholds: Optional[Thresholds] = None) -> str:
    """Lowercase band (excellent/good/fair/poor) for dashboards and stored scores."""
    return get_meddpicc_level(score or 0, thresholds or Thresholds())["level"].lower()


def generate_next_actions(pillar_scores: dict, config: MEDDPICCConfig) -> list[str]:
    actions = []
    for pillar in config.pillars:
        pct = pillar_scores.get(pillar.id, 0)
        if pct < NEXT_ACTION_THRESHOLD:
            actions.append(
                f"Complete {pillar.display_name} assessment - currently {pct}% complete"
            )
    return actions


def gate_key(gate: StageGate) -> str:
    return f"{gate.from_}_to_{gate.to}"


def unmet_gate_criteria(pillar_scores: dict, gate: StageGate) -> list[str]:
    """Criteria of one gate whose pillar score is under the gate threshold."""
    unmet = []
    for criterion in gate.criteria:
        pillar_id = CRITERION_PILLARS.get(criterion)
        if pillar_id and pillar_scores.get(pillar_id, 0) < GATE_THRESHOLD:
            unmet.append(criterion)
    return unmet


def check_stage_gate_readiness(pillar_scores: dict, config: MEDDPICCConfig) -> dict[str, bool]:
    return {
        gate_key(gate): not unmet_gate_criteria(pillar_scores, gate)
        for gate in config.stage_gates
    }


def find_stage_gate(config: MEDDPICCConfig, from_name: str, to_name: str) -> Optional[StageGate]:
    for gate in config.stage_gates:
        if gate.from_ == from_name and gate.to == to_name:
            return gate
    return None


# ─── Opportunity Helpers ────────────────────────────────────

def opportunity_to_responses(opportunity: dict, config: Optional[MEDDPICCConfig]) -> list[MEDDPICCResponse]:
    """
    Build responses from an opportunity row.

    Structured answers saved in meddpicc_responses win; each non-empty
    free-text pillar column fills the first question of its pillar when
    that question has no structured answer.
    """
    if config is None or not config.pillars:
        return []

    responses = _normalize(opportunity.get("meddpicc_responses") or [])

    for field, pillar_id in OPPORTUNITY_FIELD_PILLARS.items():
        text = (opportunity.get(field) or "").strip()
        if not text:
            continue
        pillar = config.pillar(pillar_id)
        if pillar is None or not pillar.questions:
            continue
        first_question = pillar.questions[0]
        if _answer_text(_find(responses, pillar_id, first_question.id)):
            continue
        responses.append(MEDDPICCResponse(
            pillar_id=pillar_id,
            question_id=first_question.id,
            answer=text,
            points=0,
        ))

    return responses


def calculate_legacy_score(field_scores: dict) -> int:
    """Flat weighted score from 0-10 ratings keyed by legacy field name."""
    total = 0.0
    max_possible = 0
    for field, weight in LEGACY_FIELD_WEIGHTS.items():
        total += (field_scores.get(field) or 0) / 10 * weight
        max_possible += weight
    return _round(total / max_possible * 100)

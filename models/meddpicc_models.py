"""
PEAK CRM — MEDDPICC Pydantic Models
=====================================

The qualification framework tree (pillars, questions, answers, litmus
test, stage gates), scoring inputs and the assessment returned by the
scorer.
"""
from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field


QUESTION_TYPE_PATTERN = r"^(text|scale|multiple_choice|yes_no)$"


# ─── Framework Configuration ────────────────────────────────

class AnswerOption(BaseModel):
    text: str
    points: float = 0


class Question(BaseModel):
    id: str
    text: str
    tooltip: Optional[str] = None
    type: str = Field("text", pattern=QUESTION_TYPE_PATTERN)
    answers: list[AnswerOption] = Field(default_factory=list)
    required: bool = True


class Pillar(BaseModel):
    id: str
    display_name: str
    description: str = ""
    weight: float = 0
    questions: list[Question] = Field(default_factory=list)


class Thresholds(BaseModel):
    excellent: float = 80
    good: float = 60
    fair: float = 40
    poor: float = 20


class Scoring(BaseModel):
    thresholds: Thresholds = Field(default_factory=Thresholds)


class LitmusTest(BaseModel):
    display_name: str = "Final Qualification Gate"
    questions: list[Question] = Field(default_factory=list)


class StageGate(BaseModel):
    # "from" is a keyword, so the attribute takes a trailing underscore
    from_: str = Field(alias="from")
    to: str
    criteria: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


class MEDDPICCConfig(BaseModel):
    """A complete qualification framework."""
    project_name: str
    version: str
    framework: str
    scoring: Scoring = Field(default_factory=Scoring)
    pillars: list[Pillar] = Field(default_factory=list)
    litmus_test: LitmusTest = Field(default_factory=LitmusTest)
    stage_gates: list[StageGate] = Field(default_factory=list)

    def pillar(self, pillar_id: str) -> Optional[Pillar]:
        for p in self.pillars:
            if p.id == pillar_id:
                return p
        return None


# ─── Scoring Input / Output ─────────────────────────────────

class MEDDPICCResponse(BaseModel):
    """One answer to one question."""
    pillar_id: str
    question_id: str
    answer: Union[str, int, float, None] = None
    points: Optional[float] = Field(None, ge=0, le=10)


class MEDDPICCAssessment(BaseModel):
    """Result of scoring a set of responses."""
    responses: list[MEDDPICCResponse] = Field(default_factory=list)
    pillar_scores: dict[str, int] = Field(default_factory=dict)
    overall_score: int = 0
    qualification_level: str = "poor"
    litmus_test_score: int = 0
    next_actions: list[str] = Field(default_factory=list)
    stage_gate_readiness: dict[str, bool] = Field(default_factory=dict)


class ScoreRequest(BaseModel):
    """Ad-hoc scoring request."""
    responses: list[MEDDPICCResponse] = Field(default_factory=list)


class OpportunityMEDDPICCUpdate(BaseModel):
    """Answers saved against an opportunity.

    Either structured responses, the free-text pillar fields, or both.
    """
    responses: list[MEDDPICCResponse] = Field(default_factory=list)
    metrics: Optional[str] = Field(None, max_length=5000)
    economic_buyer: Optional[str] = Field(None, max_length=5000)
    decision_criteria: Optional[str] = Field(None, max_length=5000)
    decision_process: Optional[str] = Field(None, max_length=5000)
    paper_process: Optional[str] = Field(None, max_length=5000)
    identify_pain: Optional[str] = Field(None, max_length=5000)
    implicate_pain: Optional[str] = Field(None, max_length=5000)
    champion: Optional[str] = Field(None, max_length=5000)
    competition: Optional[str] = Field(None, max_length=5000)


class ConfigValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    total_weight: float = 0

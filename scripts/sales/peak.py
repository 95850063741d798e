"""
PEAK CRM — PEAK Pipeline
==========================

The four-stage pipeline every opportunity moves through:

  prospecting -> engaging -> advancing -> key_decision

Opportunities may only step to an adjacent stage (forward or back).
Forward moves can additionally be held to the MEDDPICC stage gate.

Functions:
  get_stage_info()       - Display name, description, colour, next stage
  is_valid_stage()       - Whether a stage id is one of the four
  allowed_transitions()  - Stages one move away
  validate_transition()  - Raise unless the move is to an adjacent stage
  is_forward()           - Whether a move goes towards key_decision
  transition_gate_key()  - Gate key ("Prospecting_to_Engaging") for a move
  check_stage_gate()     - Raise if a forward move's MEDDPICC gate is unmet
  weighted_value()       - Deal value times probability
  summarize_pipeline()   - Total / weighted value and per-stage breakdown
"""
from __future__ import annotations

from typing import Iterable, Optional

from models.meddpicc_models import MEDDPICCConfig
from scripts.lib.errors import InvalidStageError, StageGateError, StageTransitionError
from scripts.sales.meddpicc import find_stage_gate, unmet_gate_criteria

STAGES = ["prospecting", "engaging", "advancing", "key_decision"]

STAGE_INFO = {
    "prospecting": {
        "name": "Prospecting",
        "description": "Initial contact and qualification",
        "color": "bg-blue-500",
        "next_stage": "engaging",
    },
    "engaging": {
        "name": "Engaging",
        "description": "Active communication and relationship building",
        "color": "bg-yellow-500",
        "next_stage": "advancing",
    },
    "advancing": {
        "name": "Advancing",
        "description": "Solution presentation and negotiation",
        "color": "bg-orange-500",
        "next_stage": "key_decision",
    },
    "key_decision": {
        "name": "Key Decision",
        "description": "Final decision and closing",
        "color": "bg-green-500",
        "next_stage": None,
    },
}


def get_stage_info(stage: Optional[str]) -> dict:
    """Stage display info; unknown stages fall back to prospecting."""
    key = stage if stage in STAGE_INFO else "prospecting"
    return {"id": key, **STAGE_INFO[key]}


def is_valid_stage(stage: Optional[str]) -> bool:
    return stage in STAGE_INFO


def allowed_transitions(stage: str) -> list[str]:
    """Stages reachable in one move from `stage`."""
    if not is_valid_stage(stage):
        raise InvalidStageError(stage)
    index = STAGES.index(stage)
    return [STAGES[i] for i in (index - 1, index + 1) if 0 <= i < len(STAGES)]


def validate_transition(current: str, target: str) -> bool:
    """
    Check a stage move.

    Returns:
        True if the stage actually changes, False for a no-op.

    Raises:
        InvalidStageError: Either stage is not a PEAK stage.
        StageTransitionError: The target is not adjacent to the current stage.
    """
    if not is_valid_stage(target):
        raise InvalidStageError(target)
    if not is_valid_stage(current):
        raise InvalidStageError(current)
    if current == target:
        return False
    allowed = allowed_transitions(current)
    if target not in allowed:
        raise StageTransitionError(current, target, allowed=allowed)
    return True


def is_forward(current: str, target: str) -> bool:
    return STAGES.index(target) > STAGES.index(current)


def transition_gate_key(current: str, target: str) -> str:
    """Readiness key for a move, e.g. 'Prospecting_to_Engaging'."""
    return f"{STAGE_INFO[current]['name']}_to_{STAGE_INFO[target]['name']}"


def check_stage_gate(
    current: str,
    target: str,
    pillar_scores: dict,
    config: Optional[MEDDPICCConfig],
):
    """
    Raise StageGateError when a forward move's gate criteria are unmet.
    Backward moves and stages without a configured gate always pass.
    """
    if config is None or not is_forward(current, target):
        return
    gate = find_stage_gate(config, STAGE_INFO[current]["name"], STAGE_INFO[target]["name"])
    if gate is None:
        return
    unmet = unmet_gate_criteria(pillar_scores, gate)
    if unmet:
        raise StageGateError(transition_gate_key(current, target), unmet)


def weighted_value(opportunity: dict) -> float:
    value = float(opportunity.get("deal_value") or 0)
    probability = float(opportunity.get("probability") or 0)
    return value * probability / 100


def summarize_pipeline(opportunities: Iterable[dict]) -> dict:
    """
    Pipeline totals plus a per-stage breakdown in PEAK order.
    Rows with an unknown stage are counted under prospecting.
    """
    by_stage = {
        stage: {
            "stage": stage,
            "name": STAGE_INFO[stage]["name"],
            "color": STAGE_INFO[stage]["color"],
            "count": 0,
            "value": 0.0,
            "weighted_value": 0.0,
        }
        for stage in STAGES
    }

    total_value = 0.0
    total_weighted = 0.0
    count = 0
    for opp in opportunities:
        stage = get_stage_info(opp.get("peak_stage"))["id"]
        value = float(opp.get("deal_value") or 0)
        weighted = weighted_value(opp)
        bucket = by_stage[stage]
        bucket["count"] += 1
        bucket["value"] += value
        bucket["weighted_value"] += weighted
        total_value += value
        total_weighted += weighted
        count += 1

    for bucket in by_stage.values():
        bucket["value"] = round(bucket["value"], 2)
        bucket["weighted_value"] = round(bucket["weighted_value"], 2)

    return {
        "total_count": count,
        "total_value": round(total_value, 2),
        "weighted_value": round(total_weighted, 2),
        "stages": [by_stage[stage] for stage in STAGES],
    }

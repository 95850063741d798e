"""
PEAK CRM — MEDDPICC Scoring Service
=====================================

Store-bound side of MEDDPICC: which framework an organization uses,
scoring an opportunity from its saved answers, and persisting the
overall score back to opportunities.meddpicc_score.

Scores are cached in-process for five minutes per (organization, opportunity); any save
refreshes the cache entry and pushes a `meddpicc_score_updated` event
through the broadcast callback (the dashboard WebSocket feed).
"""
from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from models.meddpicc_models import MEDDPICCAssessment, MEDDPICCConfig, OpportunityMEDDPICCUpdate
from scripts.lib.errors import ConfigError, NotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_row, get_client, utc_now
from scripts.sales.meddpicc import (
    OPPORTUNITY_FIELD_PILLARS,
    calculate_meddpicc_score,
    load_default_config,
    opportunity_to_responses,
    parse_configuration,
    validate_configuration,
)

logger = setup_logger("meddpicc_service")

SCORE_CACHE_TTL = 300


def get_active_config(organization_id: Optional[str]) -> MEDDPICCConfig:
    """
    The organization's active framework, or the YAML default.

    A stored override that no longer validates is logged and skipped.
    """
    if organization_id:
        try:
            result = (
                get_client().table("meddpicc_configurations")
                .select("id, version, configuration_data")
                .eq("organization_id", organization_id)
                .eq("is_active", True)
                .limit(1)
                .execute()
            )
            if result.data:
                row = result.data[0]
                return parse_configuration(
                    row.get("configuration_data") or {},
                    source=f"meddpicc_configurations:{row.get('id')}",
                )
        except ConfigError as e:
            logger.warning(
                "Stored MEDDPICC config for org %s is invalid, using default: %s",
                organization_id, e,
            )
    return load_default_config()


def save_configuration(organization_id: str, data: dict, user_id: Optional[str] = None) -> dict:
    """
    Validate and store an organization's framework as its active config.

    Raises:
        ConfigError: The configuration failed validation.
    """
    validation = validate_configuration(data)
    if not validation.is_valid:
        raise ConfigError(
            "MEDDPICC configuration failed validation", errors=validation.errors,
        )
    parse_configuration(data)

    client = get_client()
    existing = (
        client.table("meddpicc_configurations")
        .select("id, version")
        .eq("organization_id", organization_id)
        .eq("is_active", True)
        .limit(1)
        .execute()
    )

    now = utc_now()
    if existing.data:
        row = existing.data[0]
        result = (
            client.table("meddpicc_configurations")
            .update({
                "configuration_data": data,
                "version": (row.get("version") or 1) + 1,
                "modified_by": user_id,
                "updated_at": now,
            })
            .eq("id", row["id"])
            .execute()
        )
    else:
        result = client.table("meddpicc_configurations").insert({
            "organization_id": organization_id,
            "name": data.get("project_name") or "Default MEDDPICC Configuration",
            "version": 1,
            "is_active": True,
            "configuration_data": data,
            "created_by": user_id,
            "created_at": now,
            "updated_at": now,
        }).execute()

    scoring_service.clear_cache()
    saved = result.data[0] if result.data else {}
    logger.info(
        "Saved MEDDPICC config for org %s (version %s)",
        organization_id, saved.get("version"),
    )
    return {"configuration": saved, "validation": validation.model_dump()}


class MEDDPICCScoringService:
    """Scores opportunities and keeps stored scores in sync."""

    def __init__(self, cache_ttl: int = SCORE_CACHE_TTL):
        self.cache_ttl = cache_ttl
        # (organization_id, opportunity_id) -> summary
        self._cache: Dict[Tuple[Optional[str], str], dict] = {}
        self._broadcast: Optional[Callable[..., Awaitable[Any]]] = None

    def set_broadcast_callback(self, callback: Callable[..., Awaitable[Any]]):
        """Set the WebSocket broadcast used for score updates."""
        self._broadcast = callback

    def _cached(self, organization_id: Optional[str], opportunity_id: str) -> Optional[dict]:
        entry = self._cache.get((organization_id, opportunity_id))
        if entry and entry["_cached_at"] + self.cache_ttl > time.time():
            return entry
        return None

    def _remember(
        self,
        organization_id: Optional[str],
        opportunity_id: str,
        assessment: MEDDPICCAssessment,
        source: str,
    ) -> dict:
        entry = {
            "opportunity_id": opportunity_id,
            "score": assessment.overall_score,
            "qualification_level": assessment.qualification_level,
            "pillar_scores": assessment.pillar_scores,
            "source": source,
            "last_calculated": utc_now(),
            "_cached_at": time.time(),
        }
        self._cache[(organization_id, opportunity_id)] = entry
        return entry

    def invalidate_score(self, opportunity_id: str):
        for key in [k for k in self._cache if k[1] == opportunity_id]:
            del self._cache[key]

    def clear_cache(self):
        self._cache.clear()

    def assess(self, opportunity: dict, config: Optional[MEDDPICCConfig] = None) -> MEDDPICCAssessment:
        """Full assessment of an opportunity row (no caching, no writes)."""
        config = config or get_active_config(opportunity.get("organization_id"))
        return calculate_meddpicc_score(opportunity_to_responses(opportunity, config), config)

    def get_opportunity_score(self, opportunity_id: str, organization_id: str) -> dict:
        """
        Cached score summary for an opportunity.

        Raises:
            NotFoundError: Opportunity is not in the organization.
        """
        cached = self._cached(organization_id, opportunity_id)
        if cached:
            return {k: v for k, v in cached.items() if not k.startswith("_")}

        opportunity = fetch_row("opportunities", opportunity_id, organization_id=organization_id)
        if not opportunity:
            raise NotFoundError("Opportunity", opportunity_id)

        entry = self._remember(organization_id, opportunity_id, self.assess(opportunity), "calculated")
        return {k: v for k, v in entry.items() if not k.startswith("_")}

    async def update_opportunity_score(
        self,
        opportunity_id: str,
        assessment: MEDDPICCAssessment,
        organization_id: Optional[str] = None,
    ):
        """Persist the overall score, refresh the cache and broadcast it."""
        query = get_client().table("opportunities").update({
            "meddpicc_score": assessment.overall_score,
            "updated_at": utc_now(),
        }).eq("id", opportunity_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        query.execute()

        self._remember(organization_id, opportunity_id, assessment, "database")
        logger.info(
            "Updated MEDDPICC score for opportunity %s: %d%%",
            opportunity_id, assessment.overall_score,
        )

        if self._broadcast:
            await self._broadcast({
                "event": "meddpicc_score_updated",
                "data": {
                    "opportunity_id": opportunity_id,
                    "score": assessment.overall_score,
                    "qualification_level": assessment.qualification_level,
                },
            }, organization_id)

    async def save_responses(
        self,
        opportunity_id: str,
        organization_id: str,
        update: OpportunityMEDDPICCUpdate,
    ) -> MEDDPICCAssessment:
        """
        Store MEDDPICC answers on an opportunity, rescore and persist.

        Raises:
            NotFoundError: Opportunity is not in the organization.
        """
        opportunity = fetch_row("opportunities", opportunity_id, organization_id=organization_id)
        if not opportunity:
            raise NotFoundError("Opportunity", opportunity_id)

        changes: dict = {}
        for field in OPPORTUNITY_FIELD_PILLARS:
            value = getattr(update, field)
            if value is not None:
                changes[field] = value
        if update.responses:
            merged = {
                (r.get("pillar_id"), r.get("question_id")): r
                for r in opportunity.get("meddpicc_responses") or []
            }
            for response in update.responses:
                merged[(response.pillar_id, response.question_id)] = response.model_dump()
            changes["meddpicc_responses"] = list(merged.values())

        if changes:
            changes["updated_at"] = utc_now()
            get_client().table("opportunities").update(changes).eq("id", opportunity_id).execute()
            opportunity.update(changes)

        config = get_active_config(organization_id)
        assessment = self.assess(opportunity, config)
        await self.update_opportunity_score(opportunity_id, assessment, organization_id)
        return assessment


# Singleton service
scoring_service = MEDDPICCScoringService()


def batch_rescore_opportunities(organization_id: Optional[str] = None, limit: int = 1000) -> dict:
    """
    Recompute meddpicc_score for open opportunities (optionally one org),
    writing only scores that changed.
    """
    query = get_client().table("opportunities").select("*").eq("status", "open")
    if organization_id:
        query = query.eq("organization_id", organization_id)
    opportunities = query.limit(limit).execute().data or []

    configs: Dict[Optional[str], MEDDPICCConfig] = {}
    stats = {"processed": 0, "updated": 0, "errors": 0}
    for opportunity in opportunities:
        stats["processed"] += 1
        org_id = opportunity.get("organization_id")
        try:
            if org_id not in configs:
                configs[org_id] = get_active_config(org_id)
            assessment = scoring_service.assess(opportunity, configs[org_id])
            if assessment.overall_score != opportunity.get("meddpicc_score"):
                get_client().table("opportunities").update({
                    "meddpicc_score": assessment.overall_score,
                    "updated_at": utc_now(),
                }).eq("id", opportunity["id"]).execute()
                scoring_service.invalidate_score(opportunity["id"])
                stats["updated"] += 1
        except Exception as e:
            logger.error("Failed to rescore opportunity %s: %s", opportunity.get("id"), e)
            stats["errors"] += 1

    logger.info(
        "MEDDPICC rescoring complete: %d processed, %d updated, %d errors",
        stats["processed"], stats["updated"], stats["errors"],
    )
    return stats

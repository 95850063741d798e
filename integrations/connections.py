"""
Integration Connections
========================

Per-organization credentials for Monday.com, SharePoint and Slack, kept
in the integration_connections table (one row per organization and
provider). Clients built here fall back to the .env defaults only for
the organization named in DEFAULT_INTEGRATION_ORG_ID; every other
organization needs its own stored connection.

Also sends the deal notifications the pipeline routers fire after a
stage move or a close; notification failures are logged, never raised.
"""
from __future__ import annotations

import os
from typing import Optional

from integrations.monday import MondayClient
from integrations.sharepoint import SharePointClient
from integrations.slack import SlackIntegration
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, utc_now

logger = setup_logger("integration_connections")

PROVIDERS = ("monday", "sharepoint", "slack")

# Credential keys never returned to the browser
SECRET_KEYS = {"api_token", "client_secret", "bot_token"}


def redact(connection: Optional[dict]) -> Optional[dict]:
    if not connection:
        return connection
    credentials = connection.get("credentials") or {}
    return {
        **connection,
        "credentials": {
            k: ("********" if k in SECRET_KEYS and v else v) for k, v in credentials.items()
        },
    }


def get_connection(organization_id: str, provider: str) -> Optional[dict]:
    result = (
        get_client().table("integration_connections")
        .select("*")
        .eq("organization_id", organization_id)
        .eq("integration_type", provider)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def list_connections(organization_id: str) -> list[dict]:
    result = (
        get_client().table("integration_connections")
        .select("*")
        .eq("organization_id", organization_id)
        .execute()
    )
    return [redact(row) for row in result.data or []]


def save_connection(organization_id: str, provider: str, credentials: dict,
                    settings: Optional[dict] = None, user_id: Optional[str] = None) -> dict:
    """Create or replace the organization's connection for a provider."""
    if provider not in PROVIDERS:
        raise ValueError(f"Unknown integration provider: {provider}")
    row = {
        "organization_id": organization_id,
        "integration_type": provider,
        "credentials": credentials,
        "settings": settings or {},
        "status": "active",
        "created_by": user_id,
        "updated_at": utc_now(),
    }
    result = (
        get_client().table("integration_connections")
        .upsert(row, on_conflict="organization_id,integration_type")
        .execute()
    )
    logger.info("Saved %s connection for org %s", provider, organization_id)
    return redact(result.data[0] if result.data else row)


def delete_connection(organization_id: str, provider: str) -> bool:
    result = (
        get_client().table("integration_connections")
        .delete()
        .eq("organization_id", organization_id)
        .eq("integration_type", provider)
        .execute()
    )
    removed = bool(result.data)
    if removed:
        logger.info("Removed %s connection for org %s", provider, organization_id)
    return removed


def env_fallback_allowed(organization_id: Optional[str]) -> bool:
    """Only the operator's own organization (DEFAULT_INTEGRATION_ORG_ID) may use .env credentials."""
    default_org = os.getenv("DEFAULT_INTEGRATION_ORG_ID", "")
    return bool(default_org) and organization_id == default_org


def _credentials(organization_id: Optional[str], provider: str) -> tuple[dict, dict]:
    if not organization_id:
        return {}, {}
    connection = get_connection(organization_id, provider)
    if not connection or connection.get("status", "active") != "active":
        return {}, {}
    return connection.get("credentials") or {}, connection.get("settings") or {}


def monday_client_for(organization_id: Optional[str]) -> MondayClient:
    credentials, _ = _credentials(organization_id, "monday")
    return MondayClient(
        api_token=credentials.get("api_token"),
        use_env=env_fallback_allowed(organization_id),
    )


def sharepoint_client_for(organization_id: Optional[str]) -> SharePointClient:
    credentials, settings = _credentials(organization_id, "sharepoint")
    return SharePointClient(
        tenant_id=credentials.get("tenant_id"),
        client_id=credentials.get("client_id"),
        client_secret=credentials.get("client_secret"),
        site_id=settings.get("site_id") or credentials.get("site_id"),
        use_env=env_fallback_allowed(organization_id),
    )


def slack_client_for(organization_id: Optional[str]) -> SlackIntegration:
    credentials, settings = _credentials(organization_id, "slack")
    return SlackIntegration(
        bot_token=credentials.get("bot_token"),
        default_channel=settings.get("default_channel"),
        use_env=env_fallback_allowed(organization_id),
    )


async def notify_stage_change(organization_id: str, opportunity: dict, from_stage: str, to_stage: str):
    try:
        slack = slack_client_for(organization_id)
        if slack.is_configured and slack.default_channel:
            await slack.notify_stage_change(opportunity, from_stage, to_stage)
    except Exception as e:
        logger.warning("Slack stage notification for %s failed: %s", opportunity.get("id"), e)


async def notify_deal_closed(organization_id: str, opportunity: dict):
    try:
        slack = slack_client_for(organization_id)
        if slack.is_configured and slack.default_channel:
            await slack.notify_deal_closed(opportunity)
    except Exception as e:
        logger.warning("Slack close notification for %s failed: %s", opportunity.get("id"), e)

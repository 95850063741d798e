"""
PEAK CRM — Integration Request Models
=======================================

Connection credentials and payloads for the Monday.com, SharePoint and
Slack endpoints.
"""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

MONDAY_BOARD_KIND_PATTERN = r"^(public|private|share)$"
MONDAY_WEBHOOK_EVENT_PATTERN = (
    r"^(create_item|change_column_value|change_status_column_value|create_update|item_deleted)$"
)


# ─── Connections ────────────────────────────────────────────

class MondayConnectionRequest(BaseModel):
    api_token: str = Field(..., min_length=1, max_length=2000)
    board_id: Optional[str] = Field(None, max_length=50, description="Board opportunities sync to")
    column_map: Optional[dict[str, str]] = Field(None, description="CRM field -> Monday.com column id")


class SharePointConnectionRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=100)
    client_id: str = Field(..., min_length=1, max_length=100)
    client_secret: str = Field(..., min_length=1, max_length=500)
    site_id: Optional[str] = Field(None, max_length=500)


class SlackConnectionRequest(BaseModel):
    bot_token: str = Field(..., min_length=1, max_length=500)
    default_channel: Optional[str] = Field(None, max_length=100)


# ─── Monday.com ─────────────────────────────────────────────

class MondayItemCreate(BaseModel):
    item_name: str = Field(..., min_length=1, max_length=255)
    group_id: Optional[str] = None
    column_values: dict[str, Any] = Field(default_factory=dict)


class MondayItemUpdate(BaseModel):
    column_values: dict[str, Any] = Field(..., min_length=1)


class MondayBoardCreate(BaseModel):
    board_name: str = Field(..., min_length=1, max_length=255)
    board_kind: str = Field("public", pattern=MONDAY_BOARD_KIND_PATTERN)
    workspace_id: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)


class MondayWebhookCreate(BaseModel):
    url: str = Field(..., min_length=1, max_length=1000)
    event: str = Field(..., pattern=MONDAY_WEBHOOK_EVENT_PATTERN)
    config: Optional[dict[str, Any]] = None


# ─── SharePoint ─────────────────────────────────────────────

class SharePointFolderRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    parent_path: str = "/"
    site_id: Optional[str] = None


# ─── Slack ──────────────────────────────────────────────────

class SlackMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    channel: Optional[str] = Field(None, max_length=100)

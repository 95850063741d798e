"""
Slack Integration
==================

Posts deal notifications into Slack and lists channels / users for the
connection settings screen.

Notification types:
- opportunity_update   stage moves
- deal_closed          won / lost
- lead_assigned        new owner on a lead
- meeting_reminder     upcoming meeting activity
- task_due             task activity due

Setup:
1. api.slack.com/apps -> Create App -> OAuth & Permissions
2. Bot scopes: chat:write, channels:read, users:read
3. Set SLACK_BOT_TOKEN (and SLACK_DEFAULT_CHANNEL) in .env, or store them
   on the organization's slack connection
"""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import aiohttp

from scripts.lib.errors import IntegrationNotConfiguredError, SlackAPIError
from scripts.lib.logger import setup_logger
from scripts.sales.peak import get_stage_info

logger = setup_logger("slack_integration")

SLACK_API_URL = "https://slack.com/api"

NOTIFICATION_TYPES = (
    "opportunity_update", "lead_assigned", "meeting_reminder", "deal_closed", "task_due",
)


def _money(value) -> str:
    return f"${float(value or 0):,.0f}"


class SlackIntegration:
    """Slack Web API connector."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        default_channel: Optional[str] = None,
        use_env: bool = True,
    ):
        env = os.getenv if use_env else (lambda key, default="": default)
        self.bot_token = bot_token or env("SLACK_BOT_TOKEN", "")
        self.default_channel = default_channel or env("SLACK_DEFAULT_CHANNEL", "")

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    async def _request(self, method: str, api_method: str, json_body: dict = None,
                       params: dict = None) -> Dict:
        """
        Call a Slack Web API method.

        Raises:
            IntegrationNotConfiguredError: No bot token.
            SlackAPIError: HTTP failure or `ok: false` in the response.
        """
        if not self.is_configured:
            raise IntegrationNotConfiguredError("slack")

        url = f"{SLACK_API_URL}/{api_method}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method, url, headers=self._headers(), json=json_body, params=params,
                ) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        logger.error("Slack %s returned %d: %s", api_method, resp.status, text[:200])
                        raise SlackAPIError(
                            f"Slack {api_method} returned {resp.status}", status_code=resp.status,
                        )
                    data = await resp.json()
        except aiohttp.ClientError as e:
            logger.error("Slack API error: %s", e)
            raise SlackAPIError(f"Slack request failed: {e}")

        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            logger.error("Slack %s failed: %s", api_method, error)
            raise SlackAPIError(f"Slack {api_method} failed: {error}", slack_error=error)
        return data

    async def post_message(self, text: str, channel: Optional[str] = None,
                           blocks: Optional[List[Dict]] = None) -> Dict:
        channel = channel or self.default_channel
        if not channel:
            raise SlackAPIError("No Slack channel given and no default configured", status_code=400)
        body: Dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            body["blocks"] = blocks
        data = await self._request("POST", "chat.postMessage", body)
        return {"channel": data.get("channel"), "ts": data.get("ts")}

    async def list_channels(self, limit: int = 200) -> List[Dict]:
        data = await self._request(
            "GET", "conversations.list",
            params={"limit": limit, "exclude_archived": "true", "types": "public_channel,private_channel"},
        )
        return [
            {"id": c["id"], "name": c.get("name"), "is_private": c.get("is_private", False)}
            for c in data.get("channels", [])
        ]

    async def list_users(self, limit: int = 200) -> List[Dict]:
        data = await self._request("GET", "users.list", params={"limit": limit})
        return [
            {
                "id": u["id"],
                "name": u.get("real_name") or u.get("name"),
                "email": (u.get("profile") or {}).get("email"),
            }
            for u in data.get("members", [])
            if not u.get("deleted") and not u.get("is_bot")
        ]

    async def notify(self, notification_type: str, text: str, channel: Optional[str] = None) -> Dict:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown Slack notification type: {notification_type}")
        logger.info("Sending %s notification to Slack", notification_type)
        return await self.post_message(text, channel)

    async def notify_stage_change(self, opportunity: dict, from_stage: str, to_stage: str,
                                  channel: Optional[str] = None) -> Dict:
        text = (
            f":arrow_right: *{opportunity.get('name', 'Opportunity')}* moved from "
            f"{get_stage_info(from_stage)['name']} to {get_stage_info(to_stage)['name']} "
            f"({_money(opportunity.get('deal_value'))})"
        )
        return await self.notify("opportunity_update", text, channel)

    async def notify_deal_closed(self, opportunity: dict, channel: Optional[str] = None) -> Dict:
        won = opportunity.get("status") == "won"
        text = (
            f"{':trophy:' if won else ':x:'} *{opportunity.get('name', 'Opportunity')}* "
            f"{'won' if won else 'lost'} ({_money(opportunity.get('deal_value'))})"
        )
        return await self.notify("deal_closed", text, channel)

    async def test_connection(self) -> Dict[str, Any]:
        """auth.test against the token. Never raises."""
        try:
            data = await self._request("POST", "auth.test")
        except Exception as e:
            logger.warning("Slack connection test failed: %s", e)
            return {"success": False, "error": str(e)}
        return {"success": True, "team": data.get("team"), "user": data.get("user")}

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "Slack",
            "configured": self.is_configured,
            "default_channel": self.default_channel or None,
            "features": list(NOTIFICATION_TYPES),
        }

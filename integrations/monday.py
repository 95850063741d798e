"""
Monday.com Integration
=======================

GraphQL API v2 client used to mirror CRM records onto Monday.com boards.

Covers:
- Boards, workspaces and current user
- Items: read (cursor pagination), create, update, change column, delete, archive
- Boards and webhooks: create / delete

Rate limited to 55 requests per 60s per API token, honours 429 Retry-After,
and shares a circuit breaker across clients so a failing Monday.com stops
being called for a minute.

Setup:
1. Monday.com -> Avatar -> Developers -> My Access Tokens
2. Store the token on the organization's monday connection
   (or set MONDAY_API_TOKEN in .env for a global default)
"""
from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import requests

from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import APIRateLimitError, IntegrationNotConfiguredError, MondayAPIError
from scripts.lib.logger import setup_logger

logger = setup_logger("monday_integration")

MONDAY_API_URL = "https://api.monday.com/v2"
MONDAY_API_VERSION = "2024-10"
MONDAY_RATE_LIMIT = 55  # stay under 60 req/min
MONDAY_RATE_WINDOW = 60
MAX_RATE_LIMIT_RETRIES = 3

COLUMN_VALUE_FIELDS = "id type text value column { title }"

ITEM_FIELDS = f"""
    id
    name
    state
    created_at
    updated_at
    board {{ id name }}
    group {{ id title }}
    column_values {{ {COLUMN_VALUE_FIELDS} }}
"""

GET_BOARDS = """
query ($ids: [ID!], $limit: Int, $page: Int) {
    boards (ids: $ids, limit: $limit, page: $page) {
        id name description state board_kind workspace_id items_count
        columns { id title type settings_str description }
        groups { id title color }
    }
}
"""

GET_ITEMS_FIRST_PAGE = f"""
query ($boardId: [ID!]!, $limit: Int!) {{
    boards (ids: $boardId) {{
        items_page (limit: $limit) {{
            cursor
            items {{ {ITEM_FIELDS} }}
        }}
    }}
}}
"""

GET_ITEMS_NEXT_PAGE = f"""
query ($cursor: String!, $limit: Int!) {{
    next_items_page (cursor: $cursor, limit: $limit) {{
        cursor
        items {{ {ITEM_FIELDS} }}
    }}
}}
"""

GET_ITEM = f"""
query ($itemId: [ID!]) {{
    items (ids: $itemId) {{ {ITEM_FIELDS} }}
}}
"""

GET_WORKSPACES = "query { workspaces { id name kind description } }"

GET_ME = "query { me { id name email photo_thumb is_admin is_guest } }"

CREATE_ITEM = f"""
mutation ($boardId: ID!, $itemName: String!, $groupId: String, $columnValues: JSON) {{
    create_item (board_id: $boardId, item_name: $itemName, group_id: $groupId,
                 column_values: $columnValues) {{
        id name created_at
        column_values {{ {COLUMN_VALUE_FIELDS} }}
    }}
}}
"""

UPDATE_ITEM = f"""
mutation ($itemId: ID!, $boardId: ID!, $columnValues: JSON!) {{
    change_multiple_column_values (item_id: $itemId, board_id: $boardId,
                                   column_values: $columnValues) {{
        id name updated_at
        column_values {{ {COLUMN_VALUE_FIELDS} }}
    }}
}}
"""

CHANGE_COLUMN_VALUE = """
mutation ($boardId: ID!, $itemId: ID!, $columnId: String!, $value: JSON!) {
    change_column_value (board_id: $boardId, item_id: $itemId,
                         column_id: $columnId, value: $value) { id name }
}
"""

DELETE_ITEM = "mutation ($itemId: ID!) { delete_item (item_id: $itemId) { id } }"

ARCHIVE_ITEM = "mutation ($itemId: ID!) { archive_item (item_id: $itemId) { id } }"

CREATE_BOARD = """
mutation ($boardName: String!, $boardKind: BoardKind!, $workspaceId: ID, $description: String) {
    create_board (board_name: $boardName, board_kind: $boardKind,
                  workspace_id: $workspaceId, description: $description) {
        id name description state
    }
}
"""

CREATE_WEBHOOK = """
mutation ($boardId: ID!, $url: String!, $event: WebhookEventType!, $config: JSON) {
    create_webhook (board_id: $boardId, url: $url, event: $event, config: $config) {
        id board_id
    }
}
"""

DELETE_WEBHOOK = "mutation ($id: ID!) { delete_webhook (id: $id) { id } }"

WEBHOOK_EVENTS = (
    "create_item", "change_column_value", "change_status_column_value",
    "create_update", "item_deleted",
)


def _retry_after_seconds(value: Optional[str], default: int = 30) -> int:
    """Retry-After as seconds; the header may be a delay or an HTTP date."""
    if not value:
        return default
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0, int((retry_at - datetime.now(timezone.utc)).total_seconds()))


class MondayRateWindow:
    """
    Sliding one-minute request window shared by every client using a token.

    Clients are built per request, so the window lives in a registry keyed
    by token; the lock covers handlers running in the threadpool.
    """

    _registry: Dict[str, "MondayRateWindow"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, limit: int = MONDAY_RATE_LIMIT, window: int = MONDAY_RATE_WINDOW):
        self.limit = limit
        self.window = window
        self._timestamps: List[float] = []
        self._lock = threading.Lock()

    @classmethod
    def for_token(cls, api_token: str) -> "MondayRateWindow":
        key = hashlib.sha256(api_token.encode()).hexdigest()
        with cls._registry_lock:
            window = cls._registry.get(key)
            if window is None:
                window = cls._registry[key] = cls()
            return window

    @classmethod
    def reset_all(cls):
        with cls._registry_lock:
            cls._registry.clear()

    def wait(self):
        """Block until a request fits in the window, then record it."""
        with self._lock:
            now = time.time()
            self._timestamps = [t for t in self._timestamps if now - t < self.window]
            if len(self._timestamps) >= self.limit:
                sleep_time = self.window - (now - self._timestamps[0]) + 0.5
                logger.debug("Rate limit approaching, sleeping %.1fs", sleep_time)
                time.sleep(sleep_time)
            self._timestamps.append(time.time())


class MondayClient:
    """Monday.com GraphQL API v2 client with pagination, rate limiting and a circuit breaker."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        api_version: str = MONDAY_API_VERSION,
        use_env: bool = True,
    ):
        self.api_token = api_token or (os.getenv("MONDAY_API_TOKEN", "") if use_env else "")
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Authorization": self.api_token,
            "API-Version": api_version,
        })
        self.breaker = CircuitBreaker.get("monday", failure_threshold=5, reset_timeout=60)
        self.rate_window = MondayRateWindow.for_token(self.api_token)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _rate_limit_wait(self):
        self.rate_window.wait()

    def _query(self, query: str, variables: Optional[dict] = None) -> dict:
        """
        Run a GraphQL query or mutation and return its `data`.

        Raises:
            IntegrationNotConfiguredError: No API token.
            CircuitOpenError: Monday.com has been failing.
            APIRateLimitError: Still rate limited after retries.
            MondayAPIError: HTTP or GraphQL error.
        """
        if not self.is_configured:
            raise IntegrationNotConfiguredError("monday")

        body: Dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = {k: v for k, v in variables.items() if v is not None}

        for attempt in range(1, MAX_RATE_LIMIT_RETRIES + 1):
            self.breaker.guard()
            self._rate_limit_wait()
            try:
                resp = self.session.post(MONDAY_API_URL, json=body, timeout=30)
            except requests.RequestException as e:
                self.breaker.record_failure()
                logger.error("Monday.com request failed: %s", e)
                raise MondayAPIError(f"Monday.com request failed: {e}")

            if resp.status_code == 429:
                retry_after = _retry_after_seconds(resp.headers.get("Retry-After"))
                logger.warning(
                    "Monday.com rate limited (attempt %d/%d), waiting %ds",
                    attempt, MAX_RATE_LIMIT_RETRIES, retry_after,
                )
                if attempt == MAX_RATE_LIMIT_RETRIES:
                    raise APIRateLimitError(MONDAY_API_URL, retry_after=retry_after)
                time.sleep(retry_after)
                continue

            if resp.status_code in (401, 403):
                self.breaker.record_success()
                raise MondayAPIError("Monday.com rejected the API token", status_code=resp.status_code)

            if resp.status_code >= 500:
                self.breaker.record_failure()
                raise MondayAPIError(
                    f"Monday.com returned {resp.status_code}", status_code=resp.status_code,
                )

            self.breaker.record_success()
            if not resp.ok:
                raise MondayAPIError(
                    f"Monday.com returned {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code,
                )

            data = resp.json()
            if data.get("errors"):
                logger.error("GraphQL errors: %s", data["errors"])
                messages = "; ".join(e.get("message", "unknown") for e in data["errors"])
                raise MondayAPIError(f"GraphQL errors: {messages}", errors=data["errors"])
            return data.get("data") or {}

        raise APIRateLimitError(MONDAY_API_URL)

    # ─── Queries ────────────────────────────────────────────

    def get_boards(self, ids: Optional[List[str]] = None, limit: int = 50, page: int = 1) -> List[dict]:
        data = self._query(GET_BOARDS, {"ids": ids, "limit": limit, "page": page})
        return data.get("boards") or []

    def get_board(self, board_id: str) -> Optional[dict]:
        boards = self.get_boards([str(board_id)])
        return boards[0] if boards else None

    def get_items(self, board_id: str, limit: int = 100, max_items: Optional[int] = None) -> List[dict]:
        """All items on a board, following the items_page cursor."""
        all_items: List[dict] = []
        data = self._query(GET_ITEMS_FIRST_PAGE, {"boardId": [str(board_id)], "limit": limit})
        boards = data.get("boards") or []
        if not boards:
            return []
        page = boards[0].get("items_page") or {}

        while True:
            items = page.get("items") or []
            all_items.extend(items)
            cursor = page.get("cursor")
            if not cursor or not items or (max_items and len(all_items) >= max_items):
                break
            data = self._query(GET_ITEMS_NEXT_PAGE, {"cursor": cursor, "limit": limit})
            page = data.get("next_items_page") or {}

        if max_items:
            all_items = all_items[:max_items]
        logger.info("Fetched %d items from board %s", len(all_items), board_id)
        return all_items

    def get_item(self, item_id: str) -> Optional[dict]:
        items = self._query(GET_ITEM, {"itemId": [str(item_id)]}).get("items") or []
        return items[0] if items else None

    def get_workspaces(self) -> List[dict]:
        return self._query(GET_WORKSPACES).get("workspaces") or []

    def get_me(self) -> Optional[dict]:
        return self._query(GET_ME).get("me")

    # ─── Mutations ──────────────────────────────────────────

    def create_item(self, board_id: str, item_name: str, group_id: Optional[str] = None,
                    column_values: Optional[dict] = None) -> dict:
        data = self._query(CREATE_ITEM, {
            "boardId": str(board_id),
            "itemName": item_name,
            "groupId": group_id,
            "columnValues": json.dumps(format_column_values(column_values)) if column_values else None,
        })
        item = data.get("create_item") or {}
        logger.info("Created Monday.com item %s on board %s", item.get("id"), board_id)
        return item

    def update_item(self, item_id: str, board_id: str, column_values: dict) -> dict:
        data = self._query(UPDATE_ITEM, {
            "itemId": str(item_id),
            "boardId": str(board_id),
            "columnValues": json.dumps(format_column_values(column_values)),
        })
        return data.get("change_multiple_column_values") or {}

    def change_column_value(self, board_id: str, item_id: str, column_id: str, value: Any) -> dict:
        data = self._query(CHANGE_COLUMN_VALUE, {
            "boardId": str(board_id),
            "itemId": str(item_id),
            "columnId": column_id,
            "value": json.dumps(value),
        })
        return data.get("change_column_value") or {}

    def delete_item(self, item_id: str) -> dict:
        return self._query(DELETE_ITEM, {"itemId": str(item_id)}).get("delete_item") or {}

    def archive_item(self, item_id: str) -> dict:
        return self._query(ARCHIVE_ITEM, {"itemId": str(item_id)}).get("archive_item") or {}

    def create_board(self, board_name: str, board_kind: str = "public",
                     workspace_id: Optional[str] = None, description: Optional[str] = None) -> dict:
        data = self._query(CREATE_BOARD, {
            "boardName": board_name,
            "boardKind": board_kind,
            "workspaceId": workspace_id,
            "description": description,
        })
        return data.get("create_board") or {}

    def create_webhook(self, board_id: str, url: str, event: str, config: Optional[dict] = None) -> dict:
        if event not in WEBHOOK_EVENTS:
            raise ValueError(f"Unsupported Monday.com webhook event: {event}")
        data = self._query(CREATE_WEBHOOK, {
            "boardId": str(board_id),
            "url": url,
            "event": event,
            "config": json.dumps(config) if config else None,
        })
        return data.get("create_webhook") or {}

    def delete_webhook(self, webhook_id: str) -> dict:
        return self._query(DELETE_WEBHOOK, {"id": str(webhook_id)}).get("delete_webhook") or {}

    # ─── Helpers ────────────────────────────────────────────

    def test_connection(self) -> dict:
        """Check the token by fetching the current user. Never raises."""
        try:
            user = self.get_me()
        except Exception as e:
            logger.warning("Monday.com connection test failed: %s", e)
            return {"success": False, "error": str(e)}
        if user:
            return {"success": True, "user": user}
        return {"success": False, "error": "Unable to retrieve user information"}

    def search_items(self, board_id: str, search_term: str) -> List[dict]:
        term = search_term.lower()
        return [
            item for item in self.get_items(board_id, max_items=500)
            if term in (item.get("name") or "").lower()
        ]

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "Monday.com",
            "configured": self.is_configured,
            "circuit": self.breaker.status(),
            "features": ["boards", "items", "workspaces", "webhooks"],
        }


def get_column_value_text(item: dict, column_id: str) -> Optional[str]:
    for column_value in item.get("column_values") or []:
        if column_value.get("id") == column_id:
            return column_value.get("text") or column_value.get("value")
    return None


def format_column_values(values: Optional[dict]) -> dict:
    """Drop empty values and JSON-encode nested ones for the column_values argument."""
    formatted = {}
    for key, value in (values or {}).items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            formatted[key] = json.dumps(value)
        else:
            formatted[key] = value
    return formatted


def parse_column_value(column_value: dict) -> Any:
    raw = column_value.get("value")
    if not raw:
        return column_value.get("text")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw

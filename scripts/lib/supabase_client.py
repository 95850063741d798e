"""
Supabase access helpers for PEAK CRM.
One shared service-role client plus small wrappers for the row operations
the sales engines repeat: fetch one row scoped to an organization, insert
and return the stored row, update and delete by id.

Usage:
    from scripts.lib.supabase_client import get_client, fetch_row, insert_row

    client = get_client()
    opp = fetch_row("opportunities", opp_id, organization_id=org_id)
    lead = insert_row("leads", {"first_name": "Ada", "organization_id": org_id})
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from scripts.lib.errors import DataFetchError
from scripts.lib.logger import setup_logger

logger = setup_logger("supabase_client")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_KEY = (
    os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
    or os.environ.get("SUPABASE_KEY", "")
)

_client = None


def get_client():
    """Create and return the Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    if not SUPABASE_URL or not SUPABASE_KEY:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env"
        )

    from supabase import create_client
    _client = create_client(SUPABASE_URL, SUPABASE_KEY)
    logger.info("Supabase client connected to %s", SUPABASE_URL)
    return _client


def utc_now() -> str:
    """Current UTC time as an ISO string, the format every timestamp column uses."""
    return datetime.now(timezone.utc).isoformat()


def fetch_row(
    table: str,
    row_id: Any,
    organization_id: Optional[str] = None,
    select: str = "*",
) -> Optional[Dict]:
    """
    Fetch a single row by id, optionally scoped to an organization.

    Returns:
        The row dict, or None when no row matches.
    """
    client = get_client()
    query = client.table(table).select(select).eq("id", row_id)
    if organization_id:
        query = query.eq("organization_id", organization_id)
    result = query.limit(1).execute()
    if result.data:
        return result.data[0]
    return None


def insert_row(table: str, row: Dict) -> Dict:
    """
    Insert a row and return it as stored.

    Raises:
        DataFetchError: If the insert returned nothing.
    """
    client = get_client()
    result = client.table(table).insert(row).execute()
    if not result.data:
        raise DataFetchError(f"Insert into {table} returned no row", source=table)
    return result.data[0]


def update_row(
    table: str,
    row_id: Any,
    updates: Dict,
    organization_id: Optional[str] = None,
) -> Optional[Dict]:
    """
    Update a row by id and return the updated row (None if nothing matched).
    """
    client = get_client()
    query = client.table(table).update(updates).eq("id", row_id)
    if organization_id:
        query = query.eq("organization_id", organization_id)
    result = query.execute()
    if result.data:
        return result.data[0]
    return None


def delete_row(table: str, row_id: Any, organization_id: Optional[str] = None) -> bool:
    """Delete a row by id. Returns True if a row was removed."""
    client = get_client()
    query = client.table(table).delete().eq("id", row_id)
    if organization_id:
        query = query.eq("organization_id", organization_id)
    result = query.execute()
    return bool(result.data)

"""
SharePoint Integration
=======================

Microsoft Graph client for opportunity document storage.

Covers:
- Sites and folder browsing
- Folder creation, including one folder per PEAK stage for an opportunity
- Document upload, listing and deletion

Auth is the client-credentials flow against the tenant; the access token
is cached until shortly before it expires. Transient Graph failures
(429 / 5xx) are retried with exponential backoff.

Setup:
1. Azure portal -> App registrations -> New registration
2. Grant Sites.ReadWrite.All (application) and admin-consent it
3. Set SHAREPOINT_TENANT_ID, SHAREPOINT_CLIENT_ID, SHAREPOINT_CLIENT_SECRET
   and optionally SHAREPOINT_SITE_ID in .env
"""
from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from scripts.lib.errors import IntegrationNotConfiguredError, SharePointAPIError
from scripts.lib.logger import setup_logger
from scripts.sales.peak import STAGES, get_stage_info

logger = setup_logger("sharepoint_integration")

GRAPH_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
TOKEN_REFRESH_MARGIN = 60

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class _RetryableGraphError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Graph returned {status_code}")
        self.status_code = status_code
        self.body = body


def _clean_path(path: str) -> str:
    return "/".join(part for part in (path or "").split("/") if part)


def folder_name_for_stage(stage: str) -> str:
    """`advancing` -> `03 - Advancing`."""
    return f"{STAGES.index(stage) + 1:02d} - {get_stage_info(stage)['name']}"


class SharePointClient:
    """
    Microsoft Graph client scoped to SharePoint drives.

    Usage:
        client = SharePointClient()
        sites = await client.get_sites()
        await client.create_peak_folder_structure(site_id, "Acme - Opportunity")
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        site_id: Optional[str] = None,
        use_env: bool = True,
    ):
        env = os.getenv if use_env else (lambda key, default="": default)
        self.tenant_id = tenant_id or env("SHAREPOINT_TENANT_ID", "")
        self.client_id = client_id or env("SHAREPOINT_CLIENT_ID", "")
        self.client_secret = client_secret or env("SHAREPOINT_CLIENT_SECRET", "")
        self.site_id = site_id or env("SHAREPOINT_SITE_ID", "")
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    async def _access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._token
        if not self.is_configured:
            raise IntegrationNotConfiguredError("sharepoint")

        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                TOKEN_URL.format(tenant=self.tenant_id),
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": GRAPH_SCOPE,
                },
            )
        if response.status_code != 200:
            logger.error("SharePoint token request failed: %s", response.text[:200])
            raise SharePointAPIError(
                "Failed to obtain Microsoft Graph access token",
                status_code=response.status_code,
            )

        payload = response.json()
        self._token = payload["access_token"]
        self._token_expires_at = time.time() + int(payload.get("expires_in", 3600))
        return self._token

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(_RetryableGraphError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.request(method, url, headers=headers, **kwargs)
        if response.status_code in RETRYABLE_STATUS:
            logger.warning("Graph %s %s returned %d, retrying", method, url, response.status_code)
            raise _RetryableGraphError(response.status_code, response.text)
        return response

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict]:
        """
        Authenticated Graph call. Returns the JSON body (None for 204).

        Raises:
            IntegrationNotConfiguredError: Missing tenant / client credentials.
            SharePointAPIError: Graph rejected the call or kept failing.
        """
        url = f"{GRAPH_URL}{path}"
        try:
            response = await self._send(method, url, **kwargs)
        except _RetryableGraphError as e:
            raise SharePointAPIError(
                f"Graph {method} {path} failed after retries", status_code=e.status_code,
            )
        except httpx.HTTPError as e:
            logger.error("Graph request error: %s", e)
            raise SharePointAPIError(f"Graph request failed: {e}")

        if response.status_code == 204:
            return None
        if response.status_code >= 400:
            message = response.text[:200]
            try:
                message = response.json().get("error", {}).get("message", message)
            except ValueError:
                pass
            logger.error("Graph %s %s returned %d: %s", method, path, response.status_code, message)
            raise SharePointAPIError(message, status_code=response.status_code)
        return response.json()

    def _site(self, site_id: Optional[str]) -> str:
        site = site_id or self.site_id
        if not site:
            raise SharePointAPIError("No SharePoint site selected", status_code=400)
        return site

    def _item_path(self, site_id: Optional[str], path: str, suffix: str = "") -> str:
        site = self._site(site_id)
        cleaned = _clean_path(path)
        if not cleaned:
            return f"/sites/{site}/drive/root{suffix}"
        return f"/sites/{site}/drive/root:/{quote(cleaned)}:{suffix}"

    # ─── Sites & folders ────────────────────────────────────

    async def get_sites(self, search: str = "*") -> List[Dict]:
        data = await self._request("GET", "/sites", params={"search": search})
        return [
            {
                "id": site["id"],
                "name": site.get("displayName") or site.get("name"),
                "url": site.get("webUrl"),
            }
            for site in (data or {}).get("value", [])
        ]

    async def _children(self, site_id: Optional[str], path: str) -> List[Dict]:
        data = await self._request("GET", self._item_path(site_id, path, "/children"))
        return (data or {}).get("value", [])

    async def get_folders(self, site_id: Optional[str] = None, path: str = "/") -> List[Dict]:
        return [
            {
                "id": item["id"],
                "name": item["name"],
                "url": item.get("webUrl"),
                "child_count": item["folder"].get("childCount", 0),
            }
            for item in await self._children(site_id, path)
            if "folder" in item
        ]

    async def create_folder(self, name: str, site_id: Optional[str] = None, parent_path: str = "/") -> Dict:
        """Create a folder, or return the one already there (its contents are kept)."""
        try:
            item = await self._request(
                "POST",
                self._item_path(site_id, parent_path, "/children"),
                json={
                    "name": name,
                    "folder": {},
                    "@microsoft.graph.conflictBehavior": "fail",
                },
            )
        except SharePointAPIError as e:
            if e.status_code != 409:
                raise
            existing_path = f"{_clean_path(parent_path)}/{name}".lstrip("/")
            item = await self._request("GET", self._item_path(site_id, existing_path))
            logger.info("SharePoint folder %s already exists under %s", name, parent_path or "/")
            return {"id": item["id"], "name": item["name"], "url": item.get("webUrl"), "existing": True}

        logger.info("Created SharePoint folder %s under %s", name, parent_path or "/")
        return {"id": item["id"], "name": item["name"], "url": item.get("webUrl"), "existing": False}

    async def create_peak_folder_structure(
        self, opportunity_name: str, site_id: Optional[str] = None, parent_path: str = "/",
    ) -> Dict:
        """Opportunity folder with one sub-folder per PEAK stage."""
        root = await self.create_folder(opportunity_name, site_id, parent_path)
        root_path = f"{_clean_path(parent_path)}/{opportunity_name}".lstrip("/")
        stages = {}
        for stage in STAGES:
            stages[stage] = await self.create_folder(folder_name_for_stage(stage), site_id, root_path)
        return {"root": root, "path": root_path, "stages": stages}

    # ─── Documents ──────────────────────────────────────────

    async def get_documents(self, site_id: Optional[str] = None, path: str = "/") -> List[Dict]:
        return [
            {
                "id": item["id"],
                "name": item["name"],
                "url": item.get("webUrl"),
                "file_size": item.get("size", 0),
                "mime_type": item["file"].get("mimeType"),
                "uploaded_at": item.get("lastModifiedDateTime"),
            }
            for item in await self._children(site_id, path)
            if "file" in item
        ]

    async def upload_document(
        self,
        filename: str,
        content: bytes,
        site_id: Optional[str] = None,
        folder_path: str = "/",
        content_type: str = "application/octet-stream",
    ) -> Dict:
        """Simple upload (Graph accepts up to 250 MB this way)."""
        target = f"{_clean_path(folder_path)}/{filename}".lstrip("/")
        item = await self._request(
            "PUT",
            self._item_path(site_id, target, "/content"),
            content=content,
            headers={"Content-Type": content_type},
        )
        logger.info("Uploaded %s (%d bytes) to %s", filename, len(content), folder_path or "/")
        return {
            "id": item["id"],
            "name": item["name"],
            "url": item.get("webUrl"),
            "file_size": item.get("size", len(content)),
            "mime_type": content_type,
            "uploaded_at": item.get("createdDateTime"),
        }

    async def delete_document(self, item_id: str, site_id: Optional[str] = None) -> bool:
        await self._request("DELETE", f"/sites/{self._site(site_id)}/drive/items/{item_id}")
        logger.info("Deleted SharePoint item %s", item_id)
        return True

    async def test_connection(self) -> Dict[str, Any]:
        """Fetch a token and one site. Never raises."""
        try:
            sites = await self.get_sites()
        except Exception as e:
            logger.warning("SharePoint connection test failed: %s", e)
            return {"success": False, "error": str(e)}
        return {"success": True, "sites": len(sites)}

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "SharePoint",
            "configured": self.is_configured,
            "site_id": self.site_id or None,
            "features": ["sites", "folders", "documents", "peak_folders"],
        }

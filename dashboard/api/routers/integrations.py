"""
PEAK CRM — Integrations Router
================================
Monday.com, SharePoint and Slack, using the organization's stored
connection (or the .env defaults).

Endpoints:
  GET    /api/integrations                               - Status of every integration
  PUT    /api/integrations/{provider}/connection         - Save credentials (admin)
  DELETE /api/integrations/{provider}/connection         - Remove credentials (admin)

  POST   /api/integrations/monday/test                   - Test a token (never saved)
  GET    /api/integrations/monday/boards                 - Boards
  POST   /api/integrations/monday/boards                 - Create board
  GET    /api/integrations/monday/boards/{id}            - One board
  GET    /api/integrations/monday/boards/{id}/items      - Items (optionally searched)
  POST   /api/integrations/monday/boards/{id}/items      - Create item
  PUT    /api/integrations/monday/boards/{id}/items/{item_id} - Update item columns
  GET    /api/integrations/monday/items/{id}             - One item
  DELETE /api/integrations/monday/items/{id}             - Delete item
  POST   /api/integrations/monday/items/{id}/archive     - Archive item
  GET    /api/integrations/monday/workspaces             - Workspaces
  POST   /api/integrations/monday/boards/{id}/webhooks   - Register webhook (admin)
  DELETE /api/integrations/monday/webhooks/{id}          - Remove webhook (admin)
  POST   /api/integrations/monday/webhook                - Inbound webhook (public)
  POST   /api/integrations/monday/opportunities/{id}/sync - Push opportunity to the board

  POST   /api/integrations/sharepoint/test               - Test credentials (never saved)
  GET    /api/integrations/sharepoint/sites              - Sites
  GET    /api/integrations/sharepoint/folders            - Folders under a path
  POST   /api/integrations/sharepoint/folders            - Create folder
  GET    /api/integrations/sharepoint/documents          - Files under a path
  POST   /api/integrations/sharepoint/opportunities/{id}/folders   - PEAK folder tree
  GET    /api/integrations/sharepoint/opportunities/{id}/documents - Stage documents
  POST   /api/integrations/sharepoint/opportunities/{id}/documents - Upload into a stage
  DELETE /api/integrations/sharepoint/documents/{id}     - Delete a stage document

  POST   /api/integrations/slack/test                    - Test a token (never saved)
  GET    /api/integrations/slack/channels                - Channels
  GET    /api/integrations/slack/users                   - Users
  POST   /api/integrations/slack/messages                - Post a message
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Query, Request, UploadFile
from pydantic import ValidationError

from dashboard.api.middleware import current_user, ensure_access, require_role
from integrations.connections import (
    PROVIDERS,
    delete_connection,
    get_connection,
    list_connections,
    monday_client_for,
    save_connection,
    sharepoint_client_for,
    slack_client_for,
)
from integrations.monday import MondayClient
from integrations.sharepoint import SharePointClient, folder_name_for_stage
from integrations.slack import SlackIntegration
from models.integration_models import (
    MondayBoardCreate,
    MondayConnectionRequest,
    MondayItemCreate,
    MondayItemUpdate,
    MondayWebhookCreate,
    SharePointConnectionRequest,
    SharePointFolderRequest,
    SlackConnectionRequest,
    SlackMessageRequest,
)
from scripts.lib.errors import (
    APIRateLimitError,
    CircuitOpenError,
    IntegrationError,
    IntegrationNotConfiguredError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now
from scripts.sales.peak import STAGES

logger = setup_logger("integrations_router")

router = APIRouter(prefix="/api/integrations", tags=["integrations"])

CONNECTION_MODELS = {
    "monday": MondayConnectionRequest,
    "sharepoint": SharePointConnectionRequest,
    "slack": SlackConnectionRequest,
}
SETTING_KEYS = {"board_id", "column_map", "site_id", "default_channel"}


def _raise_integration_error(e: Exception, action: str):
    """Map integration failures onto HTTP status codes."""
    if isinstance(e, (IntegrationNotConfiguredError, CircuitOpenError)):
        raise HTTPException(status_code=503, detail=e.to_dict())
    if isinstance(e, APIRateLimitError):
        raise HTTPException(status_code=429, detail=e.to_dict())
    if isinstance(e, IntegrationError):
        raise HTTPException(status_code=502, detail=e.to_dict())
    logger.error("%s failed: %s", action, e)
    raise HTTPException(status_code=500, detail=f"Failed to {action}")


# ─── Connections ────────────────────────────────────────────

@router.get("")
async def integration_status(user: dict = Depends(current_user)):
    try:
        org_id = user["organization_id"]
        return {
            "connections": list_connections(org_id),
            "monday": monday_client_for(org_id).get_status(),
            "sharepoint": sharepoint_client_for(org_id).get_status(),
            "slack": slack_client_for(org_id).get_status(),
        }
    except Exception as e:
        logger.error("Integration status failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch integration status")


@router.put("/{provider}/connection")
async def put_connection(
    provider: str,
    payload: dict = Body(...),
    user: dict = Depends(require_role("admin")),
):
    """Store credentials; board_id / site_id / default_channel go to settings."""
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown integration '{provider}'")
    try:
        req = CONNECTION_MODELS[provider].model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    data = req.model_dump(exclude_none=True)
    settings = {k: data.pop(k) for k in list(data) if k in SETTING_KEYS}
    try:
        return save_connection(user["organization_id"], provider, data, settings, user["id"])
    except Exception as e:
        logger.error("Save %s connection failed: %s", provider, e)
        raise HTTPException(status_code=500, detail="Failed to save connection")


@router.delete("/{provider}/connection")
async def remove_connection(provider: str, user: dict = Depends(require_role("admin"))):
    if provider not in PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown integration '{provider}'")
    try:
        if not delete_connection(user["organization_id"], provider):
            raise HTTPException(status_code=404, detail="Connection not found")
        return {"deleted": True, "provider": provider}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete %s connection failed: %s", provider, e)
        raise HTTPException(status_code=500, detail="Failed to delete connection")


# ─── Monday.com ─────────────────────────────────────────────

@router.post("/monday/test")
def monday_test(req: Optional[MondayConnectionRequest] = None, user: dict = Depends(current_user)):
    client = MondayClient(api_token=req.api_token, use_env=False) if req else monday_client_for(user["organization_id"])
    if not client.is_configured:
        return {"success": False, "error": "Monday.com is not configured"}
    return client.test_connection()


@router.get("/monday/boards")
def monday_boards(
    limit: int = Query(50, ge=1, le=200),
    page: int = Query(1, ge=1),
    user: dict = Depends(current_user),
):
    try:
        boards = monday_client_for(user["organization_id"]).get_boards(limit=limit, page=page)
        return {"results": boards, "count": len(boards)}
    except Exception as e:
        _raise_integration_error(e, "fetch Monday.com boards")


@router.post("/monday/boards", status_code=201)
def monday_create_board(req: MondayBoardCreate, user: dict = Depends(current_user)):
    try:
        return monday_client_for(user["organization_id"]).create_board(
            req.board_name, req.board_kind, req.workspace_id, req.description,
        )
    except Exception as e:
        _raise_integration_error(e, "create Monday.com board")


@router.get("/monday/boards/{board_id}")
def monday_board(board_id: str, user: dict = Depends(current_user)):
    try:
        board = monday_client_for(user["organization_id"]).get_board(board_id)
    except Exception as e:
        _raise_integration_error(e, "fetch Monday.com board")
    if not board:
        raise HTTPException(status_code=404, detail="Board not found")
    return board


@router.get("/monday/boards/{board_id}/items")
def monday_items(
    board_id: str,
    search: Optional[str] = Query(None, description="Filter items by name"),
    limit: int = Query(100, ge=1, le=500),
    user: dict = Depends(current_user),
):
    try:
        client = monday_client_for(user["organization_id"])
        if search:
            items = client.search_items(board_id, search)[:limit]
        else:
            items = client.get_items(board_id, max_items=limit)
        return {"results": items, "count": len(items)}
    except Exception as e:
        _raise_integration_error(e, "fetch Monday.com items")


@router.post("/monday/boards/{board_id}/items", status_code=201)
def monday_create_item(board_id: str, req: MondayItemCreate, user: dict = Depends(current_user)):
    try:
        return monday_client_for(user["organization_id"]).create_item(
            board_id, req.item_name, req.group_id, req.column_values or None,
        )
    except Exception as e:
        _raise_integration_error(e, "create Monday.com item")


@router.put("/monday/boards/{board_id}/items/{item_id}")
def monday_update_item(board_id: str, item_id: str, req: MondayItemUpdate, user: dict = Depends(current_user)):
    try:
        return monday_client_for(user["organization_id"]).update_item(item_id, board_id, req.column_values)
    except Exception as e:
        _raise_integration_error(e, "update Monday.com item")


@router.get("/monday/items/{item_id}")
def monday_item(item_id: str, user: dict = Depends(current_user)):
    try:
        item = monday_client_for(user["organization_id"]).get_item(item_id)
    except Exception as e:
        _raise_integration_error(e, "fetch Monday.com item")
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@router.delete("/monday/items/{item_id}")
def monday_delete_item(item_id: str, user: dict = Depends(require_role("manager", "admin"))):
    try:
        return monday_client_for(user["organization_id"]).delete_item(item_id)
    except Exception as e:
        _raise_integration_error(e, "delete Monday.com item")


@router.post("/monday/items/{item_id}/archive")
def monday_archive_item(item_id: str, user: dict = Depends(current_user)):
    try:
        return monday_client_for(user["organization_id"]).archive_item(item_id)
    except Exception as e:
        _raise_integration_error(e, "archive Monday.com item")


@router.get("/monday/workspaces")
def monday_workspaces(user: dict = Depends(current_user)):
    try:
        workspaces = monday_client_for(user["organization_id"]).get_workspaces()
        return {"results": workspaces, "count": len(workspaces)}
    except Exception as e:
        _raise_integration_error(e, "fetch Monday.com workspaces")


@router.post("/monday/boards/{board_id}/webhooks", status_code=201)
def monday_create_webhook(board_id: str, req: MondayWebhookCreate, user: dict = Depends(require_role("admin"))):
    try:
        return monday_client_for(user["organization_id"]).create_webhook(board_id, req.url, req.event, req.config)
    except Exception as e:
        _raise_integration_error(e, "create Monday.com webhook")


@router.delete("/monday/webhooks/{webhook_id}")
def monday_delete_webhook(webhook_id: str, user: dict = Depends(require_role("admin"))):
    try:
        return monday_client_for(user["organization_id"]).delete_webhook(webhook_id)
    except Exception as e:
        _raise_integration_error(e, "delete Monday.com webhook")


@router.post("/monday/webhook")
async def monday_webhook(request: Request):
    """Monday.com verifies a webhook URL by posting a challenge to echo back."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")
    if "challenge" in body:
        return {"challenge": body["challenge"]}

    event = body.get("event")
    if not isinstance(event, dict):
        event = {}
    logger.info(
        "Monday.com webhook: %s on board %s item %s",
        event.get("type"), event.get("boardId"), event.get("pulseId"),
    )
    return {"received": True}


@router.post("/monday/opportunities/{opportunity_id}/sync")
def monday_sync_opportunity(opportunity_id: str, user: dict = Depends(current_user)):
    """
    Create (or update) the opportunity's item on the connected board.
    The connection's `column_map` setting maps CRM fields to column ids.
    """
    org_id = user["organization_id"]
    opportunity = ensure_access(
        user, fetch_row("opportunities", opportunity_id, organization_id=org_id), "Opportunity",
    )
    connection = get_connection(org_id, "monday") or {}
    settings = connection.get("settings") or {}
    board_id = settings.get("board_id")
    if not board_id:
        raise HTTPException(status_code=409, detail="No Monday.com board configured for opportunities")

    column_values = {
        column_id: opportunity[field]
        for field, column_id in (settings.get("column_map") or {}).items()
        if opportunity.get(field) is not None
    }
    try:
        client = monday_client_for(org_id)
        if opportunity.get("monday_item_id"):
            item = {"id": opportunity["monday_item_id"]}
            if column_values:
                item = client.update_item(opportunity["monday_item_id"], board_id, column_values)
            created = False
        else:
            item = client.create_item(board_id, opportunity["name"], column_values=column_values or None)
            update_row(
                "opportunities", opportunity_id,
                {"monday_item_id": item.get("id"), "updated_at": utc_now()},
                organization_id=org_id,
            )
            created = True
    except Exception as e:
        _raise_integration_error(e, "sync opportunity to Monday.com")
    return {"opportunity_id": opportunity_id, "item": item, "created": created}


# ─── SharePoint ─────────────────────────────────────────────

@router.post("/sharepoint/test")
async def sharepoint_test(req: Optional[SharePointConnectionRequest] = None, user: dict = Depends(current_user)):
    if req:
        client = SharePointClient(req.tenant_id, req.client_id, req.client_secret, req.site_id, use_env=False)
    else:
        client = sharepoint_client_for(user["organization_id"])
    if not client.is_configured:
        return {"success": False, "error": "SharePoint is not configured"}
    return await client.test_connection()


@router.get("/sharepoint/sites")
async def sharepoint_sites(search: str = Query("*"), user: dict = Depends(current_user)):
    try:
        sites = await sharepoint_client_for(user["organization_id"]).get_sites(search)
        return {"results": sites, "count": len(sites)}
    except Exception as e:
        _raise_integration_error(e, "fetch SharePoint sites")


@router.get("/sharepoint/folders")
async def sharepoint_folders(
    path: str = Query("/"),
    site_id: Optional[str] = Query(None),
    user: dict = Depends(current_user),
):
    try:
        folders = await sharepoint_client_for(user["organization_id"]).get_folders(site_id, path)
        return {"results": folders, "count": len(folders), "path": path}
    except Exception as e:
        _raise_integration_error(e, "fetch SharePoint folders")


@router.post("/sharepoint/folders", status_code=201)
async def sharepoint_create_folder(req: SharePointFolderRequest, user: dict = Depends(current_user)):
    try:
        return await sharepoint_client_for(user["organization_id"]).create_folder(
            req.name, req.site_id, req.parent_path,
        )
    except Exception as e:
        _raise_integration_error(e, "create SharePoint folder")


@router.get("/sharepoint/documents")
async def sharepoint_documents(
    path: str = Query("/"),
    site_id: Optional[str] = Query(None),
    user: dict = Depends(current_user),
):
    try:
        documents = await sharepoint_client_for(user["organization_id"]).get_documents(site_id, path)
        return {"results": documents, "count": len(documents), "path": path}
    except Exception as e:
        _raise_integration_error(e, "fetch SharePoint documents")


@router.post("/sharepoint/opportunities/{opportunity_id}/folders", status_code=201)
async def sharepoint_opportunity_folders(
    opportunity_id: str,
    parent_path: str = Query("/", description="Where the opportunity folder is created"),
    user: dict = Depends(current_user),
):
    """Opportunity folder with one sub-folder per PEAK stage."""
    org_id = user["organization_id"]
    opportunity = ensure_access(
        user, fetch_row("opportunities", opportunity_id, organization_id=org_id), "Opportunity",
    )
    try:
        structure = await sharepoint_client_for(org_id).create_peak_folder_structure(
            opportunity["name"], parent_path=parent_path,
        )
        update_row(
            "opportunities", opportunity_id,
            {"sharepoint_folder_path": structure["path"], "updated_at": utc_now()},
            organization_id=org_id,
        )
        return structure
    except Exception as e:
        _raise_integration_error(e, "create SharePoint folders")


@router.get("/sharepoint/opportunities/{opportunity_id}/documents")
async def opportunity_documents(opportunity_id: str, user: dict = Depends(current_user)):
    """Recorded stage documents, grouped by PEAK stage."""
    org_id = user["organization_id"]
    ensure_access(user, fetch_row("opportunities", opportunity_id, organization_id=org_id), "Opportunity")
    try:
        rows = (
            get_client().table("opportunity_documents")
            .select("*")
            .eq("organization_id", org_id)
            .eq("opportunity_id", opportunity_id)
            .order("created_at", desc=True)
            .execute()
        ).data or []
        by_stage = {stage: [] for stage in STAGES}
        for row in rows:
            by_stage.setdefault(row.get("stage_name"), []).append(row)
        return {"opportunity_id": opportunity_id, "stages": by_stage, "count": len(rows)}
    except Exception as e:
        logger.error("List opportunity documents failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch documents")


@router.post("/sharepoint/opportunities/{opportunity_id}/documents", status_code=201)
async def upload_opportunity_document(
    opportunity_id: str,
    stage: str = Form(..., pattern=r"^(prospecting|engaging|advancing|key_decision)$"),
    is_required: bool = Form(False),
    file: UploadFile = File(...),
    user: dict = Depends(current_user),
):
    """Upload into the opportunity's stage folder and record it."""
    org_id = user["organization_id"]
    opportunity = ensure_access(
        user, fetch_row("opportunities", opportunity_id, organization_id=org_id), "Opportunity",
    )
    root = opportunity.get("sharepoint_folder_path")
    if not root:
        raise HTTPException(status_code=409, detail="Create the opportunity's SharePoint folders first")

    content = await file.read()
    try:
        uploaded = await sharepoint_client_for(org_id).upload_document(
            file.filename,
            content,
            folder_path=f"{root}/{folder_name_for_stage(stage)}",
            content_type=file.content_type or "application/octet-stream",
        )
        return insert_row("opportunity_documents", {
            "organization_id": org_id,
            "opportunity_id": opportunity_id,
            "stage_name": stage,
            "document_name": uploaded["name"],
            "sharepoint_url": uploaded.get("url"),
            "sharepoint_item_id": uploaded["id"],
            "is_required": is_required,
            "uploaded_by": user["id"],
        })
    except Exception as e:
        _raise_integration_error(e, "upload document")


@router.delete("/sharepoint/documents/{document_id}")
async def delete_opportunity_document(document_id: str, user: dict = Depends(current_user)):
    org_id = user["organization_id"]
    document = fetch_row("opportunity_documents", document_id, organization_id=org_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    opportunity = fetch_row("opportunities", document["opportunity_id"], organization_id=org_id)
    ensure_access(user, opportunity, "Opportunity")
    try:
        if document.get("sharepoint_item_id"):
            await sharepoint_client_for(org_id).delete_document(document["sharepoint_item_id"])
        delete_row("opportunity_documents", document_id, organization_id=org_id)
        return {"deleted": True, "id": document_id}
    except Exception as e:
        _raise_integration_error(e, "delete document")


# ─── Slack ──────────────────────────────────────────────────

@router.post("/slack/test")
async def slack_test(req: Optional[SlackConnectionRequest] = None, user: dict = Depends(current_user)):
    if req:
        client = SlackIntegration(req.bot_token, req.default_channel, use_env=False)
    else:
        client = slack_client_for(user["organization_id"])
    if not client.is_configured:
        return {"success": False, "error": "Slack is not configured"}
    return await client.test_connection()


@router.get("/slack/channels")
async def slack_channels(user: dict = Depends(current_user)):
    try:
        channels = await slack_client_for(user["organization_id"]).list_channels()
        return {"results": channels, "count": len(channels)}
    except Exception as e:
        _raise_integration_error(e, "fetch Slack channels")


@router.get("/slack/users")
async def slack_users(user: dict = Depends(current_user)):
    try:
        users = await slack_client_for(user["organization_id"]).list_users()
        return {"results": users, "count": len(users)}
    except Exception as e:
        _raise_integration_error(e, "fetch Slack users")


@router.post("/slack/messages", status_code=201)
async def slack_message(req: SlackMessageRequest, user: dict = Depends(current_user)):
    try:
        return await slack_client_for(user["organization_id"]).post_message(req.text, req.channel)
    except Exception as e:
        _raise_integration_error(e, "post Slack message")

"""
PEAK CRM — Contacts Router
============================
Contacts are shared across the organization; only their creator or a
manager/admin may change them.

Endpoints:
  GET    /api/contacts            - List with filters and search
  GET    /api/contacts/{id}       - Single contact with company and opportunities
  POST   /api/contacts            - Create
  PUT    /api/contacts/{id}       - Update
  DELETE /api/contacts/{id}       - Delete (manager/admin)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, ensure_access, require_role
from models.crm_models import ContactCreate, ContactUpdate
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now

logger = setup_logger("contacts_router")

router = APIRouter(prefix="/api/contacts", tags=["contacts"])

SORT_FIELDS = {"created_at", "updated_at", "last_name", "first_name", "email"}


@router.get("")
async def list_contacts(
    company_id: Optional[str] = Query(None, description="Filter by company ID"),
    search: Optional[str] = Query(None, description="Search name, email or title"),
    sort: str = Query("created_at", description="Sort field"),
    order: str = Query("desc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: dict = Depends(current_user),
):
    """List contacts with filtering, sorting, and pagination."""
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=422, detail=f"Cannot sort by '{sort}'")
    try:
        query = (
            get_client().table("contacts")
            .select(
                "id, first_name, last_name, email, phone, title, department, "
                "company_id, created_by, created_at, updated_at",
                count="exact",
            )
            .eq("organization_id", user["organization_id"])
        )
        if company_id:
            query = query.eq("company_id", company_id)
        if search:
            query = query.or_(
                f"first_name.ilike.%{search}%,last_name.ilike.%{search}%,"
                f"email.ilike.%{search}%,title.ilike.%{search}%"
            )

        result = (
            query.order(sort, desc=order.lower() == "desc")
            .range(offset, offset + limit - 1)
            .execute()
        )
        contacts = result.data or []
        return {
            "results": contacts,
            "count": len(contacts),
            "total": result.count if result.count is not None else len(contacts),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List contacts failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch contacts")


@router.get("/{contact_id}")
async def get_contact(contact_id: str, user: dict = Depends(current_user)):
    """Get a single contact with its company and opportunities."""
    try:
        org_id = user["organization_id"]
        contact = fetch_row("contacts", contact_id, organization_id=org_id)
        if not contact:
            raise HTTPException(status_code=404, detail="Contact not found")

        company = None
        if contact.get("company_id"):
            company = fetch_row(
                "companies", contact["company_id"], organization_id=org_id,
                select="id, name, domain, industry",
            )

        opportunities = (
            get_client().table("opportunities")
            .select("id, name, peak_stage, status, deal_value, assigned_to")
            .eq("organization_id", org_id)
            .eq("contact_id", contact_id)
            .execute()
        )
        return {
            **contact,
            "company": company,
            "opportunities": opportunities.data or [],
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get contact failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch contact")


@router.post("", status_code=201)
async def create_contact(req: ContactCreate, user: dict = Depends(current_user)):
    try:
        row = req.model_dump(mode="json", exclude_none=True)
        row.update({"organization_id": user["organization_id"], "created_by": user["id"]})
        contact = insert_row("contacts", row)
        logger.info("Created contact %s", contact["id"])
        return contact
    except Exception as e:
        logger.error("Create contact failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create contact")


@router.put("/{contact_id}")
async def update_contact(contact_id: str, req: ContactUpdate, user: dict = Depends(current_user)):
    try:
        existing = fetch_row("contacts", contact_id, organization_id=user["organization_id"])
        ensure_access(user, existing, "Contact")

        updates = req.model_dump(mode="json", exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")
        updates["updated_at"] = utc_now()
        return update_row("contacts", contact_id, updates, organization_id=user["organization_id"])
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Update contact failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to update contact")


@router.delete("/{contact_id}")
async def delete_contact(contact_id: str, user: dict = Depends(require_role("manager", "admin"))):
    try:
        if not delete_row("contacts", contact_id, organization_id=user["organization_id"]):
            raise HTTPException(status_code=404, detail="Contact not found")
        logger.info("Deleted contact %s", contact_id)
        return {"deleted": True, "id": contact_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete contact failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to delete contact")

"""
PEAK CRM — Companies Router
=============================
Endpoints:
  GET    /api/companies            - List with filters and search
  GET    /api/companies/{id}       - Company with its contacts and opportunities
  POST   /api/companies            - Create
  PUT    /api/companies/{id}       - Update (creator or manager/admin)
  DELETE /api/companies/{id}       - Delete (manager/admin)
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from dashboard.api.middleware import current_user, ensure_access, require_role
from models.crm_models import CompanyCreate, CompanyUpdate
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import delete_row, fetch_row, get_client, insert_row, update_row, utc_now

logger = setup_logger("companies_router")

router = APIRouter(prefix="/api/companies", tags=["companies"])

SORT_FIELDS = {"created_at", "updated_at", "name", "annual_revenue", "employee_count"}


@router.get("")
async def list_companies(
    industry: Optional[str] = Query(None, description="Filter by industry"),
    size: Optional[str] = Query(None, description="startup, small, medium, large, enterprise"),
    search: Optional[str] = Query(None, description="Search name or domain"),
    sort: str = Query("name", description="Sort field"),
    order: str = Query("asc", description="Sort order: asc or desc"),
    limit: int = Query(50, ge=1, le=500, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    user: dict = Depends(current_user),
):
    if sort not in SORT_FIELDS:
        raise HTTPException(status_code=422, detail=f"Cannot sort by '{sort}'")
    try:
        query = (
            get_client().table("companies")
            .select("*", count="exact")
            .eq("organization_id", user["organization_id"])
        )
        if industry:
            query = query.eq("industry", industry)
        if size:
            query = query.eq("size", size)
        if search:
            query = query.or_(f"name.ilike.%{search}%,domain.ilike.%{search}%")

        result = (
            query.order(sort, desc=order.lower() == "desc")
            .range(offset, offset + limit - 1)
            .execute()
        )
        companies = result.data or []
        return {
            "results": companies,
            "count": len(companies),
            "total": result.count if result.count is not None else len(companies),
            "offset": offset,
            "limit": limit,
        }
    except Exception as e:
        logger.error("List companies failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch companies")


@router.get("/{company_id}")
async def get_company(company_id: str, user: dict = Depends(current_user)):
    try:
        org_id = user["organization_id"]
        company = fetch_row("companies", company_id, organization_id=org_id)
        if not company:
            raise HTTPException(status_code=404, detail="Company not found")

        client = get_client()
        contacts = (
            client.table("contacts")
            .select("id, first_name, last_name, email, title")
            .eq("organization_id", org_id)
            .eq("company_id", company_id)
            .execute()
        )
        opportunities = (
            client.table("opportunities")
            .select("id, name, peak_stage, status, deal_value, probability, assigned_to")
            .eq("organization_id", org_id)
            .eq("company_id", company_id)
            .execute()
        )
        opps = opportunities.data or []
        return {
            **company,
            "contacts": contacts.data or [],
            "opportunities": opps,
            "open_pipeline_value": sum(
                float(o.get("deal_value") or 0) for o in opps if o.get("status", "open") == "open"
            ),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Get company failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to fetch company")


@router.post("", status_code=201)
async def create_company(req: CompanyCreate, user: dict = Depends(current_user)):
    try:
        row = req.model_dump(mode="json", exclude_none=True)
        row.update({"organization_id": user["organization_id"], "created_by": user["id"]})
        company = insert_row("companies", row)
        logger.info("Created company %s (%s)", company["id"], company.get("name"))
        return company
    except Exception as e:
        logger.error("Create company failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create company")


@router.put("/{company_id}")
async def update_company(company_id: str, req: CompanyUpdate, user: dict = Depends(current_user)):
    try:
        existing = fetch_row("companies", company_id, organization_id=user["organization_id"])
        ensure_access(user, existing, "Company")

        updates = req.model_dump(mode="json", exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")
        updates["updated_at"] = utc_now()
        return update_row("companies", company_id, updates, organization_id=user["organization_id"])
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Update company failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to update company")


@router.delete("/{company_id}")
async def delete_company(company_id: str, user: dict = Depends(require_role("manager", "admin"))):
    try:
        if not delete_row("companies", company_id, organization_id=user["organization_id"]):
            raise HTTPException(status_code=404, detail="Company not found")
        logger.info("Deleted company %s", company_id)
        return {"deleted": True, "id": company_id}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Delete company failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to delete company")

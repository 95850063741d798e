"""
PEAK CRM — Lead Conversion
============================

Turns qualified leads into opportunities. Each conversion is tracked as
a row in conversion_jobs (PENDING -> IN_PROGRESS -> SUCCEEDED / FAILED)
keyed by an idempotency key, so replaying the same request returns the
earlier result instead of creating a second opportunity.

Per lead:
  1. find or create the company (by name)
  2. find or create the contact (by email)
  3. create the opportunity in `prospecting`
  4. mark the lead `converted`
"""
from __future__ import annotations

from typing import Optional

from models.crm_models import LeadConvertRequest
from scripts.lib.errors import ConversionError, NotFoundError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client, insert_row, utc_now

logger = setup_logger("lead_conversion")


def job_key(idempotency_key: Optional[str], lead_id: str) -> str:
    """Per-lead key; one request key can cover several leads."""
    if idempotency_key:
        return f"{idempotency_key}:{lead_id}"
    return f"conversion_{lead_id}"


def _succeeded_job(organization_id: str, key: str) -> Optional[dict]:
    result = (
        get_client().table("conversion_jobs")
        .select("*")
        .eq("organization_id", organization_id)
        .eq("idempotency_key", key)
        .eq("status", "SUCCEEDED")
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None


def _like_literal(value: str) -> str:
    """Escape LIKE wildcards so ilike matches the name case-insensitively and nothing else."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _find_or_create_company(lead: dict, organization_id: str, user_id: str) -> Optional[str]:
    name = (lead.get("company_name") or "").strip()
    if not name:
        return None
    existing = (
        get_client().table("companies")
        .select("id")
        .eq("organization_id", organization_id)
        .ilike("name", _like_literal(name))
        .limit(1)
        .execute()
    )
    if existing.data:
        return existing.data[0]["id"]
    company = insert_row("companies", {
        "name": name,
        "organization_id": organization_id,
        "created_by": user_id,
    })
    logger.info("Created company %s from lead %s", company["id"], lead["id"])
    return company["id"]


def _find_or_create_contact(
    lead: dict, company_id: Optional[str], organization_id: str, user_id: str,
) -> Optional[str]:
    email = (lead.get("email") or "").strip()
    if email:
        existing = (
            get_client().table("contacts")
            .select("id")
            .eq("organization_id", organization_id)
            .eq("email", email)
            .limit(1)
            .execute()
        )
        if existing.data:
            return existing.data[0]["id"]

    contact = insert_row("contacts", {
        "first_name": lead.get("first_name") or "",
        "last_name": lead.get("last_name") or "",
        "email": email or None,
        "phone": lead.get("phone"),
        "title": lead.get("title"),
        "company_id": company_id,
        "organization_id": organization_id,
        "created_by": user_id,
    })
    return contact["id"]


def convert_lead(
    lead: dict,
    request: LeadConvertRequest,
    organization_id: str,
    user_id: str,
) -> dict:
    """
    Convert one qualified lead. Failures mark the job FAILED and re-raise
    as ConversionError.
    """
    key = job_key(request.idempotency_key, lead["id"])
    client = get_client()

    job = insert_row("conversion_jobs", {
        "lead_id": lead["id"],
        "status": "PENDING",
        "idempotency_key": key,
        "request_payload": {"lead_id": lead["id"], **request.model_dump(mode="json", exclude={"lead_ids"})},
        "organization_id": organization_id,
    })

    try:
        client.table("conversion_jobs").update({"status": "IN_PROGRESS"}).eq("id", job["id"]).execute()

        company_id = _find_or_create_company(lead, organization_id, user_id)
        contact_id = _find_or_create_contact(lead, company_id, organization_id, user_id)

        company_label = lead.get("company_name") or f"{lead.get('first_name', '')} {lead.get('last_name', '')}".strip()
        opportunity = insert_row("opportunities", {
            "name": request.opportunity_name or f"{company_label} - Opportunity",
            "company_id": company_id,
            "contact_id": contact_id,
            "peak_stage": "prospecting",
            "status": "open",
            "deal_value": request.deal_value,
            "probability": 0,
            "close_date": request.close_date.isoformat() if request.close_date else None,
            "description": f"Converted from lead: {lead.get('first_name', '')} {lead.get('last_name', '')}".rstrip(),
            "organization_id": organization_id,
            "assigned_to": lead.get("assigned_to") or user_id,
            "created_by": user_id,
        })

        client.table("leads").update({
            "status": "converted",
            "updated_at": utc_now(),
        }).eq("id", lead["id"]).execute()

        payload = {
            "opportunity_id": opportunity["id"],
            "company_id": company_id,
            "contact_id": contact_id,
        }
        client.table("conversion_jobs").update({
            "status": "SUCCEEDED",
            "response_payload": payload,
        }).eq("id", job["id"]).execute()

    except Exception as e:
        logger.error("Conversion of lead %s failed: %s", lead["id"], e)
        client.table("conversion_jobs").update({
            "status": "FAILED",
            "response_payload": {"error": str(e)},
        }).eq("id", job["id"]).execute()
        raise ConversionError(f"Failed to convert lead {lead['id']}: {e}", lead_id=lead["id"])

    logger.info("Converted lead %s into opportunity %s", lead["id"], opportunity["id"])
    return {"lead_id": lead["id"], **payload, "status": "CONVERTED", "job_id": job["id"]}


def convert_leads(request: LeadConvertRequest, organization_id: str, user_id: str) -> dict:
    """
    Convert a batch of leads belonging to the organization.

    Leads that already have a succeeded job for this key come back as
    ALREADY_CONVERTED. Every other lead must exist in the organization
    with status `qualified`.

    Raises:
        NotFoundError: Some leads are missing, not qualified, or in another org.
    """
    conversions = []
    pending_ids = []
    for lead_id in dict.fromkeys(request.lead_ids):
        job = _succeeded_job(organization_id, job_key(request.idempotency_key, lead_id))
        if job:
            conversions.append({
                "lead_id": lead_id,
                "opportunity_id": (job.get("response_payload") or {}).get("opportunity_id"),
                "status": "ALREADY_CONVERTED",
                "job_id": job["id"],
            })
        else:
            pending_ids.append(lead_id)

    if pending_ids:
        result = (
            get_client().table("leads")
            .select("*")
            .in_("id", pending_ids)
            .eq("organization_id", organization_id)
            .eq("status", "qualified")
            .execute()
        )
        leads = result.data or []
        if len(leads) != len(pending_ids):
            found = {lead["id"] for lead in leads}
            raise NotFoundError(
                "Qualified lead", [lid for lid in pending_ids if lid not in found],
            )
        for lead in leads:
            conversions.append(convert_lead(lead, request, organization_id, user_id))

    return {"conversions": conversions, "count": len(conversions)}

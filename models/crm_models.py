"""
PEAK CRM — Core Record Pydantic Models
========================================

Create/Update request models for companies, contacts, leads,
opportunities and activities, plus lead conversion and scoring rules.
Length, non-negative and enum checks live here so bad input is a 422
before anything reaches the store.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

PEAK_STAGE_PATTERN = r"^(prospecting|engaging|advancing|key_decision)$"
OPPORTUNITY_STATUS_PATTERN = r"^(open|won|lost)$"
LEAD_STATUS_PATTERN = r"^(new|contacted|qualified|unqualified|converted)$"
ACTIVITY_TYPE_PATTERN = r"^(call|email|meeting|task|note)$"
ACTIVITY_STATUS_PATTERN = r"^(pending|completed|cancelled)$"
PRIORITY_PATTERN = r"^(low|medium|high)$"
RELATED_TYPE_PATTERN = r"^(lead|opportunity|contact|company)$"
COMPANY_SIZE_PATTERN = r"^(startup|small|medium|large|enterprise)$"
RULE_CONDITION_PATTERN = r"^(equals|contains|starts_with|ends_with|is_empty|is_not_empty)$"


# ─── Company Models ─────────────────────────────────────────

class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    domain: Optional[str] = Field(None, max_length=255)
    industry: Optional[str] = Field(None, max_length=100)
    size: Optional[str] = Field(None, pattern=COMPANY_SIZE_PATTERN)
    annual_revenue: Optional[float] = Field(None, ge=0)
    employee_count: Optional[int] = Field(None, ge=0)
    website: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=50)
    city: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=5000)


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    domain: Optional[str] = Field(None, max_length=255)
    industry: Optional[str] = Field(None, max_length=100)
    size: Optional[str] = Field(None, pattern=COMPANY_SIZE_PATTERN)
    annual_revenue: Optional[float] = Field(None, ge=0)
    employee_count: Optional[int] = Field(None, ge=0)
    website: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = Field(None, max_length=50)
    city: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=5000)


# ─── Contact Models ─────────────────────────────────────────

class ContactCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(None, max_length=50)
    title: Optional[str] = Field(None, max_length=150)
    department: Optional[str] = Field(None, max_length=100)
    company_id: Optional[str] = None


class ContactUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(None, max_length=50)
    title: Optional[str] = Field(None, max_length=150)
    department: Optional[str] = Field(None, max_length=100)
    company_id: Optional[str] = None


# ─── Lead Models ────────────────────────────────────────────

class LeadCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(None, max_length=50)
    company_name: Optional[str] = Field(None, max_length=255)
    title: Optional[str] = Field(None, max_length=150)
    source: Optional[str] = Field(None, max_length=50)
    status: str = Field("new", pattern=LEAD_STATUS_PATTERN)
    notes: Optional[str] = Field(None, max_length=5000)
    assigned_to: Optional[str] = None


class LeadUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(None, max_length=50)
    company_name: Optional[str] = Field(None, max_length=255)
    title: Optional[str] = Field(None, max_length=150)
    source: Optional[str] = Field(None, max_length=50)
    status: Optional[str] = Field(None, pattern=LEAD_STATUS_PATTERN)
    notes: Optional[str] = Field(None, max_length=5000)
    assigned_to: Optional[str] = None


class LeadConvertRequest(BaseModel):
    """Convert one or more qualified leads into opportunities."""
    lead_ids: list[str] = Field(..., min_length=1, max_length=50)
    idempotency_key: Optional[str] = Field(None, max_length=100)
    opportunity_name: Optional[str] = Field(None, max_length=255)
    deal_value: Optional[float] = Field(None, ge=0)
    close_date: Optional[date] = None


class LeadScoringRule(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    field: str = Field(..., min_length=1)
    condition: str = Field(..., pattern=RULE_CONDITION_PATTERN)
    value: Optional[str] = None
    weight: float
    description: str = ""


# ─── Opportunity Models ─────────────────────────────────────

class OpportunityCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    peak_stage: str = Field("prospecting", pattern=PEAK_STAGE_PATTERN)
    deal_value: Optional[float] = Field(None, ge=0)
    probability: Optional[int] = Field(None, ge=0, le=100)
    close_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=5000)
    assigned_to: Optional[str] = None


class OpportunityUpdate(BaseModel):
    """Stage changes go through the stage endpoint, not here."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    deal_value: Optional[float] = Field(None, ge=0)
    probability: Optional[int] = Field(None, ge=0, le=100)
    close_date: Optional[date] = None
    description: Optional[str] = Field(None, max_length=5000)
    status: Optional[str] = Field(None, pattern=OPPORTUNITY_STATUS_PATTERN)
    assigned_to: Optional[str] = None


class StageChangeRequest(BaseModel):
    peak_stage: str = Field(..., pattern=PEAK_STAGE_PATTERN)


# ─── Activity Models ────────────────────────────────────────

class ActivityCreate(BaseModel):
    type: str = Field(..., pattern=ACTIVITY_TYPE_PATTERN)
    subject: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    due_date: Optional[datetime] = None
    status: str = Field("pending", pattern=ACTIVITY_STATUS_PATTERN)
    priority: str = Field("medium", pattern=PRIORITY_PATTERN)
    related_type: Optional[str] = Field(None, pattern=RELATED_TYPE_PATTERN)
    related_id: Optional[str] = None
    assigned_to: Optional[str] = None


class ActivityUpdate(BaseModel):
    type: Optional[str] = Field(None, pattern=ACTIVITY_TYPE_PATTERN)
    subject: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    due_date: Optional[datetime] = None
    status: Optional[str] = Field(None, pattern=ACTIVITY_STATUS_PATTERN)
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    assigned_to: Optional[str] = None

"""
PEAK CRM — API Server
=======================

JSON API over the Supabase CRM tables, with bearer-token auth, role
checks and a WebSocket push feed.

Route groups:
  /api/health              - Health check
  /api/opportunities/*     - PEAK pipeline + MEDDPICC per opportunity
  /api/leads/*             - Leads, scoring, conversion
  /api/contacts/*          - Contacts
  /api/companies/*         - Companies
  /api/activities/*        - Activities + daily trend
  /api/meddpicc/*          - MEDDPICC framework and scoring
  /api/dashboard           - Role-based dashboard widgets
  /api/analytics/*         - KPIs and forecast
  /api/integrations/*      - Monday.com, SharePoint, Slack
  /ws/dashboard            - WebSocket live feed
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dashboard.api.middleware import AuthMiddleware
from dashboard.api.routers.activities import router as activities_router
from dashboard.api.routers.analytics import router as analytics_router
from dashboard.api.routers.companies import router as companies_router
from dashboard.api.routers.contacts import router as contacts_router
from dashboard.api.routers.dashboard import router as dashboard_router
from dashboard.api.routers.integrations import router as integrations_router
from dashboard.api.routers.leads import router as leads_router
from dashboard.api.routers.meddpicc import router as meddpicc_router
from dashboard.api.routers.opportunities import router as opportunities_router
from dashboard.api.websocket import websocket_endpoint, ws_manager
from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.sales.meddpicc import load_default_config
from scripts.sales.meddpicc_service import scoring_service

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting PEAK CRM...")

    scoring_service.set_broadcast_callback(ws_manager.broadcast)

    try:
        load_default_config()
    except Exception as e:
        logger.warning("Default MEDDPICC framework not loaded: %s", e)

    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        logger.info("Supabase connected")
    except Exception as e:
        logger.warning("Supabase not available: %s", e)

    logger.info("PEAK CRM ready")
    yield
    logger.info("Shutting down PEAK CRM...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="PEAK CRM",
    version=VERSION,
    description="Sales CRM with the PEAK pipeline and MEDDPICC qualification",
    lifespan=lifespan,
)

app.add_middleware(AuthMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Include Routers ──────────────────────────────────────────

app.include_router(opportunities_router)
app.include_router(leads_router)
app.include_router(contacts_router)
app.include_router(companies_router)
app.include_router(activities_router)
app.include_router(meddpicc_router)
app.include_router(dashboard_router)
app.include_router(analytics_router)
app.include_router(integrations_router)


# ─── WebSocket ────────────────────────────────────────────────

app.add_api_websocket_route("/ws/dashboard", websocket_endpoint)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    supabase_ok = False
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        supabase_ok = True
    except Exception as e:
        logger.debug("Supabase unavailable for health check: %s", e)

    meddpicc_ok = False
    try:
        load_default_config()
        meddpicc_ok = True
    except Exception as e:
        logger.debug("MEDDPICC framework unavailable for health check: %s", e)

    return {
        "status": "healthy" if supabase_ok else "degraded",
        "service": "PEAK CRM",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "supabase": supabase_ok,
            "meddpicc_config": meddpicc_ok,
        },
        "circuits": CircuitBreaker.all_status(),
        "websocket_connections": ws_manager.connection_count,
    }

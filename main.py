"""
PEAK CRM — Entry Point
========================

Run: python main.py
"""

import os

from dotenv import load_dotenv

load_dotenv()

from scripts.lib.logger import setup_logger

logger = setup_logger("peak_crm", log_to_file=False)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("DASHBOARD_PORT", "8001"))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"

INTEGRATION_ENV = {
    "Monday.com": ("MONDAY_API_TOKEN",),
    "SharePoint": ("SHAREPOINT_TENANT_ID", "SHAREPOINT_CLIENT_ID", "SHAREPOINT_CLIENT_SECRET"),
    "Slack": ("SLACK_BOT_TOKEN",),
}


def startup_banner() -> list[str]:
    defaults = [name for name, keys in INTEGRATION_ENV.items() if all(os.getenv(k) for k in keys)]
    default_org = os.getenv("DEFAULT_INTEGRATION_ORG_ID")
    if not default_org:
        defaults = []
    return [
        "PEAK CRM — Pipeline & MEDDPICC",
        f"Environment  : {os.getenv('ENVIRONMENT', 'development')}",
        f"API          : http://{HOST}:{PORT}/api  (docs at /docs)",
        f"Live feed    : ws://localhost:{PORT}/ws/dashboard?token=<jwt>",
        f"Env defaults : {', '.join(defaults) or 'none (per-organization connections only)'}"
        + (f" for org {default_org}" if defaults else ""),
    ]


if __name__ == "__main__":
    import uvicorn

    for line in startup_banner():
        logger.info(line)

    uvicorn.run("dashboard.api.main:app", host=HOST, port=PORT, reload=DEBUG)

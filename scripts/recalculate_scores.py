"""
PEAK CRM — Score Recalculation
================================
Rescores stored leads (rule engine) and open opportunities (MEDDPICC)
after the scoring rules or an organization's framework change.

Usage:
    python scripts/recalculate_scores.py                       # leads + opportunities, all orgs
    python scripts/recalculate_scores.py --only leads
    python scripts/recalculate_scores.py --org <organization_id>
    python scripts/recalculate_scores.py --report data/rescore.json
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from scripts.lib.logger import setup_logger
from scripts.lib.utils import atomic_write_json
from scripts.sales.lead_scorer import batch_recalculate
from scripts.sales.meddpicc_service import batch_rescore_opportunities

logger = setup_logger("recalculate_scores")


def run(only: str = None, organization_id: str = None, limit: int = 1000) -> dict:
    report = {
        "started_at": datetime.now(timezone.utc).isoformat(),
        "organization_id": organization_id,
    }
    if only in (None, "leads"):
        report["leads"] = batch_recalculate(organization_id, limit=limit)
    if only in (None, "opportunities"):
        report["opportunities"] = batch_rescore_opportunities(organization_id, limit=limit)
    report["finished_at"] = datetime.now(timezone.utc).isoformat()
    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Recalculate lead and MEDDPICC scores")
    parser.add_argument("--only", choices=["leads", "opportunities"],
                        help="Rescore only one record type")
    parser.add_argument("--org", dest="organization_id", help="Limit to one organization ID")
    parser.add_argument("--limit", type=int, default=1000, help="Max rows per record type")
    parser.add_argument("--report", help="Write a JSON report to this path")
    args = parser.parse_args()

    logger.info("=== Score recalculation ===")
    report = run(args.only, args.organization_id, args.limit)

    if args.report and not atomic_write_json(report, args.report):
        logger.error("Could not write report to %s", args.report)
        return 1

    errors = sum(section.get("errors", 0) for section in report.values() if isinstance(section, dict))
    logger.info("=== Recalculation complete (%d errors) ===", errors)
    return 1 if errors else 0


if __name__ == "__main__":
    sys.exit(main())

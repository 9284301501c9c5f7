#!/usr/bin/env python3
"""
Replenishment Recompute Script

Recomputes the replenishment snapshot for one tenant (or every active tenant)
outside the nightly schedule, e.g. after a large inventory correction.

Usage:
    python scripts/recompute_replenishment.py --tenant acme [--window-days 60] [--horizon-days 30]
    python scripts/recompute_replenishment.py --all

Examples:
    # Recompute today's snapshot with the configured defaults
    python scripts/recompute_replenishment.py --tenant acme

    # Measure velocity over 60 days but cover 30 days of demand
    python scripts/recompute_replenishment.py --tenant acme --window-days 60 --horizon-days 30

Exit code is 0 when every requested recompute completed, 1 otherwise.
"""
import sys
import json
import argparse
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from restock.models.base import init_db
from restock.services.recalculation_service import RecalculationService
from restock.utils.logger import log


def print_result(tenant_id: str, result: dict):
    if result.get("status") != "completed":
        log.error(f"[{tenant_id}] FAILED ({result.get('error_code')}): {result.get('error')}")
        return

    log.info(
        f"[{tenant_id}] {result['calculation_date']}: {result['records_generated']} records "
        f"from {result['total_variants_processed']} variants "
        f"({result['variants_skipped_due_to_error']} skipped)"
    )
    breakdown = result["urgency_breakdown"]
    log.info(
        f"[{tenant_id}] critical={breakdown.get('critical', 0)} high={breakdown.get('high', 0)} "
        f"medium={breakdown.get('medium', 0)} low={breakdown.get('low', 0)}"
    )
    for skipped in result["skipped"]:
        log.warning(f"[{tenant_id}] skipped {skipped['variant_id']} ({skipped['sku']}): {skipped['reason']}")
    if result["duplicate_metric_rows"]:
        log.warning(
            f"[{tenant_id}] {result['duplicate_metric_rows']} duplicate sales metric rows in window; "
            f"see scripts/repair_sales_metrics.py"
        )
    if result["duplicate_metric_variants"]:
        log.warning(
            f"[{tenant_id}] velocity for {', '.join(result['duplicate_metric_variants'])} "
            f"includes duplicated metric rows"
        )


def main(args) -> int:
    init_db()
    service = RecalculationService()
    kwargs = {
        "window_days": args.window_days,
        "projection_horizon_days": args.horizon_days,
        "calculation_date": date.fromisoformat(args.date) if args.date else None,
    }

    if args.all:
        results = service.recompute_all_tenants(**kwargs)
    else:
        results = {args.tenant: service.run(args.tenant, **kwargs)}

    if args.json:
        print(json.dumps(results, indent=2, default=str))
    else:
        for tenant_id, result in results.items():
            print_result(tenant_id, result)

    return 0 if all(r.get("status") == "completed" for r in results.values()) else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Recompute replenishment recommendations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--tenant", type=str, help="Tenant id to recompute")
    target.add_argument("--all", action="store_true", help="Recompute every active tenant")
    parser.add_argument(
        "--window-days", type=int, default=None,
        help="Sales window in days (default: DEFAULT_WINDOW_DAYS)"
    )
    parser.add_argument(
        "--horizon-days", type=int, default=None,
        help="Projection horizon in days (default: PROJECTION_HORIZON_DAYS)"
    )
    parser.add_argument(
        "--date", type=str, default=None,
        help="Calculation date YYYY-MM-DD (default: today)"
    )
    parser.add_argument("--json", action="store_true", help="Print raw results as JSON")

    sys.exit(main(parser.parse_args()))

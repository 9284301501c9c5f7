#!/usr/bin/env python3
"""
Sales Metric Duplication Repair Script

Investigates, cleans or validates duplicated per-day sales metric rows.
Run the actions one at a time and review the output in between:

    python scripts/repair_sales_metrics.py --tenant acme --date 2026-03-02 --action investigate
    python scripts/repair_sales_metrics.py --tenant acme --date 2026-03-02 --action clean [--sku TEE-M-BLK]
    python scripts/repair_sales_metrics.py --tenant acme --date 2026-03-02 --action validate

Clean holds the tenant lock and refuses to run while a recompute is in
progress for the same tenant.
"""
import sys
import json
import argparse
from datetime import date
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from restock.models.base import init_db
from restock.services.errors import RestockError
from restock.services.metric_duplication_service import MetricDuplicationService
from restock.utils.logger import log


def summarize(action: str, result: dict):
    if action == "investigate":
        s = result["investigation_summary"]
        log.info(
            f"{result['date']}: {result['total_metric_rows']} rows, "
            f"{s['total_duplicated_variants']} duplicated variants, "
            f"{s['total_duplicate_entries']} rows in duplicated groups, "
            f"{s['double_counted_sales']} double-counted units"
        )
        for d in result["duplications"]:
            log.info(
                f"  {d['sku_variant'] or d['variant_id']} ({d['product_name']}): "
                f"{d['duplicate_count']} rows, {d['total_sales']} units"
            )
    elif action == "clean":
        log.info(
            f"{result['date']}: deleted {result['deleted_entries']} rows "
            f"across {result['cleaned_variant_count']} variants"
        )
    else:
        status = "clean" if result["is_clean"] else f"{result['duplicates_remaining']} keys still duplicated"
        log.info(f"{result['date']}: {status}")


def main(args) -> int:
    init_db()
    service = MetricDuplicationService()
    metric_date = date.fromisoformat(args.date)

    try:
        if args.action == "investigate":
            result = service.investigate(args.tenant, metric_date, sku=args.sku)
        elif args.action == "clean":
            result = service.clean(args.tenant, metric_date, sku=args.sku)
        else:
            result = service.validate(args.tenant, metric_date)
    except RestockError as e:
        log.error(f"{args.action} failed ({e.code}): {e.message}")
        return 1

    if args.json:
        print(json.dumps(result, indent=2, default=str))
    else:
        summarize(args.action, result)

    if args.action == "validate" and not result["is_clean"]:
        return 1
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Audit and repair duplicated sales metric rows")
    parser.add_argument("--tenant", type=str, required=True, help="Tenant id")
    parser.add_argument("--date", type=str, required=True, help="Metric date YYYY-MM-DD")
    parser.add_argument(
        "--action", type=str, required=True,
        choices=["investigate", "clean", "validate"],
        help="Operation to run"
    )
    parser.add_argument("--sku", type=str, default=None, help="Limit investigate/clean to one SKU")
    parser.add_argument("--json", action="store_true", help="Print the raw result as JSON")

    sys.exit(main(parser.parse_args()))

"""
Replenishment query and export

Read side of the engine: ranked listing per calculation date, CSV export,
velocity-ranking summary, per-variant history and the discontinuation flag.
Ranked results are read through a TTL cache that recompute invalidates.
"""
import csv
import io
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from restock.models.catalog import ProductVariant
from restock.models.replenishment import ReplenishmentRecord, DiscontinuationFlag
from restock.services.errors import ConfigurationError
from restock.services.replenishment_classifier import URGENCY_ORDER, urgency_rank
from restock.services.velocity import require_positive_days
from restock.utils.cache import ReadThroughCache
from restock.utils.logger import log

CSV_HEADER = [
    "Rank",
    "Product",
    "Variant",
    "SKU",
    "Current Stock",
    "Sales In Window",
    "Daily Velocity",
    "Days Of Supply",
    "Revenue In Window",
    "Distinct Orders",
    "Urgency",
]

# Sales-in-window buckets for the ranking summary
LOW_SALES_MAX_UNITS = 10


def ranking_key(record: Dict[str, Any]):
    """Urgency tier, then days of supply ascending, then SKU."""
    return (
        urgency_rank(record["urgency"]),
        record["days_of_supply"],
        record.get("sku") or "",
        record["variant_id"],
    )


def record_to_dict(record: ReplenishmentRecord, flagged: bool = False) -> Dict[str, Any]:
    return {
        "variant_id": record.variant_id,
        "calculation_date": record.calculation_date.isoformat(),
        "product_name": record.product_name,
        "variant_descriptor": record.variant_descriptor,
        "sku": record.sku,
        "current_stock": record.current_stock,
        "pending_production": record.pending_production,
        "sales_in_window": record.sales_in_window,
        "orders_in_window": record.orders_in_window,
        "revenue_in_window": record.revenue_in_window,
        "window_days": record.window_days,
        "projection_horizon_days": record.projection_horizon_days,
        "daily_velocity": record.daily_velocity,
        "days_of_supply": record.days_of_supply,
        "no_demand": record.no_demand,
        "projected_window_demand": record.projected_window_demand,
        "suggested_quantity": record.suggested_quantity,
        "urgency": record.urgency,
        "confidence": record.confidence,
        "reason": record.reason,
        "flagged_for_discontinuation": flagged,
    }


def build_summary(records: List[Dict[str, Any]], window_days: Optional[int] = None,
                  calculation_date: Optional[str] = None) -> Dict[str, Any]:
    """Velocity-ranking summary over ranked record dicts."""
    urgency = {u: 0 for u in URGENCY_ORDER}
    for r in records:
        urgency[r["urgency"]] = urgency.get(r["urgency"], 0) + 1

    if records:
        window_days = window_days or records[0]["window_days"]
        calculation_date = calculation_date or records[0]["calculation_date"]

    return {
        "total_variants": len(records),
        "zero_sales": sum(1 for r in records if r["sales_in_window"] == 0),
        "low_sales": sum(1 for r in records if 0 < r["sales_in_window"] <= LOW_SALES_MAX_UNITS),
        "good_sales": sum(1 for r in records if r["sales_in_window"] > LOW_SALES_MAX_UNITS),
        "total_units_sold": sum(r["sales_in_window"] for r in records),
        "total_revenue": round(sum(r["revenue_in_window"] for r in records), 2),
        "total_suggested_quantity": sum(r["suggested_quantity"] for r in records),
        "urgency_breakdown": urgency,
        "period_days": window_days,
        "calculation_date": calculation_date,
    }


def export_csv(records: Iterable[Dict[str, Any]], summary: Optional[Dict[str, Any]] = None) -> str:
    """
    Serialize ranked records to CSV.

    Same input gives byte-identical output: no timestamps are written, the
    calculation date is part of the summary and of the download filename.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)

    for rank, r in enumerate(records, start=1):
        writer.writerow([
            rank,
            r.get("product_name") or "",
            r.get("variant_descriptor") or "",
            r.get("sku") or "",
            r["current_stock"],
            r["sales_in_window"],
            "%.3f" % r["daily_velocity"],
            "%.1f" % r["days_of_supply"],
            "%.2f" % r["revenue_in_window"],
            r["orders_in_window"],
            r["urgency"].upper(),
        ])

    if summary:
        writer.writerow([])
        writer.writerow(["# SUMMARY"])
        writer.writerow(["Total variants analysed", summary["total_variants"]])
        writer.writerow(["No sales (0 units)", summary["zero_sales"]])
        writer.writerow([f"Low sales (1-{LOW_SALES_MAX_UNITS} units)", summary["low_sales"]])
        writer.writerow([f"Good sales (>{LOW_SALES_MAX_UNITS} units)", summary["good_sales"]])
        writer.writerow(["Total units sold", summary["total_units_sold"]])
        writer.writerow(["Total revenue", "%.2f" % summary["total_revenue"]])
        writer.writerow(["Window days", summary["period_days"] if summary["period_days"] is not None else ""])
        writer.writerow(["Calculation date", summary["calculation_date"] or ""])

    return buf.getvalue()


class ReplenishmentQueryService:
    def __init__(self, db: Session, cache: Optional[ReadThroughCache] = None):
        self.db = db
        self.cache = cache

    def latest_calculation_date(self, tenant_id: str) -> Optional[date]:
        return (
            self.db.query(func.max(ReplenishmentRecord.calculation_date))
            .filter(ReplenishmentRecord.tenant_id == tenant_id)
            .scalar()
        )

    def _flagged_variant_ids(self, tenant_id: str) -> set:
        rows = (
            self.db.query(DiscontinuationFlag.variant_id)
            .filter(DiscontinuationFlag.tenant_id == tenant_id)
            .all()
        )
        return {r.variant_id for r in rows}

    def _load_ranked(self, tenant_id: str, calculation_date: Optional[date]) -> Dict[str, Any]:
        calculation_date = calculation_date or self.latest_calculation_date(tenant_id)
        if calculation_date is None:
            return {
                "tenant_id": tenant_id,
                "calculation_date": None,
                "records": [],
                "summary": build_summary([]),
            }

        records = (
            self.db.query(ReplenishmentRecord)
            .filter(
                ReplenishmentRecord.tenant_id == tenant_id,
                ReplenishmentRecord.calculation_date == calculation_date,
            )
            .all()
        )
        flagged = self._flagged_variant_ids(tenant_id)
        ranked = sorted(
            (record_to_dict(r, flagged=r.variant_id in flagged) for r in records),
            key=ranking_key,
        )
        return {
            "tenant_id": tenant_id,
            "calculation_date": calculation_date.isoformat(),
            "records": ranked,
            "summary": build_summary(ranked, calculation_date=calculation_date.isoformat()),
        }

    def get_ranked(self, tenant_id: str, calculation_date: Optional[date] = None,
                   urgency: Optional[str] = None, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Ranked records for a calculation date (latest when omitted).

        Filtering by urgency keeps the ranking and the summary of the full
        set; only the records list is narrowed.
        """
        if urgency is not None and urgency not in URGENCY_ORDER:
            raise ConfigurationError(f"Unknown urgency {urgency!r} (expected one of {', '.join(URGENCY_ORDER)})")

        key = (tenant_id, "ranked", calculation_date.isoformat() if calculation_date else "latest")
        if self.cache is not None:
            result = self.cache.get_or_load(
                key, lambda: self._load_ranked(tenant_id, calculation_date), force_refresh=force_refresh
            )
        else:
            result = self._load_ranked(tenant_id, calculation_date)

        if urgency is None:
            return {**result, "records": list(result["records"])}
        return {**result, "records": [r for r in result["records"] if r["urgency"] == urgency]}

    def export_ranked_csv(self, tenant_id: str, calculation_date: Optional[date] = None):
        """(filename, csv content) for the ranked listing."""
        result = self.get_ranked(tenant_id, calculation_date)
        content = export_csv(result["records"], result["summary"])
        suffix = result["calculation_date"] or "empty"
        return f"replenishment_{tenant_id}_{suffix}.csv", content

    def flag_for_discontinuation(self, tenant_id: str, variant_ids: List[str],
                                 reason: Optional[str] = None) -> Dict[str, List[str]]:
        """Flag variants for discontinuation review. Re-flagging is a no-op."""
        requested = list(dict.fromkeys(variant_ids))
        if not requested:
            raise ConfigurationError("variant_ids must not be empty")

        known = {
            r.id for r in self.db.query(ProductVariant.id)
            .filter(ProductVariant.tenant_id == tenant_id, ProductVariant.id.in_(requested))
            .all()
        }

        for attempt in range(2):
            already = self._flagged_variant_ids(tenant_id) & known
            new_ids = [v for v in requested if v in known and v not in already]
            self.db.add_all([
                DiscontinuationFlag(tenant_id=tenant_id, variant_id=v, reason=reason)
                for v in new_ids
            ])
            try:
                self.db.commit()
                break
            except IntegrityError:
                # Another request flagged one of them first
                self.db.rollback()
                if attempt:
                    raise

        if self.cache is not None:
            self.cache.invalidate_prefix((tenant_id,))

        unknown = [v for v in requested if v not in known]
        if unknown:
            log.warning(f"Ignoring unknown variants for tenant {tenant_id}: {unknown}")
        log.info(f"Flagged {len(new_ids)} variants for discontinuation for tenant {tenant_id}")
        return {
            "flagged": new_ids,
            "already_flagged": [v for v in requested if v in already],
            "unknown": unknown,
        }

    def get_history(self, tenant_id: str, variant_id: str, days: int = 90,
                    as_of: Optional[date] = None) -> List[Dict[str, Any]]:
        """Retained records for one variant over the last ``days`` days, oldest first."""
        days = require_positive_days(days, "days")
        as_of = as_of or date.today()
        since = as_of - timedelta(days=days - 1)
        records = (
            self.db.query(ReplenishmentRecord)
            .filter(
                ReplenishmentRecord.tenant_id == tenant_id,
                ReplenishmentRecord.variant_id == variant_id,
                ReplenishmentRecord.calculation_date >= since,
                ReplenishmentRecord.calculation_date <= as_of,
            )
            .order_by(ReplenishmentRecord.calculation_date)
            .all()
        )
        return [record_to_dict(r) for r in records]

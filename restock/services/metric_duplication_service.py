"""
Sales metric duplication audit and repair

Concurrent sync triggers can append more than one SalesWindowMetric row for
the same (tenant, variant, metric_date). Three operator actions, never
chained automatically:

  investigate - report every duplicated group with its rows
  clean       - keep the latest row of each group, delete the rest
  validate    - regroup and confirm at most one row per key

Clean holds the tenant lock (purpose "metric_repair") so it never
interleaves with a recompute for the same tenant.
"""
import uuid
from collections import OrderedDict
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from restock.config import get_settings
from restock.models.base import SessionLocal
from restock.models.catalog import Product, ProductVariant
from restock.models.sales import SalesWindowMetric
from restock.services.errors import ConfigurationError
from restock.services.tenant_lock import TenantLockManager
from restock.utils.logger import log


def _entry(metric: SalesWindowMetric) -> Dict[str, Any]:
    return {
        "id": metric.id,
        "sales_quantity": metric.sales_quantity,
        "orders_count": metric.orders_count,
        "revenue": float(metric.revenue or 0),
        "created_at": metric.created_at.isoformat() if metric.created_at else None,
    }


def _latest_first(metric: SalesWindowMetric):
    # Latest created_at wins; ties go to the highest id
    return (metric.created_at, metric.id)


class MetricDuplicationService:
    def __init__(self, session_factory: Optional[sessionmaker] = None, settings=None,
                 lock_manager: Optional[TenantLockManager] = None):
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.locks = lock_manager or TenantLockManager(
            self.session_factory,
            ttl_seconds=self.settings.recompute_lock_ttl_seconds,
        )

    def _load_groups(self, db: Session, tenant_id: str, metric_date: date, sku: Optional[str] = None):
        """Metric rows for the date grouped by variant, each group latest first."""
        if not tenant_id:
            raise ConfigurationError("tenant_id is required")
        if not isinstance(metric_date, date):
            raise ConfigurationError(f"date must be a calendar date, got {metric_date!r}")

        query = (
            db.query(SalesWindowMetric, ProductVariant.sku_variant, Product.name)
            .select_from(SalesWindowMetric)
            .outerjoin(ProductVariant, ProductVariant.id == SalesWindowMetric.variant_id)
            .outerjoin(Product, Product.id == ProductVariant.product_id)
            .filter(
                SalesWindowMetric.tenant_id == tenant_id,
                SalesWindowMetric.metric_date == metric_date,
            )
        )
        if sku:
            query = query.filter(ProductVariant.sku_variant == sku)

        groups: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        for metric, sku_variant, product_name in query.order_by(SalesWindowMetric.variant_id).all():
            group = groups.setdefault(metric.variant_id, {
                "sku_variant": sku_variant,
                "product_name": product_name,
                "rows": [],
            })
            group["rows"].append(metric)

        for group in groups.values():
            group["rows"].sort(key=_latest_first, reverse=True)
        return groups

    def investigate(self, tenant_id: str, metric_date: date, sku: Optional[str] = None) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            groups = self._load_groups(db, tenant_id, metric_date, sku)
            total_rows = sum(len(g["rows"]) for g in groups.values())

            duplications = []
            for variant_id, group in groups.items():
                rows = group["rows"]
                if len(rows) < 2:
                    continue
                total_sales = sum(r.sales_quantity for r in rows)
                duplications.append({
                    "variant_id": variant_id,
                    "sku_variant": group["sku_variant"],
                    "product_name": group["product_name"],
                    "duplicate_count": len(rows),
                    "total_sales": total_sales,
                    "total_orders": sum(r.orders_count for r in rows),
                    "total_revenue": round(sum(float(r.revenue or 0) for r in rows), 2),
                    # Units counted beyond the row that clean would keep
                    "double_counted_sales": total_sales - rows[0].sales_quantity,
                    "entries": [_entry(r) for r in rows],
                })

            log.info(
                f"Investigated sales metrics for tenant {tenant_id} on {metric_date}: "
                f"{len(duplications)} duplicated variants in {total_rows} rows"
            )
            return {
                "date": metric_date.isoformat(),
                "total_metric_rows": total_rows,
                "duplications": duplications,
                "investigation_summary": {
                    "total_duplicated_variants": len(duplications),
                    "total_duplicate_entries": sum(d["duplicate_count"] for d in duplications),
                    "affected_sales": sum(d["total_sales"] for d in duplications),
                    "double_counted_sales": sum(d["double_counted_sales"] for d in duplications),
                },
            }
        finally:
            db.close()

    def clean(self, tenant_id: str, metric_date: date, sku: Optional[str] = None) -> Dict[str, Any]:
        """Delete all but the latest row of every duplicated group, in one transaction."""
        holder = f"repair-{uuid.uuid4().hex}"
        with self.locks.hold(tenant_id, holder, purpose="metric_repair"):
            db = self.session_factory()
            try:
                groups = self._load_groups(db, tenant_id, metric_date, sku)

                cleaned: List[Dict[str, Any]] = []
                stale_ids: List[int] = []
                for variant_id, group in groups.items():
                    keep, *stale = group["rows"]
                    if not stale:
                        continue
                    stale_ids.extend(r.id for r in stale)
                    cleaned.append({
                        "variant_id": variant_id,
                        "sku_variant": group["sku_variant"],
                        "kept_id": keep.id,
                        "deleted_ids": [r.id for r in stale],
                    })
                    log.info(f"Removing {len(stale)} duplicate metric rows for variant {variant_id} (keeping {keep.id})")

                deleted = 0
                if stale_ids:
                    deleted = (
                        db.query(SalesWindowMetric)
                        .filter(SalesWindowMetric.id.in_(stale_ids))
                        .delete(synchronize_session=False)
                    )
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        log.info(
            f"Cleaned sales metrics for tenant {tenant_id} on {metric_date}: "
            f"{deleted} rows deleted across {len(cleaned)} variants"
        )
        return {
            "date": metric_date.isoformat(),
            "deleted_entries": deleted,
            "cleaned_variant_count": len(cleaned),
            "cleaned_variants": cleaned,
        }

    def validate(self, tenant_id: str, metric_date: date) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            groups = self._load_groups(db, tenant_id, metric_date)

            # Keyed by variant: SKUs are not unique across variants
            results: Dict[str, Dict[str, Any]] = {}
            for variant_id, group in groups.items():
                rows = group["rows"]
                results[variant_id] = {
                    "sku_variant": group["sku_variant"],
                    "total_sales": sum(r.sales_quantity for r in rows),
                    "total_orders": sum(r.orders_count for r in rows),
                    "entries_count": len(rows),
                }

            remaining = sum(1 for r in results.values() if r["entries_count"] > 1)
            if remaining:
                log.warning(f"Tenant {tenant_id} still has {remaining} duplicated metric keys on {metric_date}")
            return {
                "date": metric_date.isoformat(),
                "validation_results": results,
                "duplicates_remaining": remaining,
                "is_clean": remaining == 0,
            }
        finally:
            db.close()

"""
Sales Window Aggregator

One aggregate per variant over a trailing window ending on window_end
(inclusive): units sold, distinct order count, revenue.

Two read paths:
  ledger  - raw order lines; cancelled / voided / refunded orders excluded
  metrics - per-day SalesWindowMetric rows, every row summed

The metrics path sums duplicate (variant, date) rows instead of assuming the
store is unique, and reports how many extra rows it saw. Both paths report
the window's duplicate metric rows so operators can schedule a repair.
Pure read.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Optional

from sqlalchemy import func, and_, or_
from sqlalchemy.orm import Session

from restock.models.catalog import ProductVariant
from restock.models.sales import SalesOrder, SalesOrderItem, SalesWindowMetric, NON_SALE_FINANCIAL_STATUSES
from restock.services.errors import ConfigurationError
from restock.services.velocity import require_positive_days

logger = logging.getLogger(__name__)

SOURCE_LEDGER = "ledger"
SOURCE_METRICS = "metrics"


@dataclass(frozen=True)
class SalesAggregate:
    variant_id: str
    units_sold: float = 0
    order_count: int = 0
    revenue: float = 0.0
    duplicate_rows: int = 0


@dataclass
class SalesWindowResult:
    tenant_id: str
    window_days: int
    window_start: date
    window_end: date
    source: str
    aggregates: Dict[str, SalesAggregate] = field(default_factory=dict)
    duplicate_metric_rows: int = 0
    duplicated_keys: int = 0

    def get(self, variant_id: str) -> SalesAggregate:
        return self.aggregates.get(variant_id) or SalesAggregate(variant_id=variant_id)


def window_bounds(window_end: date, window_days: int):
    """First and last day of a trailing window (both inclusive)."""
    return window_end - timedelta(days=window_days - 1), window_end


class SalesWindowAggregator:
    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings

    def aggregate(
        self,
        tenant_id: str,
        window_days: int,
        window_end: Optional[date] = None,
        source: Optional[str] = None,
    ) -> SalesWindowResult:
        window_days = require_positive_days(window_days, "window_days")
        window_end = window_end or date.today()
        source = source or (self.settings.sales_source if self.settings else SOURCE_LEDGER)
        start, end = window_bounds(window_end, window_days)

        if source == SOURCE_LEDGER:
            aggregates = self._from_ledger(tenant_id, start, end)
        elif source == SOURCE_METRICS:
            aggregates = self._from_metrics(tenant_id, start, end)
        else:
            raise ConfigurationError(f"Unknown sales source {source!r} (expected 'ledger' or 'metrics')")

        duplicate_rows, duplicated_keys = self.count_metric_duplicates(tenant_id, start, end)
        if duplicate_rows:
            logger.warning(
                f"Tenant {tenant_id}: {duplicate_rows} duplicate sales metric rows across "
                f"{duplicated_keys} (variant, date) keys between {start} and {end}; schedule a repair"
            )

        return SalesWindowResult(
            tenant_id=tenant_id,
            window_days=window_days,
            window_start=start,
            window_end=end,
            source=source,
            aggregates=aggregates,
            duplicate_metric_rows=duplicate_rows,
            duplicated_keys=duplicated_keys,
        )

    def _from_ledger(self, tenant_id: str, start: date, end: date) -> Dict[str, SalesAggregate]:
        start_dt = datetime.combine(start, time.min)
        end_dt = datetime.combine(end + timedelta(days=1), time.min)

        # Lines synced without a variant id are matched on SKU
        variant_key = func.coalesce(SalesOrderItem.variant_id, ProductVariant.id)

        rows = (
            self.db.query(
                variant_key.label("variant_id"),
                func.sum(SalesOrderItem.quantity).label("units"),
                func.count(func.distinct(SalesOrder.id)).label("orders"),
                func.sum(SalesOrderItem.quantity * SalesOrderItem.unit_price).label("revenue"),
            )
            .select_from(SalesOrderItem)
            .join(SalesOrder, SalesOrderItem.order_id == SalesOrder.id)
            .outerjoin(
                ProductVariant,
                and_(
                    SalesOrderItem.variant_id.is_(None),
                    ProductVariant.tenant_id == tenant_id,
                    ProductVariant.sku_variant == SalesOrderItem.sku,
                ),
            )
            .filter(
                SalesOrder.tenant_id == tenant_id,
                SalesOrder.ordered_at >= start_dt,
                SalesOrder.ordered_at < end_dt,
                SalesOrder.cancelled_at.is_(None),
                or_(
                    SalesOrder.financial_status.is_(None),
                    SalesOrder.financial_status.notin_(NON_SALE_FINANCIAL_STATUSES),
                ),
                variant_key.isnot(None),
            )
            .group_by(variant_key)
            .all()
        )

        return {
            r.variant_id: SalesAggregate(
                variant_id=r.variant_id,
                units_sold=int(r.units or 0),
                order_count=int(r.orders or 0),
                revenue=round(float(r.revenue or 0), 2),
            )
            for r in rows
        }

    def _from_metrics(self, tenant_id: str, start: date, end: date) -> Dict[str, SalesAggregate]:
        rows = (
            self.db.query(
                SalesWindowMetric.variant_id,
                func.sum(SalesWindowMetric.sales_quantity).label("units"),
                func.sum(SalesWindowMetric.orders_count).label("orders"),
                func.sum(SalesWindowMetric.revenue).label("revenue"),
                func.count(SalesWindowMetric.id).label("row_count"),
                func.count(func.distinct(SalesWindowMetric.metric_date)).label("day_count"),
            )
            .filter(
                SalesWindowMetric.tenant_id == tenant_id,
                SalesWindowMetric.metric_date >= start,
                SalesWindowMetric.metric_date <= end,
            )
            .group_by(SalesWindowMetric.variant_id)
            .all()
        )

        return {
            r.variant_id: SalesAggregate(
                variant_id=r.variant_id,
                units_sold=int(r.units or 0),
                order_count=int(r.orders or 0),
                revenue=round(float(r.revenue or 0), 2),
                duplicate_rows=int(r.row_count) - int(r.day_count),
            )
            for r in rows
        }

    def count_metric_duplicates(self, tenant_id: str, start: date, end: date):
        """(extra rows, duplicated keys) among SalesWindowMetric rows in the window."""
        grouped = (
            self.db.query(
                SalesWindowMetric.variant_id,
                SalesWindowMetric.metric_date,
                func.count(SalesWindowMetric.id).label("cnt"),
            )
            .filter(
                SalesWindowMetric.tenant_id == tenant_id,
                SalesWindowMetric.metric_date >= start,
                SalesWindowMetric.metric_date <= end,
            )
            .group_by(SalesWindowMetric.variant_id, SalesWindowMetric.metric_date)
            .having(func.count(SalesWindowMetric.id) > 1)
            .all()
        )
        extra_rows = sum(int(g.cnt) - 1 for g in grouped)
        return extra_rows, len(grouped)

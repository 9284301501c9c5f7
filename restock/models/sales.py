"""
Sales Data Models

The sales ledger (orders + line items) written by the commerce sync, and the
per-day SalesWindowMetric rows written by the metric sync triggers.
"""
from sqlalchemy import Column, Integer, String, DateTime, Date, ForeignKey, Numeric, Index
from sqlalchemy.orm import relationship
from datetime import datetime

from restock.models.base import Base


# Financial statuses that never count as a sale
NON_SALE_FINANCIAL_STATUSES = ("cancelled", "voided", "refunded")


class SalesOrder(Base):
    """A customer order as recorded by the sales-ledger sync"""
    __tablename__ = "sales_orders"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    external_order_id = Column(String, index=True, nullable=False)  # commerce platform order id

    ordered_at = Column(DateTime, index=True, nullable=False)
    financial_status = Column(String, index=True, nullable=True)  # paid, pending, partially_paid, refunded, voided
    cancelled_at = Column(DateTime, nullable=True)

    items = relationship("SalesOrderItem", back_populates="order", cascade="all, delete-orphan")


class SalesOrderItem(Base):
    """One line of a sales order"""
    __tablename__ = "sales_order_items"

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(Integer, ForeignKey('sales_orders.id'), index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=True)
    sku = Column(String, index=True, nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)

    order = relationship("SalesOrder", back_populates="items")


class SalesWindowMetric(Base):
    """
    Per-variant sales metric for one day.

    Append-only. Several sync triggers can race and append more than one row
    for the same (tenant_id, variant_id, metric_date); there is deliberately
    no unique constraint here. MetricDuplicationService repairs such groups.
    """
    __tablename__ = "sales_window_metrics"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=False)
    metric_date = Column(Date, index=True, nullable=False)

    sales_quantity = Column(Integer, nullable=False, default=0)
    orders_count = Column(Integer, nullable=False, default=0)
    revenue = Column(Numeric(12, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)

    __table_args__ = (
        Index('ix_sales_metric_tenant_date', 'tenant_id', 'metric_date'),
    )

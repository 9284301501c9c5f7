"""
Replenishment Models

Engine-owned tables: the per-date replenishment snapshot, run history, the
per-tenant recompute lock and discontinuation flags.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Date, Text, JSON, UniqueConstraint, Index
from datetime import datetime

from restock.models.base import Base


class ReplenishmentRecord(Base):
    """
    Restocking recommendation for one variant on one calculation date.

    The full set for (tenant_id, calculation_date) is replaced atomically by
    each recompute; rows are never updated in place.
    """
    __tablename__ = "replenishment_records"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=False)
    calculation_date = Column(Date, index=True, nullable=False)
    run_id = Column(String, index=True, nullable=True)

    # Denormalized for ranking/export
    product_name = Column(String, nullable=True)
    variant_descriptor = Column(String, nullable=True)
    sku = Column(String, index=True, nullable=True)

    current_stock = Column(Integer, nullable=False)
    pending_production = Column(Integer, nullable=False, default=0)
    sales_in_window = Column(Integer, nullable=False, default=0)
    orders_in_window = Column(Integer, nullable=False, default=0)
    revenue_in_window = Column(Float, nullable=False, default=0)
    window_days = Column(Integer, nullable=False)
    projection_horizon_days = Column(Integer, nullable=False)

    daily_velocity = Column(Float, nullable=False)
    days_of_supply = Column(Float, nullable=False)  # capped at the no-demand sentinel
    no_demand = Column(Boolean, default=False, nullable=False)
    projected_window_demand = Column(Float, nullable=False)
    suggested_quantity = Column(Integer, nullable=False, default=0)

    urgency = Column(String, index=True, nullable=False)  # critical, high, medium, low
    confidence = Column(String, nullable=False)  # high, medium, low
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'variant_id', 'calculation_date', name='uq_replenishment_tenant_variant_date'),
        Index('ix_replenishment_tenant_date', 'tenant_id', 'calculation_date'),
    )


class CalculationRun(Base):
    """One recompute invocation for a tenant and date"""
    __tablename__ = "calculation_runs"

    id = Column(String, primary_key=True)  # uuid4 hex

    tenant_id = Column(String, index=True, nullable=False)
    calculation_date = Column(Date, index=True, nullable=False)
    status = Column(String, index=True, nullable=False)  # running, completed, failed

    window_days = Column(Integer, nullable=False)
    projection_horizon_days = Column(Integer, nullable=False)

    variants_processed = Column(Integer, default=0)
    variants_skipped = Column(Integer, default=0)
    records_generated = Column(Integer, default=0)
    urgency_breakdown = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)


class TenantLock(Base):
    """
    Exclusive per-tenant lock. The row existing is the lock.

    Inserted before a recompute (or a metric repair) reads anything and
    deleted when it finishes; expires_at lets a crashed holder's lock be
    reclaimed.
    """
    __tablename__ = "tenant_locks"

    tenant_id = Column(String, primary_key=True)
    holder = Column(String, nullable=False)  # run id
    purpose = Column(String, nullable=False, default="recompute")  # recompute, metric_repair

    acquired_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)


class DiscontinuationFlag(Base):
    """Operator flag marking a variant for discontinuation review"""
    __tablename__ = "discontinuation_flags"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=False)
    reason = Column(Text, nullable=True)

    flagged_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'variant_id', name='uq_discontinuation_tenant_variant'),
    )

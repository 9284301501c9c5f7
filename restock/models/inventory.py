"""
Inventory Models

Stock levels and in-flight production. Both are maintained by the inventory
and workshop modules; the replenishment engine reads them at the start of a
run.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime

from restock.models.base import Base


# Production statuses whose remaining quantity counts as pending supply
PENDING_PRODUCTION_STATUSES = ("pending", "in_progress")


class StockLevel(Base):
    """On-hand quantity of a variant at one location"""
    __tablename__ = "stock_levels"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=False)
    location = Column(String, default="main", nullable=False)

    # NULL means the upstream record is malformed
    quantity_on_hand = Column(Integer, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProductionOrder(Base):
    """A workshop production order"""
    __tablename__ = "production_orders"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default="pending")  # pending, in_progress, completed, cancelled

    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("ProductionOrderItem", back_populates="production_order", cascade="all, delete-orphan")


class ProductionOrderItem(Base):
    """Quantity of one variant in a production order"""
    __tablename__ = "production_order_items"

    id = Column(Integer, primary_key=True, index=True)

    production_order_id = Column(Integer, ForeignKey('production_orders.id'), index=True, nullable=False)
    variant_id = Column(String, index=True, nullable=False)

    quantity = Column(Integer, nullable=False, default=0)
    quantity_completed = Column(Integer, nullable=False, default=0)

    production_order = relationship("ProductionOrder", back_populates="items")

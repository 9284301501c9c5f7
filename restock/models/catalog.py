"""
Catalog Models

Tenants, products and sellable variants. Owned and mutated by the catalog
module; the replenishment engine only reads them.
"""
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime

from restock.models.base import Base


class Tenant(Base):
    """An organization using the operations console"""
    __tablename__ = "tenants"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """A catalog product; variants carry the sellable SKUs"""
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, ForeignKey('tenants.id'), index=True, nullable=False)

    name = Column(String, nullable=False)
    status = Column(String, default="active", index=True)  # active, draft, discontinued

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    """
    One sellable SKU (product + size/color)

    Identity (id, tenant_id, sku_variant) never changes; display attributes
    are edited by the catalog module.
    """
    __tablename__ = "product_variants"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, ForeignKey('tenants.id'), index=True, nullable=False)
    product_id = Column(String, ForeignKey('products.id'), index=True, nullable=False)

    size = Column(String, nullable=True)
    color = Column(String, nullable=True)
    sku_variant = Column(String, index=True, nullable=False)

    active = Column(Boolean, default=True, nullable=False)

    product = relationship("Product", back_populates="variants")

    @property
    def descriptor(self) -> str:
        """Human-readable 'size / color' label"""
        parts = [p for p in (self.size, self.color) if p]
        return " / ".join(parts) if parts else "No variant"

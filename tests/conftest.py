"""
Shared fixtures: a throwaway SQLite database per test plus seed helpers.
"""
import os

# Must be set before restock.config is imported anywhere
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///./restock_test.db")

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from itertools import count

import pytest
from sqlalchemy.orm import sessionmaker

from restock.config import Settings
from restock.models.base import build_engine, init_db
from restock.models import (
    Tenant,
    Product,
    ProductVariant,
    SalesOrder,
    SalesOrderItem,
    SalesWindowMetric,
    StockLevel,
    ProductionOrder,
    ProductionOrderItem,
)

CALC_DATE = date(2026, 3, 31)


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'restock.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        log_to_file=False,
        enable_scheduler=False,
        sales_source="ledger",
        replenishment_policy_overrides="",
    )


class Seeder:
    """Small helpers for writing catalog, sales and stock rows."""

    def __init__(self, db):
        self.db = db
        self._ids = count(1)

    def tenant(self, tenant_id="acme", active=True):
        self.db.add(Tenant(id=tenant_id, name=tenant_id.title(), active=active))
        self.db.commit()
        return tenant_id

    def variant(self, variant_id, tenant_id="acme", product_name="Classic Tee", size="M", color="Black",
                sku=None, active=True):
        product_id = f"{tenant_id}-{product_name}"
        if self.db.get(Product, product_id) is None:
            self.db.add(Product(id=product_id, tenant_id=tenant_id, name=product_name))
        self.db.add(ProductVariant(
            id=variant_id,
            tenant_id=tenant_id,
            product_id=product_id,
            size=size,
            color=color,
            sku_variant=sku or variant_id.upper(),
            active=active,
        ))
        self.db.commit()
        return variant_id

    def stock(self, variant_id, quantity, tenant_id="acme", location="main"):
        self.db.add(StockLevel(tenant_id=tenant_id, variant_id=variant_id, location=location,
                               quantity_on_hand=quantity))
        self.db.commit()

    def sale(self, variant_id, quantity, unit_price=10, days_ago=1, tenant_id="acme", status="paid",
             cancelled=False, sku=None, as_of=CALC_DATE):
        ordered_at = datetime.combine(as_of - timedelta(days=days_ago), time(12, 0))
        order = SalesOrder(
            tenant_id=tenant_id,
            external_order_id=f"#{next(self._ids)}",
            ordered_at=ordered_at,
            financial_status=status,
            cancelled_at=ordered_at if cancelled else None,
        )
        order.items.append(SalesOrderItem(
            variant_id=variant_id,
            sku=sku,
            quantity=quantity,
            unit_price=Decimal(str(unit_price)),
        ))
        self.db.add(order)
        self.db.commit()
        return order

    def sales(self, variant_id, orders, quantity=1, **kwargs):
        """``orders`` separate orders of ``quantity`` units each."""
        for i in range(orders):
            self.sale(variant_id, quantity, days_ago=1 + (i % 20), **kwargs)

    def production(self, variant_id, quantity, completed=0, status="in_progress", tenant_id="acme"):
        order = ProductionOrder(tenant_id=tenant_id, status=status)
        order.items.append(ProductionOrderItem(variant_id=variant_id, quantity=quantity,
                                               quantity_completed=completed))
        self.db.add(order)
        self.db.commit()

    def metric(self, variant_id, metric_date, sales_quantity, orders_count=1, revenue=0,
               created_at=None, tenant_id="acme"):
        row = SalesWindowMetric(
            tenant_id=tenant_id,
            variant_id=variant_id,
            metric_date=metric_date,
            sales_quantity=sales_quantity,
            orders_count=orders_count,
            revenue=Decimal(str(revenue)),
            created_at=created_at or datetime(2026, 3, 1, 0, 0),
        )
        self.db.add(row)
        self.db.commit()
        return row.id


@pytest.fixture
def seed(db):
    return Seeder(db)

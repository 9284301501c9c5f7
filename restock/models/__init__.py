"""Database models for the replenishment engine"""

from restock.models.catalog import (
    Tenant,
    Product,
    ProductVariant
)

from restock.models.sales import (
    SalesOrder,
    SalesOrderItem,
    SalesWindowMetric
)

from restock.models.inventory import (
    StockLevel,
    ProductionOrder,
    ProductionOrderItem
)

from restock.models.replenishment import (
    ReplenishmentRecord,
    CalculationRun,
    TenantLock,
    DiscontinuationFlag
)

__all__ = [
    "Tenant",
    "Product",
    "ProductVariant",
    "SalesOrder",
    "SalesOrderItem",
    "SalesWindowMetric",
    "StockLevel",
    "ProductionOrder",
    "ProductionOrderItem",
    "ReplenishmentRecord",
    "CalculationRun",
    "TenantLock",
    "DiscontinuationFlag",
]

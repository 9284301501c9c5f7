"""
Stock State Resolver

Reads on-hand stock and quantity already committed to in-progress
production for every variant of a tenant. Read-only.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from restock.models.inventory import StockLevel, ProductionOrder, ProductionOrderItem, PENDING_PRODUCTION_STATUSES
from restock.services.errors import VariantDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockState:
    current_stock: int = 0
    pending_production: int = 0
    oversold: bool = False


@dataclass
class StockSnapshot:
    """Stock for one tenant, read once at the start of a run."""
    states: Dict[str, StockState] = field(default_factory=dict)
    malformed: Dict[str, str] = field(default_factory=dict)

    def get(self, variant_id: str) -> StockState:
        """Stock for a variant; (0, 0) when no record exists."""
        if variant_id in self.malformed:
            raise VariantDataError(
                f"Malformed stock record for variant {variant_id}: {self.malformed[variant_id]}",
                details={"variant_id": variant_id},
            )
        return self.states.get(variant_id, StockState())

    @property
    def oversold_variants(self) -> Set[str]:
        return {vid for vid, s in self.states.items() if s.oversold}


class StockStateResolver:
    def __init__(self, db: Session):
        self.db = db

    def _on_hand_by_variant(self, tenant_id: str):
        rows = (
            self.db.query(
                StockLevel.variant_id,
                func.sum(StockLevel.quantity_on_hand).label("on_hand"),
                func.count(StockLevel.id).label("row_count"),
                func.count(StockLevel.quantity_on_hand).label("non_null_count"),
            )
            .filter(StockLevel.tenant_id == tenant_id)
            .group_by(StockLevel.variant_id)
            .all()
        )
        return rows

    def _pending_by_variant(self, tenant_id: str) -> Dict[str, int]:
        remaining = ProductionOrderItem.quantity - ProductionOrderItem.quantity_completed
        rows = (
            self.db.query(
                ProductionOrderItem.variant_id,
                ProductionOrderItem.quantity,
                ProductionOrderItem.quantity_completed,
            )
            .select_from(ProductionOrderItem)
            .join(ProductionOrder, ProductionOrder.id == ProductionOrderItem.production_order_id)
            .filter(
                ProductionOrder.tenant_id == tenant_id,
                ProductionOrder.status.in_(PENDING_PRODUCTION_STATUSES),
                remaining > 0,
            )
            .all()
        )
        pending: Dict[str, int] = {}
        for r in rows:
            pending[r.variant_id] = pending.get(r.variant_id, 0) + int(r.quantity) - int(r.quantity_completed or 0)
        return pending

    def resolve(self, tenant_id: str) -> StockSnapshot:
        """Snapshot of (current_stock >= 0, pending_production >= 0) per variant."""
        snapshot = StockSnapshot()
        pending = self._pending_by_variant(tenant_id)

        for row in self._on_hand_by_variant(tenant_id):
            if row.non_null_count < row.row_count:
                snapshot.malformed[row.variant_id] = "quantity_on_hand is NULL"
                continue

            on_hand = int(row.on_hand or 0)
            oversold = on_hand < 0
            if oversold:
                logger.warning(f"Variant {row.variant_id} has negative stock ({on_hand}); treating as 0")
                on_hand = 0

            snapshot.states[row.variant_id] = StockState(
                current_stock=on_hand,
                pending_production=pending.pop(row.variant_id, 0),
                oversold=oversold,
            )

        # Production pending for variants without any stock row
        for variant_id, qty in pending.items():
            if variant_id not in snapshot.malformed:
                snapshot.states[variant_id] = StockState(current_stock=0, pending_production=qty)

        logger.info(
            f"Resolved stock for tenant {tenant_id}: {len(snapshot.states)} variants, "
            f"{len(snapshot.malformed)} malformed"
        )
        return snapshot

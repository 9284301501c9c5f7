"""
Recalculation Orchestrator

Entry point for a full replenishment recompute of one tenant:

  Idle -> Running -> Completed | Failed

1. Validate window/horizon/policy (no I/O; configuration errors fail fast)
2. Acquire the tenant lock (contention is rejected, never queued)
3. Read variants, sales window aggregate and stock snapshot
4. Project velocity and classify every variant; per-variant data errors are
   logged and counted as skipped
5. Replace the (tenant, calculation_date) record set in one transaction,
   which first confirms the lock is still ours (renewed during long runs)
6. Release the lock on every exit path

Running twice for the same date leaves the same row set: the delete and the
insert commit together or not at all.
"""
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from restock.config import get_settings
from restock.models.base import SessionLocal
from restock.models.catalog import Tenant, Product, ProductVariant
from restock.models.replenishment import ReplenishmentRecord, CalculationRun
from restock.services.errors import (
    RestockError,
    ConfigurationError,
    TenantNotFoundError,
    RecomputeCancelledError,
    VariantDataError,
)
from restock.services.replenishment_classifier import ReplenishmentPolicy, URGENCY_ORDER, classify
from restock.services.sales_window_service import SalesWindowAggregator, SalesWindowResult
from restock.services.stock_state_service import StockStateResolver, StockSnapshot
from restock.services.tenant_lock import TenantLockManager
from restock.services.velocity import project, require_positive_days
from restock.utils.cache import ReadThroughCache
from restock.utils.logger import log

# Errors that only affect the variant being built
VARIANT_LEVEL_ERRORS = (VariantDataError, ValueError, TypeError, ArithmeticError)


@dataclass
class RecomputeSummary:
    tenant_id: str
    run_id: str
    calculation_date: date
    window_days: int
    projection_horizon_days: int
    total_variants_processed: int = 0
    records_generated: int = 0
    variants_skipped_due_to_error: int = 0
    skipped: List[Dict[str, str]] = field(default_factory=list)
    urgency_breakdown: Dict[str, int] = field(default_factory=dict)
    confidence_breakdown: Dict[str, int] = field(default_factory=dict)
    duplicate_metric_rows: int = 0
    duplicate_metric_variants: List[str] = field(default_factory=list)
    sales_source: str = "ledger"
    status: str = "completed"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["calculation_date"] = self.calculation_date.isoformat()
        return data


class RecalculationService:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        settings=None,
        lock_manager: Optional[TenantLockManager] = None,
        cache: Optional[ReadThroughCache] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory or SessionLocal
        self.settings = settings or get_settings()
        self.locks = lock_manager or TenantLockManager(
            self.session_factory,
            ttl_seconds=self.settings.recompute_lock_ttl_seconds,
            clock=clock,
        )
        self.cache = cache
        self.clock = clock

    # ─────────────────────────────────────────────
    # CONFIGURATION
    # ─────────────────────────────────────────────

    def _resolve_window(self, window_days: Optional[int]) -> int:
        if window_days is None:
            window_days = self.settings.default_window_days
        window_days = require_positive_days(window_days, "window_days")
        allowed = self.settings.allowed_windows
        if allowed and window_days not in allowed:
            raise ConfigurationError(
                f"window_days={window_days} is not allowed (allowed: {', '.join(str(w) for w in allowed)})"
            )
        return window_days

    def _resolve_horizon(self, projection_horizon_days: Optional[int]) -> int:
        if projection_horizon_days is None:
            projection_horizon_days = self.settings.projection_horizon_days
        return require_positive_days(projection_horizon_days, "projection_horizon_days")

    # ─────────────────────────────────────────────
    # RUN BOOKKEEPING
    # ─────────────────────────────────────────────

    def _start_run(self, run_id: str, tenant_id: str, calculation_date: date, window_days: int, horizon: int):
        db = self.session_factory()
        try:
            db.add(CalculationRun(
                id=run_id,
                tenant_id=tenant_id,
                calculation_date=calculation_date,
                status="running",
                window_days=window_days,
                projection_horizon_days=horizon,
                started_at=self.clock(),
            ))
            db.commit()
        finally:
            db.close()

    def _finish_run(self, run_id: str, status: str, summary: Optional[RecomputeSummary] = None,
                    error: Optional[str] = None):
        db = self.session_factory()
        try:
            run = db.get(CalculationRun, run_id)
            if run is None:
                return
            run.status = status
            run.finished_at = self.clock()
            if summary is not None:
                run.variants_processed = summary.total_variants_processed
                run.variants_skipped = summary.variants_skipped_due_to_error
                run.records_generated = summary.records_generated
                run.urgency_breakdown = summary.urgency_breakdown
            run.error_message = error
            db.commit()
        except Exception as e:
            db.rollback()
            log.error(f"Could not record {status} state for run {run_id}: {e}")
        finally:
            db.close()

    # ─────────────────────────────────────────────
    # RECOMPUTE
    # ─────────────────────────────────────────────

    def recompute(
        self,
        tenant_id: str,
        window_days: Optional[int] = None,
        projection_horizon_days: Optional[int] = None,
        calculation_date: Optional[date] = None,
        cancel_event=None,
        timeout_seconds: Optional[float] = None,
    ) -> RecomputeSummary:
        """
        Recompute and persist the replenishment snapshot for one tenant.

        Raises ConfigurationError, TenantNotFoundError, RecomputeInProgressError
        or RecomputeCancelledError; in every case the previous snapshot for the
        date is left untouched and the tenant lock is released.
        """
        if not tenant_id:
            raise ConfigurationError("tenant_id is required")
        window_days = self._resolve_window(window_days)
        horizon = self._resolve_horizon(projection_horizon_days)
        policy = ReplenishmentPolicy.for_tenant(tenant_id, self.settings)
        calculation_date = calculation_date or date.today()

        if timeout_seconds is None:
            timeout_seconds = self.settings.recompute_timeout_seconds
        deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

        run_id = uuid.uuid4().hex
        self.locks.acquire(tenant_id, run_id, purpose="recompute")
        try:
            log.info(
                f"Recompute {run_id} started for tenant {tenant_id} "
                f"(date={calculation_date}, window={window_days}d, horizon={horizon}d)"
            )
            self._start_run(run_id, tenant_id, calculation_date, window_days, horizon)
            try:
                summary = self._execute(
                    run_id, tenant_id, calculation_date, window_days, horizon, policy,
                    cancel_event, deadline,
                )
            except Exception as e:
                self._finish_run(run_id, "failed", error=str(e))
                log.error(f"Recompute {run_id} for tenant {tenant_id} failed: {e}")
                raise

            self._finish_run(run_id, "completed", summary=summary)
            if self.cache is not None:
                self.cache.invalidate_prefix((tenant_id,))
            log.info(
                f"Recompute {run_id} completed for tenant {tenant_id}: "
                f"{summary.records_generated} records, {summary.variants_skipped_due_to_error} skipped, "
                f"urgency={summary.urgency_breakdown}"
            )
            return summary
        finally:
            self.locks.release(tenant_id, run_id)

    def _check_cancelled(self, cancel_event, deadline: Optional[float]):
        if cancel_event is not None and cancel_event.is_set():
            raise RecomputeCancelledError("Recompute cancelled by caller before persistence")
        if deadline is not None and time.monotonic() > deadline:
            raise RecomputeCancelledError("Recompute deadline exceeded before persistence")

    def _execute(self, run_id, tenant_id, calculation_date, window_days, horizon, policy,
                 cancel_event, deadline) -> RecomputeSummary:
        db: Session = self.session_factory()
        try:
            tenant = db.get(Tenant, tenant_id)
            if tenant is None or not tenant.active:
                raise TenantNotFoundError(f"Tenant {tenant_id} not found", details={"tenant_id": tenant_id})

            variants = (
                db.query(ProductVariant, Product.name)
                .join(Product, ProductVariant.product_id == Product.id)
                .filter(ProductVariant.tenant_id == tenant_id, ProductVariant.active.is_(True))
                .order_by(ProductVariant.id)
                .all()
            )
            self._check_cancelled(cancel_event, deadline)

            sales = SalesWindowAggregator(db, self.settings).aggregate(tenant_id, window_days, calculation_date)
            stock = StockStateResolver(db).resolve(tenant_id)

            summary = RecomputeSummary(
                tenant_id=tenant_id,
                run_id=run_id,
                calculation_date=calculation_date,
                window_days=window_days,
                projection_horizon_days=horizon,
                total_variants_processed=len(variants),
                duplicate_metric_rows=sales.duplicate_metric_rows,
                # Only the metrics source counts per-variant duplicates into its totals
                duplicate_metric_variants=sorted(v for v, a in sales.aggregates.items() if a.duplicate_rows),
                sales_source=sales.source,
            )

            records = []
            renew_every = self.locks.ttl_seconds / 2
            last_renewed = time.monotonic()
            for variant, product_name in variants:
                self._check_cancelled(cancel_event, deadline)
                if time.monotonic() - last_renewed >= renew_every:
                    self.locks.renew(tenant_id, run_id)
                    last_renewed = time.monotonic()
                try:
                    records.append(self._build_record(
                        run_id, variant, product_name, calculation_date, window_days, horizon,
                        policy, sales, stock,
                    ))
                except VARIANT_LEVEL_ERRORS as e:
                    log.warning(f"Skipping variant {variant.id} ({variant.sku_variant}) for tenant {tenant_id}: {e}")
                    summary.skipped.append({"variant_id": variant.id, "sku": variant.sku_variant, "reason": str(e)})

            self._check_cancelled(cancel_event, deadline)

            # Atomic replace-for-date, committed only while this run owns the lock
            self.locks.confirm_held(db, tenant_id, run_id)
            db.query(ReplenishmentRecord).filter(
                ReplenishmentRecord.tenant_id == tenant_id,
                ReplenishmentRecord.calculation_date == calculation_date,
            ).delete(synchronize_session=False)
            db.add_all(records)
            db.commit()

            urgency = Counter(r.urgency for r in records)
            confidence = Counter(r.confidence for r in records)
            summary.records_generated = len(records)
            summary.variants_skipped_due_to_error = len(summary.skipped)
            summary.urgency_breakdown = {u: urgency.get(u, 0) for u in URGENCY_ORDER}
            summary.confidence_breakdown = {c: confidence.get(c, 0) for c in ("high", "medium", "low")}
            return summary
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _build_record(self, run_id: str, variant: ProductVariant, product_name: str, calculation_date: date,
                      window_days: int, horizon: int, policy: ReplenishmentPolicy,
                      sales: SalesWindowResult, stock: StockSnapshot) -> ReplenishmentRecord:
        state = stock.get(variant.id)
        agg = sales.get(variant.id)

        projection = project(
            agg.units_sold,
            state.current_stock,
            window_days,
            horizon,
            no_demand_days=policy.no_demand_days_of_supply,
        )
        result = classify(
            projection,
            current_stock=state.current_stock,
            pending_production=state.pending_production,
            orders_in_window=agg.order_count,
            window_days=window_days,
            projection_horizon_days=horizon,
            policy=policy,
        )

        return ReplenishmentRecord(
            tenant_id=variant.tenant_id,
            variant_id=variant.id,
            calculation_date=calculation_date,
            run_id=run_id,
            product_name=product_name,
            variant_descriptor=variant.descriptor,
            sku=variant.sku_variant,
            current_stock=state.current_stock,
            pending_production=state.pending_production,
            sales_in_window=int(agg.units_sold),
            orders_in_window=agg.order_count,
            revenue_in_window=round(agg.revenue, 2),
            window_days=window_days,
            projection_horizon_days=horizon,
            daily_velocity=round(projection.daily_velocity, 4),
            days_of_supply=round(projection.days_of_supply, 2),
            no_demand=projection.no_demand,
            projected_window_demand=round(projection.projected_window_demand, 2),
            suggested_quantity=result.suggested_quantity,
            urgency=result.urgency,
            confidence=result.confidence,
            reason=result.reason,
            created_at=self.clock(),
        )

    def run(self, tenant_id: str, **kwargs) -> Dict[str, Any]:
        """recompute() as a structured result: the summary, or {status: failed, error, ...}."""
        try:
            return self.recompute(tenant_id, **kwargs).to_dict()
        except RestockError as e:
            return {"status": "failed", "tenant_id": tenant_id, **e.to_dict()}
        except Exception as e:
            log.exception(f"Unexpected recompute error for tenant {tenant_id}")
            return {"status": "failed", "tenant_id": tenant_id, "error": str(e), "error_code": "internal_error"}

    def recompute_all_tenants(self, **kwargs) -> Dict[str, Dict[str, Any]]:
        """Recompute every active tenant independently (scheduler entry point)."""
        db = self.session_factory()
        try:
            tenant_ids = [t.id for t in db.query(Tenant).filter(Tenant.active.is_(True)).order_by(Tenant.id).all()]
        finally:
            db.close()

        results = {}
        for tenant_id in tenant_ids:
            results[tenant_id] = self.run(tenant_id, **kwargs)
        failed = [t for t, r in results.items() if r.get("status") != "completed"]
        log.info(f"Recomputed {len(tenant_ids)} tenants ({len(failed)} failed: {failed})")
        return results

    def list_runs(self, tenant_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            runs = (
                db.query(CalculationRun)
                .filter(CalculationRun.tenant_id == tenant_id)
                .order_by(CalculationRun.started_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "run_id": r.id,
                    "calculation_date": r.calculation_date.isoformat(),
                    "status": r.status,
                    "window_days": r.window_days,
                    "projection_horizon_days": r.projection_horizon_days,
                    "variants_processed": r.variants_processed,
                    "variants_skipped": r.variants_skipped,
                    "records_generated": r.records_generated,
                    "urgency_breakdown": r.urgency_breakdown,
                    "error": r.error_message,
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                }
                for r in runs
            ]
        finally:
            db.close()

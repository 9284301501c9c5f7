"""
Recalculation orchestrator tests: persistence, idempotence, per-tenant
exclusivity, cancellation and per-variant error absorption.
"""
import threading
from datetime import date, datetime, timedelta

import pytest

from restock.models import ReplenishmentRecord, CalculationRun, TenantLock
from restock.services.errors import (
    ConfigurationError,
    TenantNotFoundError,
    RecomputeInProgressError,
    RecomputeCancelledError,
)
from restock.services.recalculation_service import RecalculationService
from restock.services.tenant_lock import TenantLockManager
from restock.utils.cache import ReadThroughCache

CALC_DATE = date(2026, 3, 31)


@pytest.fixture
def shop(seed):
    """Three variants: out of stock and selling, healthy, and dead stock."""
    seed.tenant("acme")
    seed.variant("v-tee", sku="TEE-M-BLK")
    seed.variant("v-hood", product_name="Hoodie", size="L", color="Grey", sku="HOOD-L-GRY")
    seed.variant("v-cap", product_name="Cap", size=None, color=None, sku="CAP-OS")

    seed.sales("v-tee", orders=15, quantity=2)      # 30 units / 30 days
    seed.stock("v-tee", 0)

    seed.sales("v-hood", orders=6, quantity=1)      # 6 units / 30 days
    seed.stock("v-hood", 40)

    seed.stock("v-cap", 250)                        # no sales
    return seed


@pytest.fixture
def service(session_factory, settings):
    return RecalculationService(session_factory=session_factory, settings=settings)


def _records(db, tenant_id="acme", calculation_date=CALC_DATE):
    db.expire_all()
    rows = (
        db.query(ReplenishmentRecord)
        .filter(ReplenishmentRecord.tenant_id == tenant_id,
                ReplenishmentRecord.calculation_date == calculation_date)
        .all()
    )
    return {r.variant_id: r for r in rows}


def _comparable(records):
    return {
        vid: (r.current_stock, r.sales_in_window, r.daily_velocity, r.days_of_supply,
              r.suggested_quantity, r.urgency, r.confidence, r.reason)
        for vid, r in records.items()
    }


# ────────────────────────────────────────────
# HAPPY PATH
# ────────────────────────────────────────────


class TestRecompute:

    def test_persists_one_record_per_variant(self, db, shop, service):
        summary = service.recompute("acme", calculation_date=CALC_DATE)

        assert summary.status == "completed"
        assert summary.total_variants_processed == 3
        assert summary.records_generated == 3
        assert summary.variants_skipped_due_to_error == 0
        assert summary.urgency_breakdown == {"critical": 1, "high": 0, "medium": 0, "low": 2}

        records = _records(db)
        assert set(records) == {"v-tee", "v-hood", "v-cap"}

        tee = records["v-tee"]
        assert tee.urgency == "critical"
        assert tee.daily_velocity == pytest.approx(1.0)
        assert tee.days_of_supply == 0
        assert tee.suggested_quantity == 36
        assert tee.confidence == "high"
        assert tee.product_name == "Classic Tee"
        assert tee.variant_descriptor == "M / Black"

        cap = records["v-cap"]
        assert cap.no_demand is True
        assert cap.urgency == "low"
        assert cap.suggested_quantity == 0
        assert cap.days_of_supply == 9999.0
        assert cap.variant_descriptor == "No variant"

        hood = records["v-hood"]
        assert hood.days_of_supply == pytest.approx(200.0)
        assert hood.urgency == "low"

    def test_summary_dict_shape(self, shop, service):
        result = service.recompute("acme", calculation_date=CALC_DATE).to_dict()
        for key in ("calculation_date", "total_variants_processed", "records_generated",
                    "urgency_breakdown", "status"):
            assert key in result
        assert result["calculation_date"] == "2026-03-31"
        assert result["status"] == "completed"

    def test_rerun_same_date_is_idempotent(self, db, shop, service):
        service.recompute("acme", calculation_date=CALC_DATE)
        first = _comparable(_records(db))
        service.recompute("acme", calculation_date=CALC_DATE)
        second = _comparable(_records(db))

        assert first == second
        assert db.query(ReplenishmentRecord).count() == 3

    def test_rerun_replaces_rather_than_merges(self, db, shop, service):
        service.recompute("acme", calculation_date=CALC_DATE)
        shop.stock("v-tee", 500)
        service.recompute("acme", calculation_date=CALC_DATE)

        records = _records(db)
        assert len(records) == 3
        assert records["v-tee"].current_stock == 500
        assert records["v-tee"].urgency != "critical"

    def test_previous_dates_retained(self, db, shop, service):
        service.recompute("acme", calculation_date=CALC_DATE - timedelta(days=1))
        service.recompute("acme", calculation_date=CALC_DATE)
        assert db.query(ReplenishmentRecord).count() == 6

    def test_sixty_day_window_and_short_horizon(self, db, shop, service):
        service.recompute("acme", window_days=60, projection_horizon_days=30, calculation_date=CALC_DATE)
        tee = _records(db)["v-tee"]
        assert tee.window_days == 60
        assert tee.daily_velocity == pytest.approx(0.5)
        assert tee.projected_window_demand == pytest.approx(15.0)

    def test_horizon_longer_than_window_lowers_confidence(self, db, shop, service):
        service.recompute("acme", window_days=30, projection_horizon_days=60, calculation_date=CALC_DATE)
        assert _records(db)["v-tee"].confidence == "medium"

    def test_pending_production_reduces_suggestion(self, db, shop, service):
        shop.production("v-tee", 30)
        service.recompute("acme", calculation_date=CALC_DATE)
        tee = _records(db)["v-tee"]
        assert tee.pending_production == 30
        assert tee.suggested_quantity == 6
        assert tee.urgency == "critical"

    def test_run_history_recorded(self, db, shop, service):
        summary = service.recompute("acme", calculation_date=CALC_DATE)
        run = db.get(CalculationRun, summary.run_id)
        assert run.status == "completed"
        assert run.records_generated == 3
        assert run.finished_at is not None

        runs = service.list_runs("acme")
        assert runs[0]["run_id"] == summary.run_id

    def test_recompute_all_tenants_isolated(self, db, shop, service):
        shop.tenant("globex")
        shop.variant("g-tee", tenant_id="globex")
        shop.tenant("dormant", active=False)

        results = service.recompute_all_tenants(calculation_date=CALC_DATE)
        assert set(results) == {"acme", "globex"}
        assert all(r["status"] == "completed" for r in results.values())
        assert len(_records(db, "globex")) == 1

    def test_variants_with_duplicated_metrics_listed(self, db, shop, session_factory, settings):
        day = CALC_DATE - timedelta(days=2)
        shop.metric("v-hood", day, 3)
        shop.metric("v-hood", day, 3)
        shop.metric("v-tee", day, 1)

        metrics_settings = settings.model_copy(update={"sales_source": "metrics"})
        summary = RecalculationService(session_factory=session_factory, settings=metrics_settings).recompute(
            "acme", calculation_date=CALC_DATE
        )
        assert summary.sales_source == "metrics"
        assert summary.duplicate_metric_rows == 1
        assert summary.duplicate_metric_variants == ["v-hood"]
        assert _records(db)["v-hood"].sales_in_window == 6

    def test_ledger_source_lists_no_duplicated_variants(self, shop, service):
        shop.metric("v-hood", CALC_DATE, 3)
        shop.metric("v-hood", CALC_DATE, 3)
        summary = service.recompute("acme", calculation_date=CALC_DATE)
        assert summary.duplicate_metric_rows == 1
        assert summary.duplicate_metric_variants == []

    def test_cache_invalidated_for_tenant(self, shop, session_factory, settings):
        cache = ReadThroughCache(ttl_seconds=300)
        cache.set(("acme", "ranked", "latest"), {"stale": True})
        cache.set(("globex", "ranked", "latest"), {"stale": True})

        RecalculationService(session_factory=session_factory, settings=settings, cache=cache).recompute(
            "acme", calculation_date=CALC_DATE
        )
        assert len(cache) == 1


# ────────────────────────────────────────────
# RUN-LEVEL FAILURES
# ────────────────────────────────────────────


class TestRunFailures:

    @pytest.mark.parametrize("window", [0, -1, 45])
    def test_invalid_window_rejected(self, db, shop, service, window):
        with pytest.raises(ConfigurationError):
            service.recompute("acme", window_days=window, calculation_date=CALC_DATE)
        assert db.query(ReplenishmentRecord).count() == 0
        assert db.query(TenantLock).count() == 0

    def test_unknown_tenant(self, db, shop, service):
        with pytest.raises(TenantNotFoundError):
            service.recompute("nobody", calculation_date=CALC_DATE)
        assert db.query(TenantLock).count() == 0

    def test_inactive_tenant(self, shop, service):
        shop.tenant("dormant", active=False)
        with pytest.raises(TenantNotFoundError):
            service.recompute("dormant", calculation_date=CALC_DATE)

    def test_run_returns_structured_failure(self, shop, service):
        result = service.run("nobody", calculation_date=CALC_DATE)
        assert result["status"] == "failed"
        assert result["error_code"] == "tenant_not_found"
        assert result["error"]

    def test_failed_run_keeps_previous_snapshot(self, db, shop, service):
        service.recompute("acme", calculation_date=CALC_DATE)
        before = _comparable(_records(db))

        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RecomputeCancelledError):
            service.recompute("acme", calculation_date=CALC_DATE, cancel_event=cancel)

        assert _comparable(_records(db)) == before
        assert db.query(TenantLock).count() == 0

    def test_failed_run_marked_in_history(self, db, shop, service):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(RecomputeCancelledError):
            service.recompute("acme", calculation_date=CALC_DATE, cancel_event=cancel)
        run = db.query(CalculationRun).one()
        assert run.status == "failed"
        assert "cancelled" in run.error_message


# ────────────────────────────────────────────
# PER-TENANT EXCLUSIVITY
# ────────────────────────────────────────────


class TestExclusivity:

    def test_held_lock_rejects_recompute(self, db, shop, session_factory, service):
        TenantLockManager(session_factory).acquire("acme", "other-run")

        with pytest.raises(RecomputeInProgressError) as exc:
            service.recompute("acme", calculation_date=CALC_DATE)
        assert exc.value.details["holder"] == "other-run"
        assert db.query(ReplenishmentRecord).count() == 0

        # The rejected run must not release someone else's lock
        assert TenantLockManager(session_factory).holder_of("acme") == "other-run"

    def test_other_tenant_not_blocked(self, db, shop, session_factory, service):
        shop.tenant("globex")
        shop.variant("g-tee", tenant_id="globex")
        TenantLockManager(session_factory).acquire("acme", "other-run")

        summary = service.recompute("globex", calculation_date=CALC_DATE)
        assert summary.records_generated == 1

    def test_expired_lock_is_reclaimed(self, db, shop, session_factory, service):
        stale_clock = lambda: datetime.utcnow() - timedelta(hours=2)
        TenantLockManager(session_factory, ttl_seconds=60, clock=stale_clock).acquire("acme", "crashed-run")

        summary = service.recompute("acme", calculation_date=CALC_DATE)
        assert summary.status == "completed"
        assert db.query(TenantLock).count() == 0

    def test_concurrent_recompute_rejected(self, db, shop, session_factory, settings):
        """A second recompute while the first is mid-run is rejected, not queued."""
        started = threading.Event()
        proceed = threading.Event()

        class PausingEvent:
            def is_set(self):
                started.set()
                proceed.wait(timeout=10)
                return False

        outcome = {}

        def first_run():
            svc = RecalculationService(session_factory=session_factory, settings=settings)
            outcome["first"] = svc.recompute("acme", calculation_date=CALC_DATE, cancel_event=PausingEvent())

        worker = threading.Thread(target=first_run)
        worker.start()
        try:
            assert started.wait(timeout=10)
            second = RecalculationService(session_factory=session_factory, settings=settings)
            with pytest.raises(RecomputeInProgressError):
                second.recompute("acme", calculation_date=CALC_DATE)
        finally:
            proceed.set()
            worker.join(timeout=30)

        assert outcome["first"].status == "completed"
        assert len(_records(db)) == 3
        assert db.query(TenantLock).count() == 0

    def test_renew_extends_expiry_and_detects_reclaim(self, session_factory):
        now = [datetime(2026, 3, 31, 12, 0)]
        locks = TenantLockManager(session_factory, ttl_seconds=60, clock=lambda: now[0])
        locks.acquire("acme", "run-a")

        now[0] += timedelta(seconds=50)
        locks.renew("acme", "run-a")
        now[0] += timedelta(seconds=50)
        with pytest.raises(RecomputeInProgressError):
            locks.acquire("acme", "run-b")

        now[0] += timedelta(seconds=61)
        locks.acquire("acme", "run-b")
        with pytest.raises(RecomputeInProgressError) as exc:
            locks.renew("acme", "run-a")
        assert exc.value.details["holder"] == "run-b"
        assert locks.holder_of("acme") == "run-b"

    def test_run_whose_lock_was_reclaimed_does_not_persist(self, db, shop, session_factory, settings):
        """A run outliving its lock fails at persistence instead of overwriting the new holder."""
        started = threading.Event()
        proceed = threading.Event()

        class PausingEvent:
            def is_set(self):
                started.set()
                proceed.wait(timeout=10)
                return False

        outcome = {}

        def first_run():
            svc = RecalculationService(session_factory=session_factory, settings=settings)
            try:
                outcome["first"] = svc.recompute("acme", calculation_date=CALC_DATE, cancel_event=PausingEvent())
            except RecomputeInProgressError as e:
                outcome["first"] = e

        worker = threading.Thread(target=first_run)
        worker.start()
        try:
            assert started.wait(timeout=10)
            past_ttl = lambda: datetime.utcnow() + timedelta(seconds=settings.recompute_lock_ttl_seconds + 60)
            second = RecalculationService(session_factory=session_factory, settings=settings, clock=past_ttl)
            outcome["second"] = second.recompute("acme", calculation_date=CALC_DATE)
        finally:
            proceed.set()
            worker.join(timeout=30)

        assert isinstance(outcome["first"], RecomputeInProgressError)
        assert outcome["second"].status == "completed"

        records = _records(db)
        assert len(records) == 3
        assert {r.run_id for r in records.values()} == {outcome["second"].run_id}

        statuses = {r.id: r.status for r in db.query(CalculationRun).all()}
        assert statuses[outcome["second"].run_id] == "completed"
        assert sorted(statuses.values()) == ["completed", "failed"]
        assert db.query(TenantLock).count() == 0

    def test_lock_released_after_success(self, db, shop, service):
        service.recompute("acme", calculation_date=CALC_DATE)
        assert db.query(TenantLock).count() == 0

    def test_deadline_cancels_and_releases(self, db, shop, service):
        with pytest.raises(RecomputeCancelledError):
            service.recompute("acme", calculation_date=CALC_DATE, timeout_seconds=-1)
        assert db.query(TenantLock).count() == 0
        assert db.query(ReplenishmentRecord).count() == 0


# ────────────────────────────────────────────
# PER-VARIANT ERRORS
# ────────────────────────────────────────────


class TestVariantErrors:

    def test_malformed_stock_skips_variant_only(self, db, shop, service):
        shop.variant("v-broken", product_name="Socks", sku="SOCK-OS")
        shop.stock("v-broken", None)

        summary = service.recompute("acme", calculation_date=CALC_DATE)
        assert summary.status == "completed"
        assert summary.total_variants_processed == 4
        assert summary.records_generated == 3
        assert summary.variants_skipped_due_to_error == 1
        assert summary.skipped[0]["variant_id"] == "v-broken"
        assert "v-broken" not in _records(db)

    def test_negative_stock_treated_as_zero(self, db, shop, service):
        shop.stock("v-hood", -100)   # total on hand: 40 - 100
        service.recompute("acme", calculation_date=CALC_DATE)
        hood = _records(db)["v-hood"]
        assert hood.current_stock == 0
        assert hood.urgency == "critical"

    def test_inactive_variants_ignored(self, db, shop, service):
        shop.variant("v-old", product_name="Retired", sku="OLD", active=False)
        summary = service.recompute("acme", calculation_date=CALC_DATE)
        assert summary.total_variants_processed == 3
        assert "v-old" not in _records(db)

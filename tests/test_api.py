"""
HTTP surface tests against a per-test SQLite database.
"""
import csv
import io
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from restock.main import app
from restock.models.base import get_db
from restock.services.tenant_lock import TenantLockManager
from restock.utils.cache import ReadThroughCache

CALC_DATE = date(2026, 3, 31)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    previous = (app.state.session_factory, app.state.ranked_cache)
    app.state.session_factory = session_factory
    app.state.ranked_cache = ReadThroughCache(ttl_seconds=300)
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.session_factory, app.state.ranked_cache = previous


@pytest.fixture
def shop(seed):
    seed.tenant("acme")
    seed.variant("v-tee", sku="TEE-M-BLK")
    seed.variant("v-cap", product_name="Cap", size=None, color=None, sku="CAP-OS")
    seed.sales("v-tee", orders=10, quantity=3)
    seed.stock("v-tee", 4)
    seed.stock("v-cap", 80)
    return seed


def _recompute(client, **body):
    return client.post("/replenishment/recompute", json={
        "tenant_id": "acme", "calculation_date": CALC_DATE.isoformat(), **body
    })


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_status_lists_windows(client):
    r = client.get("/status")
    assert r.status_code == 200
    assert r.json()["replenishment"]["allowed_window_days"] == [30, 60]


# ────────────────────────────────────────────
# RECOMPUTE
# ────────────────────────────────────────────


def test_recompute_success(client, shop):
    r = _recompute(client)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert body["calculation_date"] == "2026-03-31"
    assert body["records_generated"] == 2
    assert body["urgency_breakdown"]["critical"] == 1


def test_recompute_invalid_window_is_400(client, shop):
    r = _recompute(client, window_days=0)
    assert r.status_code == 400
    assert r.json()["status"] == "failed"
    assert r.json()["error_code"] == "configuration_error"


def test_recompute_unknown_tenant_is_404(client, shop):
    r = client.post("/replenishment/recompute", json={"tenant_id": "nobody"})
    assert r.status_code == 404
    assert r.json()["error_code"] == "tenant_not_found"


def test_recompute_while_locked_is_409(client, shop, session_factory):
    TenantLockManager(session_factory).acquire("acme", "nightly-run")
    r = _recompute(client)
    assert r.status_code == 409
    assert r.json()["error_code"] == "recompute_in_progress"


# ────────────────────────────────────────────
# QUERY / EXPORT
# ────────────────────────────────────────────


def test_ranked_after_recompute(client, shop):
    assert client.get("/replenishment/acme/ranked").json()["count"] == 0

    _recompute(client)
    body = client.get("/replenishment/acme/ranked").json()
    assert body["count"] == 2
    assert [r["variant_id"] for r in body["records"]] == ["v-tee", "v-cap"]
    assert body["records"][0]["urgency"] == "critical"


def test_ranked_bad_urgency_is_400(client, shop):
    r = client.get("/replenishment/acme/ranked", params={"urgency": "urgent"})
    assert r.status_code == 400


def test_export_csv(client, shop):
    _recompute(client)
    r = client.get("/replenishment/acme/export.csv")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert 'filename="replenishment_acme_2026-03-31.csv"' in r.headers["content-disposition"]

    rows = list(csv.reader(io.StringIO(r.text)))
    assert rows[0][0] == "Rank"
    assert rows[1][3] == "TEE-M-BLK"
    assert rows[1][10] == "CRITICAL"


def test_flag_and_history(client, shop):
    _recompute(client)
    r = client.post("/replenishment/acme/discontinuation-flags", json={"variant_ids": ["v-cap"], "reason": "dead stock"})
    assert r.status_code == 200
    assert r.json()["flagged"] == ["v-cap"]

    ranked = client.get("/replenishment/acme/ranked").json()["records"]
    assert {r["variant_id"]: r["flagged_for_discontinuation"] for r in ranked}["v-cap"] is True

    history = client.get("/replenishment/acme/variants/v-tee/history", params={"days": 3650}).json()
    assert history["count"] == 1


def test_runs_listed(client, shop):
    _recompute(client)
    runs = client.get("/replenishment/acme/runs").json()
    assert runs["count"] == 1
    assert runs["data"][0]["status"] == "completed"


# ────────────────────────────────────────────
# METRIC DUPLICATES
# ────────────────────────────────────────────


def test_duplicate_repair_flow(client, shop):
    day = CALC_DATE - timedelta(days=1)
    shop.metric("v-tee", day, 5)
    shop.metric("v-tee", day, 5)

    payload = {"tenant_id": "acme", "date": day.isoformat()}

    investigate = client.post("/sales-metrics/duplicates/investigate", json=payload).json()
    assert investigate["investigation_summary"]["total_duplicated_variants"] == 1

    clean = client.post("/sales-metrics/duplicates/clean", json=payload).json()
    assert clean["deleted_entries"] == 1

    validate = client.post("/sales-metrics/duplicates/validate", json=payload).json()
    assert validate["is_clean"] is True


def test_clean_while_locked_is_409(client, shop, session_factory):
    TenantLockManager(session_factory).acquire("acme", "nightly-run")
    r = client.post("/sales-metrics/duplicates/clean", json={"tenant_id": "acme", "date": "2026-03-30"})
    assert r.status_code == 409

"""
API endpoint tests
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.main import app
from api.dependencies import get_db
from core.config import settings
from models.base import SyncStatus
from models.sync_run import SyncRun
from models.sync_state import SyncState

ADMIN = {"x-admin-secret": "test-admin-secret"}


@pytest_asyncio.fixture
async def client(test_engine, netsuite_client):
    """Test client with database and NetSuite overrides"""
    session_maker = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        # One session per request, as in production
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.netsuite = netsuite_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def admin_secret(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_SYNC_SECRET", "test-admin-secret")


def publish_eta(netsuite):
    netsuite.add_file(61, "eta_all_lines.jsonl", [
        {"item_id": 10, "location_id": 1, "so_id": 900, "line_seq": 1},
    ])
    netsuite.add_file(60, "manifest_eta_all_lines_latest.json", {
        "generated_at": "2025-03-01T06:00:00Z",
        "files": {"eta_all_lines": {"id": 61}},
    })


class TestAdminAuthorization:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"x-admin-secret": "wrong"}, {"x-admin-secret": ""}])
    async def test_rejected_before_any_remote_call(self, client, netsuite, headers):
        response = await client.post("/admin/sync/etas", headers=headers)

        assert response.status_code == 401
        assert response.json()["ok"] is False
        assert response.json()["error"] == "unauthorized"
        assert netsuite.requests == []

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_SYNC_SECRET", None)

        response = await client.post("/admin/sync/customers", headers=ADMIN)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_runs_requires_secret(self, client):
        response = await client.get("/admin/sync/runs")
        assert response.status_code == 401


class TestSyncEndpoints:

    @pytest.mark.asyncio
    async def test_eta_sync(self, client, netsuite):
        publish_eta(netsuite)

        response = await client.post("/admin/sync/etas", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["job"] == "etas"
        assert data["status"] == "success"
        assert data["dry_run"] is False
        assert data["counts"]["inserted"] == 1
        assert data["context"]["locations_in_file"] == [1]
        assert "X-Request-ID" in response.headers
        assert "X-API-Latency-ms" in response.headers

    @pytest.mark.asyncio
    async def test_eta_manifest_name_in_body(self, client, netsuite):
        netsuite.add_file(71, "eta_loc_4.jsonl", [{"item_id": 1, "location_id": 4, "so_id": 2, "line_seq": 1}])
        netsuite.add_file(70, "manifest_loc_4.json", {"files": {"eta_all_lines": {"id": 71}}})

        response = await client.post(
            "/admin/sync/etas?dry=yes", headers=ADMIN, json={"manifestName": "manifest_loc_4.json"}
        )

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["context"]["manifest_name"] == "manifest_loc_4.json"

    @pytest.mark.asyncio
    async def test_missing_export_maps_to_404(self, client):
        response = await client.post("/admin/sync/etas", headers=ADMIN)

        assert response.status_code == 404
        data = response.json()
        assert data == {
            "ok": False,
            "error": "not_found",
            "message": data["message"],
            "details": data["details"],
        }
        assert data["details"]["job"] == "etas"
        assert data["details"]["counts"] == {}

    @pytest.mark.asyncio
    async def test_remote_error_maps_to_502(self, client, netsuite):
        netsuite.fail_next(400, json_body={"o:errorDetails": [{"o:errorCode": "INVALID_SEARCH"}]})

        response = await client.post("/admin/sync/customer-identifiers", headers=ADMIN)

        assert response.status_code == 502
        assert response.json()["error"] == "remote_error"
        assert response.json()["details"]["code"] == "INVALID_SEARCH"

    @pytest.mark.asyncio
    async def test_payment_instruments_partial(self, client, netsuite):
        netsuite.instruments[12] = 400

        response = await client.post("/admin/sync/payment-instruments?ids=11,12", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["status"] == "partial"
        assert response.json()["counts"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_payment_instrument_concurrency_defaults_to_setting(self, client, db_session, table_rows, monkeypatch):
        monkeypatch.setattr(settings, "FANOUT_CONCURRENCY", 2)

        await client.post("/admin/sync/payment-instruments?ids=11", headers=ADMIN)
        await client.post("/admin/sync/payment-instruments?ids=11&detail_concurrency=40", headers=ADMIN)

        runs = sorted(await table_rows(db_session, SyncRun), key=lambda r: r["id"])
        assert [r["parameters"]["detail_concurrency"] for r in runs] == [2, 10]

    @pytest.mark.asyncio
    async def test_invoice_window_needs_both_bounds(self, client, netsuite):
        response = await client.post("/admin/sync/invoices?from=2025-01-01", headers=ADMIN)

        assert response.status_code == 422
        assert response.json()["ok"] is False
        assert response.json()["error"] == "invalid_request"
        assert response.json()["details"] == {"job": "invoices", "from": "2025-01-01", "to": None}
        assert netsuite.requests == []

    @pytest.mark.asyncio
    async def test_invoice_sync_without_customers(self, client):
        response = await client.post(
            "/admin/sync/invoices?from=2025-01-01&to=2025-02-01", headers=ADMIN
        )

        assert response.status_code == 200
        assert response.json()["context"]["window"] == {"from": "2025-01-01", "to": "2025-02-01"}

    @pytest.mark.asyncio
    async def test_sales_order_sync(self, client, netsuite):
        netsuite.add_file(81, "sales_orders.jsonl", [{"so_id": 700, "customer_id": 42}])
        netsuite.add_file(82, "sales_order_lines.jsonl", [{"so_id": 700, "line_no": 1, "item_id": 7}])
        netsuite.add_file(80, "sales_orders_manifest_latest.json", {
            "files": {"sales_orders": {"id": 81}, "sales_order_lines": {"id": 82}},
        })

        response = await client.post("/admin/sync/sales-orders?dry=1", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["job"] == "sales_orders"
        assert data["dry_run"] is True
        assert data["counts"]["inserted"] == 1
        assert data["counts"]["lines"] == 1

    @pytest.mark.asyncio
    async def test_fulfillments_reject_unknown_scope(self, client, netsuite):
        response = await client.post("/admin/sync/fulfillments?scope=everyone", headers=ADMIN)

        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request"
        assert response.json()["details"] == {"job": "fulfillments", "scope": "everyone"}
        assert netsuite.requests == []

    @pytest.mark.asyncio
    async def test_fulfillments_without_portal_customers(self, client, netsuite):
        response = await client.post("/admin/sync/fulfillments", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["context"]["source"] == "profiles"
        assert data["counts"]["customers"] == 0
        assert netsuite.requests == []

    @pytest.mark.asyncio
    async def test_fulfillment_batch_size_bounds(self, client, netsuite):
        response = await client.post("/admin/sync/fulfillments?batch_size=10", headers=ADMIN)

        assert response.status_code == 422
        assert netsuite.requests == []

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client, netsuite):
        publish_eta(netsuite)

        response = await client.post(
            "/admin/sync/etas", headers={**ADMIN, "X-Request-ID": "req_from_caller"}
        )

        assert response.headers["X-Request-ID"] == "req_from_caller"


class TestHealthAndRuns:

    @pytest.mark.asyncio
    async def test_health_without_runs(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["latest_runs"] == []

    @pytest.mark.asyncio
    async def test_health_degraded_when_latest_run_failed(self, client, netsuite, db_session):
        publish_eta(netsuite)
        await client.post("/admin/sync/etas", headers=ADMIN)
        await client.post("/admin/sync/payment-instruments?ids=1", headers=ADMIN)
        netsuite.files.clear()
        await client.post("/admin/sync/etas", headers=ADMIN)

        db_session.add(SyncState(key="invoices", last_cursor="2025-02-15T08:00:00.000Z", status=SyncStatus.SUCCESS))
        await db_session.commit()

        data = (await client.get("/health")).json()

        assert data["status"] == "degraded"
        assert data["total_jobs"] == 2
        assert data["failed_jobs"] == 1
        latest = {r["job_name"]: r["status"] for r in data["latest_runs"]}
        assert latest == {"etas": "failed", "payment_instruments": "success"}
        assert data["sync_states"][0]["last_cursor"] == "2025-02-15T08:00:00.000Z"

    @pytest.mark.asyncio
    async def test_health_ignores_dry_runs(self, client, netsuite):
        await client.post("/admin/sync/etas?dry=1", headers=ADMIN)

        data = (await client.get("/health")).json()

        assert data["status"] == "healthy"
        assert data["total_jobs"] == 0

    @pytest.mark.asyncio
    async def test_runs_history(self, client, netsuite):
        publish_eta(netsuite)
        await client.post("/admin/sync/etas", headers=ADMIN)
        await client.post("/admin/sync/payment-instruments?ids=1", headers=ADMIN)
        netsuite.files.clear()
        await client.post("/admin/sync/etas", headers=ADMIN)

        response = await client.get("/admin/sync/runs?job=etas", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["total_runs"] == 2
        assert [r["status"] for r in data["runs"]] == ["failed", "success"]
        assert data["last_success"] is not None
        assert data["last_failure"] is not None

    @pytest.mark.asyncio
    async def test_runs_limit(self, client, db_session):
        for i in range(3):
            db_session.add(SyncRun(job_name="customers", status=SyncStatus.SUCCESS, duration_seconds=2.0))
        await db_session.commit()

        data = (await client.get("/admin/sync/runs?limit=2", headers=ADMIN)).json()

        assert len(data["runs"]) == 2
        assert data["total_runs"] == 3
        assert data["avg_duration_seconds"] == 2.0


@pytest.mark.asyncio
async def test_root_lists_endpoints(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["invoices"] == "/admin/sync/invoices"
    assert response.json()["endpoints"]["fulfillments"] == "/admin/sync/fulfillments"

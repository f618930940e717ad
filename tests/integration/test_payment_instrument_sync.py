"""
Integration tests for the per-customer payment instrument sync
"""

import json

import pytest

from ingestion.extractors.payment_instrument_extractor import PaymentInstrumentSyncJob, parse_id_list
from ingestion.runner import SyncRunner
from models.payment_instrument import PaymentInstrument
from models.profile import Profile


def instruments(*items, default=None):
    return {"success": True, "defaultInstrumentId": default, "instruments": list(items)}


async def sync(db_session, netsuite_client, **kwargs):
    job = PaymentInstrumentSyncJob(db_session, netsuite_client, **kwargs)
    return await SyncRunner(db_session).run(job)


def test_parse_id_list():
    assert parse_id_list("12, 7,abc,-3,12,0, 9") == [12, 7, 9]
    assert parse_id_list("") == []
    assert parse_id_list(None) == []


class TestPaymentInstrumentSync:

    @pytest.mark.asyncio
    async def test_explicit_ids(self, db_session, netsuite, netsuite_client, table_rows):
        netsuite.instruments[11] = instruments(
            {"id": "pi-a", "brand": "Visa", "last4": "4242"},
            {"id": "pi-b", "brand": "Amex"},
            default="pi-a",
        )

        response = await sync(db_session, netsuite_client, ids=[11, 12])

        assert response["status"] == "success"
        assert response["context"]["source"] == "ids"
        assert response["counts"]["scanned"] == 2
        assert response["counts"]["processed"] == 2
        assert response["counts"]["inserted"] == 2

        rows = {r["instrument_id"]: r for r in await table_rows(db_session, PaymentInstrument)}
        assert rows["pi-a"]["is_default"] is True
        assert rows["pi-b"]["is_default"] is False
        assert rows["pi-a"]["last_seen_at"] is not None

        body = json.loads(netsuite.requests_to("restlets")[0].content)
        assert body == {"customerId": 11, "includeTokens": True, "includeDefault": True}

    @pytest.mark.asyncio
    async def test_snapshot_per_customer(self, db_session, netsuite, netsuite_client, table_rows):
        netsuite.instruments[11] = instruments({"id": "pi-a"}, {"id": "pi-b"})
        netsuite.instruments[12] = instruments({"id": "pi-z"})
        await sync(db_session, netsuite_client, ids=[11, 12])

        netsuite.instruments[11] = instruments({"id": "pi-b"})
        response = await sync(db_session, netsuite_client, ids=[11])

        assert response["counts"]["soft_deleted"] == 1
        rows = {r["instrument_id"]: r for r in await table_rows(db_session, PaymentInstrument)}
        assert rows["pi-a"]["ns_deleted_at"] is not None
        assert rows["pi-b"]["ns_deleted_at"] is None
        assert rows["pi-z"]["ns_deleted_at"] is None

    @pytest.mark.asyncio
    async def test_customers_from_profiles(self, db_session, netsuite, netsuite_client):
        db_session.add_all([
            Profile(email="a@shop.com", netsuite_customer_id=11),
            Profile(email="b@shop.com", netsuite_customer_id=11),
            Profile(email="c@shop.com", netsuite_customer_id=None),
            Profile(email="d@shop.com", netsuite_customer_id=13),
        ])
        await db_session.commit()

        response = await sync(db_session, netsuite_client)

        assert response["context"]["source"] == "profiles"
        assert response["counts"]["scanned"] == 2
        customer_ids = sorted(json.loads(r.content)["customerId"] for r in netsuite.requests_to("restlets"))
        assert customer_ids == [11, 13]

    @pytest.mark.asyncio
    async def test_force_all_reads_every_erp_customer(self, db_session, netsuite, netsuite_client):
        netsuite.on_query("from customer c", [{"id": "30"}, {"id": "20"}, {"id": "10"}])

        response = await sync(db_session, netsuite_client, force_all=True)

        assert response["context"]["source"] == "netsuite"
        assert response["context"]["force_all"] is True
        assert response["counts"]["scanned"] == 3
        assert "ORDER BY c.id DESC" in netsuite.statements[0]

    @pytest.mark.asyncio
    async def test_failed_customer_makes_run_partial(self, db_session, netsuite, netsuite_client, table_rows):
        netsuite.instruments[11] = instruments({"id": "pi-a"})
        netsuite.instruments[12] = 400
        netsuite.instruments[13] = {"success": False, "message": "customer locked"}

        response = await sync(db_session, netsuite_client, ids=[11, 12, 13])

        assert response["status"] == "partial"
        assert response["counts"]["processed"] == 1
        assert response["counts"]["failed"] == 2
        assert set(response["context"]["failed_customers"]) == {"12", "13"}
        assert "customer locked" in response["context"]["failed_customers"]["13"]
        assert [r["instrument_id"] for r in await table_rows(db_session, PaymentInstrument)] == ["pi-a"]

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self, db_session, netsuite_client):
        job = PaymentInstrumentSyncJob(db_session, netsuite_client, detail_concurrency=50)
        assert job.detail_concurrency == 10

    @pytest.mark.asyncio
    async def test_dry_run(self, db_session, netsuite, netsuite_client, table_rows):
        netsuite.instruments[11] = instruments({"id": "pi-a"})

        response = await sync(db_session, netsuite_client, ids=[11], dry_run=True)

        assert response["counts"]["inserted"] == 1
        assert await table_rows(db_session, PaymentInstrument) == []

"""
Integration tests for the cursor-driven fulfillment sync
"""

import pytest
import pytest_asyncio

from ingestion.extractors.fulfillment_extractor import FulfillmentSyncJob, changed_ids_query, overlap_since
from ingestion.runner import SyncRunner
from models.fulfillment import Fulfillment, FulfillmentLine
from models.profile import Profile
from models.sync_state import SyncState

CURSOR = "2025-03-01T00:00:00.000Z"

CHANGED = [
    {"fulfillmentid": "9001", "lastmodifieddate": "2025-03-10T12:00:00.000Z"},
    {"fulfillmentid": "9002", "lastmodifieddate": "2025-03-11T08:00:00.000Z"},
]
HEADERS = [
    {"fulfillmentid": "9001", "tranid": "IF-1", "trandate": "3/10/2025", "customerid": "42", "status": "Shipped"},
    {"fulfillmentid": "9002", "tranid": "IF-2", "trandate": "3/11/2025", "customerid": "42", "status": "Packed"},
]
SO_LINKS = [{"fulfillmentid": "9001", "soid": "700", "sotranid": "SO-700"}]
ITEMS = [
    {"itemid": "7", "sku": "SKU-7", "displayname": "Widget Seven"},
    {"itemid": "8", "sku": "SKU-8-META", "displayname": "Eight"},
]
RECORD_9001 = {
    "shipStatus": {"id": "C", "refName": "Shipped"},
    "packageList": {"packages": [
        {"packageTrackingNumber": "1Z999AA10123456784"},
        {"packageTrackingNumber": "1Z999AA10123456784"},
    ]},
    "item": {"items": [
        {"line": 1, "item": {"id": "7", "refName": "7"}, "quantity": -2,
         "inventoryassignment": {"assignments": [{"issueinventorynumber": {"text": "SN-1"}}]}},
        {"line": 1, "item": {"id": "7"}, "quantity": 2, "custcolns_comment": "gift",
         "inventoryassignment": {"assignments": [{"issueinventorynumber": {"text": "SN-2"}}]}},
        {"line": 3, "item": {"id": "8", "refName": "SKU-8"}, "description": "Blue widget", "quantity": 1},
        {"item": {"id": "9"}, "quantity": 1},
    ]},
}


def serve(netsuite, changed=CHANGED, headers=HEADERS, so_links=SO_LINKS, statuses=None, newest="2025-03-11T08:30:00.000Z"):
    netsuite.on_query("as fulfillmentid, to_char", list(changed))
    netsuite.on_query("t.tranid as tranid", list(headers))
    netsuite.on_query("previoustransactionlink", list(so_links))
    netsuite.on_query("from item i", ITEMS)
    if statuses is None:
        statuses = [{"fulfillmentid": h["fulfillmentid"], "status": "Shipped"} for h in headers]
    netsuite.on_query("as fulfillmentid, builtin.df", list(statuses))
    netsuite.on_query("as maxiso", [{"maxiso": newest}])


@pytest_asyncio.fixture
async def portal_customers(db_session):
    db_session.add(Profile(email="a@shop.com", netsuite_customer_id=42))
    db_session.add(SyncState(key="fulfillments", last_cursor=CURSOR))
    await db_session.commit()


async def sync(db_session, netsuite_client, **kwargs):
    return await SyncRunner(db_session).run(FulfillmentSyncJob(db_session, netsuite_client, **kwargs))


async def stored_cursor(db_session, table_rows):
    [state] = await table_rows(db_session, SyncState, SyncState.key == "fulfillments")
    return state


class TestChangedIdsQuery:

    def test_overlap_moves_cursor_back(self):
        assert overlap_since(CURSOR) == "2025-02-28T23:50:00.000Z"
        assert overlap_since("not a timestamp") == "not a timestamp"

    def test_portal_and_all_scopes(self):
        assert "T.entity IN (1,2)" in changed_ids_query(CURSOR, [1, 2])
        statement = changed_ids_query(CURSOR)
        assert "T.entity" not in statement
        assert "TO_DATE('2025-03-01','YYYY-MM-DD')" in statement


class TestFulfillmentSync:

    @pytest.mark.asyncio
    async def test_headers_tracking_and_lines_loaded(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {"shipStatus": {"refName": "Packed"}})
        serve(netsuite)

        response = await sync(db_session, netsuite_client)

        assert response["status"] == "success"
        assert response["counts"]["scanned"] == 2
        assert response["counts"]["inserted"] == 2
        assert response["counts"]["lines"] == 2
        assert response["counts"]["rejected"] == 1
        assert response["context"]["since"] == "2025-02-28T23:50:00.000Z"

        rows = {r["fulfillment_id"]: r for r in await table_rows(db_session, Fulfillment)}
        shipped = rows[9001]
        assert shipped["ship_status"] == "Shipped"
        assert shipped["created_from_so_id"] == 700
        assert shipped["created_from_so_tranid"] == "SO-700"
        assert shipped["tracking"] == "1Z999AA10123456784"
        assert shipped["tracking_urls"] == ["https://www.ups.com/track?tracknum=1Z999AA10123456784"]
        assert shipped["tracking_details"] == [{
            "number": "1Z999AA10123456784",
            "carrier": "ups",
            "url": "https://www.ups.com/track?tracknum=1Z999AA10123456784",
        }]
        assert str(shipped["trandate"]) == "2025-03-10"
        assert rows[9002]["tracking"] is None
        assert rows[9002]["tracking_urls"] == []

        lines = {r["line_no"]: r for r in await table_rows(db_session, FulfillmentLine)}
        assert set(lines) == {1, 3}
        assert lines[1]["quantity"] == 2
        assert lines[1]["serial_numbers"] == ["SN-1", "SN-2"]
        assert lines[1]["comments"] == ["gift"]
        assert lines[1]["item_sku"] == "SKU-7"
        assert lines[1]["item_display_name"] == "Widget Seven"
        assert lines[3]["item_sku"] == "SKU-8"
        assert lines[3]["item_display_name"] == "Blue widget"

    @pytest.mark.asyncio
    async def test_cursor_advances_to_newest_modification(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {})
        serve(netsuite)

        response = await sync(db_session, netsuite_client)

        assert response["context"]["last_cursor"] == "2025-03-11T08:30:00.000Z"
        state = await stored_cursor(db_session, table_rows)
        assert state["last_cursor"] == "2025-03-11T08:30:00.000Z"

        await sync(db_session, netsuite_client)

        changed_statements = [s for s in netsuite.statements if "T.entity IN" in s]
        assert "2025-03-11T08:20:00.000Z" in changed_statements[-1]

    @pytest.mark.asyncio
    async def test_cursor_never_moves_back(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        serve(netsuite, changed=[], headers=[], newest=None)

        response = await sync(db_session, netsuite_client)

        assert response["context"]["last_cursor"] == CURSOR
        assert (await stored_cursor(db_session, table_rows))["last_cursor"] == CURSOR

    @pytest.mark.asyncio
    async def test_failed_record_fetch_keeps_stored_detail(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {})
        serve(netsuite)
        await sync(db_session, netsuite_client)

        netsuite.records.pop(("itemFulfillment", 9001))
        response = await sync(db_session, netsuite_client)

        assert response["status"] == "partial"
        assert response["counts"]["failed"] == 1
        assert "9001" in response["context"]["failed_details"]
        rows = {r["fulfillment_id"]: r for r in await table_rows(db_session, Fulfillment)}
        assert rows[9001]["ship_status"] == "Shipped"
        assert rows[9001]["tracking"] == "1Z999AA10123456784"
        lines = await table_rows(db_session, FulfillmentLine)
        assert len(lines) == 2
        assert all(line["ns_deleted_at"] is None for line in lines)

        state = await stored_cursor(db_session, table_rows)
        assert state["status"] == "partial"
        assert state["last_cursor"] == "2025-03-11T08:30:00.000Z"
        assert response["context"]["last_cursor"] == "2025-03-11T08:30:00.000Z"

    @pytest.mark.asyncio
    async def test_removed_lines_soft_deleted(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {})
        serve(netsuite)
        await sync(db_session, netsuite_client)

        netsuite.add_record("itemFulfillment", 9001, {"item": {"items": [RECORD_9001["item"]["items"][2]]}})
        response = await sync(db_session, netsuite_client)

        assert response["counts"]["lines_soft_deleted"] == 1
        lines = {r["line_no"]: r for r in await table_rows(db_session, FulfillmentLine)}
        assert lines[1]["ns_deleted_at"] is not None
        assert lines[3]["ns_deleted_at"] is None

    @pytest.mark.asyncio
    async def test_missing_and_cancelled_fulfillments_soft_deleted(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        db_session.add_all([
            Fulfillment(fulfillment_id=8001, customer_id=42),
            Fulfillment(fulfillment_id=8002, customer_id=42),
            Fulfillment(fulfillment_id=8004, customer_id=42),
            Fulfillment(fulfillment_id=8003, customer_id=77),
            FulfillmentLine(fulfillment_id=8002, line_no=1),
        ])
        await db_session.commit()
        serve(netsuite, changed=[], headers=[], statuses=[
            {"fulfillmentid": "8001", "status": "Item Fulfillment : Shipped"},
            {"fulfillmentid": "8004", "status": "Item Fulfillment : Voided"},
        ])

        response = await sync(db_session, netsuite_client)

        assert response["counts"]["checked"] == 3
        assert response["counts"]["soft_deleted"] == 2
        assert response["context"]["removed_fulfillments"] == [8002, 8004]
        rows = {r["fulfillment_id"]: r for r in await table_rows(db_session, Fulfillment)}
        assert rows[8001]["ns_deleted_at"] is None
        assert rows[8002]["ns_deleted_at"] is not None
        assert rows[8003]["ns_deleted_at"] is None
        assert rows[8004]["ns_deleted_at"] is not None
        [line] = await table_rows(db_session, FulfillmentLine)
        assert line["ns_deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_explicit_ids_leave_cursor_alone(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        serve(netsuite, headers=HEADERS[:1], statuses=[{"fulfillmentid": "9001", "status": "Shipped"}])

        response = await sync(db_session, netsuite_client, ids=[9001])

        assert response["context"]["source"] == "ids"
        assert response["counts"]["scanned"] == 1
        assert not [s for s in netsuite.statements if "T.entity IN" in s or "maxIso" in s]
        assert len(await table_rows(db_session, Fulfillment)) == 1
        assert (await stored_cursor(db_session, table_rows))["last_cursor"] == CURSOR

    @pytest.mark.asyncio
    async def test_scope_all_skips_profiles(self, db_session, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {})
        serve(netsuite)

        response = await sync(db_session, netsuite_client, scope_all=True)

        assert response["context"]["source"] == "all"
        changed_statement = netsuite.statements[0]
        assert "'ItemShip'" in changed_statement
        assert "T.entity" not in changed_statement
        assert len(await table_rows(db_session, Fulfillment)) == 2

    @pytest.mark.asyncio
    async def test_no_portal_customers(self, db_session, netsuite, netsuite_client):
        response = await sync(db_session, netsuite_client)

        assert response["counts"]["customers"] == 0
        assert netsuite.statements == []

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session, portal_customers, netsuite, netsuite_client, table_rows):
        netsuite.add_record("itemFulfillment", 9001, RECORD_9001)
        netsuite.add_record("itemFulfillment", 9002, {})
        serve(netsuite)

        response = await sync(db_session, netsuite_client, dry_run=True)

        assert response["counts"]["inserted"] == 2
        assert response["context"]["last_cursor"] == "2025-03-11T08:30:00.000Z"
        assert await table_rows(db_session, Fulfillment) == []
        assert await table_rows(db_session, FulfillmentLine) == []
        assert (await stored_cursor(db_session, table_rows))["last_cursor"] == CURSOR

    @pytest.mark.asyncio
    async def test_record_fetches_bounded_by_concurrency(self, db_session, portal_customers, netsuite, netsuite_client):
        changed = [{"fulfillmentid": str(i), "lastmodifieddate": CURSOR} for i in range(9001, 9006)]
        headers = [{"fulfillmentid": str(i), "customerid": "42"} for i in range(9001, 9006)]
        for i in range(9001, 9006):
            netsuite.add_record("itemFulfillment", i, {})
        serve(netsuite, changed=changed, headers=headers)

        response = await sync(db_session, netsuite_client, detail_concurrency=2)

        assert response["counts"]["inserted"] == 5
        assert len(netsuite.requests_to("/record/v1/itemFulfillment/")) == 5
        assert response["context"].get("failed_details") is None

"""
Integration tests for the location-scoped ETA sync
"""

import pytest

from core.exceptions import ExportNotFoundError, InvalidManifestError, MissingScopeError
from ingestion.extractors.eta_extractor import ETA_TARGET, EtaSyncJob
from ingestion.loaders.postgres_loader import PostgresLoader
from ingestion.runner import SyncRunner
from models.eta_line import EtaLine
from schemas.records import EtaLineRecord

MANIFEST = "manifest_eta_all_lines_latest.json"


def line(item_id, location_id, so_id=900, line_seq=1, **extra):
    return {"item_id": item_id, "location_id": location_id, "so_id": so_id, "line_seq": line_seq, **extra}


def publish(netsuite, rows, manifest_id=60, export_id=61, name=MANIFEST, **manifest_extra):
    netsuite.add_file(export_id, "eta_all_lines.jsonl", rows)
    netsuite.add_file(manifest_id, name, {
        "generated_at": "2025-03-01T06:00:00Z",
        "tag": "nightly",
        "counts": {"lines": len(rows) if isinstance(rows, list) else 0},
        "files": {"eta_all_lines": {"id": export_id, "name": "eta_all_lines.jsonl"}},
        **manifest_extra,
    })


async def sync(db_session, netsuite_client, **kwargs):
    return await SyncRunner(db_session).run(EtaSyncJob(db_session, netsuite_client, **kwargs))


class TestEtaSync:

    @pytest.mark.asyncio
    async def test_loads_export_and_reports_manifest(self, db_session, netsuite, netsuite_client, table_rows):
        publish(netsuite, [
            line(10, 1, qty_remaining=3, eta_date="4/1/2025"),
            line(11, 1, line_seq=2),
            line(12, 2),
        ])

        response = await sync(db_session, netsuite_client)

        assert response["status"] == "success"
        assert response["counts"]["read"] == 3
        assert response["counts"]["inserted"] == 3
        context = response["context"]
        assert context["manifest_id"] == 60
        assert context["manifest_generated_at"] == "2025-03-01T06:00:00Z"
        assert context["manifest_tag"] == "nightly"
        assert context["eta_file"]["id"] == 61
        assert context["locations_in_file"] == [1, 2]

        rows = await table_rows(db_session, EtaLine)
        assert len(rows) == 3
        assert {r["manifest_generated_at"] for r in rows} == {"2025-03-01T06:00:00Z"}

    @pytest.mark.asyncio
    async def test_other_locations_untouched(self, db_session, netsuite, netsuite_client, table_rows):
        await PostgresLoader(db_session).reconcile(ETA_TARGET, [
            EtaLineRecord(item_id=10, location_id=1, so_id=900, line_seq=1),
            EtaLineRecord(item_id=20, location_id=2, so_id=901, line_seq=1),
            EtaLineRecord(item_id=30, location_id=3, so_id=902, line_seq=1),
        ])
        publish(netsuite, [line(10, 1), line(21, 2, so_id=903)])

        response = await sync(db_session, netsuite_client)

        assert response["counts"]["soft_deleted"] == 1
        rows = {r["item_id"]: r for r in await table_rows(db_session, EtaLine)}
        assert rows[10]["ns_deleted_at"] is None
        assert rows[20]["ns_deleted_at"] is not None
        assert rows[21]["ns_deleted_at"] is None
        assert rows[30]["ns_deleted_at"] is None

    @pytest.mark.asyncio
    async def test_invalid_lines_rejected(self, db_session, netsuite, netsuite_client, table_rows):
        publish(netsuite, [line(10, 1), line(None, 1, line_seq=2), line(11, 1, line_seq=2.5)])

        response = await sync(db_session, netsuite_client)

        assert response["counts"]["rejected"] == 2
        assert len(await table_rows(db_session, EtaLine)) == 1

    @pytest.mark.asyncio
    async def test_manifest_name_override(self, db_session, netsuite, netsuite_client):
        publish(netsuite, [line(10, 4)], manifest_id=70, export_id=71, name="manifest_eta_location_4.json")

        response = await sync(db_session, netsuite_client, manifest_name="manifest_eta_location_4.json")

        assert response["context"]["manifest_name"] == "manifest_eta_location_4.json"
        assert response["context"]["locations_in_file"] == [4]

    @pytest.mark.asyncio
    async def test_missing_manifest(self, db_session, netsuite_client):
        with pytest.raises(ExportNotFoundError) as exc_info:
            await sync(db_session, netsuite_client)

        assert exc_info.value.context["name"] == MANIFEST
        assert exc_info.value.http_status == 404

    @pytest.mark.asyncio
    async def test_manifest_without_export_entry(self, db_session, netsuite, netsuite_client):
        netsuite.add_file(60, MANIFEST, {"files": {}})

        with pytest.raises(InvalidManifestError):
            await sync(db_session, netsuite_client)

    @pytest.mark.asyncio
    async def test_rows_without_location(self, db_session, netsuite, netsuite_client, table_rows):
        await PostgresLoader(db_session).reconcile(
            ETA_TARGET, [EtaLineRecord(item_id=10, location_id=1, so_id=900, line_seq=1)]
        )
        publish(netsuite, [{"item_id": 10, "location_id": 0, "so_id": 1, "line_seq": 1}])

        with pytest.raises(MissingScopeError) as exc_info:
            await sync(db_session, netsuite_client)

        assert exc_info.value.context["counts"]["read"] == 1
        [row] = await table_rows(db_session, EtaLine)
        assert row["ns_deleted_at"] is None

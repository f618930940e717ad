"""
ETA sync: snapshot-replace of eta_so_line_etas scoped by location.

A manifest (``manifest_eta_all_lines_latest.json`` unless overridden)
points at the current ETA export under ``files.eta_all_lines``. The
export is the complete ETA picture for the locations it contains, so
those locations are soft-deleted before the export is upserted; other
locations are never touched.
"""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.exceptions import EmptyExportError, ExportNotFoundError, MissingScopeError
from ingestion.base import SyncJob
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.file_streamer import FileRef, FileStreamer, ManifestResolver
from ingestion.transformers.normalizer import RecordNormalizer, to_int
from models.eta_line import EtaLine

logger = logging.getLogger(__name__)

ETA_TARGET = SyncTarget(
    model=EtaLine,
    natural_key=("item_id", "location_id", "so_id", "line_seq"),
)


class EtaSyncJob(SyncJob):
    """Snapshot-replace of ETA lines for the locations in the latest export"""

    job_name = "etas"
    DEFAULT_MANIFEST = "manifest_eta_all_lines_latest.json"
    EXPORT_KEY = "eta_all_lines"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        manifest_name: Optional[str] = None,
        folder_id: Optional[int] = None,
        page_lines: int = 1000,
    ):
        super().__init__(db_session, client, dry_run)
        self.manifest_name = manifest_name or self.DEFAULT_MANIFEST
        self.folder_id = folder_id or settings.NS_EXPORT_FOLDER_ID
        self.page_lines = page_lines
        self.streamer = FileStreamer(client)
        self.resolver = ManifestResolver(client, self.streamer)
        self.parameters = {"dry": dry_run, "manifest_name": self.manifest_name, "folder_id": self.folder_id}

    async def execute(self) -> None:
        manifest_id = await self.resolver.resolve_file_id(self.manifest_name, self.folder_id)
        if manifest_id is None:
            raise ExportNotFoundError(
                f"Manifest {self.manifest_name} not found",
                context={"name": self.manifest_name, "folder_id": self.folder_id},
            )

        manifest = await self.resolver.resolve_via_manifest(manifest_id, self.EXPORT_KEY)
        self.context.update({
            "manifest_name": self.manifest_name,
            "manifest_id": manifest_id,
            "manifest_generated_at": manifest.generated_at,
            "manifest_tag": manifest.tag,
            "manifest_counts": manifest.counts,
            "eta_file": {"id": manifest.file_id, "name": manifest.file_name, "rows": manifest.rows},
        })

        raw_rows: List[dict] = []
        async for page in self.streamer.stream_pages(FileRef.by_id(manifest.file_id), self.page_lines):
            raw_rows.extend(page)
        self.count("read", len(raw_rows))

        if not raw_rows:
            raise EmptyExportError(
                "ETA export contained no rows",
                context={"eta_file_id": manifest.file_id, "expected": "at least one JSONL row"},
            )

        location_ids = sorted({
            lid for lid in (to_int(r.get("location_id")) for r in raw_rows if isinstance(r, dict))
            if lid is not None and lid > 0
        })
        if not location_ids:
            raise MissingScopeError(
                "No valid location_id found in file rows",
                context={"eta_file_id": manifest.file_id, "expected": "location_id > 0"},
            )
        self.context["locations_in_file"] = location_ids

        normalizer = RecordNormalizer(self.job_name)
        records = normalizer.normalize_many(
            raw_rows,
            lambda row: normalizer.normalize_eta(row, manifest.location_name, manifest.generated_at),
        )
        self.count("rejected", normalizer.rejected)

        loader = PostgresLoader(self.db, dry_run=self.dry_run)
        result = await loader.reconcile(
            ETA_TARGET,
            records,
            scope=SnapshotScope(column="location_id", values=location_ids),
        )
        self.add_counts(result.as_dict())

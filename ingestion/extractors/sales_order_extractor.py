"""
Sales order sync: snapshot-replace of sales_orders from the sales order export.

A manifest (``sales_orders_manifest_latest.json`` unless overridden)
points at two exports: ``files.sales_orders`` (headers) and
``files.sales_order_lines``. The header export is every live sales
order, so headers missing from it are soft-deleted. Lines are replaced
per sales order in the header export; lines of other orders are left
alone. Portal-owned columns (managed_by_console, processing_state)
survive every run.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.exceptions import EmptyExportError, ExportNotFoundError
from ingestion.base import SyncJob
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.file_streamer import FileRef, FileStreamer, ManifestResolver
from ingestion.transformers.normalizer import RecordNormalizer
from models.sales_order import SalesOrder, SalesOrderLine
from schemas.records import ExportManifest

logger = logging.getLogger(__name__)

SALES_ORDER_TARGET = SyncTarget(
    model=SalesOrder,
    natural_key=("so_id",),
    preserve_fields=("managed_by_console", "processing_state"),
)
SALES_ORDER_LINE_TARGET = SyncTarget(model=SalesOrderLine, natural_key=("so_id", "line_no"))


def sales_order_url(so_id: int) -> str:
    return f"{settings.ui_base_url}/app/accounting/transactions/salesord.nl?whence=&id={so_id}"


class SalesOrderSyncJob(SyncJob):
    """Snapshot-replace of sales order headers and their lines"""

    job_name = "sales_orders"
    DEFAULT_MANIFEST = "sales_orders_manifest_latest.json"
    HEADER_KEY = "sales_orders"
    LINE_KEY = "sales_order_lines"

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
        self.loader = PostgresLoader(db_session, dry_run=dry_run)
        self.normalizer = RecordNormalizer(self.job_name)
        self.parameters = {"dry": dry_run, "manifest_name": self.manifest_name, "folder_id": self.folder_id}

    async def _read_export(self, export: ExportManifest) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        async for page in self.streamer.stream_pages(FileRef.by_id(export.file_id), self.page_lines):
            rows.extend(r for r in page if isinstance(r, dict))
        return rows

    async def execute(self) -> None:
        manifest_id = await self.resolver.resolve_file_id(self.manifest_name, self.folder_id)
        if manifest_id is None:
            raise ExportNotFoundError(
                f"Manifest {self.manifest_name} not found",
                context={"name": self.manifest_name, "folder_id": self.folder_id},
            )

        exports = await self.resolver.resolve_exports(manifest_id, [self.HEADER_KEY, self.LINE_KEY])
        header_export, line_export = exports[self.HEADER_KEY], exports[self.LINE_KEY]

        header_rows = await self._read_export(header_export)
        line_rows = await self._read_export(line_export)

        self.context.update({
            "manifest_name": self.manifest_name,
            "manifest_id": manifest_id,
            "manifest_generated_at": header_export.generated_at,
            "files": {
                key: {
                    "id": export.file_id,
                    "name": export.file_name,
                    "rows_reported": export.rows,
                    "rows_parsed": len(rows),
                }
                for key, export, rows in (
                    (self.HEADER_KEY, header_export, header_rows),
                    (self.LINE_KEY, line_export, line_rows),
                )
            },
        })
        self.count("read", len(header_rows))

        headers = self.normalizer.normalize_many(header_rows, self.normalizer.normalize_sales_order)
        if not headers:
            raise EmptyExportError(
                "Sales order export contained no usable rows",
                context={"sales_orders_file_id": header_export.file_id, "expected": "at least one sales order"},
            )
        headers = [h.model_copy(update={"netsuite_url": sales_order_url(h.so_id)}) for h in headers]

        so_ids = sorted({h.so_id for h in headers})
        lines = self.normalizer.normalize_many(line_rows, self.normalizer.normalize_sales_order_line)
        in_file = set(so_ids)
        orphans = [line for line in lines if line.so_id not in in_file]
        if orphans:
            logger.warning(f"{len(orphans)} sales order lines reference orders missing from the header export")
        lines = [line for line in lines if line.so_id in in_file]

        result = await self.loader.reconcile(SALES_ORDER_TARGET, headers, scope=SnapshotScope())
        self.add_counts(result.as_dict())

        line_result = await self.loader.reconcile(
            SALES_ORDER_LINE_TARGET,
            lines,
            scope=SnapshotScope(column="so_id", values=so_ids),
        )
        self.count("lines", len(lines))
        self.count("lines_inserted", line_result.inserted)
        self.count("lines_soft_deleted", line_result.soft_deleted)
        self.count("orphan_lines", len(orphans))
        self.count("rejected", self.normalizer.rejected)

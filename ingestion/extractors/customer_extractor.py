"""
Customer sync: snapshot-replace of customer_information from the customer export.

The export is a JSONL file in the export folder, located through
``customer_export_manifest.json`` when present and by its own name
otherwise. The file is the complete customer list, so every stored
customer it omits is soft-deleted (except the sentinel -1 row).

Portal users linked to a customer that disappeared are moved to the
surviving customer with the same email when that match is unambiguous.
"""

from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.exceptions import EmptyExportError
from ingestion.base import SyncJob
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.file_streamer import FileRef, FileStreamer, ManifestResolver
from ingestion.transformers.normalizer import RecordNormalizer, chunked, normalize_email
from models.customer_information import CustomerInformation
from schemas.records import CustomerRecord

logger = logging.getLogger(__name__)

SENTINEL_CUSTOMER_ID = -1

PORTAL_FIELDS = (
    "shipping_verified",
    "billing_verified",
    "terms_compliance",
    "terms_agreed_at",
    "user_id",
    "check_invoice",
    "check_invoice_range",
    "check_invoice_result",
)

CUSTOMER_TARGET = SyncTarget(
    model=CustomerInformation,
    natural_key=("customer_id",),
    preserve_fields=PORTAL_FIELDS,
    carry_forward_fields=("hubspot_id",),
    nullable_on_conflict=("hubspot_id",),
)


class CustomerSyncJob(SyncJob):
    """Snapshot-replace of every ERP customer"""

    job_name = "customers"
    MANIFEST_NAME = "customer_export_manifest.json"
    EXPORT_NAME = "customers.jsonl"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        preview: int = 25,
        folder_id: Optional[int] = None,
        page_lines: Optional[int] = None,
    ):
        super().__init__(db_session, client, dry_run)
        self.preview = preview
        self.folder_id = folder_id or settings.NS_EXPORT_FOLDER_ID
        self.page_lines = page_lines or settings.FILE_PAGE_LINES
        self.streamer = FileStreamer(client)
        self.resolver = ManifestResolver(client, self.streamer)
        self.parameters = {"dry": dry_run, "preview": preview, "folder_id": self.folder_id}

    async def _resolve_export(self) -> FileRef:
        manifest_id = await self.resolver.resolve_file_id(self.MANIFEST_NAME, self.folder_id)
        if manifest_id is not None:
            manifest = await self.resolver.resolve_via_manifest(manifest_id)
            self.context["source"] = {
                "mode": "manifest",
                "manifest_id": manifest_id,
                "file_id": manifest.file_id,
                "generated_at": manifest.generated_at,
            }
            return FileRef.by_id(manifest.file_id)

        logger.info(f"No {self.MANIFEST_NAME} in folder {self.folder_id}, reading {self.EXPORT_NAME} by name")
        self.context["source"] = {"mode": "name", "name": self.EXPORT_NAME, "folder_id": self.folder_id}
        return FileRef.by_name(self.EXPORT_NAME, self.folder_id)

    async def execute(self) -> None:
        ref = await self._resolve_export()
        normalizer = RecordNormalizer(self.job_name)

        records: List[CustomerRecord] = []
        async for page in self.streamer.stream_pages(ref, self.page_lines):
            self.count("read", len(page))
            records.extend(normalizer.normalize_many(page, normalizer.normalize_customer))
        self.count("rejected", normalizer.rejected)

        if not records:
            raise EmptyExportError(
                "Customer export produced no rows",
                context={"source": self.context.get("source"), "expected": "at least one customer row"},
            )

        loader = PostgresLoader(self.db, dry_run=self.dry_run)
        result = await loader.reconcile(
            CUSTOMER_TARGET,
            records,
            scope=SnapshotScope(exclude={"customer_id": [SENTINEL_CUSTOMER_ID]}),
        )
        self.add_counts(result.as_dict())

        removed_ids = [key[0] for key in result.soft_deleted_keys]
        moved, ambiguous = await self._relink_portal_users(removed_ids, records)
        self.count("moved_user_links", moved)
        self.count("ambiguous", ambiguous)

        if self.dry_run:
            self.context["preview"] = [r.to_row() for r in records[:self.preview]]

    # ------------------------------------------------------------------
    # Portal user relink
    # ------------------------------------------------------------------

    @staticmethod
    def _email_index(records: List[CustomerRecord]) -> Dict[str, Set[int]]:
        index: Dict[str, Set[int]] = {}
        for record in records:
            if record.customer_id <= 0:
                continue
            email = normalize_email(record.email)
            if email:
                index.setdefault(email, set()).add(record.customer_id)
        return index

    async def _relink_portal_users(
        self,
        removed_ids: List[int],
        records: List[CustomerRecord],
    ) -> Tuple[int, int]:
        """
        Move user links off customers that left the export.

        A link moves when the removed row's email maps to exactly one
        exported customer and that customer is unlinked or already linked
        to the same user. Returns (moved, ambiguous).
        """
        if not removed_ids:
            return 0, 0

        linked: List[CustomerInformation] = []
        for chunk in chunked(removed_ids, 1000):
            rows = await self.db.execute(
                select(CustomerInformation)
                .where(
                    CustomerInformation.customer_id.in_(chunk),
                    CustomerInformation.user_id.is_not(None),
                )
                .order_by(CustomerInformation.customer_id)
                .execution_options(populate_existing=True)
            )
            linked.extend(rows.scalars().all())
        if not linked:
            return 0, 0

        by_email = self._email_index(records)
        moved = ambiguous = 0
        # target customer id -> user linked to it so far in this run
        claimed: Dict[int, Any] = {}

        for old in linked:
            email = normalize_email(old.email)
            candidates = by_email.get(email, set()) - {old.customer_id} if email else set()
            if not candidates:
                continue
            if len(candidates) > 1:
                ambiguous += 1
                logger.warning(
                    f"Customer {old.customer_id} left the export; {len(candidates)} customers share "
                    f"its email, user link kept on the soft-deleted row"
                )
                continue

            target_id = next(iter(candidates))
            if target_id in claimed:
                target_user = claimed[target_id]
            else:
                result = await self.db.execute(
                    select(CustomerInformation.customer_id, CustomerInformation.user_id).where(
                        CustomerInformation.customer_id == target_id
                    )
                )
                target = result.first()
                if target is None and not self.dry_run:
                    ambiguous += 1
                    continue
                target_user = target.user_id if target is not None else None

            if target_user not in (None, old.user_id):
                ambiguous += 1
                logger.warning(
                    f"Customer {old.customer_id} left the export; target {target_id} is linked "
                    f"to another user"
                )
                continue

            claimed[target_id] = old.user_id
            if not self.dry_run:
                await self._move_portal_fields(old, target_id)
            moved += 1

        if not self.dry_run:
            await self.db.commit()

        return moved, ambiguous

    async def _move_portal_fields(self, old: CustomerInformation, target_id: int) -> None:
        portal_values: Dict[str, Any] = {name: getattr(old, name) for name in PORTAL_FIELDS}
        await self.db.execute(
            update(CustomerInformation)
            .where(CustomerInformation.customer_id == old.customer_id)
            .values(user_id=None)
        )
        await self.db.execute(
            update(CustomerInformation)
            .where(CustomerInformation.customer_id == target_id)
            .values(**portal_values, ns_deleted_at=None)
        )
        logger.info(f"Moved portal user {portal_values['user_id']} from customer {old.customer_id} to {target_id}")

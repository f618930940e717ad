"""
Fulfillment sync: incremental merge of item fulfillments driven by a cursor.

Changed fulfillments (lastmodified at or after the cursor minus a short
overlap, or dated on or after that day) are found with SuiteQL for
portal customers, every customer (``scope_all``) or an explicit id
list. Headers and sales order links come from SuiteQL; ship status,
package tracking numbers and shipped lines come from the fulfillment
record, fetched with bounded concurrency. Lines are replaced as a
snapshot per fulfillment whose record was fetched.

Stored fulfillments that disappeared from NetSuite or were cancelled or
voided are soft-deleted afterwards. The cursor advances to the newest
lastmodified in NetSuite after a non-dry run without an explicit id
list; when any record fetch failed it stays where it was.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow
from core.config import settings
from core.exceptions import DatabaseError
from ingestion.base import SyncJob
from ingestion.fanout import fan_out
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.transformers.normalizer import (
    RecordNormalizer,
    chunked,
    coerce_str,
    lower_keys,
    to_int,
    tracking_details,
    tracking_numbers,
)
from models.base import SyncStatus
from models.fulfillment import Fulfillment, FulfillmentLine
from schemas.records import FulfillmentLineRecord, FulfillmentRecord

logger = logging.getLogger(__name__)

ENTITY_CHUNK = 900
ID_CHUNK = 900
CURSOR_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"
CURSOR_OVERLAP = timedelta(minutes=10)
MAX_DETAIL_CONCURRENCY = 10
RECORD_TYPE = "itemFulfillment"

FULFILLMENT_TARGET = SyncTarget(model=Fulfillment, natural_key=("fulfillment_id",))
FULFILLMENT_LINE_TARGET = SyncTarget(model=FulfillmentLine, natural_key=("fulfillment_id", "line_no"))

# Filled from the fulfillment record; kept as stored when the record could not be fetched
DETAIL_FIELDS = {"ship_status", "tracking", "tracking_urls", "tracking_details"}

LASTMODIFIED_ISO = "TO_CHAR(T.lastmodifieddate, 'YYYY-MM-DD\"T\"HH24:MI:SS\".000Z\"')"


def overlap_since(cursor: str) -> str:
    """Cursor moved back by the overlap window; unparseable cursors are used as is"""
    try:
        moment = datetime.fromisoformat(cursor.replace("Z", "+00:00"))
    except ValueError:
        return cursor
    return (moment - CURSOR_OVERLAP).strftime(CURSOR_FORMAT)


def changed_ids_query(since: str, entity_ids: Optional[List[int]] = None) -> str:
    entities = ""
    if entity_ids is not None:
        entities = f"AND T.entity IN ({','.join(str(i) for i in entity_ids)})"
    return f"""
        SELECT T.id AS fulfillmentId, {LASTMODIFIED_ISO} AS lastmodifieddate
        FROM transaction T
        WHERE T.type = 'ItemShip'
          {entities}
          AND (T.lastmodifieddate >= TO_TIMESTAMP_TZ('{since}','YYYY-MM-DD"T"HH24:MI:SS.FF3"Z"')
               OR T.trandate >= TO_DATE('{since[:10]}','YYYY-MM-DD'))
        ORDER BY T.lastmodifieddate ASC
    """


def headers_query(id_list: str) -> str:
    return f"""
        SELECT
          T.id AS fulfillmentId,
          T.tranid AS tranId,
          T.trandate AS trandate,
          T.entity AS customerId,
          BUILTIN.DF(T.status) AS status,
          {LASTMODIFIED_ISO} AS lastmodifieddate
        FROM transaction T
        WHERE T.type = 'ItemShip' AND T.id IN ({id_list})
    """


def so_link_query(id_list: str) -> str:
    return f"""
        SELECT
          PTL.NextDoc AS fulfillmentId,
          PTL.PreviousDoc AS soId,
          S.tranid AS soTranId
        FROM PreviousTransactionLink PTL
        JOIN transaction S ON S.id = PTL.PreviousDoc
        WHERE PTL.NextDoc IN ({id_list}) AND S.type='SalesOrd'
    """


def item_meta_query(id_list: str) -> str:
    return f"""
        SELECT I.id AS itemId, I.itemid AS sku, I.displayname AS displayName
        FROM item I
        WHERE I.id IN ({id_list})
    """


def status_query(id_list: str) -> str:
    return f"""
        SELECT T.id AS fulfillmentId, BUILTIN.DF(T.status) AS status
        FROM transaction T
        WHERE T.type = 'ItemShip' AND T.id IN ({id_list})
    """


def max_cursor_query(since: str) -> str:
    return f"""
        SELECT TO_CHAR(MAX(T.lastmodifieddate), 'YYYY-MM-DD"T"HH24:MI:SS".000Z"') AS maxIso
        FROM transaction T
        WHERE T.type = 'ItemShip'
          AND T.lastmodifieddate >= TO_TIMESTAMP_TZ('{since}','YYYY-MM-DD"T"HH24:MI:SS.FF3"Z"')
    """


def ship_status(record: Dict[str, Any]) -> Optional[str]:
    for key in ("shipStatus", "shipstatus"):
        value = record.get(key)
        if isinstance(value, dict):
            status = coerce_str(value.get("refName") or value.get("text"))
            if status:
                return status
    return None


def is_cancelled(status: Optional[str]) -> bool:
    s = (status or "").lower()
    return "cancel" in s or "void" in s


class FulfillmentSyncJob(SyncJob):
    """Incremental fulfillment sync with tracking details and shipped lines"""

    job_name = "fulfillments"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        lookback_days: int = 90,
        ids: Optional[Sequence[int]] = None,
        scope_all: bool = False,
        batch_size: int = 300,
        detail_concurrency: Optional[int] = None,
    ):
        super().__init__(db_session, client, dry_run)
        self.lookback_days = lookback_days
        self.ids = list(ids or [])
        self.scope_all = scope_all
        self.batch_size = max(50, min(500, int(batch_size)))
        concurrency = detail_concurrency or settings.FANOUT_CONCURRENCY
        self.detail_concurrency = max(1, min(MAX_DETAIL_CONCURRENCY, int(concurrency)))
        self.loader = PostgresLoader(db_session, dry_run=dry_run)
        self.normalizer = RecordNormalizer(self.job_name)
        self.parameters = {
            "dry": dry_run,
            "lookback_days": lookback_days,
            "ids": self.ids,
            "scope_all": scope_all,
            "batch_size": self.batch_size,
            "detail_concurrency": self.detail_concurrency,
        }

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    async def _resolve_since(self) -> Tuple[str, str]:
        """Stored cursor (or lookback start) and the overlapped lower bound used to query"""
        state = await self.get_cursor()
        if state is not None and state.last_cursor:
            base = state.last_cursor
        else:
            base = (utcnow() - timedelta(days=self.lookback_days)).strftime(CURSOR_FORMAT)
        return base, overlap_since(base)

    async def _changed_fulfillments(self, customer_ids: Optional[List[int]], since: str) -> Dict[int, Optional[str]]:
        changed: Dict[int, Optional[str]] = {}
        chunks = chunked(customer_ids, ENTITY_CHUNK) if customer_ids is not None else [None]
        for entity_chunk in chunks:
            rows = await self.client.query(changed_ids_query(since, entity_chunk), tag="fulfillments:changed")
            for row in rows:
                row = lower_keys(row)
                fulfillment_id = to_int(row.get("fulfillmentid"))
                if fulfillment_id is not None:
                    changed[fulfillment_id] = coerce_str(row.get("lastmodifieddate"))
        return changed

    # ------------------------------------------------------------------
    # Per batch
    # ------------------------------------------------------------------

    async def fetch_detail(self, fulfillment_id: int) -> Dict[str, Any]:
        return await self.client.get_record(RECORD_TYPE, fulfillment_id, tag=f"fulfillments:detail:{fulfillment_id}")

    async def _enrich_items(self, lines: List[FulfillmentLineRecord]) -> None:
        """Replace numeric or missing SKUs and bare display names with the item's own"""
        item_ids = sorted({line.item_id for line in lines if line.item_id is not None})
        meta: Dict[int, Tuple[Optional[str], Optional[str]]] = {}
        for id_chunk in chunked(item_ids, ID_CHUNK):
            rows = await self.client.query(item_meta_query(",".join(str(i) for i in id_chunk)), tag="fulfillments:items")
            for row in rows:
                row = lower_keys(row)
                item_id = to_int(row.get("itemid"))
                if item_id is not None:
                    meta[item_id] = (coerce_str(row.get("sku")), coerce_str(row.get("displayname")))

        for line in lines:
            sku, display = meta.get(line.item_id, (None, None))
            current_sku = line.item_sku or ""
            if sku and (not current_sku or current_sku.isdigit()):
                line.item_sku = sku
            current_display = line.item_display_name or ""
            if display and current_display in ("", str(line.item_id), current_sku):
                line.item_display_name = display
            if not line.item_display_name and line.item_sku:
                line.item_display_name = line.item_sku

    async def _sync_batch(self, ids: List[int]) -> None:
        id_list = ",".join(str(i) for i in ids)
        header_rows = await self.client.query(headers_query(id_list), tag="fulfillments:headers")
        so_rows = await self.client.query(so_link_query(id_list), tag="fulfillments:so_links")
        self.count("read", len(header_rows))

        headers = self.normalizer.normalize_many(header_rows, self.normalizer.normalize_fulfillment_header)

        so_links: Dict[int, Tuple[Optional[int], Optional[str]]] = {}
        for row in so_rows:
            row = lower_keys(row)
            fulfillment_id = to_int(row.get("fulfillmentid"))
            if fulfillment_id is not None:
                so_links[fulfillment_id] = (to_int(row.get("soid")), coerce_str(row.get("sotranid")))

        details: Dict[int, Dict[str, Any]] = {}

        async def keep(fulfillment_id: int, record: Dict[str, Any]) -> None:
            details[fulfillment_id] = record

        fetched = await fan_out(
            [h.fulfillment_id for h in headers],
            self.fetch_detail,
            keep,
            concurrency=self.detail_concurrency,
            label=f"{self.job_name}:details",
        )
        self.count("failed", len(fetched.failed))
        if fetched.failed:
            failures = self.context.setdefault("failed_details", {})
            failures.update({str(k): v for k, v in fetched.failed.items()})

        complete: List[FulfillmentRecord] = []
        header_only: List[Dict[str, Any]] = []
        lines: List[FulfillmentLineRecord] = []
        for header in headers:
            so_id, so_tranid = so_links.get(header.fulfillment_id, (None, None))
            header = header.model_copy(update={"created_from_so_id": so_id, "created_from_so_tranid": so_tranid})

            record = details.get(header.fulfillment_id)
            if record is None:
                header_only.append(header.model_dump(exclude=DETAIL_FIELDS))
                continue

            tracking = tracking_details(tracking_numbers(record))
            complete.append(header.model_copy(update={
                "ship_status": ship_status(record),
                "tracking": ", ".join(t.number for t in tracking) or None,
                "tracking_urls": [t.url for t in tracking],
                "tracking_details": tracking,
            }))
            lines.extend(self.normalizer.normalize_fulfillment_lines(header.fulfillment_id, record))

        await self._enrich_items(lines)

        for rows in (complete, header_only):
            if rows:
                result = await self.loader.reconcile(FULFILLMENT_TARGET, rows)
                self.add_counts(result.as_dict())

        line_result = await self.loader.reconcile(
            FULFILLMENT_LINE_TARGET,
            lines,
            scope=SnapshotScope(column="fulfillment_id", values=sorted(details)),
        )
        self.count("lines", len(lines))
        self.count("lines_soft_deleted", line_result.soft_deleted)

    # ------------------------------------------------------------------
    # Removed fulfillments
    # ------------------------------------------------------------------

    async def _live_ids(self, column: Optional[str], values: Optional[List[int]]) -> List[int]:
        ids: List[int] = []
        filters = [Fulfillment.ns_deleted_at.is_(None)]
        try:
            if column is None:
                result = await self.db.execute(select(Fulfillment.fulfillment_id).where(*filters))
                ids.extend(result.scalars().all())
            else:
                for value_chunk in chunked(values or [], ID_CHUNK):
                    result = await self.db.execute(
                        select(Fulfillment.fulfillment_id).where(*filters, getattr(Fulfillment, column).in_(value_chunk))
                    )
                    ids.extend(result.scalars().all())
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to load live fulfillment ids",
                context={"operation": "SELECT", "table_name": Fulfillment.__tablename__},
                original_exception=e,
            )
        return sorted(set(ids))

    async def _tombstone_removed(self, customer_ids: Optional[List[int]]) -> None:
        """Soft-delete stored fulfillments NetSuite no longer has, or has cancelled or voided"""
        if self.ids:
            live = await self._live_ids("fulfillment_id", self.ids)
        elif customer_ids is None:
            live = await self._live_ids(None, None)
        else:
            live = await self._live_ids("customer_id", customer_ids)
        self.count("checked", len(live))

        gone: List[int] = []
        for id_chunk in chunked(live, ID_CHUNK):
            rows = await self.client.query(status_query(",".join(str(i) for i in id_chunk)), tag="fulfillments:status")
            statuses: Dict[int, Optional[str]] = {}
            for row in rows:
                row = lower_keys(row)
                fulfillment_id = to_int(row.get("fulfillmentid"))
                if fulfillment_id is not None:
                    statuses[fulfillment_id] = coerce_str(row.get("status"))
            gone.extend(i for i in id_chunk if i not in statuses or is_cancelled(statuses[i]))

        if gone:
            self.count("soft_deleted", await self.loader.soft_delete(FULFILLMENT_TARGET, "fulfillment_id", gone))
            self.count(
                "lines_soft_deleted",
                await self.loader.soft_delete(FULFILLMENT_LINE_TARGET, "fulfillment_id", gone),
            )
            self.context["removed_fulfillments"] = gone

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def execute(self) -> None:
        base, since = await self._resolve_since()
        self.context["since"] = since

        customer_ids: Optional[List[int]] = None
        if self.ids:
            self.context["source"] = "ids"
            changed: Dict[int, Optional[str]] = {i: None for i in self.ids}
        else:
            if not self.scope_all:
                self.context["source"] = "profiles"
                customer_ids = await self.portal_customer_ids()
                self.count("customers", len(customer_ids))
                if not customer_ids:
                    logger.info("No portal customers, nothing to sync")
                    return
            else:
                self.context["source"] = "all"
            changed = await self._changed_fulfillments(customer_ids, since)
        self.count("scanned", len(changed))

        for batch in chunked(sorted(changed), self.batch_size):
            await self._sync_batch(batch)
        self.count("rejected", self.normalizer.rejected)

        await self._tombstone_removed(customer_ids)

        if self.ids:
            return
        rows = await self.client.query(max_cursor_query(since), tag="fulfillments:max_cursor")
        newest = coerce_str(lower_keys(rows[0]).get("maxiso")) if rows else None
        seen = [value for value in changed.values() if value]
        new_cursor = max([base, newest or ""] + seen)

        # Fulfillments whose record could not be fetched must be picked up again
        failed = self.counts.get("failed", 0)
        if failed:
            new_cursor = base
        self.context["last_cursor"] = new_cursor
        if self.dry_run:
            return

        if failed:
            await self.save_cursor(
                new_cursor,
                SyncStatus.PARTIAL,
                error_message=f"{failed} fulfillment records could not be fetched",
            )
            logger.warning(f"Fulfillment cursor held at {new_cursor} after {failed} failed record fetches")
        else:
            await self.save_cursor(new_cursor)
            logger.info(f"Fulfillment cursor advanced to {new_cursor}")

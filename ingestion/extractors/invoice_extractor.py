"""
Invoice sync: incremental merge driven by a persisted lastmodified cursor.

Changed invoices of portal customers are found with SuiteQL (entity lists
of at most 900 ids). Headers are upserted; lines and payments are
replaced as a snapshot per invoice. The cursor in sync_state advances to
the newest lastmodified seen, only after a successful non-dry run
without an explicit date window.
"""

from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow
from core.config import settings
from ingestion.base import SyncJob
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.transformers.normalizer import RecordNormalizer, chunked, coerce_str, lower_keys, to_int
from models.invoice import Invoice, InvoiceLine, InvoicePayment
from schemas.records import InvoiceHeaderRecord

logger = logging.getLogger(__name__)

ENTITY_CHUNK = 900
INVOICE_CHUNK = 300
CURSOR_FORMAT = "%Y-%m-%dT%H:%M:%S.000Z"

INVOICE_TARGET = SyncTarget(model=Invoice, natural_key=("invoice_id",))
INVOICE_LINE_TARGET = SyncTarget(model=InvoiceLine, natural_key=("invoice_id", "line_no"))
INVOICE_PAYMENT_TARGET = SyncTarget(model=InvoicePayment, natural_key=("invoice_id", "payment_id"))

LASTMODIFIED_ISO = "TO_CHAR(T.lastmodifieddate, 'YYYY-MM-DD\"T\"HH24:MI:SS\".000Z\"')"


def changed_ids_query(entity_ids: List[int], since: Optional[str], window: Optional[Tuple[date, date]]) -> str:
    entities = ",".join(str(i) for i in entity_ids)
    if window is not None:
        start, end = window
        return f"""
            SELECT T.id AS invoiceId, {LASTMODIFIED_ISO} AS lastmodifieddate
            FROM transaction T
            WHERE T.type = 'CustInvc'
              AND T.entity IN ({entities})
              AND T.trandate >= TO_DATE('{start.isoformat()}','YYYY-MM-DD')
              AND T.trandate <  TO_DATE('{end.isoformat()}','YYYY-MM-DD')
            ORDER BY T.trandate ASC
        """
    return f"""
        SELECT T.id AS invoiceId, {LASTMODIFIED_ISO} AS lastmodifieddate
        FROM transaction T
        WHERE T.type = 'CustInvc'
          AND T.entity IN ({entities})
          AND T.lastmodifieddate > TO_TIMESTAMP_TZ('{since}','YYYY-MM-DD"T"HH24:MI:SS.FF3"Z"')
        ORDER BY T.lastmodifieddate ASC
    """


def headers_query(id_list: str) -> str:
    return f"""
        SELECT
          T.id AS invoiceId,
          T.tranid AS tranId,
          T.trandate AS trandate,
          T.total AS total,
          T.taxtotal AS taxTotal,
          T.entity AS customerId,
          {LASTMODIFIED_ISO} AS lastmodifieddate
        FROM transaction T
        WHERE T.type = 'CustInvc' AND T.id IN ({id_list})
    """


def lines_query(id_list: str) -> str:
    return f"""
        SELECT
          TL.transaction AS invoiceId,
          TL.linesequencenumber AS lineNo,
          I.id AS itemId,
          I.itemid AS sku,
          I.displayname AS displayName,
          NVL(ABS(TL.quantity), 0) AS quantity,
          TL.rate AS rate,
          NVL(ABS(TL.amount), 0) AS amount,
          TL.memo AS description,
          TL.custcolns_comment AS lineComment
        FROM transactionline TL
        JOIN item I ON I.id = TL.item
        WHERE TL.transaction IN ({id_list})
    """


def payments_query(id_list: str) -> str:
    return f"""
        SELECT
          TL.createdfrom AS invoiceId,
          P.id AS paymentId,
          P.tranid AS tranId,
          P.trandate AS paymentDate,
          BUILTIN.DF(P.status) AS status,
          P.total AS amount,
          BUILTIN.DF(P.paymentoption) AS paymentOption
        FROM transaction P
        JOIN transactionline TL ON TL.transaction = P.id
        WHERE P.type = 'CustPymt' AND TL.createdfrom IN ({id_list})
    """


def so_link_query(id_list: str) -> str:
    return f"""
        SELECT
          PTL.NextDoc AS invoiceId,
          PTL.PreviousDoc AS soId,
          S.tranid AS soTranId
        FROM PreviousTransactionLink PTL
        JOIN transaction S ON S.id = PTL.PreviousDoc
        WHERE PTL.NextDoc IN ({id_list}) AND S.type='SalesOrd'
    """


def invoice_url(invoice_id: int) -> str:
    return f"{settings.ui_base_url}/app/accounting/transactions/custinvc.nl?whence=&id={invoice_id}"


class InvoiceSyncJob(SyncJob):
    """Incremental invoice sync for customers that have a portal profile"""

    job_name = "invoices"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        lookback_days: int = 90,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ):
        super().__init__(db_session, client, dry_run)
        self.lookback_days = lookback_days
        self.window: Optional[Tuple[date, date]] = None
        if date_from is not None and date_to is not None:
            self.window = (date_from, date_to)
        self.loader = PostgresLoader(db_session, dry_run=dry_run)
        self.normalizer = RecordNormalizer(self.job_name)
        self.parameters = {
            "dry": dry_run,
            "lookback_days": lookback_days,
            "from": date_from,
            "to": date_to,
        }

    async def _resolve_since(self) -> str:
        state = await self.get_cursor()
        if state is not None and state.last_cursor:
            return state.last_cursor
        return (utcnow() - timedelta(days=self.lookback_days)).strftime(CURSOR_FORMAT)

    async def _changed_invoices(self, customer_ids: List[int], since: str) -> Dict[int, Optional[str]]:
        changed: Dict[int, Optional[str]] = {}
        for entity_chunk in chunked(customer_ids, ENTITY_CHUNK):
            rows = await self.client.query(
                changed_ids_query(entity_chunk, since, self.window),
                tag="invoices:changed",
            )
            for row in rows:
                row = lower_keys(row)
                invoice_id = to_int(row.get("invoiceid"))
                if invoice_id is not None:
                    changed[invoice_id] = coerce_str(row.get("lastmodifieddate"))
        return changed

    async def _sync_batch(self, ids: List[int]) -> None:
        id_list = ",".join(str(i) for i in ids)
        header_rows = await self.client.query(headers_query(id_list), tag="invoices:headers")
        line_rows = await self.client.query(lines_query(id_list), tag="invoices:lines")
        payment_rows = await self.client.query(payments_query(id_list), tag="invoices:payments")
        so_rows = await self.client.query(so_link_query(id_list), tag="invoices:so_links")
        self.count("read", len(header_rows))

        headers = self.normalizer.normalize_many(header_rows, self.normalizer.normalize_invoice_header)
        lines = self.normalizer.normalize_many(line_rows, self.normalizer.normalize_invoice_line)
        payments = self.normalizer.normalize_many(payment_rows, self.normalizer.normalize_invoice_payment)

        paid: Dict[int, float] = defaultdict(float)
        for payment in payments:
            paid[payment.invoice_id] += payment.amount

        so_links: Dict[int, Tuple[Optional[int], Optional[str]]] = {}
        for row in so_rows:
            row = lower_keys(row)
            invoice_id = to_int(row.get("invoiceid"))
            if invoice_id is not None:
                so_links[invoice_id] = (to_int(row.get("soid")), coerce_str(row.get("sotranid")))

        invoices: List[InvoiceHeaderRecord] = []
        for header in headers:
            amount_paid = paid.get(header.invoice_id, 0.0)
            so_id, so_tranid = so_links.get(header.invoice_id, (None, None))
            invoices.append(header.model_copy(update={
                "amount_paid": amount_paid,
                "amount_remaining": max(0.0, header.total - amount_paid),
                "created_from_so_id": so_id,
                "created_from_so_tranid": so_tranid,
                "netsuite_url": invoice_url(header.invoice_id),
            }))

        result = await self.loader.reconcile(INVOICE_TARGET, invoices)
        self.add_counts(result.as_dict())

        # Lines and payments of every invoice in the batch are replaced, even when it has none left
        scope = SnapshotScope(column="invoice_id", values=ids)
        line_result = await self.loader.reconcile(INVOICE_LINE_TARGET, lines, scope=scope)
        payment_result = await self.loader.reconcile(INVOICE_PAYMENT_TARGET, payments, scope=scope)
        self.count("lines", len(lines))
        self.count("payments", len(payments))
        self.count("lines_soft_deleted", line_result.soft_deleted)
        self.count("payments_soft_deleted", payment_result.soft_deleted)

    async def execute(self) -> None:
        since = await self._resolve_since()
        self.context["since"] = since if self.window is None else None
        if self.window is not None:
            self.context["window"] = {"from": self.window[0].isoformat(), "to": self.window[1].isoformat()}

        customer_ids = await self.portal_customer_ids()
        self.count("customers", len(customer_ids))
        if not customer_ids:
            logger.info("No portal customers, nothing to sync")
            return

        changed = await self._changed_invoices(customer_ids, since)
        self.count("scanned", len(changed))

        for batch in chunked(sorted(changed), INVOICE_CHUNK):
            await self._sync_batch(batch)
        self.count("rejected", self.normalizer.rejected)

        seen = [value for value in changed.values() if value]
        new_cursor = max(seen) if seen else utcnow().strftime(CURSOR_FORMAT)
        self.context["last_cursor"] = new_cursor

        if not self.dry_run and self.window is None:
            await self.save_cursor(new_cursor)
            logger.info(f"Invoice cursor advanced to {new_cursor}")

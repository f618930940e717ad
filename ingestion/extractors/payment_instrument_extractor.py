"""
Payment instrument sync: per-customer snapshot through the instruments script.

Each customer is fetched independently with bounded concurrency. The
script's answer is the complete instrument list for that customer, so
the customer's stored instruments are reconciled with a scope of that
single customer id. A customer whose fetch fails is skipped and the run
is reported as partial.
"""

from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.clock import utcnow
from core.config import settings
from core.exceptions import ScriptEndpointError
from ingestion.base import SyncJob
from ingestion.fanout import fan_out
from ingestion.loaders.postgres_loader import PostgresLoader, SnapshotScope, SyncTarget
from ingestion.remote.client import NetSuiteClient
from ingestion.transformers.normalizer import RecordNormalizer, coerce_str, to_int
from models.payment_instrument import PaymentInstrument
from schemas.records import PaymentInstrumentRecord

logger = logging.getLogger(__name__)

INSTRUMENT_TARGET = SyncTarget(
    model=PaymentInstrument,
    natural_key=("customer_id", "instrument_id"),
)

CUSTOMER_PAGE_SIZE = 1000
MAX_DETAIL_CONCURRENCY = 10


def parse_id_list(raw: Optional[str]) -> List[int]:
    """Comma separated ids; non-numeric and non-positive entries dropped"""
    if not raw:
        return []
    ids: List[int] = []
    for part in raw.split(","):
        value = to_int(part.strip())
        if value is not None and value > 0:
            ids.append(value)
    return list(dict.fromkeys(ids))


class PaymentInstrumentSyncJob(SyncJob):
    """Fan-out over customers, snapshot-replace of each customer's instruments"""

    job_name = "payment_instruments"

    def __init__(
        self,
        db_session: AsyncSession,
        client: NetSuiteClient,
        dry_run: bool = False,
        ids: Optional[Sequence[int]] = None,
        force_all: bool = False,
        detail_concurrency: Optional[int] = None,
        restlet_url: Optional[str] = None,
    ):
        super().__init__(db_session, client, dry_run)
        self.ids = list(ids or [])
        self.force_all = force_all
        concurrency = detail_concurrency or settings.FANOUT_CONCURRENCY
        self.detail_concurrency = max(1, min(MAX_DETAIL_CONCURRENCY, int(concurrency)))
        self.restlet_url = restlet_url or settings.payment_instrument_restlet_url
        self.loader = PostgresLoader(db_session, dry_run=dry_run)
        self.normalizer = RecordNormalizer(self.job_name)
        self.parameters = {
            "dry": dry_run,
            "ids": self.ids,
            "force_all": force_all,
            "detail_concurrency": self.detail_concurrency,
        }

    # ------------------------------------------------------------------
    # Customer selection
    # ------------------------------------------------------------------

    async def _all_erp_customer_ids(self) -> List[int]:
        """Keyset pagination over every ERP customer, highest id first"""
        ids: List[int] = []
        last_id: Optional[int] = None
        while True:
            where = f"WHERE c.id < {last_id}" if last_id is not None else ""
            rows = await self.client.query(
                f"SELECT c.id AS id FROM customer c {where} "
                f"ORDER BY c.id DESC FETCH NEXT {CUSTOMER_PAGE_SIZE} ROWS ONLY",
                tag="allCustomers",
            )
            page = [cid for cid in (to_int(r.get("id")) for r in rows) if cid is not None]
            ids.extend(page)
            if len(rows) < CUSTOMER_PAGE_SIZE or not page:
                break
            last_id = page[-1]
        return ids

    async def _customer_ids(self) -> List[int]:
        if self.ids:
            self.context["source"] = "ids"
            return self.ids
        if self.force_all:
            self.context["source"] = "netsuite"
            return await self._all_erp_customer_ids()
        self.context["source"] = "profiles"
        return await self.portal_customer_ids()

    # ------------------------------------------------------------------
    # Per customer
    # ------------------------------------------------------------------

    async def fetch_instruments(self, customer_id: int) -> List[PaymentInstrumentRecord]:
        payload = await self.client.call_script(
            "POST",
            self.restlet_url,
            tag=f"instruments:{customer_id}",
            json={"customerId": customer_id, "includeTokens": True, "includeDefault": True},
        )
        if not isinstance(payload, dict) or payload.get("success") is False:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ScriptEndpointError(
                message or "Instruments script reported failure",
                context={"customer_id": customer_id, "body": str(payload)[:600]},
            )

        default_id = coerce_str(payload.get("defaultInstrumentId"))
        seen_at = utcnow()
        instruments = payload.get("instruments") or []
        return self.normalizer.normalize_many(
            [i for i in instruments if isinstance(i, dict)],
            lambda row: self.normalizer.normalize_instrument(row, customer_id, default_id, seen_at),
        )

    async def _store(self, customer_id: int, records: List[PaymentInstrumentRecord]) -> None:
        self.count("read", len(records))
        result = await self.loader.reconcile(
            INSTRUMENT_TARGET,
            records,
            scope=SnapshotScope(column="customer_id", values=[customer_id]),
        )
        self.add_counts(result.as_dict())

    async def execute(self) -> None:
        self.context["force_all"] = self.force_all
        customer_ids = await self._customer_ids()
        self.count("scanned", len(customer_ids))
        if not customer_ids:
            logger.info("No customers to sync payment instruments for")
            return

        result = await fan_out(
            customer_ids,
            self.fetch_instruments,
            self._store,
            concurrency=self.detail_concurrency,
            label=self.job_name,
        )
        self.count("processed", len(result.processed))
        self.count("failed", len(result.failed))
        self.count("rejected", self.normalizer.rejected)
        if result.failed:
            self.context["failed_customers"] = {str(k): v for k, v in result.failed.items()}


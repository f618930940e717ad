"""
Admin trigger endpoints, one per sync job
"""

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from api.dependencies import get_db, get_netsuite_client, parse_flag, require_admin_secret
from core.exceptions import InvalidRequestError
from ingestion.base import SyncJob
from ingestion.extractors.customer_extractor import CustomerSyncJob
from ingestion.extractors.eta_extractor import EtaSyncJob
from ingestion.extractors.fulfillment_extractor import FulfillmentSyncJob
from ingestion.extractors.identifier_extractor import CustomerIdentifierSyncJob
from ingestion.extractors.invoice_extractor import InvoiceSyncJob
from ingestion.extractors.payment_instrument_extractor import PaymentInstrumentSyncJob, parse_id_list
from ingestion.extractors.sales_order_extractor import SalesOrderSyncJob
from ingestion.remote.client import NetSuiteClient
from ingestion.runner import SyncRunner
from schemas.api import ErrorResponse, EtaSyncRequest, SyncResponse

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/admin/sync",
    tags=["Sync"],
    dependencies=[Depends(require_admin_secret)],
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)


async def _run(request: Request, db: AsyncSession, job: SyncJob) -> Dict[str, Any]:
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] triggering {job.job_name} (dry_run={job.dry_run})")
    return await SyncRunner(db).run(job)


@router.post("/customers", response_model=SyncResponse)
async def sync_customers(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    preview: int = Query(25, ge=0, le=200, description="Rows echoed back in dry run"),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Snapshot-replace of all customers from the customer export"""
    job = CustomerSyncJob(db, client, dry_run=parse_flag(dry), preview=preview)
    return await _run(request, db, job)


@router.post("/etas", response_model=SyncResponse)
async def sync_etas(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    manifest_name: Optional[str] = Query(None, description="Manifest file name override"),
    body: Optional[EtaSyncRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Snapshot-replace of ETA lines for the locations in the latest export"""
    name = manifest_name or (body.manifest_name if body else None)
    job = EtaSyncJob(db, client, dry_run=parse_flag(dry), manifest_name=name)
    return await _run(request, db, job)


@router.post("/payment-instruments", response_model=SyncResponse)
async def sync_payment_instruments(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    ids: Optional[str] = Query(None, description="Comma separated customer ids"),
    force_all: Optional[str] = Query(None, description="Every ERP customer instead of portal customers"),
    detail_concurrency: Optional[int] = Query(
        None, description="Concurrent script calls (clamped to 1..10), FANOUT_CONCURRENCY when omitted"
    ),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Per-customer snapshot of stored payment instruments"""
    job = PaymentInstrumentSyncJob(
        db,
        client,
        dry_run=parse_flag(dry),
        ids=parse_id_list(ids),
        force_all=parse_flag(force_all),
        detail_concurrency=detail_concurrency,
    )
    return await _run(request, db, job)


@router.post("/customer-identifiers", response_model=SyncResponse)
async def sync_customer_identifiers(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    limit: int = Query(5, ge=1, le=100, description="Candidates previewed in dry run"),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Insert profiles for ERP emails that have none"""
    job = CustomerIdentifierSyncJob(db, client, dry_run=parse_flag(dry), limit=limit)
    return await _run(request, db, job)


@router.post("/invoices", response_model=SyncResponse)
async def sync_invoices(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    lookback_days: int = Query(90, ge=1, le=3650, description="Window when no cursor is stored"),
    date_from: Optional[date] = Query(None, alias="from", description="Transaction date window start (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, alias="to", description="Transaction date window end, exclusive"),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Incremental invoice sync; an explicit window leaves the cursor alone"""
    if (date_from is None) != (date_to is None):
        raise InvalidRequestError(
            "from and to must be given together",
            context={
                "job": InvoiceSyncJob.job_name,
                "from": date_from.isoformat() if date_from else None,
                "to": date_to.isoformat() if date_to else None,
            },
        )
    job = InvoiceSyncJob(
        db,
        client,
        dry_run=parse_flag(dry),
        lookback_days=lookback_days,
        date_from=date_from,
        date_to=date_to,
    )
    return await _run(request, db, job)


@router.post("/sales-orders", response_model=SyncResponse)
async def sync_sales_orders(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    manifest_name: Optional[str] = Query(None, description="Manifest file name override"),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Snapshot-replace of sales order headers and lines from the latest export"""
    job = SalesOrderSyncJob(db, client, dry_run=parse_flag(dry), manifest_name=manifest_name)
    return await _run(request, db, job)


@router.post("/fulfillments", response_model=SyncResponse)
async def sync_fulfillments(
    request: Request,
    dry: Optional[str] = Query(None, description="Dry run: 1/true/yes/y/on"),
    lookback_days: int = Query(90, ge=1, le=3650, description="Window when no cursor is stored"),
    ids: Optional[str] = Query(None, description="Comma separated fulfillment ids; leaves the cursor alone"),
    scope: Optional[str] = Query(None, description="'all' for every customer instead of portal customers"),
    batch_size: int = Query(300, ge=50, le=500, description="Fulfillments per SuiteQL batch"),
    detail_concurrency: Optional[int] = Query(
        None, description="Concurrent record fetches (clamped to 1..10), FANOUT_CONCURRENCY when omitted"
    ),
    db: AsyncSession = Depends(get_db),
    client: NetSuiteClient = Depends(get_netsuite_client),
):
    """Incremental fulfillment sync with tracking details and shipped lines"""
    if scope not in (None, "all", "profiles"):
        raise InvalidRequestError(
            "scope must be 'all' or 'profiles'",
            context={"job": FulfillmentSyncJob.job_name, "scope": scope},
        )
    job = FulfillmentSyncJob(
        db,
        client,
        dry_run=parse_flag(dry),
        lookback_days=lookback_days,
        ids=parse_id_list(ids),
        scope_all=scope == "all",
        batch_size=batch_size,
        detail_concurrency=detail_concurrency,
    )
    return await _run(request, db, job)

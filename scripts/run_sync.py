"""
Script to run one sync job outside the HTTP trigger surface

Usage:
    python scripts/run_sync.py etas --dry-run
    python scripts/run_sync.py payment_instruments --ids 101,102 --detail-concurrency 3
    python scripts/run_sync.py invoices --from 2025-01-01 --to 2025-02-01
    python scripts/run_sync.py fulfillments --scope-all --dry-run
"""

import argparse
import asyncio
import json
import sys
import os
import logging
from datetime import date

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

import httpx
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.extractors.customer_extractor import CustomerSyncJob
from ingestion.extractors.eta_extractor import EtaSyncJob
from ingestion.extractors.fulfillment_extractor import FulfillmentSyncJob
from ingestion.extractors.identifier_extractor import CustomerIdentifierSyncJob
from ingestion.extractors.invoice_extractor import InvoiceSyncJob
from ingestion.extractors.payment_instrument_extractor import PaymentInstrumentSyncJob, parse_id_list
from ingestion.extractors.sales_order_extractor import SalesOrderSyncJob
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.credentials import ClientCredentialsFetcher, CredentialCache
from ingestion.runner import SyncRunner
from models.base import JobName

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one ERP sync job")
    parser.add_argument("job", choices=[j.value for j in JobName])
    parser.add_argument("--dry-run", action="store_true", help="Compute counts without writing")
    parser.add_argument("--preview", type=int, default=25, help="customers: rows echoed in dry run")
    parser.add_argument("--manifest-name", help="etas, sales_orders: manifest file name override")
    parser.add_argument("--ids", help="payment_instruments: customer ids, fulfillments: fulfillment ids (comma separated)")
    parser.add_argument("--force-all", action="store_true", help="payment_instruments: every ERP customer")
    parser.add_argument("--detail-concurrency", type=int, default=settings.FANOUT_CONCURRENCY)
    parser.add_argument("--limit", type=int, default=5, help="customer_identifiers: preview size")
    parser.add_argument("--lookback-days", type=int, default=90, help="invoices, fulfillments: window without a cursor")
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="invoices: window start")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="invoices: window end")
    parser.add_argument("--scope-all", action="store_true", help="fulfillments: every customer, not only portal ones")
    parser.add_argument("--batch-size", type=int, default=300, help="fulfillments: ids per SuiteQL batch")
    return parser


def build_job(args: argparse.Namespace, session: AsyncSession, client: NetSuiteClient):
    job = JobName(args.job)
    if job == JobName.CUSTOMERS:
        return CustomerSyncJob(session, client, dry_run=args.dry_run, preview=args.preview)
    if job == JobName.ETAS:
        return EtaSyncJob(session, client, dry_run=args.dry_run, manifest_name=args.manifest_name)
    if job == JobName.PAYMENT_INSTRUMENTS:
        return PaymentInstrumentSyncJob(
            session,
            client,
            dry_run=args.dry_run,
            ids=parse_id_list(args.ids),
            force_all=args.force_all,
            detail_concurrency=args.detail_concurrency,
        )
    if job == JobName.CUSTOMER_IDENTIFIERS:
        return CustomerIdentifierSyncJob(session, client, dry_run=args.dry_run, limit=args.limit)
    if job == JobName.SALES_ORDERS:
        return SalesOrderSyncJob(session, client, dry_run=args.dry_run, manifest_name=args.manifest_name)
    if job == JobName.FULFILLMENTS:
        return FulfillmentSyncJob(
            session,
            client,
            dry_run=args.dry_run,
            lookback_days=args.lookback_days,
            ids=parse_id_list(args.ids),
            scope_all=args.scope_all,
            batch_size=args.batch_size,
            detail_concurrency=args.detail_concurrency,
        )
    return InvoiceSyncJob(
        session,
        client,
        dry_run=args.dry_run,
        lookback_days=args.lookback_days,
        date_from=args.date_from,
        date_to=args.date_to,
    )


async def run_sync(args: argparse.Namespace) -> int:
    """Run the selected job and print its response"""

    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
            client = NetSuiteClient(http, CredentialCache(ClientCredentialsFetcher(http)))
            async with AsyncSessionLocal() as session:
                job = build_job(args, session, client)
                try:
                    result = await SyncRunner(session).run(job)
                except ETLException as e:
                    logger.error(f"{job.job_name} failed: {e.message}")
                    print(json.dumps(e.to_response(), indent=2, default=str))
                    return 1

        print(json.dumps(result, indent=2, default=str))
        return 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_sync(build_parser().parse_args())))

"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, column type variants and shared enums
    sync_run: Audit row per sync job execution
    sync_state: Persisted cursor per incremental job
    customer_information: Portal copy of ERP customers
    eta_line: Projected ETAs per sales-order line and location
    payment_instrument: Stored payment methods per customer
    profile: Portal profiles keyed by email
    invoice: Invoice headers, lines and applied payments
    sales_order: Sales order headers and lines from the sales order export
    fulfillment: Item fulfillments with tracking and shipped lines

Database Schema:
    Every synced table carries a natural-key unique constraint used as the
    upsert conflict target, plus synced_at / ns_deleted_at lifecycle columns.
    JSON columns become JSONB on PostgreSQL.

Usage:
    from models import CustomerInformation, EtaLine, SyncRun
    from models.base import SyncStatus

Example:
    run = SyncRun(job_name="etas", status=SyncStatus.RUNNING)
    session.add(run)
    await session.commit()
"""

from models.base import Base, SyncStatus, JobName
from models.sync_run import SyncRun
from models.sync_state import SyncState
from models.customer_information import CustomerInformation
from models.eta_line import EtaLine
from models.payment_instrument import PaymentInstrument
from models.profile import Profile
from models.invoice import Invoice, InvoiceLine, InvoicePayment
from models.sales_order import SalesOrder, SalesOrderLine
from models.fulfillment import Fulfillment, FulfillmentLine

__all__ = [
    "Base",
    "SyncStatus",
    "JobName",
    "SyncRun",
    "SyncState",
    "CustomerInformation",
    "EtaLine",
    "PaymentInstrument",
    "Profile",
    "Invoice",
    "InvoiceLine",
    "InvoicePayment",
    "SalesOrder",
    "SalesOrderLine",
    "Fulfillment",
    "FulfillmentLine",
]

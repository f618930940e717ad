from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# Surrogate keys autoincrement as BIGSERIAL on PostgreSQL and INTEGER on SQLite
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class SyncStatus(str, enum.Enum):
    """Sync run status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class JobName(str, enum.Enum):
    """Sync jobs exposed on the trigger surface"""
    CUSTOMERS = "customers"
    ETAS = "etas"
    PAYMENT_INSTRUMENTS = "payment_instruments"
    CUSTOMER_IDENTIFIERS = "customer_identifiers"
    INVOICES = "invoices"
    SALES_ORDERS = "sales_orders"
    FULFILLMENTS = "fulfillments"

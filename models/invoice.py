from sqlalchemy import Column, String, BigInteger, Integer, Float, Date, DateTime, Text, UniqueConstraint, Index
from core.clock import utcnow
from models.base import Base, BigIntPK


class Invoice(Base):
    """Invoice header with payment totals rolled up at sync time"""
    __tablename__ = "invoices"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    invoice_id = Column(BigInteger, nullable=False)

    tran_id = Column(String(64), nullable=True)
    trandate = Column(Date, nullable=True)
    total = Column(Float, nullable=False, default=0)
    tax_total = Column(Float, nullable=False, default=0)
    amount_paid = Column(Float, nullable=False, default=0)
    amount_remaining = Column(Float, nullable=False, default=0)
    customer_id = Column(BigInteger, nullable=True, index=True)
    created_from_so_id = Column(BigInteger, nullable=True)
    created_from_so_tranid = Column(String(64), nullable=True)
    netsuite_url = Column(String(512), nullable=True)
    last_modified = Column(String(64), nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_id", name="invoices_invoice_id_key"),
    )


class InvoiceLine(Base):
    """Invoice line, replaced as a snapshot per invoice"""
    __tablename__ = "invoice_lines"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    invoice_id = Column(BigInteger, nullable=False)
    line_no = Column(Integer, nullable=False)

    item_id = Column(BigInteger, nullable=True)
    item_sku = Column(String(120), nullable=True)
    item_display_name = Column(String(300), nullable=True)
    quantity = Column(Float, nullable=False, default=0)
    rate = Column(Float, nullable=False, default=0)
    amount = Column(Float, nullable=False, default=0)
    description = Column(Text, nullable=True)
    comment = Column(Text, nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_no", name="uq_invoice_line"),
        Index("idx_invoice_line_invoice", "invoice_id", "ns_deleted_at"),
    )


class InvoicePayment(Base):
    """Customer payment applied to an invoice, replaced as a snapshot per invoice"""
    __tablename__ = "invoice_payments"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    invoice_id = Column(BigInteger, nullable=False)
    payment_id = Column(BigInteger, nullable=False)

    tran_id = Column(String(64), nullable=True)
    payment_date = Column(Date, nullable=True)
    amount = Column(Float, nullable=False, default=0)
    status = Column(String(120), nullable=True)
    payment_option = Column(String(120), nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_id", "payment_id", name="uq_invoice_payment"),
        Index("idx_invoice_payment_invoice", "invoice_id", "ns_deleted_at"),
    )

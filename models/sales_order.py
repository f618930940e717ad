from sqlalchemy import Column, String, BigInteger, Integer, Float, Date, DateTime, Boolean, Text, UniqueConstraint, Index
from core.clock import utcnow
from models.base import Base, BigIntPK, JSONType


class SalesOrder(Base):
    """
    Sales order header from the sales order export.

    The export is a complete snapshot: headers missing from it are
    soft-deleted. managed_by_console and processing_state belong to the
    portal and are never written by a sync.
    """
    __tablename__ = "sales_orders"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    so_id = Column(BigInteger, nullable=False)

    tran_id = Column(String(64), nullable=True)
    trandate = Column(Date, nullable=True)
    total = Column(Float, nullable=True)
    tax_total = Column(Float, nullable=True)
    customer_id = Column(BigInteger, nullable=False, index=True)
    netsuite_url = Column(String(512), nullable=True)

    sales_rep = Column(String(200), nullable=True)
    ship_address = Column(Text, nullable=True)
    so_reference = Column(String(200), nullable=True)
    hubspot_so_id = Column(String(64), nullable=True)
    sales_channel_id = Column(String(64), nullable=True)
    affiliate_id = Column(String(64), nullable=True)
    order_note = Column(Text, nullable=True)
    ship_complete = Column(Boolean, nullable=True)
    billing_terms_id = Column(String(64), nullable=True)
    sales_team = Column(JSONType, nullable=True)
    partners = Column(JSONType, nullable=True)
    giveaway = Column(Boolean, nullable=True)
    warranty = Column(Boolean, nullable=True)

    # Portal-owned
    managed_by_console = Column(Boolean, nullable=False, default=False)
    processing_state = Column(String(64), nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("so_id", name="sales_orders_so_id_key"),
    )


class SalesOrderLine(Base):
    """Sales order line, replaced as a snapshot per sales order in the export"""
    __tablename__ = "sales_order_lines"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    so_id = Column(BigInteger, nullable=False)
    line_no = Column(Integer, nullable=False)

    item_id = Column(BigInteger, nullable=True)
    item_sku = Column(String(120), nullable=True)
    item_display_name = Column(String(300), nullable=True)
    quantity = Column(Float, nullable=True)
    rate = Column(Float, nullable=True)
    amount = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    comment = Column(Text, nullable=True)
    is_closed = Column(Boolean, nullable=False, default=False)
    fulfillment_status = Column(String(120), nullable=True)
    ns_line_id = Column(BigInteger, nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("so_id", "line_no", name="uq_sales_order_line"),
        Index("idx_sales_order_line_so", "so_id", "ns_deleted_at"),
    )

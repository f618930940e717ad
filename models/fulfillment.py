from sqlalchemy import Column, String, BigInteger, Integer, Float, Date, DateTime, UniqueConstraint, Index
from core.clock import utcnow
from models.base import Base, BigIntPK, JSONType


class Fulfillment(Base):
    """Item fulfillment header with the tracking numbers of its packages"""
    __tablename__ = "fulfillments"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    fulfillment_id = Column(BigInteger, nullable=False)

    tran_id = Column(String(64), nullable=True)
    trandate = Column(Date, nullable=True)
    customer_id = Column(BigInteger, nullable=True, index=True)
    status = Column(String(120), nullable=True)
    ship_status = Column(String(120), nullable=True)
    created_from_so_id = Column(BigInteger, nullable=True, index=True)
    created_from_so_tranid = Column(String(64), nullable=True)

    tracking = Column(String(1000), nullable=True)
    tracking_urls = Column(JSONType, nullable=True)
    tracking_details = Column(JSONType, nullable=True)
    last_modified = Column(String(64), nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("fulfillment_id", name="fulfillments_fulfillment_id_key"),
    )


class FulfillmentLine(Base):
    """Shipped line of a fulfillment, replaced as a snapshot per fulfillment"""
    __tablename__ = "fulfillment_lines"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    fulfillment_id = Column(BigInteger, nullable=False)
    line_no = Column(Integer, nullable=False)

    line_id = Column(BigInteger, nullable=True)
    item_id = Column(BigInteger, nullable=True)
    item_sku = Column(String(120), nullable=True)
    item_display_name = Column(String(300), nullable=True)
    quantity = Column(Float, nullable=False, default=0)
    serial_numbers = Column(JSONType, nullable=True)
    comments = Column(JSONType, nullable=True)

    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("fulfillment_id", "line_no", name="uq_fulfillment_line"),
        Index("idx_fulfillment_line_fulfillment", "fulfillment_id", "ns_deleted_at"),
    )

from sqlalchemy import Column, String, BigInteger, Integer, Float, Date, DateTime, UniqueConstraint, Index
from core.clock import utcnow
from models.base import Base, BigIntPK


class EtaLine(Base):
    """
    Projected ETA for one open sales-order line at one location.

    Each export is a complete snapshot for the locations it contains, so
    rows are soft-deleted per location before the export is upserted.
    """
    __tablename__ = "eta_so_line_etas"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Natural key
    item_id = Column(BigInteger, nullable=False)
    location_id = Column(BigInteger, nullable=False, index=True)
    so_id = Column(BigInteger, nullable=False, index=True)
    line_seq = Column(Integer, nullable=False)

    location_name = Column(String(200), nullable=True)
    starting_on_hand = Column(Float, nullable=True)
    so_tranid = Column(String(64), nullable=True)
    customer_id = Column(BigInteger, nullable=True, index=True)
    ns_line_id = Column(BigInteger, nullable=True)
    customer = Column(String(300), nullable=True)

    queue_date = Column(Date, nullable=True)
    tran_date = Column(Date, nullable=True)
    ship_date = Column(Date, nullable=True)

    qty_remaining = Column(Float, nullable=True)
    projected_after = Column(Float, nullable=True)
    deficit = Column(Float, nullable=True)

    eta_date = Column(Date, nullable=True)
    eta_source_type = Column(String(64), nullable=True)
    eta_source_id = Column(BigInteger, nullable=True)
    eta_source_tranid = Column(String(64), nullable=True)
    eta_source_qty = Column(Float, nullable=True)

    manifest_generated_at = Column(String(64), nullable=True)

    # Lifecycle
    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("item_id", "location_id", "so_id", "line_seq", name="uq_eta_so_line"),
        Index("idx_eta_location_live", "location_id", "ns_deleted_at"),
    )

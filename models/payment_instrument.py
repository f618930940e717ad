from sqlalchemy import Column, String, BigInteger, Boolean, DateTime, UniqueConstraint
from core.clock import utcnow
from models.base import Base, BigIntPK, JSONType


class PaymentInstrument(Base):
    """Stored payment method for one ERP customer"""
    __tablename__ = "payment_instruments"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    customer_id = Column(BigInteger, nullable=False, index=True)
    instrument_id = Column(String(64), nullable=False)

    payment_method = Column(String(120), nullable=True)
    brand = Column(String(64), nullable=True)
    last4 = Column(String(8), nullable=True)
    expiry = Column(String(16), nullable=True)
    token = Column(String(512), nullable=True)
    token_family = Column(String(120), nullable=True)
    token_namespace = Column(String(120), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    raw = Column(JSONType, nullable=True)

    last_seen_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("customer_id", "instrument_id", name="uq_payment_instrument"),
    )

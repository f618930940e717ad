from sqlalchemy import Column, String, BigInteger, Boolean, DateTime, Text, Index, UniqueConstraint, Uuid
from core.clock import utcnow
from models.base import Base, BigIntPK


class CustomerInformation(Base):
    """
    Portal copy of the ERP customer record.

    Field ownership:
    - Extracted fields (names, contact, addresses, hubspot_id) are refreshed
      on every sync.
    - Portal-owned fields (verification flags, terms, user link, invoice
      check state) are written by the portal and never clobbered by a sync.
    - hubspot_id keeps its stored value when the export omits it.
    """
    __tablename__ = "customer_information"

    info_id = Column(BigIntPK, primary_key=True, autoincrement=True)
    customer_id = Column(BigInteger, nullable=False)

    # Extracted
    email = Column(String(320), nullable=True, index=True)
    first_name = Column(String(200), nullable=True)
    middle_name = Column(String(200), nullable=True)
    last_name = Column(String(200), nullable=True)
    phone = Column(String(64), nullable=True)
    mobile = Column(String(64), nullable=True)

    shipping_address1 = Column(String(300), nullable=True)
    shipping_address2 = Column(String(300), nullable=True)
    shipping_city = Column(String(120), nullable=True)
    shipping_state = Column(String(120), nullable=True)
    shipping_zip = Column(String(32), nullable=True)
    shipping_country = Column(String(64), nullable=True)

    billing_address1 = Column(String(300), nullable=True)
    billing_address2 = Column(String(300), nullable=True)
    billing_city = Column(String(120), nullable=True)
    billing_state = Column(String(120), nullable=True)
    billing_zip = Column(String(32), nullable=True)
    billing_country = Column(String(64), nullable=True)

    hubspot_id = Column(BigInteger, nullable=True)

    # Portal-owned
    shipping_verified = Column(Boolean, nullable=False, default=False)
    billing_verified = Column(Boolean, nullable=False, default=False)
    terms_compliance = Column(Boolean, nullable=False, default=False)
    terms_agreed_at = Column(DateTime, nullable=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    check_invoice = Column(Boolean, nullable=False, default=False)
    check_invoice_range = Column(String(64), nullable=True)
    check_invoice_result = Column(Text, nullable=True)

    # Lifecycle
    synced_at = Column(DateTime, nullable=False, default=utcnow)
    ns_deleted_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("customer_id", name="customer_information_customer_id_key"),
        UniqueConstraint("hubspot_id", name="customer_information_hubspot_id_key"),
        Index("idx_customer_information_live", "ns_deleted_at", "customer_id"),
    )

from sqlalchemy import Column, String, BigInteger, DateTime, UniqueConstraint, Uuid
from core.clock import utcnow
from models.base import Base, BigIntPK


class Profile(Base):
    """
    Portal profile keyed by normalized email.

    The identifier sync only ever inserts rows; user_id is attached later by
    the portal's sign-up flow and existing rows are never modified.
    """
    __tablename__ = "profiles"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False)
    netsuite_customer_id = Column(BigInteger, nullable=True, index=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("email", name="profiles_email_key"),
    )

"""
Persisted idempotency keys and poller leases
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from reconciler.models.base import Base
from reconciler.utils.helpers import utcnow


class IdempotencyKey(Base):
    """
    (source, external_id, signature) claimed by an applied event

    purpose is 'transition' for applied events and 'lease' for in-flight
    poller work. Rows past expires_at are eligible for purge.
    """
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("source", "external_id", "signature", name="uq_idempotency_source_external_signature"),
    )

    id = Column(Integer, primary_key=True, index=True)
    source = Column(String(32), nullable=False)
    external_id = Column(String, nullable=False, index=True)
    signature = Column(String, nullable=False)
    purpose = Column(String(16), nullable=False, default="transition")
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=True, index=True)

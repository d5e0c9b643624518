"""
Payment gateway records

One Payment row per issued intent. The most recent row is the order's
current payment.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric, ForeignKey, Text
from reconciler.models.base import Base
from reconciler.utils.helpers import utcnow


class PaymentRecordStatus:
    """Status of a single payment record (finer than the order payment axis)"""
    INITIATED = "initiated"
    WAITING_FOR_CONFIRMATION = "waiting_for_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUND_PENDING = "refund_pending"
    CHARGEBACK = "chargeback"
    VOIDED = "voided"
    AUTHORIZED = "authorized"
    SUPERSEDED = "superseded"
    UNKNOWN = "unknown"
    COD_PENDING = "cod_pending"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    method = Column(String(16), nullable=False)
    status = Column(String(32), index=True, nullable=False, default=PaymentRecordStatus.INITIATED)

    # Our deterministic transaction id and the gateway's reference number
    transaction_id = Column(String, unique=True, index=True, nullable=True)
    reference_number = Column(String, nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="PHP")
    payment_url = Column(Text, nullable=True)

    status_changed_at = Column(DateTime, default=utcnow, index=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class PaymentEvent(Base):
    """Append-only audit of every gateway report (postback, return, poller, timeout)"""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String, index=True, nullable=True)
    channel = Column(String(16), nullable=False)
    status_code = Column(String(8), nullable=True)
    reference_number = Column(String, nullable=True)
    message = Column(Text, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, default=utcnow, index=True)

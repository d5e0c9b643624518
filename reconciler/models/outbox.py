"""
Durable outbox for side effects enqueued by state transitions
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Text
from reconciler.models.base import Base
from reconciler.utils.helpers import utcnow


class OutboxKind:
    CREATE_SHIPMENT = "create_shipment"
    NOTIFY_ORDER_CONFIRMED = "notify_order_confirmed"
    NOTIFY_DISPATCHED = "notify_dispatched"
    NOTIFY_DELIVERED = "notify_delivered"


class OutboxStatus:
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """
    One side effect to perform after a committed transition

    dedupe_key is unique so the same edge can never enqueue its side
    effect twice.
    """
    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(32), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    payload = Column(JSON, nullable=True)
    dedupe_key = Column(String, unique=True, nullable=False)

    status = Column(String(16), nullable=False, default=OutboxStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    available_at = Column(DateTime, default=utcnow, index=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

"""
Shipment and carrier tracking models
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Boolean, ForeignKey, Text
from reconciler.models.base import Base
from reconciler.utils.helpers import utcnow


class Shipment(Base):
    """
    Carrier shipment for an order

    Created once on the first successful carrier create call; only
    updated afterwards. last_webhook_at holds the carrier's event time of
    the newest applied webhook, not the time it was received.
    """
    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, index=True, nullable=False)
    tracking_number = Column(String, unique=True, index=True, nullable=False)
    carrier = Column(String, nullable=False)
    status = Column(String(32), index=True, nullable=True)

    failure_reason = Column(Text, nullable=True)
    is_rts_leg = Column(Boolean, default=False)
    last_webhook_event = Column(String, nullable=True)
    last_webhook_at = Column(DateTime, nullable=True)

    raw_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TrackingEvent(Base):
    """
    Append-only tracking history; duplicates are kept

    order_id is nullable because events for parcels we cannot match
    are still recorded.
    """
    __tablename__ = "tracking_events"

    id = Column(Integer, primary_key=True, index=True)
    tracking_number = Column(String, index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=True)
    status = Column(String(32), nullable=True)
    event = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    event_timestamp = Column(DateTime, nullable=True, index=True)
    raw_payload = Column(JSON, nullable=True)
    source = Column(String(16), nullable=False)  # carrier_v1 | carrier_v2 | system | customer
    created_at = Column(DateTime, default=utcnow)


class CarrierWebhookEvent(Base):
    """Audit row for every v2 carrier webhook received"""
    __tablename__ = "carrier_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    tracking_id = Column(String, index=True, nullable=False)
    event = Column(String, nullable=False)
    status = Column(String, nullable=True)
    event_timestamp = Column(DateTime, nullable=True)
    raw_payload = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    is_terminal = Column(Boolean, default=False)
    is_rts_leg = Column(Boolean, default=False)
    received_at = Column(DateTime, default=utcnow, index=True)

"""
Webhook event log and persisted idempotency keys.

Audit rows are append-only and written in their own commit: an audit
failure is logged and never blocks the transition that follows. The
idempotency table is consulted, not locked.
"""
from datetime import timedelta
from typing import Any, Dict, NamedTuple, Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from reconciler.config import get_settings
from reconciler.models.idempotency import IdempotencyKey
from reconciler.models.payment import PaymentEvent
from reconciler.models.shipment import CarrierWebhookEvent, TrackingEvent
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log

settings = get_settings()

PURPOSE_TRANSITION = "transition"
PURPOSE_LEASE = "lease"


class EventKey(NamedTuple):
    """Identity of an external event: (source system, external id, signature)"""
    source: str
    external_id: str
    signature: str


# ── Idempotency ──────────────────────────────────────────

def find_active_key(db: Session, key: EventKey, purpose: str = PURPOSE_TRANSITION) -> Optional[IdempotencyKey]:
    """Return the claimed key row if it exists and has not expired"""
    row = db.query(IdempotencyKey).filter(
        IdempotencyKey.source == key.source,
        IdempotencyKey.external_id == key.external_id,
        IdempotencyKey.signature == key.signature,
    ).first()
    if row is None or row.purpose != purpose:
        return None
    if row.expires_at is not None and row.expires_at <= utcnow():
        return None
    return row


def claim_key(db: Session, key: EventKey, ttl_days: Optional[int] = None) -> IdempotencyKey:
    """
    Claim a transition key inside the caller's transaction.

    An expired row for the same key is refreshed instead of inserted.
    The unique constraint catches a concurrent claim at commit time.
    """
    ttl_days = settings.idempotency_ttl_days if ttl_days is None else ttl_days
    now = utcnow()
    row = db.query(IdempotencyKey).filter(
        IdempotencyKey.source == key.source,
        IdempotencyKey.external_id == key.external_id,
        IdempotencyKey.signature == key.signature,
    ).first()
    if row is None:
        row = IdempotencyKey(
            source=key.source,
            external_id=key.external_id,
            signature=key.signature,
            purpose=PURPOSE_TRANSITION,
        )
        db.add(row)
    row.purpose = PURPOSE_TRANSITION
    row.created_at = now
    row.expires_at = now + timedelta(days=ttl_days)
    return row


def acquire_lease(db: Session, source: str, external_id: str, ttl_seconds: int) -> bool:
    """
    Take a short-lived lease on (source, external_id); commits on its own.

    Returns False when another sweep or replica holds an unexpired lease.
    """
    now = utcnow()
    expires_at = now + timedelta(seconds=ttl_seconds)
    try:
        db.add(IdempotencyKey(
            source=source,
            external_id=external_id,
            signature=PURPOSE_LEASE,
            purpose=PURPOSE_LEASE,
            created_at=now,
            expires_at=expires_at,
        ))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()

    # Existing lease: take it over only if it has expired
    result = db.execute(
        update(IdempotencyKey)
        .where(
            IdempotencyKey.source == source,
            IdempotencyKey.external_id == external_id,
            IdempotencyKey.signature == PURPOSE_LEASE,
            IdempotencyKey.expires_at <= now,
        )
        .values(created_at=now, expires_at=expires_at)
    )
    db.commit()
    return result.rowcount == 1


def release_lease(db: Session, source: str, external_id: str):
    """Drop a lease early so the next sweep can pick the payment up"""
    try:
        db.query(IdempotencyKey).filter(
            IdempotencyKey.source == source,
            IdempotencyKey.external_id == external_id,
            IdempotencyKey.signature == PURPOSE_LEASE,
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning(f"Could not release lease {source}/{external_id}: {e}")


def purge_expired_keys(db: Session) -> int:
    """Delete expired idempotency keys and leases"""
    deleted = db.query(IdempotencyKey).filter(
        IdempotencyKey.expires_at.isnot(None),
        IdempotencyKey.expires_at <= utcnow(),
    ).delete(synchronize_session=False)
    db.commit()
    if deleted:
        log.info(f"Purged {deleted} expired idempotency keys")
    return deleted


# ── Audit rows ───────────────────────────────────────────

def _write_audit(db: Session, row, label: str) -> bool:
    try:
        db.add(row)
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Failed to write {label} audit row: {e}")
        return False


def record_tracking_event(
    db: Session,
    tracking_number: str,
    source: str,
    event: Optional[str] = None,
    status: Optional[str] = None,
    description: Optional[str] = None,
    order_id: Optional[int] = None,
    location: Optional[str] = None,
    event_timestamp=None,
    raw_payload: Optional[Dict[str, Any]] = None,
) -> bool:
    return _write_audit(db, TrackingEvent(
        tracking_number=tracking_number,
        order_id=order_id,
        status=status,
        event=event,
        description=description,
        location=location,
        event_timestamp=event_timestamp,
        raw_payload=raw_payload,
        source=source,
    ), "tracking event")


def record_carrier_webhook(
    db: Session,
    tracking_id: str,
    event: str,
    status: Optional[str],
    event_timestamp,
    raw_payload: Dict[str, Any],
    failure_reason: Optional[str] = None,
    is_terminal: bool = False,
    is_rts_leg: bool = False,
) -> bool:
    return _write_audit(db, CarrierWebhookEvent(
        tracking_id=tracking_id,
        event=event,
        status=status,
        event_timestamp=event_timestamp,
        raw_payload=raw_payload,
        failure_reason=failure_reason,
        is_terminal=is_terminal,
        is_rts_leg=is_rts_leg,
    ), "carrier webhook")


def record_payment_event(
    db: Session,
    transaction_id: Optional[str],
    channel: str,
    status_code: Optional[str] = None,
    reference_number: Optional[str] = None,
    message: Optional[str] = None,
    raw_payload: Optional[Dict[str, Any]] = None,
) -> bool:
    return _write_audit(db, PaymentEvent(
        transaction_id=transaction_id,
        channel=channel,
        status_code=status_code,
        reference_number=reference_number,
        message=message,
        raw_payload=raw_payload,
    ), "payment event")

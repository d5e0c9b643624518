"""
Transactional outbox.

Transitions only enqueue messages inside their own transaction. The
processor drains them afterwards; a failing side effect is recorded on
its message and never unwinds the transition that produced it.
"""
from datetime import timedelta
from typing import Any, Dict, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from reconciler.config import get_settings
from reconciler.errors import CarrierRejected, PreconditionFailed
from reconciler.models.outbox import OutboxKind, OutboxMessage, OutboxStatus
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log
from reconciler.utils.retry import calculate_backoff

settings = get_settings()

# How long a claimed message stays invisible to other drains
CLAIM_SECONDS = 300

RETRY_BASE_DELAY = 30.0  # seconds
RETRY_MAX_DELAY = 3600.0  # seconds


def enqueue(db: Session, kind: str, order, dedupe_key: str, payload: Optional[Dict[str, Any]] = None) -> bool:
    """
    Add a message to the caller's transaction unless its dedupe key exists.

    Returns:
        True when a new message was added
    """
    exists = db.query(OutboxMessage.id).filter(OutboxMessage.dedupe_key == dedupe_key).first()
    if exists is not None:
        return False
    for pending in db.new:
        if isinstance(pending, OutboxMessage) and pending.dedupe_key == dedupe_key:
            return False

    db.add(OutboxMessage(
        kind=kind,
        order_id=order.id,
        payload=payload or {"order_code": order.order_code},
        dedupe_key=dedupe_key,
        status=OutboxStatus.PENDING,
        attempts=0,
        available_at=utcnow(),
    ))
    return True


class OutboxProcessor:
    """Dispatches pending outbox messages to their handlers"""

    def __init__(self, db: Session, shipment_service=None, dispatcher=None, max_attempts: Optional[int] = None):
        self.db = db
        if shipment_service is None:
            from reconciler.services.shipment_service import ShipmentService
            shipment_service = ShipmentService(db)
        if dispatcher is None:
            from reconciler.services.notification_service import NotificationDispatcher
            dispatcher = NotificationDispatcher()
        self.shipment_service = shipment_service
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts or settings.outbox_max_attempts

    def _claim(self, message_id: int) -> bool:
        """Hide a message from concurrent drains while it is being handled"""
        now = utcnow()
        result = self.db.execute(
            update(OutboxMessage)
            .where(
                OutboxMessage.id == message_id,
                OutboxMessage.status == OutboxStatus.PENDING,
                OutboxMessage.available_at <= now,
            )
            .values(available_at=now + timedelta(seconds=CLAIM_SECONDS))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    async def _dispatch(self, message: OutboxMessage):
        if message.kind == OutboxKind.CREATE_SHIPMENT:
            await self.shipment_service.create_shipment(message.order_id)
            return

        from reconciler.models.order import Order
        order = self.db.get(Order, message.order_id)
        if order is None:
            raise PreconditionFailed(f"Order {message.order_id} no longer exists")

        result = await self.dispatcher.dispatch(message.kind, order, message.payload or {})
        if not result.success:
            raise RuntimeError(result.final_error or f"{message.kind} delivery failed")

    async def drain(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Process up to `limit` due messages.

        Returns:
            Counters: processed, sent, retried, failed
        """
        limit = limit or settings.outbox_batch_size
        stats = {"processed": 0, "sent": 0, "retried": 0, "failed": 0}

        due_ids = [
            row.id for row in self.db.query(OutboxMessage.id)
            .filter(OutboxMessage.status == OutboxStatus.PENDING, OutboxMessage.available_at <= utcnow())
            .order_by(OutboxMessage.id)
            .limit(limit)
            .all()
        ]

        for message_id in due_ids:
            if not self._claim(message_id):
                continue

            message = self.db.get(OutboxMessage, message_id)
            kind = message.kind
            error = None
            permanent = False
            try:
                await self._dispatch(message)
            except (PreconditionFailed, CarrierRejected) as e:
                error, permanent = e, True
            except Exception as e:
                error = e

            # Handlers commit or roll back the shared session; reload before updating
            self.db.rollback()
            message = self.db.get(OutboxMessage, message_id)
            now = utcnow()
            stats["processed"] += 1

            if error is None:
                message.status = OutboxStatus.SENT
                message.processed_at = now
                message.last_error = None
                stats["sent"] += 1
                log.info(f"Outbox {kind} for order {message.order_id} sent")
            else:
                message.attempts += 1
                message.last_error = f"{type(error).__name__}: {error}"
                if permanent or message.attempts >= self.max_attempts:
                    message.status = OutboxStatus.FAILED
                    message.processed_at = now
                    stats["failed"] += 1
                    log.error(
                        f"Outbox {kind} for order {message.order_id} failed after "
                        f"{message.attempts} attempts: {message.last_error}"
                    )
                else:
                    delay = calculate_backoff(message.attempts, base_delay=RETRY_BASE_DELAY, max_delay=RETRY_MAX_DELAY)
                    message.available_at = now + timedelta(seconds=delay)
                    stats["retried"] += 1
                    log.warning(
                        f"Outbox {kind} for order {message.order_id} attempt {message.attempts} failed: "
                        f"{message.last_error}. Retrying in {delay:.0f}s"
                    )
            self.db.commit()

        if stats["processed"]:
            log.info(f"Outbox drain: {stats}")
        return stats

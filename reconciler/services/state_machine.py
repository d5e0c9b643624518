"""
Order state machine.

The only code path that writes order, payment or shipment status. Each
transition runs in one database transaction with the order row locked:

    idempotency check -> reachability check -> order/payment/shipment
    updates -> stock release -> outbox enqueue -> key claim -> commit

Order statuses form a ranked forward chain with side branches for
cancellation, returns and carrier exceptions. Forward moves may skip
states; backward moves are never reachable.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from reconciler.errors import DuplicateEvent, InvalidTransition, OrderNotFound, PreconditionFailed
from reconciler.models.order import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus
from reconciler.models.outbox import OutboxKind
from reconciler.models.payment import Payment, PaymentRecordStatus
from reconciler.models.shipment import Shipment, TrackingEvent
from reconciler.services import stock_ledger
from reconciler.services.outbox_service import enqueue
from reconciler.services.webhook_log import EventKey, claim_key, find_active_key
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log


# ── Order axis ───────────────────────────────────────────

FORWARD_CHAIN = [
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PROCESSING,
    OrderStatus.FOR_PACKING,
    OrderStatus.PACKED,
    OrderStatus.FOR_SHIPPING,
    OrderStatus.PICKED_UP,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
]
ORDER_RANK = {status: rank for rank, status in enumerate(FORWARD_CHAIN)}

PRE_SHIPMENT = set(FORWARD_CHAIN[:ORDER_RANK[OrderStatus.FOR_SHIPPING] + 1])
POST_PICKUP = set(FORWARD_CHAIN[ORDER_RANK[OrderStatus.PICKED_UP]:ORDER_RANK[OrderStatus.DELIVERED] + 1])

# Each exception state resolves forward to its anchor or later
EXCEPTION_ANCHORS = {
    OrderStatus.PICKUP_FAILED: OrderStatus.FOR_SHIPPING,
    OrderStatus.CUSTOMS_HOLD: OrderStatus.SHIPPED,
    OrderStatus.DELIVERY_EXCEPTION: OrderStatus.SHIPPED,
    OrderStatus.DELIVERY_FAILED: OrderStatus.OUT_FOR_DELIVERY,
}
EXCEPTION_STATES = set(EXCEPTION_ANCHORS)

TERMINAL_ORDER_STATES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.RETURNED}

# Allowed predecessors for the side-branch states
BRANCH_SOURCES = {
    # A parcel scrapped on its return leg ends the order as cancelled
    OrderStatus.CANCELLED: PRE_SHIPMENT | EXCEPTION_STATES | {OrderStatus.RETURNING},
    OrderStatus.RETURNING: POST_PICKUP | EXCEPTION_STATES,
    OrderStatus.RETURNED: POST_PICKUP | EXCEPTION_STATES | {OrderStatus.RETURNING},
    OrderStatus.PICKUP_FAILED: {OrderStatus.FOR_PACKING, OrderStatus.PACKED, OrderStatus.FOR_SHIPPING},
    OrderStatus.DELIVERY_EXCEPTION: {
        OrderStatus.PICKED_UP, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERY_FAILED, OrderStatus.CUSTOMS_HOLD,
    },
    OrderStatus.DELIVERY_FAILED: {
        OrderStatus.PICKED_UP, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERY_EXCEPTION, OrderStatus.CUSTOMS_HOLD,
    },
    OrderStatus.CUSTOMS_HOLD: {OrderStatus.PICKED_UP, OrderStatus.SHIPPED, OrderStatus.DELIVERY_EXCEPTION},
}

ALL_ORDER_STATES = set(FORWARD_CHAIN) | set(BRANCH_SOURCES)

# Statuses from which a customer may still cancel (nothing has left the warehouse)
CANCELLABLE_STATES = PRE_SHIPMENT

# A parcel may only be booked for these
SHIPPABLE_PAYMENT = {PaymentStatus.PAID, PaymentStatus.COD_PENDING}
SHIPPABLE_ORDER = {OrderStatus.FOR_PACKING, OrderStatus.PACKED, OrderStatus.FOR_SHIPPING}


def order_reachable(current: str, target: str) -> bool:
    """Whether target can follow current on the order axis"""
    if current == target or current in TERMINAL_ORDER_STATES:
        return False

    if target in ORDER_RANK:
        if current in ORDER_RANK:
            return ORDER_RANK[target] > ORDER_RANK[current]
        if current in EXCEPTION_ANCHORS:
            return ORDER_RANK[target] >= ORDER_RANK[EXCEPTION_ANCHORS[current]]
        return False

    return current in BRANCH_SOURCES.get(target, set())


# ── Payment axis ─────────────────────────────────────────

PAYMENT_EDGES = {
    PaymentStatus.PENDING: {PaymentStatus.AWAITING_FOR_CONFIRMATION, PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.AWAITING_FOR_CONFIRMATION: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.COD_PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

TERMINAL_PAYMENT_STATES = {PaymentStatus.FAILED, PaymentStatus.REFUNDED}

UNSETTLED_RECORD_STATES = {
    PaymentRecordStatus.INITIATED,
    PaymentRecordStatus.WAITING_FOR_CONFIRMATION,
    PaymentRecordStatus.UNKNOWN,
    PaymentRecordStatus.AUTHORIZED,
    PaymentRecordStatus.COD_PENDING,
}


def payment_reachable(current: str, target: str) -> bool:
    return target in PAYMENT_EDGES.get(current, set())


# ── Requests and results ─────────────────────────────────

@dataclass
class ShipmentUpdate:
    """Carrier webhook metadata; applied only when newer than what is stored"""
    event: str
    event_at: Any = None
    failure_reason: Optional[str] = None
    is_rts_leg: bool = False


@dataclass
class PaymentRecordUpdate:
    """Gateway detail to store on a specific payment row"""
    payment_id: int
    status: Optional[str] = None
    reference_number: Optional[str] = None


@dataclass
class TrackingEventRecord:
    tracking_number: str
    source: str
    event: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    event_timestamp: Any = None
    raw_payload: Optional[Dict[str, Any]] = None


@dataclass
class TransitionRequest:
    order_id: int
    source: str  # gateway | carrier | poller | customer | system
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    key: Optional[EventKey] = None
    shipment_update: Optional[ShipmentUpdate] = None
    payment_update: Optional[PaymentRecordUpdate] = None
    tracking_event: Optional[TrackingEventRecord] = None
    reason: str = ""


@dataclass
class TransitionResult:
    order_id: int
    result: str  # applied | unchanged
    previous_order_status: str
    order_status: str
    previous_payment_status: str
    payment_status: str
    enqueued: List[str] = field(default_factory=list)
    stock_released: int = 0

    @property
    def applied(self) -> bool:
        return self.result == "applied"


@dataclass
class OrderLine:
    variant_id: int
    quantity: int


class OrderStateMachine:
    """Applies transitions for one database session"""

    def __init__(self, db: Session):
        self.db = db

    # ── Helpers ──────────────────────────────────────────

    def _lock_order(self, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _current_payment(self, order: Order) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.order_id == order.id)
            .order_by(Payment.id.desc())
            .first()
        )

    def _shipment(self, order: Order) -> Optional[Shipment]:
        return self.db.query(Shipment).filter(Shipment.order_id == order.id).first()

    @staticmethod
    def _set_record_status(payment: Optional[Payment], status: str, now):
        if payment is not None and payment.status != status:
            payment.status = status
            payment.status_changed_at = now

    # ── Creation ─────────────────────────────────────────

    def open_order(self, order: Order, lines: Iterable) -> Order:
        """
        Persist a new order with its initial state.

        Gateway orders open as processing/pending. Cash-on-delivery orders
        open as for_packing/cod_pending, get a synthetic payment row and
        are immediately shippable. Stock is reserved in the same
        transaction; InsufficientStock rolls everything back.
        """
        try:
            if order.payment_method == PaymentMethod.COD:
                order.order_status = OrderStatus.FOR_PACKING
                order.payment_status = PaymentStatus.COD_PENDING
            else:
                order.payment_method = PaymentMethod.GATEWAY
                order.order_status = OrderStatus.PROCESSING
                order.payment_status = PaymentStatus.PENDING
            order.stock_released = False
            order.payment_attempts = order.payment_attempts or 0

            self.db.add(order)
            self.db.flush()

            reserved = stock_ledger.reserve(self.db, lines, order_id=order.id)
            total = 0
            for variant, quantity in reserved:
                self.db.add(OrderItem(
                    order_id=order.id,
                    variant_id=variant.id,
                    product_name=variant.name,
                    quantity=quantity,
                    unit_price=variant.price,
                ))
                total += variant.price * quantity
            order.total_price = total

            if order.payment_method == PaymentMethod.COD:
                self.db.add(Payment(
                    order_id=order.id,
                    method=PaymentMethod.COD,
                    status=PaymentRecordStatus.COD_PENDING,
                    amount=total,
                    currency=order.currency,
                ))
                enqueue(self.db, OutboxKind.CREATE_SHIPMENT, order, f"{OutboxKind.CREATE_SHIPMENT}:{order.id}")
                enqueue(
                    self.db, OutboxKind.NOTIFY_ORDER_CONFIRMED, order,
                    f"{OutboxKind.NOTIFY_ORDER_CONFIRMED}:{order.id}",
                )

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(order)
        log.info(
            f"Opened order {order.order_code} ({order.payment_method}) "
            f"as {order.order_status}/{order.payment_status}, total {order.total_price}"
        )
        return order

    def record_shipment(
        self,
        order_id: int,
        tracking_number: str,
        carrier: str,
        raw_response: Optional[Dict[str, Any]] = None,
    ) -> Shipment:
        """
        Attach a carrier tracking number to an order exactly once.

        A second call returns the shipment that already exists.

        Raises:
            PreconditionFailed: the order stopped being shippable while the
                carrier call was in flight; nothing is recorded
        """
        try:
            order = self._lock_order(order_id)
            existing = self._shipment(order)
            if existing is not None:
                self.db.rollback()
                log.info(f"Order {order.order_code} already has shipment {existing.tracking_number}")
                return existing

            if order.order_status not in SHIPPABLE_ORDER or order.payment_status not in SHIPPABLE_PAYMENT:
                raise PreconditionFailed(
                    f"Order {order.order_code} is no longer shippable "
                    f"(order {order.order_status}, payment {order.payment_status}); "
                    f"parcel {tracking_number} not recorded"
                )

            now = utcnow()
            order.tracking_number = tracking_number
            order.updated_at = now
            shipment = Shipment(
                order_id=order.id,
                tracking_number=tracking_number,
                carrier=carrier,
                status=order.order_status,
                raw_response=raw_response,
            )
            self.db.add(shipment)
            self.db.add(TrackingEvent(
                tracking_number=tracking_number,
                order_id=order.id,
                status=order.order_status,
                event="Shipment Created",
                description=f"Shipment created with {carrier}",
                event_timestamp=now,
                source="system",
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.db.query(Shipment).filter(Shipment.order_id == order_id).first()
            if existing is not None:
                return existing
            raise
        except Exception:
            self.db.rollback()
            raise

        log.info(f"Recorded shipment {tracking_number} for order {order.order_code}")
        return shipment

    # ── Transition ───────────────────────────────────────

    def transition(self, request: TransitionRequest) -> TransitionResult:
        """
        Apply one transition atomically.

        Raises:
            OrderNotFound: unknown order id
            DuplicateEvent: the idempotency key was already claimed
            InvalidTransition: a target is not reachable; nothing is written
        """
        try:
            order = self._lock_order(request.order_id)

            if request.key is not None and find_active_key(self.db, request.key) is not None:
                raise DuplicateEvent(*request.key)

            result = self._apply(order, request)

            if request.key is not None:
                claim_key(self.db, request.key)

            self.db.commit()
        except IntegrityError:
            # Lost a race on the idempotency key
            self.db.rollback()
            if request.key is not None:
                raise DuplicateEvent(*request.key)
            raise
        except InvalidTransition as e:
            self.db.rollback()
            log.warning(f"Rejected transition from {request.source}: {e} ({request.reason})")
            if request.payment_status == PaymentStatus.PAID and e.current == OrderStatus.CANCELLED:
                self._flag_late_payment(request)
            raise
        except DuplicateEvent:
            self.db.rollback()
            log.info(f"Duplicate event ignored for order {request.order_id}: {request.key}")
            raise
        except Exception:
            self.db.rollback()
            raise

        if result.applied:
            log.info(
                f"Order {order.order_code}: {result.previous_order_status}/{result.previous_payment_status} -> "
                f"{result.order_status}/{result.payment_status} via {request.source}"
                + (f" ({request.reason})" if request.reason else "")
            )
        return result

    def _apply(self, order: Order, request: TransitionRequest) -> TransitionResult:
        now = utcnow()
        prev_order = order.order_status
        prev_payment = order.payment_status

        target_order = request.order_status if request.order_status != prev_order else None
        target_payment = request.payment_status if request.payment_status != prev_payment else None

        # A payment arriving for a dead order is checked on the order axis first
        if target_payment == PaymentStatus.PAID and prev_order == OrderStatus.CANCELLED:
            raise InvalidTransition(order.id, "order", prev_order, OrderStatus.FOR_PACKING)

        # Derived moves bound to edges
        if (
            target_payment == PaymentStatus.PAID
            and not order.is_cod
            and target_order is None
            and prev_order in ORDER_RANK
            and ORDER_RANK[prev_order] < ORDER_RANK[OrderStatus.FOR_PACKING]
        ):
            target_order = OrderStatus.FOR_PACKING

        if target_order is not None and not order_reachable(prev_order, target_order):
            raise InvalidTransition(order.id, "order", prev_order, target_order)
        if target_payment is not None and not payment_reachable(prev_payment, target_payment):
            raise InvalidTransition(order.id, "payment", prev_payment, target_payment)

        if target_order == OrderStatus.DELIVERED and prev_payment == PaymentStatus.COD_PENDING and target_payment is None:
            target_payment = PaymentStatus.PAID
        elif target_order == OrderStatus.CANCELLED and target_payment is None:
            if prev_payment == PaymentStatus.PAID:
                target_payment = PaymentStatus.REFUNDED
            elif prev_payment not in TERMINAL_PAYMENT_STATES:
                target_payment = PaymentStatus.FAILED
        elif target_order == OrderStatus.RETURNED and prev_payment == PaymentStatus.COD_PENDING and target_payment is None:
            target_payment = PaymentStatus.FAILED

        payment = self._current_payment(order)
        shipment = self._shipment(order)
        result = TransitionResult(
            order_id=order.id,
            result="unchanged",
            previous_order_status=prev_order,
            order_status=prev_order,
            previous_payment_status=prev_payment,
            payment_status=prev_payment,
        )

        if request.payment_update is not None:
            record = self.db.get(Payment, request.payment_update.payment_id)
            if record is not None and record.order_id == order.id:
                if request.payment_update.reference_number:
                    record.reference_number = request.payment_update.reference_number
                if request.payment_update.status:
                    self._set_record_status(record, request.payment_update.status, now)
                payment = record

        if target_order is None and target_payment is None:
            self._apply_shipment_update(shipment, request.shipment_update)
            self._add_tracking_event(order, request.tracking_event)
            return result

        # ── Payment axis ──
        if target_payment is not None:
            order.payment_status = target_payment
            if target_payment == PaymentStatus.PAID:
                self._set_record_status(payment, PaymentRecordStatus.COMPLETED, now)
                if not order.is_cod:
                    result.enqueued += self._enqueue_once(order, OutboxKind.CREATE_SHIPMENT)
                    result.enqueued += self._enqueue_once(order, OutboxKind.NOTIFY_ORDER_CONFIRMED)
            elif target_payment == PaymentStatus.REFUNDED:
                if payment is not None and payment.status == PaymentRecordStatus.COMPLETED:
                    # Money is still with us until an operator refunds it
                    self._set_record_status(payment, PaymentRecordStatus.REFUND_PENDING, now)
            elif target_payment == PaymentStatus.FAILED:
                if payment is not None and payment.status in UNSETTLED_RECORD_STATES:
                    self._set_record_status(payment, PaymentRecordStatus.FAILED, now)
            elif target_payment == PaymentStatus.AWAITING_FOR_CONFIRMATION:
                if payment is not None and payment.status == PaymentRecordStatus.INITIATED:
                    self._set_record_status(payment, PaymentRecordStatus.WAITING_FOR_CONFIRMATION, now)

        # ── Order axis ──
        if target_order is not None:
            order.order_status = target_order

            if target_order in (OrderStatus.PICKED_UP, OrderStatus.SHIPPED, OrderStatus.OUT_FOR_DELIVERY) and (
                prev_order in PRE_SHIPMENT or prev_order == OrderStatus.PICKUP_FAILED
            ):
                result.enqueued += self._enqueue_once(order, OutboxKind.NOTIFY_DISPATCHED)

            if target_order == OrderStatus.DELIVERED:
                order.delivered_at = now
                result.enqueued += self._enqueue_once(order, OutboxKind.NOTIFY_DELIVERED)

            if target_order == OrderStatus.CANCELLED:
                order.cancelled_at = now
                result.stock_released = stock_ledger.release(self.db, order, request.reason or "order cancelled")

            if target_order == OrderStatus.RETURNED:
                result.stock_released = stock_ledger.release(self.db, order, request.reason or "parcel returned")

            if shipment is not None and target_order != OrderStatus.COMPLETED:
                shipment.status = target_order

        self._apply_shipment_update(shipment, request.shipment_update)
        self._add_tracking_event(order, request.tracking_event)

        order.updated_at = now
        result.result = "applied"
        result.order_status = order.order_status
        result.payment_status = order.payment_status
        return result

    def _enqueue_once(self, order: Order, kind: str) -> List[str]:
        if enqueue(self.db, kind, order, f"{kind}:{order.id}"):
            return [kind]
        return []

    def _apply_shipment_update(self, shipment: Optional[Shipment], update: Optional[ShipmentUpdate]):
        """Carrier metadata only moves forward in event time"""
        if shipment is None or update is None:
            return
        last = shipment.last_webhook_at
        if last is not None and (update.event_at is None or update.event_at < last):
            log.info(
                f"Ignoring stale carrier metadata for {shipment.tracking_number}: "
                f"{update.event} @ {update.event_at} is older than {last}"
            )
            return
        shipment.last_webhook_event = update.event
        shipment.last_webhook_at = update.event_at
        shipment.failure_reason = update.failure_reason
        shipment.is_rts_leg = update.is_rts_leg

    def _add_tracking_event(self, order: Order, record: Optional[TrackingEventRecord]):
        if record is None:
            return
        self.db.add(TrackingEvent(
            tracking_number=record.tracking_number,
            order_id=order.id,
            status=record.status,
            event=record.event,
            description=record.description,
            location=record.location,
            event_timestamp=record.event_timestamp or utcnow(),
            raw_payload=record.raw_payload,
            source=record.source,
        ))

    def _flag_late_payment(self, request: TransitionRequest):
        """Money captured for a cancelled order needs an operator refund"""
        try:
            order = self._lock_order(request.order_id)
            payment = None
            if request.payment_update is not None:
                payment = self.db.get(Payment, request.payment_update.payment_id)
            if payment is None:
                payment = self._current_payment(order)
            if payment is None:
                self.db.rollback()
                return
            if request.payment_update is not None and request.payment_update.reference_number:
                payment.reference_number = request.payment_update.reference_number
            self._set_record_status(payment, PaymentRecordStatus.REFUND_PENDING, utcnow())
            self.db.commit()
            log.error(
                f"Payment {payment.transaction_id} succeeded for cancelled order {order.order_code}; "
                "flagged refund_pending for manual refund"
            )
        except Exception as e:
            self.db.rollback()
            log.error(f"Could not flag late payment for order {request.order_id}: {e}")

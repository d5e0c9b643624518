"""
Order service: checkout, payment intents, cancellation and the
order lifecycle timers.
"""
import secrets
import string
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy.orm import Session
from reconciler.config import get_settings
from reconciler.connectors.dragonpay_connector import DragonpayConnector, GatewayOutcome
from reconciler.errors import (
    CancellationNotAllowed,
    DuplicateEvent,
    InvalidTransition,
    OrderNotFound,
    PreconditionFailed,
)
from reconciler.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from reconciler.models.payment import Payment, PaymentRecordStatus
from reconciler.services import webhook_log
from reconciler.services.payment_service import PaymentService, TIMEOUT
from reconciler.services.shipment_service import ShipmentService, check_order_access
from reconciler.services.state_machine import (
    CANCELLABLE_STATES,
    OrderLine,
    OrderStateMachine,
    TransitionRequest,
)
from reconciler.services.webhook_log import EventKey
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log

settings = get_settings()

ORDER_CODE_ALPHABET = string.ascii_uppercase + string.digits
ORDER_CODE_LENGTH = 10


def generate_order_code() -> str:
    """Opaque uppercase alphanumeric code, safe to hand to external systems"""
    return "".join(secrets.choice(ORDER_CODE_ALPHABET) for _ in range(ORDER_CODE_LENGTH))


class OrderService:
    """Customer-facing order operations and scheduled lifecycle jobs"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[DragonpayConnector] = None,
        shipment_service: Optional[ShipmentService] = None,
    ):
        self.db = db
        self.gateway = gateway or DragonpayConnector()
        self.shipment_service = shipment_service or ShipmentService(db)
        self.payment_service = PaymentService(db, gateway=self.gateway)
        self.state_machine = OrderStateMachine(db)

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    # ── Checkout ─────────────────────────────────────────

    def create_order(
        self,
        user_id: Optional[str],
        items: Iterable,
        customer: Dict[str, Any],
        shipping_address: Dict[str, Any],
        payment_method: str = PaymentMethod.GATEWAY,
        currency: str = "PHP",
    ) -> Order:
        """
        Reserve stock and open the order in one transaction.

        Raises:
            InsufficientStock: nothing is reserved and no order is written
        """
        if payment_method not in (PaymentMethod.GATEWAY, PaymentMethod.COD):
            raise PreconditionFailed(f"Unsupported payment method: {payment_method}")
        lines: List[OrderLine] = [
            item if isinstance(item, OrderLine) else OrderLine(int(item["variant_id"]), int(item["quantity"]))
            for item in items
        ]
        if not lines:
            raise PreconditionFailed("Order has no items")

        order = Order(
            order_code=generate_order_code(),
            user_id=str(user_id) if user_id is not None else None,
            customer_name=customer.get("name"),
            customer_email=customer.get("email"),
            customer_phone=customer.get("phone"),
            shipping_address=dict(shipping_address or {}),
            payment_method=payment_method,
            currency=currency,
        )
        return self.state_machine.open_order(order, lines)

    def issue_payment_intent(self, order_id: int, user=None) -> Dict[str, Any]:
        """
        Issue a new gateway intent for an unpaid order.

        Earlier unsettled intents are superseded; payment_attempts only
        increases so transaction ids are never reused.
        """
        order = self.get_order(order_id)
        self.db.refresh(order)
        if user is not None:
            check_order_access(order, user)
        if order.is_cod:
            raise PreconditionFailed("Cash-on-delivery orders do not take online payment")
        if order.payment_status not in (PaymentStatus.PENDING, PaymentStatus.AWAITING_FOR_CONFIRMATION):
            raise PreconditionFailed(f"Order {order.order_code} payment is {order.payment_status}")
        if order.order_status == OrderStatus.CANCELLED:
            raise PreconditionFailed(f"Order {order.order_code} is cancelled")

        try:
            attempt = (order.payment_attempts or 0) + 1
            intent = self.gateway.create_intent(order, attempt)
            now = utcnow()

            self.db.query(Payment).filter(
                Payment.order_id == order.id,
                Payment.status == PaymentRecordStatus.INITIATED,
            ).update({"status": PaymentRecordStatus.SUPERSEDED, "status_changed_at": now}, synchronize_session=False)

            order.payment_attempts = attempt
            self.db.add(Payment(
                order_id=order.id,
                method=PaymentMethod.GATEWAY,
                status=PaymentRecordStatus.INITIATED,
                transaction_id=intent.transaction_id,
                amount=order.total_price,
                currency=order.currency,
                payment_url=intent.redirect_url,
                status_changed_at=now,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return {
            "order_id": order.id,
            "order_code": order.order_code,
            "transaction_id": intent.transaction_id,
            "payment_url": intent.redirect_url,
            "amount": intent.amount,
        }

    # ── Cancellation ─────────────────────────────────────

    async def cancel_order(self, order_id: int, user, reason: str = "cancelled by customer") -> Dict[str, Any]:
        """
        Cancel an order that has not left the warehouse.

        Orders with a parcel go through the carrier first.
        """
        order = self.get_order(order_id)
        self.db.refresh(order)
        check_order_access(order, user)

        if order.order_status not in CANCELLABLE_STATES:
            raise CancellationNotAllowed(order.id, order.order_status)

        if order.tracking_number:
            return await self.shipment_service.cancel_shipment(order.tracking_number, user)

        result = self.state_machine.transition(TransitionRequest(
            order_id=order.id,
            source="customer",
            order_status=OrderStatus.CANCELLED,
            key=EventKey("customer", order.order_code, "cancel"),
            reason=reason,
        ))
        return {
            "order_id": order.id,
            "order_code": order.order_code,
            "tracking_id": None,
            "order_status": result.order_status,
            "payment_status": result.payment_status,
            "stock_released": result.stock_released,
        }

    # ── Timers ───────────────────────────────────────────

    def auto_complete_delivered(self) -> Dict[str, int]:
        """Complete orders delivered more than auto_complete_after_days ago"""
        cutoff = utcnow() - timedelta(days=settings.auto_complete_after_days)
        candidates = [
            row.id for row in self.db.query(Order.id).filter(
                Order.order_status == OrderStatus.DELIVERED,
                Order.delivered_at.isnot(None),
                Order.delivered_at <= cutoff,
            ).all()
        ]

        stats = {"checked": len(candidates), "completed": 0, "errors": 0}
        for order_id in candidates:
            try:
                self.state_machine.transition(TransitionRequest(
                    order_id=order_id,
                    source="system",
                    order_status=OrderStatus.COMPLETED,
                    reason=f"auto-completed {settings.auto_complete_after_days} days after delivery",
                ))
                stats["completed"] += 1
            except (InvalidTransition, DuplicateEvent):
                continue
            except Exception as e:
                stats["errors"] += 1
                log.error(f"Auto-complete failed for order {order_id}: {e}")

        if candidates:
            log.info(f"Auto-complete: {stats}")
        return stats

    async def expire_unpaid_orders(self) -> Dict[str, int]:
        """
        Resolve gateway orders whose payment is still pending after
        unpaid_order_timeout_hours.

        The gateway is asked first: a success is applied as a success, a
        pending answer hands the order to the reconciliation poller, and
        anything else cancels the order and releases its stock.
        """
        cutoff = utcnow() - timedelta(hours=settings.unpaid_order_timeout_hours)
        candidates = [
            row.id for row in self.db.query(Order.id).filter(
                Order.payment_method == PaymentMethod.GATEWAY,
                Order.payment_status == PaymentStatus.PENDING,
                Order.order_status.in_([OrderStatus.PENDING_PAYMENT, OrderStatus.PROCESSING]),
                Order.created_at <= cutoff,
            ).all()
        ]

        stats = {"checked": len(candidates), "paid": 0, "awaiting": 0, "cancelled": 0, "errors": 0}
        for order_id in candidates:
            try:
                outcome = await self._expire_one(order_id)
                if outcome in stats:
                    stats[outcome] += 1
            except Exception as e:
                stats["errors"] += 1
                log.error(f"Unpaid-order timeout failed for order {order_id}: {e}")

        if candidates:
            log.info(f"Unpaid-order timeout: {stats}")
        return stats

    async def _expire_one(self, order_id: int) -> Optional[str]:
        payment = (
            self.db.query(Payment)
            .filter(Payment.order_id == order_id, Payment.transaction_id.isnot(None))
            .order_by(Payment.id.desc())
            .first()
        )

        if payment is not None:
            inquiry = await self.gateway.inquire(payment.transaction_id)
            webhook_log.record_payment_event(
                self.db, payment.transaction_id, "timeout", inquiry.raw_status,
                inquiry.reference_number, inquiry.message,
                raw_payload={"inquiry_outcome": inquiry.outcome},
            )
            if inquiry.outcome == GatewayOutcome.UNKNOWN and inquiry.raw_status is None:
                # Gateway unreachable; not a negative answer, try again next run
                return None
            if inquiry.outcome == GatewayOutcome.SUCCEEDED:
                self.payment_service.apply_gateway_outcome(
                    payment.transaction_id, inquiry.outcome, source="system",
                    raw_status=inquiry.raw_status, reference_number=inquiry.reference_number,
                    message=inquiry.message,
                )
                return "paid"
            if inquiry.outcome in (GatewayOutcome.PENDING, GatewayOutcome.AUTHORIZED):
                self.payment_service.apply_gateway_outcome(
                    payment.transaction_id, inquiry.outcome, source="system",
                    raw_status=inquiry.raw_status, reference_number=inquiry.reference_number,
                    message=inquiry.message,
                )
                return "awaiting"
            result = self.payment_service.apply_gateway_outcome(
                payment.transaction_id, TIMEOUT, source="system",
                message=f"No payment after {settings.unpaid_order_timeout_hours} hours",
            )
            return "cancelled" if result.order_status == OrderStatus.CANCELLED else None

        # No intent was ever issued
        try:
            self.state_machine.transition(TransitionRequest(
                order_id=order_id,
                source="system",
                order_status=OrderStatus.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                key=EventKey("system", str(order_id), "unpaid-timeout"),
                reason=f"No payment after {settings.unpaid_order_timeout_hours} hours",
            ))
        except (InvalidTransition, DuplicateEvent):
            return None
        return "cancelled"

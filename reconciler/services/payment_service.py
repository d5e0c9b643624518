"""
Gateway outcome handling.

Postbacks, browser returns, the reconciliation poller and the payment
timeout all end in apply_gateway_outcome, so a given gateway status has
the same effect whichever channel reports it first.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session
from reconciler.connectors.dragonpay_connector import DragonpayConnector, GatewayOutcome, outcome_for_code
from reconciler.errors import DuplicateEvent, InvalidTransition, OrderNotFound, PreconditionFailed, SignatureInvalid
from reconciler.models.order import Order, OrderStatus, PaymentStatus
from reconciler.models.payment import Payment, PaymentRecordStatus
from reconciler.services import webhook_log
from reconciler.services.state_machine import (
    CANCELLABLE_STATES,
    OrderStateMachine,
    PaymentRecordUpdate,
    TransitionRequest,
)
from reconciler.services.webhook_log import EventKey
from reconciler.utils.logger import log

# Outcomes after which money is no longer (or never was) with us
REVERSAL_RECORD_STATUS = {
    GatewayOutcome.REFUNDED: PaymentRecordStatus.REFUNDED,
    GatewayOutcome.CHARGEBACK: PaymentRecordStatus.CHARGEBACK,
    GatewayOutcome.VOIDED: PaymentRecordStatus.VOIDED,
}

TIMEOUT = "timeout"


@dataclass
class GatewayApplyResult:
    transaction_id: str
    outcome: str
    result: str  # applied | unchanged | duplicate | rejected | ignored
    order_id: Optional[int] = None
    order_code: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None


class PaymentService:
    """Maps gateway reports onto order transitions"""

    def __init__(self, db: Session, gateway: Optional[DragonpayConnector] = None):
        self.db = db
        self.gateway = gateway or DragonpayConnector()
        self.state_machine = OrderStateMachine(db)

    def payment_for_transaction(self, transaction_id: str) -> Optional[Payment]:
        return self.db.query(Payment).filter(Payment.transaction_id == transaction_id).first()

    def _is_current(self, payment: Payment) -> bool:
        latest = (
            self.db.query(Payment.id)
            .filter(Payment.order_id == payment.order_id)
            .order_by(Payment.id.desc())
            .first()
        )
        return latest is not None and latest.id == payment.id

    def _build_request(self, order: Order, payment: Payment, outcome: str, source: str,
                       signature: str, reference_number: Optional[str], message: Optional[str]) -> Optional[TransitionRequest]:
        """Translate one gateway outcome into a transition request (None means record only)"""
        paid = order.payment_status == PaymentStatus.PAID
        current = self._is_current(payment)
        request = TransitionRequest(
            order_id=order.id,
            source=source,
            key=EventKey("gateway", payment.transaction_id, signature),
            payment_update=PaymentRecordUpdate(payment.id, reference_number=reference_number),
            reason=message or f"gateway {outcome}",
        )

        if outcome == GatewayOutcome.SUCCEEDED:
            request.payment_status = PaymentStatus.PAID
            request.payment_update.status = PaymentRecordStatus.COMPLETED
            return request

        if outcome in (GatewayOutcome.PENDING, GatewayOutcome.AUTHORIZED):
            request.payment_update.status = (
                PaymentRecordStatus.AUTHORIZED if outcome == GatewayOutcome.AUTHORIZED
                else PaymentRecordStatus.WAITING_FOR_CONFIRMATION
            )
            if current and order.payment_status == PaymentStatus.PENDING:
                request.payment_status = PaymentStatus.AWAITING_FOR_CONFIRMATION
            return request

        if outcome in REVERSAL_RECORD_STATUS and paid:
            request.payment_update.status = REVERSAL_RECORD_STATUS[outcome]
            request.payment_status = PaymentStatus.REFUNDED
            if order.order_status in CANCELLABLE_STATES:
                request.order_status = OrderStatus.CANCELLED
            return request

        if outcome in (GatewayOutcome.FAILED, TIMEOUT) or outcome in REVERSAL_RECORD_STATUS:
            request.payment_update.status = REVERSAL_RECORD_STATUS.get(outcome, PaymentRecordStatus.FAILED)
            if current and not paid:
                request.order_status = OrderStatus.CANCELLED
                request.payment_status = PaymentStatus.FAILED
            return request

        # unknown: nothing to conclude yet
        return None

    def apply_gateway_outcome(
        self,
        transaction_id: str,
        outcome: str,
        source: str = "gateway",
        raw_status: Optional[str] = None,
        reference_number: Optional[str] = None,
        message: Optional[str] = None,
    ) -> GatewayApplyResult:
        """
        Apply a gateway outcome for one of our transaction ids.

        Duplicates and unreachable transitions are reported in the
        result; OrderNotFound is raised for unknown transaction ids.
        """
        payment = self.payment_for_transaction(transaction_id)
        if payment is None:
            raise OrderNotFound(transaction_id)
        order = self.db.get(Order, payment.order_id)
        self.db.refresh(order)

        signature = TIMEOUT if outcome == TIMEOUT else (raw_status or outcome)
        request = self._build_request(order, payment, outcome, source, signature, reference_number, message)
        if request is None:
            log.info(f"Gateway outcome {outcome} for {transaction_id}; nothing to apply")
            return GatewayApplyResult(
                transaction_id, outcome, "ignored", order.id, order.order_code,
                order.order_status, order.payment_status,
            )

        try:
            result = self.state_machine.transition(request)
            status = result.result
        except DuplicateEvent:
            status = "duplicate"
        except InvalidTransition:
            status = "rejected"

        self.db.refresh(order)
        return GatewayApplyResult(
            transaction_id, outcome, status, order.id, order.order_code,
            order.order_status, order.payment_status,
        )

    # ── Channels ─────────────────────────────────────────

    def handle_postback(self, form: Dict[str, Any]) -> GatewayApplyResult:
        """
        Server-to-server notification.

        Raises:
            PreconditionFailed: txnid missing
            SignatureInvalid: digest does not verify
            OrderNotFound: unknown txnid
        """
        txnid = (form.get("txnid") or "").strip()
        refno = form.get("refno") or ""
        status = (form.get("status") or "").strip()
        message = form.get("message") or ""
        digest = form.get("digest") or ""

        webhook_log.record_payment_event(
            self.db, txnid or None, "postback", status, refno, message, raw_payload=dict(form),
        )
        if not txnid:
            raise PreconditionFailed("Missing txnid")
        if not self.gateway.verify_callback_digest(txnid, refno, status, message, digest):
            log.warning(f"Postback digest mismatch for {txnid}")
            raise SignatureInvalid(f"Digest mismatch for {txnid}")

        return self.apply_gateway_outcome(
            txnid, outcome_for_code(status), source="gateway",
            raw_status=status.upper(), reference_number=refno or None, message=message or None,
        )

    async def handle_return(self, params: Dict[str, Any]) -> GatewayApplyResult:
        """
        Browser return. The query string is never trusted; the gateway
        is asked for the real status and that is applied.
        """
        txnid = (params.get("txnid") or "").strip()
        webhook_log.record_payment_event(
            self.db, txnid or None, "return", params.get("status"), params.get("refno"),
            params.get("message"), raw_payload=dict(params),
        )
        if not txnid:
            raise PreconditionFailed("Missing txnid")
        if self.payment_for_transaction(txnid) is None:
            raise OrderNotFound(txnid)

        inquiry = await self.gateway.inquire(txnid)
        webhook_log.record_payment_event(
            self.db, txnid, "return", inquiry.raw_status, inquiry.reference_number, inquiry.message,
            raw_payload={"inquiry_outcome": inquiry.outcome},
        )
        return self.apply_gateway_outcome(
            txnid, inquiry.outcome, source="gateway",
            raw_status=inquiry.raw_status, reference_number=inquiry.reference_number, message=inquiry.message,
        )

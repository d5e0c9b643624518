"""
Tests for the transactional outbox and the notification dispatcher.
"""
import asyncio
import smtplib
from datetime import timedelta

from reconciler.errors import CarrierRejected
from reconciler.models.order import Order
from reconciler.models.outbox import OutboxKind, OutboxMessage, OutboxStatus
from reconciler.services.notification_service import (
    DeliveryResult,
    EmailSender,
    LoggingEmailSender,
    NotificationDispatcher,
    SmtpEmailSender,
    get_email_sender,
)
from reconciler.services.outbox_service import OutboxProcessor, enqueue
from reconciler.utils.helpers import utcnow

from support import add_variant, pay_order, place_order


class FailingSender(EmailSender):
    channel = "email"

    def __init__(self):
        self.calls = 0

    async def send(self, to, subject, body):
        self.calls += 1
        return DeliveryResult(success=False, channel=self.channel, attempts=1, final_error="SMTP down")


class ExplodingSender(EmailSender):
    async def send(self, to, subject, body):
        raise ConnectionError("socket closed")


def messages(db, order):
    db.expire_all()
    return {m.kind: m for m in db.query(OutboxMessage).filter(OutboxMessage.order_id == order.id)}


# ────────────────────────────────────────────
# OUTBOX
# ────────────────────────────────────────────


class TestEnqueue:
    def test_dedupe_key_is_unique(self, db, orders):
        order = place_order(orders, add_variant(db))
        assert enqueue(db, OutboxKind.NOTIFY_DELIVERED, order, "notify_delivered:x")
        assert not enqueue(db, OutboxKind.NOTIFY_DELIVERED, order, "notify_delivered:x")
        db.commit()
        assert not enqueue(db, OutboxKind.NOTIFY_DELIVERED, order, "notify_delivered:x")
        assert db.query(OutboxMessage).count() == 1

    def test_default_payload(self, db, orders):
        order = place_order(orders, add_variant(db))
        enqueue(db, OutboxKind.NOTIFY_DELIVERED, order, "k")
        db.commit()
        message = db.query(OutboxMessage).one()
        assert message.payload == {"order_code": order.order_code}
        assert message.status == OutboxStatus.PENDING
        assert message.attempts == 0


class TestDrain:
    def test_sends_shipment_and_confirmation(self, db, orders, outbox, email, carrier):
        order = place_order(orders, add_variant(db), payment_method="cod")

        stats = asyncio.run(outbox.drain())

        assert stats == {"processed": 2, "sent": 2, "retried": 0, "failed": 0}
        assert len(carrier.created) == 1
        assert [subject for _, subject, _ in email.sent] == [f"Order {order.order_code} confirmed"]
        assert all(m.status == OutboxStatus.SENT for m in messages(db, order).values())

    def test_failed_notification_is_retried_with_backoff(self, db, orders, shipments):
        order = place_order(orders, add_variant(db), payment_method="cod")
        sender = FailingSender()
        processor = OutboxProcessor(db, shipment_service=shipments, dispatcher=NotificationDispatcher(sender=sender))

        stats = asyncio.run(processor.drain())

        assert stats["retried"] == 1
        confirmation = messages(db, order)[OutboxKind.NOTIFY_ORDER_CONFIRMED]
        assert confirmation.status == OutboxStatus.PENDING
        assert confirmation.attempts == 1
        assert "SMTP down" in confirmation.last_error
        assert confirmation.available_at > utcnow()

        # Not due yet
        assert asyncio.run(processor.drain())["processed"] == 0
        assert sender.calls == 1

    def test_gives_up_after_max_attempts(self, db, orders, shipments):
        order = place_order(orders, add_variant(db), payment_method="cod")
        processor = OutboxProcessor(
            db, shipment_service=shipments, dispatcher=NotificationDispatcher(sender=FailingSender()), max_attempts=1,
        )

        stats = asyncio.run(processor.drain())

        assert stats["failed"] == 1
        confirmation = messages(db, order)[OutboxKind.NOTIFY_ORDER_CONFIRMED]
        assert confirmation.status == OutboxStatus.FAILED
        assert confirmation.processed_at is not None

    def test_precondition_failure_is_permanent(self, db, orders, outbox, carrier):
        order = place_order(orders, add_variant(db))
        enqueue(db, OutboxKind.CREATE_SHIPMENT, order, f"{OutboxKind.CREATE_SHIPMENT}:{order.id}")
        db.commit()

        stats = asyncio.run(outbox.drain())

        assert stats["failed"] == 1
        message = messages(db, order)[OutboxKind.CREATE_SHIPMENT]
        assert message.status == OutboxStatus.FAILED
        assert message.attempts == 1
        assert message.last_error.startswith("PreconditionFailed")
        assert carrier.created == []

    def test_failure_never_unwinds_the_transition(self, db, orders, outbox, carrier):
        carrier.failures["/4.2/orders"] = CarrierRejected("/4.2/orders", "invalid postcode", status=400)
        order = place_order(orders, add_variant(db))
        pay_order(orders, order)

        asyncio.run(outbox.drain())

        db.expire_all()
        refreshed = db.get(Order, order.id)
        assert refreshed.payment_status == "paid"
        assert refreshed.order_status == "for_packing"
        assert messages(db, order)[OutboxKind.CREATE_SHIPMENT].status == OutboxStatus.FAILED

    def test_claimed_message_is_invisible(self, db, orders, outbox):
        order = place_order(orders, add_variant(db), payment_method="cod")
        for message in messages(db, order).values():
            message.available_at = utcnow() + timedelta(seconds=300)
        db.commit()

        assert asyncio.run(outbox.drain())["processed"] == 0

    def test_limit(self, db, orders, outbox):
        place_order(orders, add_variant(db), payment_method="cod")
        assert asyncio.run(outbox.drain(limit=1))["processed"] == 1
        assert asyncio.run(outbox.drain(limit=1))["processed"] == 1
        assert asyncio.run(outbox.drain(limit=1))["processed"] == 0


# ────────────────────────────────────────────
# NOTIFICATIONS
# ────────────────────────────────────────────


class TestNotificationDispatcher:
    def test_renders_confirmation(self, db, orders, dispatcher, email):
        order = place_order(orders, add_variant(db, name="Canvas Tote"), quantity=2, payment_method="cod")

        result = asyncio.run(dispatcher.dispatch(OutboxKind.NOTIFY_ORDER_CONFIRMED, order))

        assert result.success
        to, subject, body = email.sent[0]
        assert to == "juan@example.com"
        assert subject == f"Order {order.order_code} confirmed"
        assert "2 x Canvas Tote @ 250.00" in body
        assert "Payment will be collected on delivery." in body

    def test_dispatched_and_delivered_subjects(self, db, orders, dispatcher, email):
        order = place_order(orders, add_variant(db))
        asyncio.run(dispatcher.dispatch(OutboxKind.NOTIFY_DISPATCHED, order))
        asyncio.run(dispatcher.dispatch(OutboxKind.NOTIFY_DELIVERED, order))
        assert [s for _, s, _ in email.sent] == [
            f"Order {order.order_code} is on its way",
            f"Order {order.order_code} delivered",
        ]

    def test_no_customer_email_is_skipped(self, db, orders, dispatcher, email):
        variant = add_variant(db)
        order = orders.create_order(
            "u-1",
            [{"variant_id": variant.id, "quantity": 1}],
            {"name": "Walk-in", "phone": "+639170000000"},
            {"address1": "1 Main St", "city": "Quezon City"},
        )
        result = asyncio.run(dispatcher.dispatch(OutboxKind.NOTIFY_DELIVERED, order))
        assert result.success
        assert result.channel == "none"
        assert email.sent == []

    def test_unknown_kind(self, db, orders, dispatcher):
        order = place_order(orders, add_variant(db))
        result = asyncio.run(dispatcher.dispatch("notify_refund", order))
        assert not result.success
        assert "Unknown notification kind" in result.final_error

    def test_sender_errors_are_reported_not_raised(self, db, orders):
        order = place_order(orders, add_variant(db))
        result = asyncio.run(NotificationDispatcher(sender=ExplodingSender()).dispatch(
            OutboxKind.NOTIFY_DELIVERED, order
        ))
        assert not result.success
        assert "ConnectionError" in result.final_error


class TestEmailSenders:
    def test_logging_sender_without_smtp(self):
        assert isinstance(get_email_sender(), LoggingEmailSender)

    def test_smtp_retry_classification(self):
        sender = SmtpEmailSender()
        assert sender._is_retryable_email_error(smtplib.SMTPResponseException(421, b"try later"))
        assert not sender._is_retryable_email_error(smtplib.SMTPResponseException(550, b"no such user"))
        assert sender._is_retryable_email_error(ConnectionRefusedError())
        assert not sender._is_retryable_email_error(ValueError("bad address"))

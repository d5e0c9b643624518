"""
Tests for shipment creation, cancellation and carrier webhook ingestion.

Covers:
  - Payment success books exactly one parcel, even when replayed (scenario B)
  - A failed delivery that comes back restores stock (scenario D)
  - Cancelling after pickup is refused without side effects (scenario E)
  - Cash-on-delivery parcels carry the amount to collect
  - Duplicate, stale and unmatched carrier events
"""
import asyncio

import pytest

from reconciler.errors import (
    CancellationNotAllowed,
    CarrierRejected,
    ExternalUnavailable,
    PermissionDenied,
    PreconditionFailed,
)
from reconciler.middleware.auth_middleware import CurrentUser
from reconciler.models.order import Order, OrderStatus, PaymentStatus
from reconciler.models.payment import Payment, PaymentRecordStatus
from reconciler.models.shipment import CarrierWebhookEvent, Shipment, TrackingEvent

from support import add_variant, carrier_event, pay_order, place_order, postback_form, shipped_order, stock_of

OWNER = CurrentUser(user_id="u-1")
STRANGER = CurrentUser(user_id="u-2")
ADMIN = CurrentUser(user_id="ops", role="admin")


def order_status(db, order_id):
    db.expire_all()
    return db.get(Order, order_id).order_status


# ────────────────────────────────────────────
# CREATE
# ────────────────────────────────────────────


class TestCreateShipment:
    def test_paid_order_books_one_parcel(self, db, orders, outbox, carrier):
        variant = add_variant(db)
        order = place_order(orders, variant)
        txnid = pay_order(orders, order)

        assert order_status(db, order.id) == OrderStatus.FOR_PACKING
        stats = asyncio.run(outbox.drain())
        assert stats["sent"] == 2

        assert len(carrier.created) == 1
        method, path, payload, _ = carrier.created[0]
        assert path == "/4.2/orders"
        assert payload["requested_tracking_number"] == order.order_code
        assert payload["to"]["address"]["city"] == "Makati"
        assert "cash_on_delivery" not in payload["parcel_job"]

        db.expire_all()
        refreshed = db.get(Order, order.id)
        assert refreshed.tracking_number == order.order_code
        assert db.query(Shipment).filter(Shipment.order_id == order.id).count() == 1

        # A replayed postback claims nothing new and books nothing new
        replay = orders.payment_service.handle_postback(postback_form(txnid, "S"))
        assert replay.result == "duplicate"
        assert asyncio.run(outbox.drain())["processed"] == 0
        assert len(carrier.created) == 1

    def test_existing_shipment_is_returned_without_carrier_call(self, db, orders, outbox, shipments, carrier):
        _, order = shipped_order(db, orders, outbox)
        again = asyncio.run(shipments.create_shipment(order.id))
        assert again.tracking_number == order.tracking_number
        assert len(carrier.created) == 1

    def test_unpaid_order_is_not_shippable(self, db, orders, shipments, carrier):
        order = place_order(orders, add_variant(db))
        with pytest.raises(PreconditionFailed):
            asyncio.run(shipments.create_shipment(order.id))
        assert carrier.created == []

    def test_missing_address_fields(self, db, orders, shipments, carrier):
        variant = add_variant(db)
        order = orders.create_order(
            "u-1",
            [{"variant_id": variant.id, "quantity": 1}],
            {"name": "Ana", "email": "ana@example.com", "phone": ""},
            {"address1": "", "city": "Pasig"},
            payment_method="cod",
        )
        with pytest.raises(PreconditionFailed) as excinfo:
            asyncio.run(shipments.create_shipment(order.id))
        assert "customer phone" in str(excinfo.value)
        assert "address line" in str(excinfo.value)
        assert carrier.created == []

    def test_cod_order_ships_immediately_with_amount(self, db, orders, outbox, carrier):
        order = place_order(orders, add_variant(db, price="250.00"), quantity=2, payment_method="cod")
        asyncio.run(outbox.drain())

        payload = carrier.created[0][2]
        assert payload["parcel_job"]["cash_on_delivery"] == 500.0
        assert payload["parcel_job"]["cash_on_delivery_currency"] == "PHP"
        cod_payment = db.query(Payment).filter(Payment.order_id == order.id).one()
        assert cod_payment.status == PaymentRecordStatus.COD_PENDING

    def test_carrier_outage_leaves_order_for_retry(self, db, orders, outbox, carrier):
        carrier.failures["/4.2/orders"] = ExternalUnavailable("NinjaVan", "HTTP 503", status=503)
        order = place_order(orders, add_variant(db))
        pay_order(orders, order)

        stats = asyncio.run(outbox.drain())
        assert stats["retried"] == 1
        assert order_status(db, order.id) == OrderStatus.FOR_PACKING
        assert db.query(Shipment).count() == 0

    def test_cancel_during_booking_withdraws_parcel(self, db, orders, shipments, carrier):
        variant = add_variant(db, stock=5)
        order = place_order(orders, variant)
        pay_order(orders, order)
        book = carrier._send

        async def cancel_while_booking(method, path, **kwargs):
            response = await book(method, path, **kwargs)
            if method == "POST":
                await orders.cancel_order(order.id, OWNER)
            return response

        carrier._send = cancel_while_booking

        with pytest.raises(PreconditionFailed):
            asyncio.run(shipments.create_shipment(order.id))

        db.expire_all()
        refreshed = db.get(Order, order.id)
        assert refreshed.order_status == OrderStatus.CANCELLED
        assert refreshed.payment_status == PaymentStatus.REFUNDED
        assert refreshed.tracking_number is None
        assert db.query(Shipment).count() == 0
        assert [r[1] for r in carrier.cancelled] == [f"/2.2/orders/{order.order_code}"]
        assert stock_of(db, variant.id) == 5


# ────────────────────────────────────────────
# CANCEL
# ────────────────────────────────────────────


class TestCancelShipment:
    def test_cancel_before_pickup_refunds_and_restores_stock(self, db, orders, outbox, carrier):
        variant, order = shipped_order(db, orders, outbox)
        assert stock_of(db, variant.id) == 3

        result = asyncio.run(orders.cancel_order(order.id, OWNER))

        assert [r[1] for r in carrier.cancelled] == [f"/2.2/orders/{order.tracking_number}"]
        assert result["order_status"] == OrderStatus.CANCELLED
        assert result["payment_status"] == PaymentStatus.REFUNDED
        assert stock_of(db, variant.id) == 5
        payment = db.query(Payment).filter(Payment.order_id == order.id).one()
        assert payment.status == PaymentRecordStatus.REFUND_PENDING

    def test_cancel_after_pickup_is_refused(self, db, orders, outbox, shipments, carrier):
        variant, order = shipped_order(db, orders, outbox)
        shipments.ingest_carrier_event(
            carrier_event(order.tracking_number, "Picked Up, In Transit To Origin Hub", "2024-05-01T09:00:00+08:00")
        )

        with pytest.raises(CancellationNotAllowed):
            asyncio.run(shipments.cancel_shipment(order.tracking_number, OWNER))

        assert carrier.cancelled == []
        assert order_status(db, order.id) == OrderStatus.PICKED_UP
        assert stock_of(db, variant.id) == 3

    def test_carrier_rejection_changes_nothing(self, db, orders, outbox, shipments, carrier):
        variant, order = shipped_order(db, orders, outbox)
        carrier.failures["/2.2/orders"] = CarrierRejected("cancel_order", "Order already picked up", status=400)

        with pytest.raises(CarrierRejected):
            asyncio.run(shipments.cancel_shipment(order.tracking_number, OWNER))

        assert order_status(db, order.id) == OrderStatus.FOR_PACKING
        assert stock_of(db, variant.id) == 3

    def test_only_owner_or_admin(self, db, orders, outbox, shipments, carrier):
        _, order = shipped_order(db, orders, outbox)
        with pytest.raises(PermissionDenied):
            asyncio.run(shipments.cancel_shipment(order.tracking_number, STRANGER))
        assert carrier.cancelled == []

        result = asyncio.run(shipments.cancel_shipment(order.tracking_number, ADMIN))
        assert result["order_status"] == OrderStatus.CANCELLED


# ────────────────────────────────────────────
# WEBHOOK INGESTION
# ────────────────────────────────────────────


class TestIngestCarrierEvent:
    def test_failed_delivery_then_return_restores_stock(self, db, orders, outbox, shipments):
        variant, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number

        steps = [
            ("Picked Up, In Transit To Origin Hub", "2024-05-01T09:00:00+08:00", {}, OrderStatus.PICKED_UP),
            ("Arrived at Origin Hub", "2024-05-01T15:00:00+08:00", {}, OrderStatus.SHIPPED),
            ("On Vehicle for Delivery", "2024-05-02T08:00:00+08:00", {}, OrderStatus.OUT_FOR_DELIVERY),
            (
                "Delivery Exception, Max Attempts Reached",
                "2024-05-04T18:00:00+08:00",
                {"delivery_exception": {"failure_reason": "Customer not home"}},
                OrderStatus.DELIVERY_FAILED,
            ),
        ]
        for event, timestamp, extra, expected in steps:
            result = shipments.ingest_carrier_event(carrier_event(tid, event, timestamp, **extra))
            assert result.outcome == "applied", event
            assert result.order_status == expected

        shipment = db.query(Shipment).filter(Shipment.tracking_number == tid).one()
        assert shipment.failure_reason == "Customer not home"
        assert stock_of(db, variant.id) == 3

        returned = shipments.ingest_carrier_event(carrier_event(tid, "Returned to Sender", "2024-05-08T10:00:00+08:00"))
        assert returned.order_status == OrderStatus.RETURNED
        assert stock_of(db, variant.id) == 5
        db.expire_all()
        assert db.get(Order, order.id).payment_status == PaymentStatus.PAID

    def test_parcel_scrapped_on_return_leg_cancels(self, db, orders, outbox, shipments):
        variant, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number
        shipments.ingest_carrier_event(carrier_event(tid, "Picked Up, In Transit To Origin Hub", "2024-05-01T09:00:00Z"))
        shipments.ingest_carrier_event(
            carrier_event(tid, "Delivery Exception, Return to Sender Initiated", "2024-05-03T09:00:00Z")
        )
        assert order_status(db, order.id) == OrderStatus.RETURNING

        scrapped = shipments.ingest_carrier_event(
            carrier_event(tid, "Return to Shipper Exception, Parcel Scrapped", "2024-05-06T09:00:00Z")
        )

        assert scrapped.outcome == "applied"
        assert scrapped.order_status == OrderStatus.CANCELLED
        db.expire_all()
        assert db.get(Order, order.id).payment_status == PaymentStatus.REFUNDED
        assert stock_of(db, variant.id) == 5

    def test_duplicate_event(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        payload = carrier_event(order.tracking_number, "Arrived at Origin Hub", "2024-05-01T15:00:00Z")

        assert shipments.ingest_carrier_event(payload).outcome == "applied"
        assert shipments.ingest_carrier_event(dict(payload)).outcome == "duplicate"
        # Both deliveries are kept in the audit log
        assert db.query(CarrierWebhookEvent).count() == 2

    def test_backward_event_is_rejected(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number
        shipments.ingest_carrier_event(carrier_event(tid, "On Vehicle for Delivery", "2024-05-02T08:00:00Z"))

        late = shipments.ingest_carrier_event(carrier_event(tid, "Arrived at Origin Hub", "2024-05-01T15:00:00Z"))
        assert late.outcome == "rejected"
        assert order_status(db, order.id) == OrderStatus.OUT_FOR_DELIVERY

    def test_stale_metadata_does_not_overwrite(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number
        shipments.ingest_carrier_event(carrier_event(tid, "Arrived at Transit Hub", "2024-05-02T08:00:00Z"))
        result = shipments.ingest_carrier_event(
            carrier_event(tid, "Parcel Measurements Update", "2024-05-01T08:00:00Z")
        )

        assert result.outcome == "unchanged"
        shipment = db.query(Shipment).filter(Shipment.tracking_number == tid).one()
        db.refresh(shipment)
        assert shipment.last_webhook_event == "Arrived at Transit Hub"

    def test_unknown_tracking_id(self, db, shipments):
        result = shipments.ingest_carrier_event(carrier_event("NOPE123", "Arrived at Origin Hub", "2024-05-01T15:00:00Z"))
        assert not result.matched
        assert result.outcome == "unmatched"
        assert db.query(TrackingEvent).filter(TrackingEvent.tracking_number == "NOPE123").count() == 1

    def test_unknown_event_is_recorded_only(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        result = shipments.ingest_carrier_event(
            carrier_event(order.tracking_number, "Something New", "2024-05-01T15:00:00Z")
        )
        assert result.matched
        assert result.outcome == "unchanged"
        assert order_status(db, order.id) == OrderStatus.FOR_PACKING

    def test_v1_schema(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        payload = {"tracking_id": order.tracking_number, "event": "Successful Pickup", "timestamp": "2024-05-01T09:00:00Z"}
        result = shipments.ingest_carrier_event(payload, schema="v1")
        assert result.order_status == OrderStatus.PICKED_UP
        # v1 deliveries are not written to the v2 webhook log
        assert db.query(CarrierWebhookEvent).count() == 0

    def test_cod_delivery_marks_paid(self, db, orders, outbox, shipments):
        order = place_order(orders, add_variant(db), payment_method="cod")
        asyncio.run(outbox.drain())
        result = shipments.ingest_carrier_event(
            carrier_event(order.order_code, "Delivered, Received by Customer", "2024-05-03T11:00:00Z")
        )
        assert result.order_status == OrderStatus.DELIVERED
        db.expire_all()
        assert db.get(Order, order.id).payment_status == PaymentStatus.PAID


# ────────────────────────────────────────────
# TRACKING AND WAYBILL
# ────────────────────────────────────────────


class TestTrackingAndWaybill:
    def test_tracking_lists_newest_first(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number
        shipments.ingest_carrier_event(carrier_event(tid, "Picked Up, In Transit To Origin Hub", "2030-05-01T09:00:00Z"))

        tracking = shipments.get_tracking(tid)
        assert tracking["order_code"] == order.order_code
        assert tracking["order_status"] == OrderStatus.PICKED_UP
        assert tracking["events"][0]["event"] == "Picked Up, In Transit To Origin Hub"
        assert any(e["event"] == "Shipment Created" for e in tracking["events"])

    def test_waybill_for_owner(self, db, orders, outbox, shipments, carrier):
        _, order = shipped_order(db, orders, outbox)
        pdf = asyncio.run(shipments.get_waybill(order.tracking_number, OWNER))
        assert pdf.startswith(b"%PDF")
        assert carrier.requests[-1][3] == {"tid": order.tracking_number}

    def test_waybill_denied_to_others(self, db, orders, outbox, shipments):
        _, order = shipped_order(db, orders, outbox)
        with pytest.raises(PermissionDenied):
            asyncio.run(shipments.get_waybill(order.tracking_number, STRANGER))

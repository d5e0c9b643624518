"""
Tests for the carrier webhook endpoints.

Signatures are checked on the raw body before parsing; authentic but
unmatched or duplicate events still answer 200 so the carrier stops
retrying.
"""
import json

from reconciler.api.webhooks import SIGNATURE_HEADER
from reconciler.models.order import Order, OrderStatus
from reconciler.models.shipment import TrackingEvent
from reconciler.utils.signatures import compute_signature, verify_signature

from support import WEBHOOK_SECRET, carrier_event, shipped_order


def signed_post(client, path, payload, secret=WEBHOOK_SECRET):
    body = json.dumps(payload).encode()
    headers = {SIGNATURE_HEADER: compute_signature(body, secret), "Content-Type": "application/json"}
    return client.post(path, content=body, headers=headers)


class TestSignatures:
    def test_round_trip(self):
        body = b'{"tracking_id": "X"}'
        assert verify_signature(body, compute_signature(body, "s3cret"), "s3cret")

    def test_any_byte_change_fails(self):
        signature = compute_signature(b'{"a": 1}', "s3cret")
        assert not verify_signature(b'{"a": 2}', signature, "s3cret")

    def test_missing_header_or_secret(self):
        body = b"{}"
        assert not verify_signature(body, None, "s3cret")
        assert not verify_signature(body, compute_signature(body, "s3cret"), "")


class TestAuthentication:
    def test_missing_signature(self, client, kicker):
        response = client.post("/webhooks/carrier/v2", json=carrier_event("T1", "Arrived at Origin Hub", "2024-05-01T00:00:00Z"))
        assert response.status_code == 401
        assert kicker.calls == 0

    def test_wrong_secret(self, client, db):
        response = signed_post(
            client, "/webhooks/carrier/v2",
            carrier_event("T1", "Arrived at Origin Hub", "2024-05-01T00:00:00Z"),
            secret="not-the-secret",
        )
        assert response.status_code == 401
        # Rejected before anything is recorded
        assert db.query(TrackingEvent).count() == 0


class TestValidation:
    def test_invalid_json(self, client):
        body = b"{not json"
        response = client.post(
            "/webhooks/carrier/v2",
            content=body,
            headers={SIGNATURE_HEADER: compute_signature(body, WEBHOOK_SECRET)},
        )
        assert response.status_code == 400

    def test_non_object_body(self, client):
        response = signed_post(client, "/webhooks/carrier/v2", ["tracking_id"])
        assert response.status_code == 400

    def test_v2_requires_status(self, client):
        payload = {"tracking_id": "T1", "event": "Arrived at Origin Hub"}
        response = signed_post(client, "/webhooks/carrier/v2", payload)
        assert response.status_code == 400
        assert "status" in response.json()["detail"]

    def test_v1_does_not_require_status(self, client):
        payload = {"tracking_id": "T1", "event": "Successful Pickup"}
        assert signed_post(client, "/webhooks/carrier/v1", payload).status_code == 200


class TestIngestion:
    def test_applied_event_kicks_outbox(self, client, db, orders, outbox, kicker):
        _, order = shipped_order(db, orders, outbox)
        payload = carrier_event(order.tracking_number, "Picked Up, In Transit To Origin Hub", "2024-05-01T09:00:00Z")

        response = signed_post(client, "/webhooks/carrier/v2", payload)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["matched"] is True
        assert body["outcome"] == "applied"
        assert body["order_status"] == OrderStatus.PICKED_UP
        assert kicker.calls == 1
        db.expire_all()
        assert db.get(Order, order.id).order_status == OrderStatus.PICKED_UP

    def test_duplicate_delivery(self, client, db, orders, outbox, kicker):
        _, order = shipped_order(db, orders, outbox)
        payload = carrier_event(order.tracking_number, "Arrived at Origin Hub", "2024-05-01T15:00:00Z")

        signed_post(client, "/webhooks/carrier/v2", payload)
        second = signed_post(client, "/webhooks/carrier/v2", payload)

        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert kicker.calls == 1

    def test_backward_event_answers_ok(self, client, db, orders, outbox):
        _, order = shipped_order(db, orders, outbox)
        tid = order.tracking_number
        signed_post(client, "/webhooks/carrier/v2", carrier_event(tid, "On Vehicle for Delivery", "2024-05-02T08:00:00Z"))

        response = signed_post(client, "/webhooks/carrier/v2", carrier_event(tid, "Pending Pickup", "2024-05-01T08:00:00Z"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "rejected"

    def test_unknown_tracking_id(self, client, kicker):
        response = signed_post(
            client, "/webhooks/carrier/v2", carrier_event("UNKNOWN1", "Arrived at Origin Hub", "2024-05-01T00:00:00Z")
        )
        assert response.status_code == 200
        assert response.json()["matched"] is False
        assert response.json()["outcome"] == "unmatched"
        assert kicker.calls == 0

    def test_unknown_event_name(self, client, db, orders, outbox):
        _, order = shipped_order(db, orders, outbox)
        response = signed_post(
            client, "/webhooks/carrier/v2", carrier_event(order.tracking_number, "Parcel Teleported", "2024-05-01T00:00:00Z")
        )
        assert response.status_code == 200
        assert response.json()["outcome"] == "unchanged"
        assert response.json()["description"] == "Unknown event: Parcel Teleported"

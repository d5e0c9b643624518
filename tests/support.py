"""
Fake collaborators and data builders shared by the test modules.

Imported after conftest has configured the environment.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from reconciler.connectors.dragonpay_connector import DragonpayConnector, sha1_hex
from reconciler.connectors.ninjavan_connector import NinjaVanConnector
from reconciler.errors import ExternalUnavailable
from reconciler.models.order import Order, ProductVariant
from reconciler.models.payment import Payment
from reconciler.utils.helpers import utcnow

GATEWAY_SECRET = "test-secret"
WEBHOOK_SECRET = "test-client-secret"

CUSTOMER = {"name": "Juan Dela Cruz", "email": "juan@example.com", "phone": "+639171234567"}
ADDRESS = {
    "address1": "12 Rizal Street",
    "address2": "",
    "area": "Poblacion",
    "city": "Makati",
    "state": "Metro Manila",
    "postcode": "1210",
}


# ────────────────────────────────────────────
# FAKE COLLABORATORS
# ────────────────────────────────────────────


class FakeGateway(DragonpayConnector):
    """Real digests and intents; Query.aspx answers are scripted per transaction id."""

    RETRY_MAX_ATTEMPTS = 1

    def __init__(self):
        super().__init__(
            merchant_id="TESTMERCHANT",
            secret_key=GATEWAY_SECRET,
            base_url="https://gateway.test",
            currency="PHP",
        )
        self.answers: Dict[str, str] = {}
        self.inquiries = []

    def answer(self, txnid: str, body: str):
        self.answers[txnid] = body

    async def _fetch_inquiry(self, txnid: str) -> str:
        self.inquiries.append(txnid)
        if txnid not in self.answers:
            raise ExternalUnavailable(self.name, "connection refused")
        return self.answers[txnid]


class FakeCarrier(NinjaVanConnector):
    """Real operation methods over a scripted HTTP layer."""

    RETRY_MAX_ATTEMPTS = 1

    def __init__(self):
        super().__init__(
            api_url="https://carrier.test",
            country_code="PH",
            client_id="test-client",
            client_secret=WEBHOOK_SECRET,
        )
        self.requests = []
        self.failures: Dict[str, Exception] = {}

    @property
    def created(self):
        return [r for r in self.requests if r[0] == "POST"]

    @property
    def cancelled(self):
        return [r for r in self.requests if r[0] == "DELETE"]

    async def _send(self, method, path, json=None, params=None, authenticated=True, binary=False) -> Any:
        for prefix, error in self.failures.items():
            if path.startswith(prefix):
                raise error
        self.requests.append((method, path, json, params))
        if binary:
            return b"%PDF-1.4 waybill " + str(params.get("tid")).encode()
        if method == "POST":
            return {"tracking_number": json["requested_tracking_number"], "status": "Pending Pickup"}
        return {}


# ────────────────────────────────────────────
# BUILDERS
# ────────────────────────────────────────────


def add_variant(db, name="Canvas Tote", stock=5, price="250.00", sku=None) -> ProductVariant:
    variant = ProductVariant(name=name, sku=sku, stock=stock, price=Decimal(price))
    db.add(variant)
    db.commit()
    db.refresh(variant)
    return variant


def stock_of(db, variant_id: int) -> int:
    db.expire_all()
    return db.get(ProductVariant, variant_id).stock


def place_order(orders, variant, quantity=2, payment_method="gateway", user_id="u-1"):
    return orders.create_order(
        user_id,
        [{"variant_id": variant.id, "quantity": quantity}],
        dict(CUSTOMER),
        dict(ADDRESS),
        payment_method=payment_method,
    )


def postback_form(txnid: str, status: str, refno: str = "REF123", message: str = "ok") -> Dict[str, str]:
    digest = sha1_hex(":".join([txnid, refno, status, message, GATEWAY_SECRET]))
    return {"txnid": txnid, "refno": refno, "status": status, "message": message, "digest": digest}


def pay_order(orders, order, status="S") -> str:
    """Issue an intent and deliver a signed postback for it; returns the txnid"""
    txnid = orders.issue_payment_intent(order.id)["transaction_id"]
    orders.payment_service.handle_postback(postback_form(txnid, status))
    return txnid


def age_payment(db, transaction_id: str, minutes: Optional[int] = None, days: Optional[int] = None) -> Payment:
    """Backdate a payment so the poller's grace and timeout windows apply"""
    delta = timedelta(minutes=minutes or 0, days=days or 0)
    payment = db.query(Payment).filter(Payment.transaction_id == transaction_id).one()
    payment.status_changed_at = utcnow() - delta
    payment.created_at = utcnow() - delta
    db.commit()
    return payment


def carrier_event(tracking_id: str, event: str, timestamp: str, status: str = "Transit", **extra) -> Dict[str, Any]:
    payload = {"tracking_id": tracking_id, "event": event, "status": status, "timestamp": timestamp}
    payload.update(extra)
    return payload


def shipped_order(db, orders, outbox, stock=5, quantity=2):
    """A paid gateway order whose parcel has been booked; returns (variant, order)"""
    variant = add_variant(db, stock=stock)
    order = place_order(orders, variant, quantity=quantity)
    pay_order(orders, order)
    asyncio.run(outbox.drain())
    db.expire_all()
    return variant, db.get(Order, order.id)

"""
Shipment orchestration: carrier order creation, cancellation and
webhook ingestion.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from reconciler.config import get_settings
from reconciler.connectors.ninjavan_connector import NinjaVanConnector
from reconciler.errors import (
    CancellationNotAllowed,
    CarrierRejected,
    DuplicateEvent,
    ExternalUnavailable,
    InvalidTransition,
    OrderNotFound,
    PermissionDenied,
    PreconditionFailed,
)
from reconciler.models.order import Order, OrderStatus
from reconciler.models.shipment import Shipment, TrackingEvent
from reconciler.services import webhook_log
from reconciler.services.carrier_events import (
    EventMapping,
    extract_failure_reason,
    is_rts_leg,
    map_v1_event,
    map_v2_event,
)
from reconciler.services.state_machine import (
    CANCELLABLE_STATES,
    SHIPPABLE_ORDER,
    SHIPPABLE_PAYMENT,
    OrderStateMachine,
    ShipmentUpdate,
    TrackingEventRecord,
    TransitionRequest,
)
from reconciler.services.webhook_log import EventKey
from reconciler.utils.helpers import format_amount, parse_timestamp, utcnow
from reconciler.utils.logger import log

settings = get_settings()


@dataclass
class IngestResult:
    tracking_id: str
    event: str
    matched: bool
    outcome: str  # applied | unchanged | duplicate | rejected | unmatched
    mapping: EventMapping
    order_id: Optional[int] = None
    order_status: Optional[str] = None


def check_order_access(order: Order, user) -> None:
    """Owners and admins only"""
    if user is None:
        raise PermissionDenied("Authentication required")
    if getattr(user, "is_admin", False):
        return
    if order.user_id is None or str(order.user_id) != str(user.user_id):
        raise PermissionDenied("You do not have access to this order")


def requested_tracking_number(order: Order) -> str:
    """Stable per order so a retried create cannot produce a second parcel"""
    return order.order_code


class ShipmentService:
    """Creates, cancels and tracks carrier shipments"""

    def __init__(self, db: Session, connector: Optional[NinjaVanConnector] = None):
        self.db = db
        self.connector = connector or NinjaVanConnector()
        self.state_machine = OrderStateMachine(db)

    # ── Lookups ──────────────────────────────────────────

    def _shipment_for_tracking(self, tracking_id: str) -> Optional[Shipment]:
        return self.db.query(Shipment).filter(Shipment.tracking_number == tracking_id).first()

    def _order_for_tracking(self, tracking_id: str) -> Optional[Order]:
        shipment = self._shipment_for_tracking(tracking_id)
        if shipment is not None:
            return self.db.get(Order, shipment.order_id)
        return self.db.query(Order).filter(Order.tracking_number == tracking_id).first()

    # ── Create ───────────────────────────────────────────

    def build_payload(self, order: Order) -> Dict[str, Any]:
        """Carrier create-order request for an order"""
        address = order.shipping_address or {}
        units = sum(item.quantity for item in order.items)
        weight = units * settings.parcel_weight_per_unit_kg if units else settings.parcel_default_weight_kg
        today = utcnow().date()
        timeslot = {"start_time": "09:00", "end_time": "18:00", "timezone": settings.scheduler_timezone}

        payload = {
            "service_type": "Parcel",
            "service_level": "Standard",
            "requested_tracking_number": requested_tracking_number(order),
            "reference": {"merchant_order_number": order.order_code},
            "from": {
                "name": settings.sender_name,
                "phone_number": settings.sender_phone,
                "email": settings.sender_email,
                "address": {
                    "address1": settings.sender_address1,
                    "address2": settings.sender_address2,
                    "area": settings.sender_area,
                    "city": settings.sender_city,
                    "state": settings.sender_state,
                    "address_type": "office",
                    "country": settings.sender_country,
                    "postcode": settings.sender_postcode,
                },
            },
            "to": {
                "name": order.customer_name,
                "phone_number": order.customer_phone,
                "email": order.customer_email,
                "address": {
                    "address1": address.get("address1", ""),
                    "address2": address.get("address2", ""),
                    "area": address.get("area") or address.get("city", ""),
                    "city": address.get("city", ""),
                    "state": address.get("state", ""),
                    "address_type": "home",
                    "country": address.get("country") or settings.ninjavan_country_code,
                    "postcode": address.get("postcode", ""),
                },
            },
            "parcel_job": {
                "is_pickup_required": True,
                "pickup_service_type": "Scheduled",
                "pickup_service_level": "Standard",
                "pickup_date": (today + timedelta(days=1)).isoformat(),
                "pickup_timeslot": timeslot,
                "delivery_start_date": (today + timedelta(days=2)).isoformat(),
                "delivery_timeslot": timeslot,
                "dimensions": {"weight": round(weight, 2)},
                "items": [
                    {"item_description": item.product_name or "Product item", "quantity": item.quantity, "is_dangerous_good": False}
                    for item in order.items
                ] or [{"item_description": "Product from order", "quantity": 1, "is_dangerous_good": False}],
            },
        }

        if order.is_cod:
            payload["parcel_job"]["cash_on_delivery"] = float(format_amount(order.total_price))
            payload["parcel_job"]["cash_on_delivery_currency"] = order.currency
        return payload

    def _check_shippable(self, order: Order):
        if order.payment_status not in SHIPPABLE_PAYMENT or order.order_status not in SHIPPABLE_ORDER:
            raise PreconditionFailed(
                f"Order {order.order_code} is not ready to ship "
                f"(order {order.order_status}, payment {order.payment_status})"
            )
        address = order.shipping_address or {}
        missing = [
            name for name, value in (
                ("customer name", order.customer_name),
                ("customer phone", order.customer_phone),
                ("address line", address.get("address1")),
                ("city", address.get("city")),
            ) if not value
        ]
        if missing:
            raise PreconditionFailed(f"Order {order.order_code} is missing {', '.join(missing)}")

    async def create_shipment(self, order_id: int) -> Shipment:
        """
        Book a parcel with the carrier for a paid (or COD) order.

        Returns the existing shipment without calling the carrier when
        one is already recorded.

        Raises:
            OrderNotFound, PreconditionFailed, CarrierRejected, ExternalUnavailable
        """
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        self.db.refresh(order)

        existing = self.db.query(Shipment).filter(Shipment.order_id == order.id).first()
        if existing is not None:
            log.info(f"Order {order.order_code} already shipped as {existing.tracking_number}; no carrier call")
            return existing

        self._check_shippable(order)
        payload = self.build_payload(order)
        response = await self.connector.create_order(payload)
        tracking_number = response.get("tracking_number") or payload["requested_tracking_number"]

        try:
            return self.state_machine.record_shipment(
                order.id,
                tracking_number,
                settings.carrier_name,
                raw_response=response,
            )
        except PreconditionFailed:
            # Cancelled while the booking was in flight: withdraw the parcel
            await self._withdraw_orphan_parcel(order, tracking_number)
            raise

    async def _withdraw_orphan_parcel(self, order: Order, tracking_number: str):
        log.warning(f"Order {order.order_code} changed during booking; cancelling parcel {tracking_number}")
        try:
            await self.connector.cancel_order(tracking_number)
        except (CarrierRejected, ExternalUnavailable) as e:
            log.error(
                f"Could not cancel orphan parcel {tracking_number} for order {order.order_code}: {e}. "
                "Cancel it manually with the carrier."
            )
            return
        webhook_log.record_tracking_event(
            self.db,
            tracking_number,
            "system",
            event="Parcel Withdrawn",
            status=order.order_status,
            description=f"Parcel booked after the order became {order.order_status}; cancelled with the carrier",
            order_id=order.id,
            event_timestamp=utcnow(),
        )

    # ── Cancel ───────────────────────────────────────────

    async def cancel_shipment(self, tracking_id: str, user) -> Dict[str, Any]:
        """
        Cancel a parcel that has not been picked up.

        The carrier must accept the cancellation before anything changes
        locally.

        Raises:
            OrderNotFound, PermissionDenied, CancellationNotAllowed,
            CarrierRejected, ExternalUnavailable
        """
        order = self._order_for_tracking(tracking_id)
        if order is None:
            raise OrderNotFound(tracking_id)
        self.db.refresh(order)
        check_order_access(order, user)

        if order.order_status not in CANCELLABLE_STATES:
            raise CancellationNotAllowed(order.id, order.order_status)

        await self.connector.cancel_order(tracking_id)

        actor = "admin" if getattr(user, "is_admin", False) else "customer"
        result = self.state_machine.transition(TransitionRequest(
            order_id=order.id,
            source="customer",
            order_status=OrderStatus.CANCELLED,
            key=EventKey("customer", tracking_id, "cancel"),
            tracking_event=TrackingEventRecord(
                tracking_number=tracking_id,
                source="customer",
                event="Cancelled",
                status=OrderStatus.CANCELLED,
                description=f"Order cancelled by {actor}",
            ),
            reason=f"cancelled by {actor}",
        ))
        return {
            "order_id": order.id,
            "order_code": order.order_code,
            "tracking_id": tracking_id,
            "order_status": result.order_status,
            "payment_status": result.payment_status,
            "stock_released": result.stock_released,
        }

    # ── Webhooks ─────────────────────────────────────────

    def ingest_carrier_event(self, payload: Dict[str, Any], schema: str = "v2") -> IngestResult:
        """
        Record a carrier webhook and apply it through the state machine.

        Duplicates and rejected transitions are reported in the result,
        never raised.
        """
        tracking_id = str(payload["tracking_id"]).strip()
        event = str(payload["event"]).strip()
        raw_timestamp = payload.get("timestamp") or ""
        event_at = parse_timestamp(raw_timestamp)

        mapping = map_v1_event(event) if schema == "v1" else map_v2_event(event)
        failure_reason = extract_failure_reason(payload)
        rts = is_rts_leg(payload, event)

        order = self._order_for_tracking(tracking_id)
        order_id = order.id if order is not None else None

        webhook_log.record_tracking_event(
            self.db,
            tracking_number=tracking_id,
            source=f"carrier_{schema}",
            event=event,
            status=mapping.normalized_status,
            description=mapping.description,
            order_id=order_id,
            location=payload.get("location"),
            event_timestamp=event_at,
            raw_payload=payload,
        )
        if schema == "v2":
            webhook_log.record_carrier_webhook(
                self.db,
                tracking_id=tracking_id,
                event=event,
                status=payload.get("status"),
                event_timestamp=event_at,
                raw_payload=payload,
                failure_reason=failure_reason,
                is_terminal=mapping.is_terminal,
                is_rts_leg=rts,
            )

        if order_id is None:
            log.warning(f"No order found for tracking number {tracking_id} ({event})")
            return IngestResult(tracking_id, event, False, "unmatched", mapping)

        if mapping.normalized_status is None:
            log.info(f"{tracking_id}: {mapping.description}; recorded only")

        request = TransitionRequest(
            order_id=order_id,
            source="carrier",
            order_status=mapping.normalized_status if mapping.should_transition else None,
            key=EventKey("carrier", tracking_id, f"{event}@{raw_timestamp}"),
            shipment_update=ShipmentUpdate(
                event=event,
                event_at=event_at,
                failure_reason=failure_reason,
                is_rts_leg=rts,
            ),
            reason=mapping.description,
        )

        try:
            result = self.state_machine.transition(request)
            outcome = result.result
            status = result.order_status
        except DuplicateEvent:
            outcome, status = "duplicate", None
        except InvalidTransition:
            outcome, status = "rejected", None

        return IngestResult(tracking_id, event, True, outcome, mapping, order_id, status)

    # ── Tracking & waybill ───────────────────────────────

    def get_tracking(self, tracking_id: str) -> Dict[str, Any]:
        order = self._order_for_tracking(tracking_id)
        if order is None:
            raise OrderNotFound(tracking_id)
        shipment = self._shipment_for_tracking(tracking_id)
        events: List[TrackingEvent] = (
            self.db.query(TrackingEvent)
            .filter(TrackingEvent.tracking_number == tracking_id)
            .order_by(TrackingEvent.event_timestamp.desc(), TrackingEvent.id.desc())
            .all()
        )
        return {
            "tracking_number": tracking_id,
            "order_code": order.order_code,
            "order_status": order.order_status,
            "carrier": shipment.carrier if shipment else settings.carrier_name,
            "shipment_status": shipment.status if shipment else None,
            "failure_reason": shipment.failure_reason if shipment else None,
            "is_rts_leg": bool(shipment.is_rts_leg) if shipment else False,
            "events": [
                {
                    "event": e.event,
                    "status": e.status,
                    "description": e.description,
                    "location": e.location,
                    "timestamp": e.event_timestamp.isoformat() if e.event_timestamp else None,
                    "source": e.source,
                }
                for e in events
            ],
        }

    async def get_waybill(self, tracking_id: str, user) -> bytes:
        order = self._order_for_tracking(tracking_id)
        if order is None:
            raise OrderNotFound(tracking_id)
        check_order_access(order, user)
        return await self.connector.get_waybill(tracking_id)

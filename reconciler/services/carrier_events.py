"""
Carrier event vocabularies.

Maps NinjaVan v1 and v2 webhook event names to normalized order
statuses. Both mapping functions are total: names not in the table
return a no-op mapping instead of raising.
"""
from typing import Any, Dict, NamedTuple, Optional
from reconciler.models.order import OrderStatus


class EventMapping(NamedTuple):
    normalized_status: Optional[str]
    should_transition: bool
    is_terminal: bool
    description: str


def _m(status: Optional[str], transition: bool, description: str, terminal: bool = False) -> EventMapping:
    return EventMapping(status, transition, terminal, description)


# ── v1: coarse event set ─────────────────────────────────

V1_EVENTS: Dict[str, EventMapping] = {
    "Picked Up, In Transit To Origin Hub": _m(OrderStatus.PICKED_UP, True, "Parcel picked up"),
    "Successful Pickup": _m(OrderStatus.PICKED_UP, True, "Parcel picked up"),
    "Delivered, Collected by Customer": _m(OrderStatus.DELIVERED, True, "Parcel delivered", terminal=True),
    "Delivered, Left at Doorstep": _m(OrderStatus.DELIVERED, True, "Parcel delivered", terminal=True),
    "Delivered, Received by Customer": _m(OrderStatus.DELIVERED, True, "Parcel delivered", terminal=True),
    "Successful Delivery": _m(OrderStatus.DELIVERED, True, "Parcel delivered", terminal=True),
    "Completed": _m(OrderStatus.DELIVERED, True, "Parcel delivered", terminal=True),
    "Returned to Sender": _m(OrderStatus.RETURNED, True, "Parcel returned", terminal=True),
    "Cancelled": _m(OrderStatus.CANCELLED, True, "Shipping cancelled", terminal=True),
}


# ── v2: full event table ─────────────────────────────────

V2_EVENTS: Dict[str, EventMapping] = {
    # Pickup
    "Pending Pickup": _m(OrderStatus.FOR_SHIPPING, True, "Order ready for pickup"),
    "Driver dispatched for Pickup": _m(OrderStatus.FOR_SHIPPING, True, "Driver dispatched for pickup"),
    "Pending Pickup, Shipper Dropoff": _m(OrderStatus.FOR_SHIPPING, True, "Order at pickup point"),
    "Picked Up, In Transit To Origin Hub": _m(OrderStatus.PICKED_UP, True, "Order picked up by courier"),

    # Pickup exceptions
    "Pickup Exception, Pending Reschedule": _m(OrderStatus.FOR_SHIPPING, False, "Pickup failed, rescheduling"),
    "Pickup Exception, Reattempt Scheduled": _m(OrderStatus.FOR_SHIPPING, False, "Pickup rescheduled"),
    "Pickup Exception, Max Attempts Reached": _m(
        OrderStatus.PICKUP_FAILED, True, "Pickup failed - max attempts reached", terminal=True
    ),
    "Pickup Exception, Pending Retrieval from PUDO": _m(OrderStatus.FOR_SHIPPING, False, "Awaiting pickup from PUDO"),

    # Transit hubs
    "Arrived at Origin Hub": _m(OrderStatus.SHIPPED, True, "Arrived at origin facility"),
    "Arrived at Transit Hub": _m(OrderStatus.SHIPPED, True, "Arrived at transit facility"),
    "Arrived at Destination Hub": _m(OrderStatus.SHIPPED, True, "Arrived at destination facility"),
    "In Transit to Next Sorting Hub": _m(OrderStatus.SHIPPED, True, "In transit between facilities"),

    # Last mile
    "On Vehicle for Delivery": _m(OrderStatus.OUT_FOR_DELIVERY, True, "Out for delivery"),
    "At PUDO, Pending Customer Collection": _m(OrderStatus.OUT_FOR_DELIVERY, True, "At pickup point, awaiting customer"),

    # Delivered
    "Delivered, Collected by Customer": _m(
        OrderStatus.DELIVERED, True, "Delivered - collected by customer", terminal=True
    ),
    "Delivered, Left at Doorstep": _m(OrderStatus.DELIVERED, True, "Delivered - left at doorstep", terminal=True),
    "Delivered, Received by Customer": _m(
        OrderStatus.DELIVERED, True, "Delivered - received by customer", terminal=True
    ),

    # Delivery exceptions
    "Delivery Exception, Pending Reschedule": _m(OrderStatus.DELIVERY_EXCEPTION, True, "Delivery failed, rescheduling"),
    "Delivery Exception, Reattempt Scheduled": _m(OrderStatus.DELIVERY_EXCEPTION, True, "Delivery rescheduled"),
    "Delivery Exception, Max Attempts Reached": _m(
        OrderStatus.DELIVERY_FAILED, True, "Delivery failed - max attempts reached"
    ),
    "Delivery Exception, Parcel Overstayed at PUDO": _m(
        OrderStatus.DELIVERY_EXCEPTION, True, "Parcel overstayed at pickup point"
    ),
    "Delivery Exception, Parcel Lost": _m(OrderStatus.DELIVERY_EXCEPTION, True, "Parcel lost"),
    "Delivery Exception, Parcel Damaged": _m(OrderStatus.DELIVERY_EXCEPTION, True, "Parcel damaged"),
    "Delivery Exception, Return to Sender Initiated": _m(OrderStatus.RETURNING, True, "Return to sender initiated"),

    # Final states
    "Returned to Sender": _m(OrderStatus.RETURNED, True, "Returned to sender", terminal=True),
    "Cancelled": _m(OrderStatus.CANCELLED, True, "Order cancelled", terminal=True),

    # Informational
    "Parcel Measurements Update": _m(None, False, "Parcel measurements updated"),

    # International transit
    "International Transit, Handed Over to Origin Facility": _m(OrderStatus.SHIPPED, True, "International - at origin facility"),
    "International Transit, Arrived at Origin Facility": _m(OrderStatus.SHIPPED, True, "International - arrived at origin"),
    "International Transit, Processed at Origin Facility": _m(OrderStatus.SHIPPED, True, "International - processed at origin"),
    "International Transit, Handed Over to Linehaul": _m(OrderStatus.SHIPPED, True, "International - handed to linehaul"),
    "International Transit, Export Cleared": _m(OrderStatus.SHIPPED, True, "International - export cleared"),
    "International Transit, Linehaul Departed": _m(OrderStatus.SHIPPED, True, "International - departed"),
    "International Transit, Linehaul Scheduled": _m(OrderStatus.SHIPPED, True, "International - linehaul scheduled"),
    "International Transit, Linehaul Arrived": _m(OrderStatus.SHIPPED, True, "International - arrived at destination"),
    "International Transit, Customs Cleared": _m(OrderStatus.SHIPPED, True, "International - customs cleared"),
    "International Transit, Customs Held": _m(OrderStatus.CUSTOMS_HOLD, True, "International - held at customs"),
    "International Transit, Handed Over to Last Mile": _m(OrderStatus.SHIPPED, True, "International - handed to last mile"),
    "International Transit, Returned to Sender at Origin Facility": _m(
        OrderStatus.RETURNED, True, "International - returned to sender", terminal=True
    ),
    "International Transit, Returned to XB Warehouse": _m(
        OrderStatus.RETURNED, True, "International - returned to warehouse", terminal=True
    ),
    "International Transit, Fulfillment Request Submitted": _m(OrderStatus.SHIPPED, False, "International - fulfillment requested"),
    "International Transit, Fulfillment Packed": _m(OrderStatus.SHIPPED, False, "International - fulfillment packed"),
    "International Transit, En Route to Origin Facility": _m(OrderStatus.SHIPPED, True, "International - en route to origin"),
    "International Transit, Parcel Exception": _m(OrderStatus.DELIVERY_EXCEPTION, True, "International - parcel exception"),
    "International Transit, Parcel Disposed": _m(OrderStatus.CANCELLED, True, "International - parcel disposed"),
    "International Transit, Parcel Lost": _m(OrderStatus.DELIVERY_EXCEPTION, True, "International - parcel lost"),
    "International Transit, Parcel Damaged": _m(OrderStatus.DELIVERY_EXCEPTION, True, "International - parcel damaged"),

    # Return to shipper
    "Return to Shipper Exception, Parcel triggered for Shipper Collection": _m(
        OrderStatus.RETURNING, True, "Return exception - awaiting shipper collection"
    ),
    "Return to Shipper Exception, Parcel collected by Shipper": _m(
        OrderStatus.RETURNED, True, "Return exception - collected by shipper"
    ),
    "Return to Shipper Exception, Parcel Scrapped": _m(OrderStatus.CANCELLED, True, "Return exception - parcel scrapped"),
    # No return-failed state exists; the parcel stays on its return leg
    "Return to Shipper Exception, Max Attempts Reached": _m(
        OrderStatus.RETURNING, False, "Return exception - max attempts reached"
    ),
}


def _unknown(event: Optional[str]) -> EventMapping:
    return EventMapping(None, False, False, f"Unknown event: {event}")


def map_v1_event(event: Optional[str]) -> EventMapping:
    """Map a v1 webhook event name"""
    if not event:
        return _unknown(event)
    return V1_EVENTS.get(event.strip(), _unknown(event))


def map_v2_event(event: Optional[str]) -> EventMapping:
    """Map a v2 webhook event name"""
    if not event:
        return _unknown(event)
    return V2_EVENTS.get(event.strip(), _unknown(event))


def extract_failure_reason(payload: Dict[str, Any]) -> Optional[str]:
    """Pull the carrier's failure reason from a pickup or delivery exception block"""
    for key in ("pickup_exception", "delivery_exception"):
        block = payload.get(key)
        if isinstance(block, dict) and block.get("failure_reason"):
            return str(block["failure_reason"])
    return None


def is_rts_leg(payload: Dict[str, Any], event: Optional[str] = None) -> bool:
    """Whether the parcel is travelling back to the shipper"""
    flag = payload.get("is_parcel_on_rts_leg")
    if flag is not None:
        return bool(flag)
    name = (event or "").lower()
    return name.startswith("return to shipper") or "return to sender" in name

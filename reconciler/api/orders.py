"""Checkout and order cancellation endpoints."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from reconciler.api.deps import get_carrier, get_gateway, http_error, require_user
from reconciler.errors import ReconcilerError
from reconciler.middleware.auth_middleware import CurrentUser
from reconciler.models.base import get_db
from reconciler.models.order import Order, PaymentMethod
from reconciler.services.order_service import OrderService
from reconciler.services.shipment_service import ShipmentService, check_order_access
from reconciler.utils.helpers import format_amount

router = APIRouter(prefix="/orders", tags=["orders"])


# ── Schemas ──────────────────────────────────────────────

class OrderItemIn(BaseModel):
    variant_id: int
    quantity: int = Field(gt=0)


class CustomerIn(BaseModel):
    name: str
    email: Optional[str] = None
    phone: str


class AddressIn(BaseModel):
    address1: str
    address2: Optional[str] = ""
    area: Optional[str] = ""
    city: str
    state: Optional[str] = ""
    postcode: Optional[str] = ""
    country: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[OrderItemIn]
    customer: CustomerIn
    shipping_address: AddressIn
    payment_method: str = PaymentMethod.GATEWAY


def order_out(order: Order) -> dict:
    return {
        "id": order.id,
        "order_code": order.order_code,
        "order_status": order.order_status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "total_price": format_amount(order.total_price),
        "currency": order.currency,
        "tracking_number": order.tracking_number,
        "items": [
            {
                "variant_id": item.variant_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": format_amount(item.unit_price),
            }
            for item in order.items
        ],
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
    }


def _order_service(db: Session, gateway, carrier) -> OrderService:
    return OrderService(db, gateway=gateway, shipment_service=ShipmentService(db, connector=carrier))


# ── Endpoints ────────────────────────────────────────────

@router.post("", status_code=201)
async def checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    carrier=Depends(get_carrier),
):
    """Reserve stock and open an order."""
    try:
        order = _order_service(db, gateway, carrier).create_order(
            user.user_id,
            [item.model_dump() for item in body.items],
            body.customer.model_dump(),
            body.shipping_address.model_dump(),
            payment_method=body.payment_method,
        )
    except ReconcilerError as e:
        raise http_error(e)
    return JSONResponse(status_code=201, content=order_out(order))


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    carrier=Depends(get_carrier),
):
    try:
        order = _order_service(db, gateway, carrier).get_order(order_id)
        check_order_access(order, user)
    except ReconcilerError as e:
        raise http_error(e)
    return order_out(order)


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    carrier=Depends(get_carrier),
):
    """Cancel an order before pickup; goes through the carrier when a parcel exists."""
    try:
        return await _order_service(db, gateway, carrier).cancel_order(order_id, user)
    except ReconcilerError as e:
        raise http_error(e)

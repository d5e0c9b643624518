"""
Stock ledger.

Reservations are conditional decrements; nothing here commits. The
caller's transaction decides whether a reservation sticks, so a
failure on any line rolls back every line.
"""
from collections import OrderedDict
from typing import Iterable, List, Tuple
from sqlalchemy import update
from sqlalchemy.orm import Session
from reconciler.errors import InsufficientStock, PreconditionFailed
from reconciler.models.order import InventoryLedgerEntry, Order, ProductVariant
from reconciler.utils.logger import log


def _aggregate(items: Iterable) -> "OrderedDict[int, int]":
    """Sum quantities per variant, ordered by variant id"""
    totals = {}
    for item in items:
        variant_id = int(item["variant_id"] if isinstance(item, dict) else item.variant_id)
        quantity = int(item["quantity"] if isinstance(item, dict) else item.quantity)
        if quantity <= 0:
            raise PreconditionFailed(f"Quantity for variant {variant_id} must be positive")
        totals[variant_id] = totals.get(variant_id, 0) + quantity
    return OrderedDict(sorted(totals.items()))


def reserve(db: Session, items: Iterable, order_id=None) -> List[Tuple[ProductVariant, int]]:
    """
    Reserve stock for every line.

    Lines are processed in variant id order so concurrent checkouts
    always lock rows in the same sequence.

    Raises:
        InsufficientStock: for the first line that cannot be satisfied
    """
    reserved = []
    for variant_id, quantity in _aggregate(items).items():
        result = db.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant_id, ProductVariant.stock >= quantity)
            .values(stock=ProductVariant.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            variant = db.get(ProductVariant, variant_id)
            available = variant.stock if variant else 0
            name = variant.name if variant else None
            log.warning(f"Insufficient stock for variant {variant_id}: requested {quantity}, available {available}")
            raise InsufficientStock(variant_id, quantity, available, name)

        db.add(InventoryLedgerEntry(
            variant_id=variant_id,
            order_id=order_id,
            change_type="reserve",
            quantity=quantity,
            reason="checkout",
        ))
        variant = db.get(ProductVariant, variant_id)
        db.refresh(variant)
        reserved.append((variant, quantity))

    return reserved


def release(db: Session, order: Order, reason: str) -> int:
    """
    Return an order's units to stock exactly once.

    Returns:
        Units released; 0 when the order's stock was already released
    """
    if order.stock_released:
        return 0

    released = 0
    for item in order.items:
        db.execute(
            update(ProductVariant)
            .where(ProductVariant.id == item.variant_id)
            .values(stock=ProductVariant.stock + item.quantity)
            .execution_options(synchronize_session=False)
        )
        db.add(InventoryLedgerEntry(
            variant_id=item.variant_id,
            order_id=order.id,
            change_type="release",
            quantity=item.quantity,
            reason=reason,
        ))
        released += item.quantity

    order.stock_released = True
    log.info(f"Released {released} units for order {order.order_code} ({reason})")
    return released

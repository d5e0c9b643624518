"""Database models for the order reconciliation core"""

from reconciler.models.order import (
    Order,
    OrderItem,
    ProductVariant,
    InventoryLedgerEntry,
    OrderStatus,
    PaymentStatus,
    PaymentMethod,
)

from reconciler.models.payment import (
    Payment,
    PaymentEvent,
    PaymentRecordStatus,
)

from reconciler.models.shipment import (
    Shipment,
    TrackingEvent,
    CarrierWebhookEvent,
)

from reconciler.models.idempotency import IdempotencyKey

from reconciler.models.outbox import (
    OutboxMessage,
    OutboxKind,
    OutboxStatus,
)

__all__ = [
    "Order",
    "OrderItem",
    "ProductVariant",
    "InventoryLedgerEntry",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "Payment",
    "PaymentEvent",
    "PaymentRecordStatus",
    "Shipment",
    "TrackingEvent",
    "CarrierWebhookEvent",
    "IdempotencyKey",
    "OutboxMessage",
    "OutboxKind",
    "OutboxStatus",
]

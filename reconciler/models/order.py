"""
Order, line item and stock models

Orders are never deleted. Status columns are only written by the
state machine in reconciler.services.state_machine.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Numeric, Boolean, ForeignKey, Text
from sqlalchemy.orm import relationship
from reconciler.models.base import Base
from reconciler.utils.helpers import utcnow


class OrderStatus:
    """Order status vocabulary"""
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    FOR_PACKING = "for_packing"
    PACKED = "packed"
    FOR_SHIPPING = "for_shipping"
    PICKED_UP = "picked_up"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"

    CANCELLED = "cancelled"
    RETURNING = "returning"
    RETURNED = "returned"

    PICKUP_FAILED = "pickup_failed"
    CUSTOMS_HOLD = "customs_hold"
    DELIVERY_EXCEPTION = "delivery_exception"
    DELIVERY_FAILED = "delivery_failed"


class PaymentStatus:
    """Order-level payment status vocabulary"""
    PENDING = "pending"
    AWAITING_FOR_CONFIRMATION = "awaiting_for_confirmation"
    COD_PENDING = "cod_pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod:
    GATEWAY = "gateway"
    COD = "cod"


class Order(Base):
    """
    Customer order

    order_code is the opaque external identifier handed to the gateway
    and carrier. payment_attempts only ever increases and disambiguates
    gateway transaction ids. stock_released guards stock restoration so
    it happens at most once.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_code = Column(String(32), unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)

    # Customer snapshot
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)

    payment_method = Column(String(16), nullable=False, default=PaymentMethod.GATEWAY)
    order_status = Column(String(32), index=True, nullable=False, default=OrderStatus.PROCESSING)
    payment_status = Column(String(32), index=True, nullable=False, default=PaymentStatus.PENDING)

    total_price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), default="PHP")

    tracking_number = Column(String, unique=True, index=True, nullable=True)
    payment_attempts = Column(Integer, nullable=False, default=0)
    stock_released = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD


class OrderItem(Base):
    """Line item; name and unit price are snapshots taken at checkout"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), index=True, nullable=False)
    product_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class ProductVariant(Base):
    """Sellable variant with its available physical stock"""
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class InventoryLedgerEntry(Base):
    """Append-only record of every stock movement"""
    __tablename__ = "inventory_ledger"

    id = Column(Integer, primary_key=True, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=True)
    change_type = Column(String(16), nullable=False)  # reserve | release
    quantity = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

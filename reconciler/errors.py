"""Exception taxonomy for the reconciliation core."""
from typing import Optional


class ReconcilerError(Exception):
    """Base exception for all reconciliation errors."""

    pass


class InvalidTransition(ReconcilerError):
    """Raised when a requested state is not reachable from the current one."""

    def __init__(self, order_id: int, axis: str, current: str, requested: str):
        self.order_id = order_id
        self.axis = axis
        self.current = current
        self.requested = requested
        super().__init__(
            f"Order {order_id}: {axis} transition {current} -> {requested} is not allowed"
        )


class DuplicateEvent(ReconcilerError):
    """Raised when an idempotency key has already been applied."""

    def __init__(self, source: str, external_id: str, signature: str):
        self.source = source
        self.external_id = external_id
        self.signature = signature
        super().__init__(f"Duplicate {source} event {external_id} ({signature})")


class PreconditionFailed(ReconcilerError):
    """Raised when an operation is requested before its preconditions hold."""

    pass


class CancellationNotAllowed(PreconditionFailed):
    """Raised when an order is past the point where it can be cancelled."""

    def __init__(self, order_id: int, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(
            f"Order cannot be cancelled at this stage (status '{status}'). "
            "Only orders that are pending pickup can be cancelled."
        )


class InsufficientStock(ReconcilerError):
    """Raised when a reservation cannot be satisfied for a line item."""

    def __init__(self, variant_id: int, requested: int, available: int, name: Optional[str] = None):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        self.name = name
        label = name or f"variant {variant_id}"
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}"
        )


class ExternalUnavailable(ReconcilerError):
    """Raised when the gateway or carrier times out or answers 5xx. Retryable."""

    def __init__(self, service: str, detail: str, status: Optional[int] = None):
        self.service = service
        self.detail = detail
        self.status = status
        super().__init__(f"{service} unavailable: {detail}")


class CarrierRejected(ReconcilerError):
    """Raised when the carrier refuses a request (4xx). Not retried."""

    def __init__(self, operation: str, detail: str, status: Optional[int] = None):
        self.operation = operation
        self.detail = detail
        self.status = status
        super().__init__(f"Carrier rejected {operation}: {detail}")


class SignatureInvalid(ReconcilerError):
    """Raised when a webhook signature or callback digest does not verify."""

    pass


class OrderNotFound(ReconcilerError):
    """Raised when an order, payment or shipment lookup finds nothing."""

    def __init__(self, reference):
        self.reference = reference
        super().__init__(f"Order not found: {reference}")


class PermissionDenied(ReconcilerError):
    """Raised when the requesting user neither owns the order nor is an admin."""

    pass

"""Shared request dependencies and error mapping for the API routers."""
from fastapi import HTTPException, Request

from reconciler.errors import (
    CancellationNotAllowed,
    CarrierRejected,
    ExternalUnavailable,
    InsufficientStock,
    OrderNotFound,
    PermissionDenied,
    PreconditionFailed,
    ReconcilerError,
    SignatureInvalid,
)
from reconciler.middleware.auth_middleware import CurrentUser


# ── Collaborators (overridable in tests) ─────────────────

def get_gateway():
    from reconciler.connectors.dragonpay_connector import DragonpayConnector
    return DragonpayConnector()


def get_carrier():
    from reconciler.connectors.ninjavan_connector import NinjaVanConnector
    return NinjaVanConnector()


def get_dispatcher():
    from reconciler.services.notification_service import NotificationDispatcher
    return NotificationDispatcher()


def get_reconciler():
    from reconciler.services.reconciliation_service import reconciliation_service
    return reconciliation_service


def get_outbox_kicker():
    """Callable run in the background after webhooks to drain the outbox"""
    from reconciler.scheduler import drain_outbox
    return drain_outbox


# ── Identity ─────────────────────────────────────────────

def require_user(request: Request) -> CurrentUser:
    """Dependency: raise 401 if no forwarded identity on request."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(request: Request) -> CurrentUser:
    """Dependency: admin role only."""
    user = require_user(request)
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def http_error(error: ReconcilerError) -> HTTPException:
    """Translate a domain error into the HTTP status the API promises"""
    if isinstance(error, CancellationNotAllowed):
        return HTTPException(status_code=400, detail="Order cannot be cancelled at this stage")
    if isinstance(error, PreconditionFailed):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, InsufficientStock):
        return HTTPException(status_code=409, detail={
            "message": str(error),
            "variant_id": error.variant_id,
            "name": error.name,
            "requested": error.requested,
            "available": error.available,
        })
    if isinstance(error, CarrierRejected):
        return HTTPException(status_code=409, detail=f"Carrier rejected the request: {error.detail}")
    if isinstance(error, ExternalUnavailable):
        return HTTPException(status_code=502, detail=f"{error.service} is unavailable, please try again")
    if isinstance(error, SignatureInvalid):
        return HTTPException(status_code=401, detail="Invalid signature")
    if isinstance(error, OrderNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PermissionDenied):
        return HTTPException(status_code=403, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))

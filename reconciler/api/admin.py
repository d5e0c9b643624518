"""Admin operations: manual reconciliation and outbox drain."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from reconciler.api.deps import get_carrier, get_dispatcher, get_reconciler, require_admin
from reconciler.middleware.auth_middleware import CurrentUser
from reconciler.models.base import get_db
from reconciler.services.outbox_service import OutboxProcessor
from reconciler.services.shipment_service import ShipmentService
from reconciler.utils.logger import log

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/reconcile")
async def trigger_reconciliation(
    admin: CurrentUser = Depends(require_admin),
    reconciler=Depends(get_reconciler),
):
    """Run a payment reconciliation sweep now."""
    log.info(f"Manual reconciliation requested by {admin.user_id}")
    return await reconciler.run_sweep()


@router.get("/reconcile/status")
async def reconciliation_status(
    admin: CurrentUser = Depends(require_admin),
    reconciler=Depends(get_reconciler),
):
    return reconciler.get_status()


@router.post("/outbox/drain")
async def drain_outbox(
    limit: Optional[int] = None,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
    dispatcher=Depends(get_dispatcher),
):
    """Dispatch due outbox messages now."""
    processor = OutboxProcessor(db, shipment_service=ShipmentService(db, connector=carrier), dispatcher=dispatcher)
    return await processor.drain(limit)

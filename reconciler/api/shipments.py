"""Shipment endpoints: cancellation, tracking history and waybills."""
from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy.orm import Session

from reconciler.api.deps import get_carrier, http_error, require_user
from reconciler.errors import ReconcilerError
from reconciler.middleware.auth_middleware import CurrentUser
from reconciler.models.base import get_db
from reconciler.services.shipment_service import ShipmentService

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.delete("/{tracking_id}")
async def cancel_shipment(
    tracking_id: str,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
):
    """Cancel a parcel that has not been picked up yet."""
    try:
        return await ShipmentService(db, connector=carrier).cancel_shipment(tracking_id, user)
    except ReconcilerError as e:
        raise http_error(e)


@router.get("/{tracking_id}/tracking")
async def get_tracking(
    tracking_id: str,
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
):
    """Tracking history, newest first."""
    try:
        return ShipmentService(db, connector=carrier).get_tracking(tracking_id)
    except ReconcilerError as e:
        raise http_error(e)


@router.get("/{tracking_id}/waybill")
async def get_waybill(
    tracking_id: str,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
):
    """Waybill PDF from the carrier."""
    try:
        pdf = await ShipmentService(db, connector=carrier).get_waybill(tracking_id, user)
    except ReconcilerError as e:
        raise http_error(e)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="waybill-{tracking_id}.pdf"'},
    )

"""Carrier webhook endpoints (NinjaVan v1 and v2)."""
import json
from typing import Sequence

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from reconciler.api.deps import get_carrier, get_outbox_kicker
from reconciler.config import get_settings
from reconciler.models.base import get_db
from reconciler.services.shipment_service import ShipmentService
from reconciler.utils.logger import log
from reconciler.utils.signatures import verify_signature

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Ninjavan-Hmac-Sha256"

REQUIRED_V1 = ("tracking_id", "event")
REQUIRED_V2 = ("tracking_id", "event", "status")


async def _handle_carrier_webhook(
    request: Request,
    schema: str,
    required: Sequence[str],
    db: Session,
    carrier,
    background_tasks: BackgroundTasks,
    kick,
) -> dict:
    body = await request.body()

    # Signature is checked on the raw bytes before anything is parsed
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), get_settings().webhook_secret):
        log.warning(f"Rejected carrier {schema} webhook with missing or invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")

    missing = [name for name in required if not payload.get(name)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")

    result = ShipmentService(db, connector=carrier).ingest_carrier_event(payload, schema=schema)
    if result.outcome == "applied":
        background_tasks.add_task(kick)

    return {
        "status": "ok",
        "tracking_id": result.tracking_id,
        "event": result.event,
        "matched": result.matched,
        "outcome": result.outcome,
        "order_status": result.order_status,
        "description": result.mapping.description,
    }


@router.post("/carrier/v1")
async def carrier_webhook_v1(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
    kick=Depends(get_outbox_kicker),
):
    """Legacy coarse-grained tracking webhook."""
    return await _handle_carrier_webhook(request, "v1", REQUIRED_V1, db, carrier, background_tasks, kick)


@router.post("/carrier/v2")
async def carrier_webhook_v2(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    carrier=Depends(get_carrier),
    kick=Depends(get_outbox_kicker),
):
    """Full-vocabulary tracking webhook."""
    return await _handle_carrier_webhook(request, "v2", REQUIRED_V2, db, carrier, background_tasks, kick)

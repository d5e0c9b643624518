"""Payment endpoints: intents, gateway postback and browser return."""
from urllib.parse import parse_qsl, urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from reconciler.api.deps import get_gateway, get_outbox_kicker, http_error, require_user
from reconciler.config import get_settings
from reconciler.errors import OrderNotFound, PreconditionFailed, ReconcilerError, SignatureInvalid
from reconciler.middleware.auth_middleware import CurrentUser
from reconciler.models.base import get_db
from reconciler.services.order_service import OrderService
from reconciler.services.payment_service import PaymentService
from reconciler.utils.logger import log

router = APIRouter(prefix="/payments", tags=["payments"])


# ── Schemas ──────────────────────────────────────────────

class IntentRequest(BaseModel):
    order_id: int


class IntentOut(BaseModel):
    order_id: int
    order_code: str
    transaction_id: str
    payment_url: str
    amount: str


async def _callback_params(request: Request) -> dict:
    """Gateway callbacks arrive as a form body, a query string, or both"""
    params = dict(request.query_params)
    body = await request.body()
    if body:
        params.update(parse_qsl(body.decode("utf-8", "replace"), keep_blank_values=True))
    return params


# ── Endpoints ────────────────────────────────────────────

@router.post("/intents", response_model=IntentOut)
async def create_intent(
    body: IntentRequest,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
):
    """Issue a gateway payment intent for an unpaid order."""
    try:
        return OrderService(db, gateway=gateway).issue_payment_intent(body.order_id, user)
    except ReconcilerError as e:
        raise http_error(e)


@router.post("/postback", response_class=PlainTextResponse)
async def postback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    kick=Depends(get_outbox_kicker),
):
    """Server-to-server status notification from the gateway."""
    params = await _callback_params(request)
    try:
        result = PaymentService(db, gateway=gateway).handle_postback(params)
    except PreconditionFailed:
        return PlainTextResponse("result=FAIL_MISSING_TXNID", status_code=400)
    except SignatureInvalid:
        return PlainTextResponse("result=FAIL_DIGEST_MISMATCH", status_code=401)
    except OrderNotFound:
        log.error(f"Postback for unknown transaction {params.get('txnid')}")
        return PlainTextResponse("result=OK")

    if result.result == "applied":
        background_tasks.add_task(kick)
    return PlainTextResponse("result=OK")


@router.get("/return")
async def browser_return(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    kick=Depends(get_outbox_kicker),
):
    """Customer lands here after paying; the status shown comes from an inquiry."""
    params = dict(request.query_params)
    target = {"txnid": params.get("txnid", "")}
    try:
        result = await PaymentService(db, gateway=gateway).handle_return(params)
        target.update({"order": result.order_code, "status": result.payment_status})
        if result.result == "applied":
            background_tasks.add_task(kick)
    except (PreconditionFailed, OrderNotFound) as e:
        log.warning(f"Browser return could not be resolved: {e}")
        target["status"] = "unknown"

    return RedirectResponse(url=f"{get_settings().frontend_return_url}?{urlencode(target)}", status_code=303)

"""
Payment reconciliation poller.

Finds gateway payments stuck in awaiting_for_confirmation, asks the
gateway for their status and applies the answer through the same path
as postbacks. Covers lost or late webhooks.
"""
import asyncio
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.orm import Session
from reconciler.config import get_settings
from reconciler.connectors.dragonpay_connector import DragonpayConnector, GatewayOutcome
from reconciler.models.base import SessionLocal
from reconciler.models.order import Order, PaymentMethod, PaymentStatus
from reconciler.models.payment import Payment
from reconciler.services import webhook_log
from reconciler.services.payment_service import PaymentService, TIMEOUT
from reconciler.utils.helpers import utcnow
from reconciler.utils.logger import log

settings = get_settings()

LEASE_SOURCE = "poller"

RECONCILABLE_PAYMENT_STATES = (PaymentStatus.PENDING, PaymentStatus.AWAITING_FOR_CONFIRMATION)

CONCLUSIVE_OUTCOMES = {
    GatewayOutcome.SUCCEEDED,
    GatewayOutcome.FAILED,
    GatewayOutcome.REFUNDED,
    GatewayOutcome.CHARGEBACK,
    GatewayOutcome.VOIDED,
}


class ReconciliationService:
    """Scheduled sweep over unconfirmed gateway payments"""

    def __init__(
        self,
        gateway: Optional[DragonpayConnector] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.gateway = gateway or DragonpayConnector()
        self.session_factory = session_factory
        self.is_running = False
        self.stats = {
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "skipped_runs": 0,
            "last_run_at": None,
            "last_run_duration_seconds": None,
            "last_error": None,
            "total_checked": 0,
            "total_updated": 0,
            "total_timed_out": 0,
        }

    def find_candidates(self, db: Session) -> List[Tuple[int, Payment]]:
        """
        Gateway orders still waiting on a payment outcome (pending or
        awaiting confirmation) whose current intent is past the grace period.
        Orders that never got an intent have nothing to inquire about.
        """
        now = utcnow()
        grace_cutoff = now - timedelta(minutes=settings.reconcile_grace_minutes)
        lookback_cutoff = now - timedelta(days=settings.reconcile_lookback_days)

        orders = db.query(Order).filter(
            Order.payment_method == PaymentMethod.GATEWAY,
            Order.payment_status.in_(RECONCILABLE_PAYMENT_STATES),
        ).order_by(Order.id).all()

        candidates = []
        for order in orders:
            payment = (
                db.query(Payment)
                .filter(Payment.order_id == order.id)
                .order_by(Payment.id.desc())
                .first()
            )
            if payment is None or not payment.transaction_id:
                continue
            if payment.status_changed_at and payment.status_changed_at > grace_cutoff:
                continue
            if payment.created_at and payment.created_at < lookback_cutoff:
                continue
            candidates.append((order.id, payment))
        return candidates

    async def reconcile_payment(self, db: Session, payment: Payment) -> str:
        """
        Inquire and apply for one payment under a lease.

        Returns one of: updated, timed_out, unchanged, leased
        """
        txnid = payment.transaction_id
        if not webhook_log.acquire_lease(db, LEASE_SOURCE, txnid, settings.reconcile_lease_seconds):
            log.info(f"Payment {txnid} is being reconciled elsewhere; skipping")
            return "leased"

        try:
            inquiry = await self.gateway.inquire(txnid)
            webhook_log.record_payment_event(
                db, txnid, "poller", inquiry.raw_status, inquiry.reference_number, inquiry.message,
                raw_payload={"inquiry_outcome": inquiry.outcome},
            )
            payments = PaymentService(db, gateway=self.gateway)

            if inquiry.outcome in CONCLUSIVE_OUTCOMES:
                result = payments.apply_gateway_outcome(
                    txnid, inquiry.outcome, source="poller",
                    raw_status=inquiry.raw_status, reference_number=inquiry.reference_number,
                    message=inquiry.message,
                )
                return "updated" if result.result == "applied" else "unchanged"

            timeout_cutoff = utcnow() - timedelta(days=settings.payment_pending_timeout_days)
            if payment.created_at and payment.created_at <= timeout_cutoff:
                log.warning(
                    f"Payment {txnid} still {inquiry.outcome} after "
                    f"{settings.payment_pending_timeout_days} days; treating as failed"
                )
                webhook_log.record_payment_event(
                    db, txnid, "timeout", inquiry.raw_status, inquiry.reference_number,
                    f"No confirmation after {settings.payment_pending_timeout_days} days",
                )
                result = payments.apply_gateway_outcome(
                    txnid, TIMEOUT, source="poller",
                    message=f"No confirmation after {settings.payment_pending_timeout_days} days",
                )
                return "timed_out" if result.result == "applied" else "unchanged"

            return "unchanged"
        finally:
            webhook_log.release_lease(db, LEASE_SOURCE, txnid)

    async def run_sweep(self) -> Dict[str, Any]:
        """One poller pass; an overlapping call returns status skipped"""
        if self.is_running:
            log.info("Payment reconciliation already running; skipping this run")
            self.stats["skipped_runs"] += 1
            return {"status": "skipped"}

        self.is_running = True
        started = time.time()
        self.stats["total_runs"] += 1
        self.stats["last_run_at"] = utcnow()
        summary = {"status": "completed", "checked": 0, "updated": 0, "timed_out": 0, "unchanged": 0, "leased": 0, "errors": 0}

        db = self.session_factory()
        try:
            candidates = self.find_candidates(db)
            log.info(f"Payment reconciliation: {len(candidates)} payments to check")

            for index, (order_id, payment) in enumerate(candidates):
                if index and settings.reconcile_request_delay_seconds:
                    await asyncio.sleep(settings.reconcile_request_delay_seconds)
                summary["checked"] += 1
                try:
                    outcome = await self.reconcile_payment(db, payment)
                    summary[outcome] += 1
                except Exception as e:
                    db.rollback()
                    summary["errors"] += 1
                    log.error(f"Reconciliation failed for order {order_id}: {e}")

            self.stats["successful_runs"] += 1
            self.stats["last_error"] = None
        except Exception as e:
            summary["status"] = "failed"
            self.stats["failed_runs"] += 1
            self.stats["last_error"] = str(e)
            log.error(f"Payment reconciliation run failed: {e}")
        finally:
            db.close()
            self.is_running = False
            duration = time.time() - started
            self.stats["last_run_duration_seconds"] = round(duration, 2)
            self.stats["total_checked"] += summary["checked"]
            self.stats["total_updated"] += summary["updated"] + summary["timed_out"]
            self.stats["total_timed_out"] += summary["timed_out"]

        log.info(f"Payment reconciliation finished in {duration:.1f}s: {summary}")
        return summary

    def get_status(self) -> Dict[str, Any]:
        status = dict(self.stats)
        status["is_running"] = self.is_running
        status["last_run_at"] = status["last_run_at"].isoformat() if status["last_run_at"] else None
        status["config"] = {
            "interval_minutes": settings.reconcile_interval_minutes,
            "grace_minutes": settings.reconcile_grace_minutes,
            "lookback_days": settings.reconcile_lookback_days,
            "pending_timeout_days": settings.payment_pending_timeout_days,
            "business_hours_only": settings.reconcile_business_hours_only,
        }
        status["gateway"] = self.gateway.get_status()
        return status


# Process-wide poller shared by the scheduler and the admin API
reconciliation_service = ReconciliationService()

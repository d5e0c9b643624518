"""
Scheduler for the order lifecycle jobs

Uses APScheduler to run the payment poller, the outbox processor and the
order timers alongside the API.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime
from zoneinfo import ZoneInfo
import asyncio

from reconciler.models.base import SessionLocal
from reconciler.config import get_settings
from reconciler.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()

LOCAL_TZ = ZoneInfo(settings.scheduler_timezone)


def within_business_hours(now=None) -> bool:
    """True when the poller may call the gateway (scheduler_timezone local time)"""
    if not settings.reconcile_business_hours_only:
        return True
    local = now.astimezone(LOCAL_TZ) if now else datetime.now(LOCAL_TZ)
    return settings.reconcile_business_start_hour <= local.hour < settings.reconcile_business_end_hour


# Job Functions

async def run_payment_reconciliation():
    """Ask the gateway about unsettled payments (every reconcile_interval_minutes)"""
    from reconciler.services.reconciliation_service import reconciliation_service

    if not within_business_hours():
        log.debug("Outside business hours; payment reconciliation skipped")
        return
    try:
        await reconciliation_service.run_sweep()
    except Exception as e:
        log.error(f"Payment reconciliation error: {str(e)}")


async def drain_outbox():
    """Dispatch due outbox messages (every outbox_interval_seconds and after webhooks)"""
    from reconciler.services.outbox_service import OutboxProcessor

    db = SessionLocal()
    try:
        stats = await OutboxProcessor(db).drain()
        if stats["processed"]:
            log.info(f"Outbox drained: {stats}")
        return stats
    except Exception as e:
        log.error(f"Outbox drain error: {str(e)}")
    finally:
        db.close()


async def auto_complete_orders():
    """Complete delivered orders after the customer's grace period (hourly)"""
    from reconciler.services.order_service import OrderService

    db = SessionLocal()
    try:
        OrderService(db).auto_complete_delivered()
    except Exception as e:
        log.error(f"Auto-complete error: {str(e)}")
    finally:
        db.close()


async def expire_unpaid_orders():
    """Resolve gateway orders left unpaid past the timeout (every 15 minutes)"""
    from reconciler.services.order_service import OrderService

    db = SessionLocal()
    try:
        await OrderService(db).expire_unpaid_orders()
    except Exception as e:
        log.error(f"Unpaid-order timeout error: {str(e)}")
    finally:
        db.close()


async def purge_idempotency_keys():
    """Drop expired idempotency keys and leases (daily at 3am)"""
    from reconciler.services.webhook_log import purge_expired_keys

    db = SessionLocal()
    try:
        purge_expired_keys(db)
    except Exception as e:
        log.error(f"Idempotency purge error: {str(e)}")
    finally:
        db.close()


JOBS = {
    'payment_reconciliation': run_payment_reconciliation,
    'outbox': drain_outbox,
    'auto_complete': auto_complete_orders,
    'unpaid_timeout': expire_unpaid_orders,
    'idempotency_purge': purge_idempotency_keys,
}


def setup_scheduler():
    """
    Register every job. Cron times are in scheduler_timezone.

    - Payment poller:     every reconcile_interval_minutes
    - Outbox:             every outbox_interval_seconds
    - Unpaid timeout:     every 15 minutes
    - Auto-complete:      hourly
    - Idempotency purge:  daily 3:00am
    """

    # ── Payments ─────────────────────────────────────────
    scheduler.add_job(
        run_payment_reconciliation,
        trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
        id='payment_reconciliation',
        name='Payment Reconciliation Poller',
        replace_existing=True,
        max_instances=1
    )
    scheduler.add_job(
        expire_unpaid_orders,
        trigger=IntervalTrigger(minutes=15),
        id='unpaid_timeout',
        name='Unpaid Order Timeout',
        replace_existing=True,
        max_instances=1
    )

    # ── Outbox ───────────────────────────────────────────
    scheduler.add_job(
        drain_outbox,
        trigger=IntervalTrigger(seconds=settings.outbox_interval_seconds),
        id='outbox',
        name='Outbox Processor',
        replace_existing=True,
        max_instances=1
    )

    # ── Orders ───────────────────────────────────────────
    scheduler.add_job(
        auto_complete_orders,
        trigger=IntervalTrigger(hours=1),
        id='auto_complete',
        name='Auto-complete Delivered Orders',
        replace_existing=True,
        max_instances=1
    )

    # ── Housekeeping ─────────────────────────────────────
    scheduler.add_job(
        purge_idempotency_keys,
        trigger=CronTrigger(hour=3, minute=0, timezone=LOCAL_TZ),
        id='idempotency_purge',
        name='Idempotency Key Purge',
        replace_existing=True,
        max_instances=1
    )

    log.info(f"Scheduled {len(scheduler.get_jobs())} jobs")


def start_scheduler():
    """Start the scheduler"""
    if not settings.scheduler_enabled:
        log.info("Scheduler disabled by configuration")
        return
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")


def run_job_now(job_name: str) -> dict:
    """
    Run one job synchronously, outside the scheduler

    Args:
        job_name: one of payment_reconciliation, outbox, auto_complete,
            unpaid_timeout, idempotency_purge

    Returns:
        Dict with success flag
    """
    if job_name not in JOBS:
        return {
            'success': False,
            'error': f'Unknown job: {job_name}. Valid options: {", ".join(JOBS.keys())}'
        }

    try:
        log.info(f"Manually running {job_name}...")
        asyncio.run(JOBS[job_name]())
        return {
            'success': True,
            'message': f'{job_name} finished'
        }
    except Exception as e:
        log.error(f"Error running {job_name}: {str(e)}")
        return {
            'success': False,
            'error': str(e)
        }


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = job.next_run_time

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


# CLI for manual runs

if __name__ == "__main__":
    import sys

    if len(sys.argv) < 3 or sys.argv[1] != "run":
        print("Usage: python -m reconciler.scheduler run <job>")
        print("\nJobs:")
        print("  " + ", ".join(JOBS.keys()))
        sys.exit(1)

    result = run_job_now(sys.argv[2])
    print(result)
    sys.exit(0 if result['success'] else 1)

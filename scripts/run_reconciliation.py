#!/usr/bin/env python3
"""
Manual Reconciliation Script

Runs one payment reconciliation sweep and one outbox drain outside the
API process, then prints a summary of orders still waiting on an
external system.

Usage:
    python scripts/run_reconciliation.py
    python scripts/run_reconciliation.py --json   # machine-readable output
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
import json
from sqlalchemy import func
from reconciler.models.base import SessionLocal, init_db
from reconciler.models.order import Order
from reconciler.models.outbox import OutboxMessage
from reconciler.scheduler import drain_outbox
from reconciler.services.reconciliation_service import reconciliation_service
from reconciler.utils.helpers import utcnow


def _backlog():
    db = SessionLocal()
    try:
        payment_rows = (
            db.query(Order.payment_status, func.count(Order.id))
            .group_by(Order.payment_status)
            .all()
        )
        outbox_rows = (
            db.query(OutboxMessage.status, func.count(OutboxMessage.id))
            .group_by(OutboxMessage.status)
            .all()
        )
    finally:
        db.close()
    return {
        "orders_by_payment_status": {status: count for status, count in payment_rows},
        "outbox_by_status": {status: count for status, count in outbox_rows},
    }


async def run(as_json=False):
    init_db()
    started = utcnow()

    sweep = await reconciliation_service.run_sweep()
    outbox = await drain_outbox() or {}
    backlog = _backlog()

    if as_json:
        print(json.dumps({
            "started_at": started.isoformat(),
            "sweep": sweep,
            "outbox": outbox,
            **backlog,
        }, indent=2, default=str))
        return 0 if sweep.get("status") == "completed" else 1

    print(f"\n{'='*70}")
    print(f"  RECONCILIATION RUN  {started.strftime('%Y-%m-%d %H:%M:%S')} UTC")
    print(f"{'='*70}\n")

    print("Payment sweep:")
    for key, value in sweep.items():
        print(f"  {key:<12} {value}")

    print("\nOutbox drain:")
    for key, value in outbox.items():
        print(f"  {key:<12} {value}")

    print("\nOrders by payment status:")
    for status, count in sorted(backlog["orders_by_payment_status"].items()):
        print(f"  {status:<30} {count:>6}")

    print("\nOutbox messages by status:")
    for status, count in sorted(backlog["outbox_by_status"].items()):
        print(f"  {status:<30} {count:>6}")
    print()

    return 0 if sweep.get("status") == "completed" else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(run(as_json="--json" in sys.argv)))
